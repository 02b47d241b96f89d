"""Self-signed certificate generation for secure test servers."""

from __future__ import annotations

import datetime
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Mapping

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# Subject attribute names accepted by generate()
NAME_ATTRIBUTES = {
    "commonName": NameOID.COMMON_NAME,
    "countryName": NameOID.COUNTRY_NAME,
    "stateOrProvinceName": NameOID.STATE_OR_PROVINCE_NAME,
    "localityName": NameOID.LOCALITY_NAME,
    "organizationName": NameOID.ORGANIZATION_NAME,
    "organizationalUnitName": NameOID.ORGANIZATIONAL_UNIT_NAME,
}


@dataclass(frozen=True, slots=True)
class SelfSignedCertificate:
    """PEM-encoded key material for a self-signed certificate."""

    private_key: str
    cert: str
    public_key: str


def _general_name(name: str) -> x509.GeneralName:
    if "://" in name:
        return x509.UniformResourceIdentifier(name)
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def generate(
    subject: Mapping[str, str],
    *,
    alt_names: Iterable[str] = (),
    key_size: int = 2048,
    days: int = 365,
) -> SelfSignedCertificate:
    """Generate an RSA key and a self-signed certificate.

    The certificate is its own CA, so a client can trust it by loading the
    returned ``cert`` as a CA certificate.

    Args:
        subject: Subject attributes, e.g. ``{"commonName": "localhost"}``
        alt_names: subjectAltName entries; values containing ``://`` become
            URIs, IP addresses become IP entries, anything else a DNS name
        key_size: RSA key size in bits
        days: Validity period in days

    Returns:
        The key, certificate and public key as PEM strings
    """
    try:
        name = x509.Name(
            [x509.NameAttribute(NAME_ATTRIBUTES[k], v) for k, v in subject.items()]
        )
    except KeyError as e:
        raise ValueError(f"Unsupported subject attribute: {e.args[0]}") from e

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    now = datetime.datetime.now(datetime.timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()),
            critical=False,
        )
    )
    names = [_general_name(n) for n in alt_names]
    if names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(names), critical=False
        )
    cert = builder.sign(key, hashes.SHA256())

    return SelfSignedCertificate(
        private_key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii"),
        cert=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        public_key=key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii"),
    )
