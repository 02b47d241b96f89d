"""Tests for self-signed certificate generation."""

import ipaddress
import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from testkit.certs import SelfSignedCertificate, generate


@pytest.fixture(scope="module")
def certificate() -> SelfSignedCertificate:
    """One certificate shared by the tests; key generation is slow."""
    return generate(
        {"commonName": "localhost", "organizationName": "testkit"},
        alt_names=("https://localhost", "localhost", "127.0.0.1"),
    )


class TestGenerate:
    """Tests for generate()."""

    def test_pem_encoded(self, certificate: SelfSignedCertificate) -> None:
        """Test all three parts are PEM strings."""
        assert certificate.cert.startswith("-----BEGIN CERTIFICATE-----")
        assert "PRIVATE KEY-----" in certificate.private_key
        assert certificate.public_key.startswith("-----BEGIN PUBLIC KEY-----")

    def test_subject_and_issuer(self, certificate: SelfSignedCertificate) -> None:
        """Test the subject is as requested and the cert is self-issued."""
        cert = x509.load_pem_x509_certificate(certificate.cert.encode())
        cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        org = cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        assert cn[0].value == "localhost"
        assert org[0].value == "testkit"
        assert cert.issuer == cert.subject

    def test_alt_names(self, certificate: SelfSignedCertificate) -> None:
        """Test URI, DNS and IP subjectAltName entries."""
        cert = x509.load_pem_x509_certificate(certificate.cert.encode())
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.UniformResourceIdentifier) == [
            "https://localhost"
        ]
        assert san.get_values_for_type(x509.DNSName) == ["localhost"]
        assert san.get_values_for_type(x509.IPAddress) == [
            ipaddress.ip_address("127.0.0.1")
        ]

    def test_public_key_matches(self, certificate: SelfSignedCertificate) -> None:
        """Test the public key is the certificate's key."""
        cert = x509.load_pem_x509_certificate(certificate.cert.encode())
        public_key = serialization.load_pem_public_key(certificate.public_key.encode())
        assert cert.public_key().public_numbers() == public_key.public_numbers()

    def test_usable_as_trust_anchor(self, certificate: SelfSignedCertificate) -> None:
        """Test an SSL context accepts the certificate as a CA."""
        context = ssl.create_default_context(cadata=certificate.cert)
        assert context.cert_store_stats()["x509_ca"] == 1

    def test_unknown_subject_attribute(self) -> None:
        """Test unsupported subject keys are rejected."""
        with pytest.raises(ValueError, match="Unsupported subject attribute"):
            generate({"nickname": "x"})
