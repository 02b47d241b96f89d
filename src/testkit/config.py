"""Pydantic configuration models for testkit.

These models are only used when a server is started, never per request.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_FIRST_PORT = 8000


class ServerConfig(BaseModel):
    """Options for starting a ``TestHttpServer``.

    Attributes:
        host: Address the listening socket binds to
        hostname: Host name advertised in the server's ``url``
        port: Fixed port to listen on; ``None`` picks the next free port
            from the factory's port allocator
        shutdown_timeout: Seconds to wait for open connections on close
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="127.0.0.1", description="Address to bind to")
    hostname: str = Field(default="localhost", description="Advertised host name")
    port: int | None = Field(
        default=None,
        gt=0,
        le=65535,
        description="Fixed port; auto-assigned when omitted",
    )
    shutdown_timeout: float = Field(
        default=1.0,
        gt=0,
        description="Seconds to wait for connections on shutdown",
    )

    @field_validator("host", "hostname")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Reject empty host names."""
        if not v:
            raise ValueError("host name cannot be empty")
        return v


class CertificateConfig(BaseModel):
    """Options for the self-signed certificate of a secure server.

    Attributes:
        common_name: Subject common name
        key_size: RSA key size in bits
        days: Validity period
        alt_names: subjectAltName entries; ``scheme://`` values become URIs,
            addresses become IP entries, everything else a DNS name
    """

    model_config = ConfigDict(frozen=True)

    common_name: str = Field(default="localhost", min_length=1)
    key_size: int = Field(default=2048, ge=2048)
    days: int = Field(default=365, gt=0)
    alt_names: tuple[str, ...] = Field(
        default=("https://localhost", "localhost", "127.0.0.1"),
    )
