# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Delegation Records

Typed records for pending proxy requests and issued proxy credentials.
Both are keyed by the delegation id that correlates a request with the
credential eventually issued for it.
"""

from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def openssl_dn(name: x509.Name) -> str:
    """Render ``name`` in the OpenSSL one-line form, e.g. ``/DC=org/DC=example/CN=alice``.

    RDNs keep certificate order; multi-valued RDNs are joined with ``+``.
    """
    return "".join(
        "/" + "+".join(f"{attr.rfc4514_attribute_name}={attr.value}" for attr in rdn)
        for rdn in name.rdns
    )


def _check_delegation_id(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("delegation_id must not be empty")
    return v


class ProxyRequest(BaseModel):
    """A pending request for a delegated credential.

    Attributes:
        delegation_id: Delegation session the request belongs to.
        request: PEM encoded certificate signing request.
        private_key: PEM encoded key matching the request, if kept server side.
    """

    delegation_id: str = Field(..., description="Delegation session identifier")
    request: str = Field(..., description="PEM certificate signing request")
    private_key: Optional[str] = Field(default=None, description="PEM private key")

    @field_validator("delegation_id")
    @classmethod
    def validate_delegation_id(cls, v: str) -> str:
        return _check_delegation_id(v)


class ProxyCredential(BaseModel):
    """An issued, time-bounded proxy credential.

    Attributes:
        delegation_id: Delegation session the credential was issued for.
        not_after: End of the validity window (aware UTC).
        pem: PEM encoded certificate chain.
        user_dn: Subject DN of the proxy in OpenSSL slash form, when known.
    """

    delegation_id: str = Field(..., description="Delegation session identifier")
    not_after: datetime = Field(..., description="End of validity")
    pem: str = Field(..., description="PEM certificate chain")
    user_dn: Optional[str] = Field(default=None, description="Subject DN")

    @field_validator("delegation_id")
    @classmethod
    def validate_delegation_id(cls, v: str) -> str:
        return _check_delegation_id(v)

    @field_validator("not_after")
    @classmethod
    def validate_not_after(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def from_pem(cls, delegation_id: str, pem: str) -> "ProxyCredential":
        """Build a credential from a PEM chain, reading the leaf certificate.

        The first certificate in ``pem`` supplies ``not_after`` and
        ``user_dn``. The chain itself is stored untouched.

        Raises:
            ValueError: If ``pem`` holds no parseable certificate.
        """
        cert = x509.load_pem_x509_certificate(pem.encode())
        return cls(
            delegation_id=delegation_id,
            not_after=cert.not_valid_after_utc,
            pem=pem,
            user_dn=openssl_dn(cert.subject),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the validity window has closed at ``now``."""
        now = as_utc(now) if now is not None else utcnow()
        return now >= self.not_after
