"""
X.509 helpers for signer comparison.

Everything outside this module compares certificates by SHA-256 fingerprint,
so verification logic can be exercised without parsing real certificates.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import hashlib

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import Encoding

from errors import ProfileSigningError


@dataclass(frozen=True)
class SigningCertificate:
    fingerprint: str
    subject: str = ""
    not_after: Optional[datetime] = None
    der: bytes = b""

    def matches(self, fingerprint: str) -> bool:
        return self.fingerprint == normalize_fingerprint(fingerprint)


def normalize_fingerprint(value: str) -> str:
    return value.replace(":", "").strip().lower()


def fingerprint_der(der: bytes) -> str:
    return hashlib.sha256(der).hexdigest()


def _load_certificate(data: bytes) -> x509.Certificate:
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def signing_certificate_from_bytes(data: bytes) -> SigningCertificate:
    try:
        cert = _load_certificate(data)
    except ValueError as e:
        raise ProfileSigningError("load_signing_certificate", f"invalid certificate: {e}") from e

    der = cert.public_bytes(Encoding.DER)
    return SigningCertificate(
        fingerprint=fingerprint_der(der),
        subject=cert.subject.rfc4514_string(),
        not_after=cert.not_valid_after_utc,
        der=der,
    )


def load_signing_certificate(path: str) -> SigningCertificate:
    """Read a PEM or DER certificate from disk."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ProfileSigningError("load_signing_certificate", f"cannot read {path}: {e}") from e
    return signing_certificate_from_bytes(data)


def load_certificate_object(cert: SigningCertificate) -> x509.Certificate:
    return x509.load_der_x509_certificate(cert.der)


def load_signing_key(path: str, password: Optional[str] = None):
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ProfileSigningError("load_signing_key", f"cannot read {path}: {e}") from e

    try:
        return serialization.load_pem_private_key(
            data, password=password.encode() if password else None
        )
    except (ValueError, TypeError) as e:
        raise ProfileSigningError("load_signing_key", f"invalid private key: {e}") from e
