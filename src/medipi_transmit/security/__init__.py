"""Credential resolution and the encrypted-and-signed upload envelope."""

from .credentials import CredentialBundle, TlsIdentity, TrustAnchors, resolve_credentials
from .envelope import (
    EnvelopeBuilder,
    decrypt_envelope,
    open_envelope,
    verify_signed_content,
)

__all__ = [
    "CredentialBundle",
    "TlsIdentity",
    "TrustAnchors",
    "resolve_credentials",
    "EnvelopeBuilder",
    "decrypt_envelope",
    "open_envelope",
    "verify_signed_content",
]
