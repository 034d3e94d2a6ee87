from __future__ import annotations

from typing import Optional

from .constants import FailureKind


class MediPiError(Exception):
    """Base exception for all transmitter errors."""

    kind: FailureKind = FailureKind.UNEXPECTED


class ConfigError(MediPiError):
    """Missing or invalid configuration."""

    kind = FailureKind.CONFIG


class CredentialError(MediPiError):
    """Keystore or certificate failure."""

    kind = FailureKind.CREDENTIAL

    def __init__(self, message: str, sub_kind: str = "load") -> None:
        super().__init__(message)
        self.sub_kind = sub_kind


class KeystoreError(CredentialError):
    """Keystore unreadable, wrong password or missing entry."""


class CertificateError(CredentialError):
    """Certificate expired, chain invalid or key usage mismatch."""


class AssemblyError(MediPiError):
    """Internal invariant violated while assembling the payload."""

    kind = FailureKind.ASSEMBLY


class NothingToSend(MediPiError):
    """No selected device holds data (benign, not surfaced as an error)."""

    kind = FailureKind.NOTHING_TO_SEND


class SerializationError(MediPiError):
    kind = FailureKind.SERIALIZATION


class SignError(MediPiError):
    kind = FailureKind.SIGN


class EncryptError(MediPiError):
    kind = FailureKind.ENCRYPT


class EnvelopeVerificationError(MediPiError):
    """Envelope could not be decrypted or its signature does not verify."""

    kind = FailureKind.VERIFY


class ArchiveIOError(MediPiError):
    """Archive copy could not be written (non-fatal to transmission)."""

    kind = FailureKind.ARCHIVE_IO


class TransportError(MediPiError):
    """Delivery attempt failed below the application layer."""

    kind = FailureKind.TRANSPORT

    HANDSHAKE = "handshake"
    IO = "io"
    TIMEOUT = "timeout"

    def __init__(self, message: str, reason: str = IO) -> None:
        super().__init__(message)
        self.reason = reason


class ServerRejected(MediPiError):
    """Concentrator received the upload and declined it."""

    kind = FailureKind.SERVER_REJECTED

    def __init__(self, response_text: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"Server rejected upload: {response_text}")
        self.response_text = response_text
        self.status_code = status_code


class Busy(MediPiError):
    """A submission is already in flight."""

    kind = FailureKind.BUSY


class Cancelled(MediPiError):
    """Cancellation observed at a checkpoint."""

    kind = FailureKind.CANCELLED
