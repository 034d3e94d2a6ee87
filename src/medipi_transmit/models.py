from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    ContentEncryptionAlgorithm,
    DigestAlgorithm,
    FailureKind,
    KeyWrapAlgorithm,
    OutcomeStatus,
    SignatureAlgorithm,
)
from .errors import AssemblyError, SerializationError
from .utils import as_utc, canonical_json_bytes, utc_now

PAYLOAD_SCHEMA_VERSION = "1.0"
ENVELOPE_SCHEMA_VERSION = "1.0"
DEVICES_PAYLOAD_CONTENT_TYPE = "application/vnd.medipi.devices-payload+json"


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class DeviceData(BaseModel):
    """Reading produced by one device; opaque to the pipeline."""

    model_config = ConfigDict(frozen=True)

    device_token: str = Field(min_length=1)
    device_type: Optional[str] = None
    profile_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)


class DevicesPayload(BaseModel):
    """One submission's bundle of device data."""

    model_config = ConfigDict(frozen=True)

    schema_version: Literal["1.0"] = PAYLOAD_SCHEMA_VERSION
    upload_id: str = Field(min_length=1)
    uploaded_at: datetime
    items: List[DeviceData] = Field(min_length=1)

    @field_validator("uploaded_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def new(cls, items: List[DeviceData], uploaded_at: Optional[datetime] = None) -> "DevicesPayload":
        """Mint a bundle with a fresh UUIDv4 upload id."""
        try:
            return cls(
                upload_id=str(uuid.uuid4()),
                uploaded_at=uploaded_at or utc_now(),
                items=list(items),
            )
        except ValidationError as exc:
            raise AssemblyError(f"Invalid devices payload: {exc}") from exc

    def device_tokens(self) -> List[str]:
        return [item.device_token for item in self.items]

    def to_canonical_bytes(self) -> bytes:
        """Versioned, deterministic encoding shared by the envelope and the archive."""
        try:
            return canonical_json_bytes(self.model_dump(mode="json"))
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Cannot serialize devices payload: {exc}") from exc

    @classmethod
    def from_canonical_bytes(cls, data: bytes) -> "DevicesPayload":
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise SerializationError(f"Cannot parse devices payload: {exc}") from exc


class AlgorithmIdentifiers(BaseModel):
    model_config = ConfigDict(frozen=True)

    digest: DigestAlgorithm = DigestAlgorithm.SHA256
    signature: SignatureAlgorithm = SignatureAlgorithm.RSA_PSS
    content_encryption: ContentEncryptionAlgorithm = ContentEncryptionAlgorithm.AES_256_GCM
    key_wrap: KeyWrapAlgorithm = KeyWrapAlgorithm.RSA_OAEP


class RecipientIdentifier(BaseModel):
    """Issuer and serial number of the recipient certificate."""

    model_config = ConfigDict(frozen=True)

    issuer: str
    serial_number: str


class SignedAttributes(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_type: str = DEVICES_PAYLOAD_CONTENT_TYPE
    message_digest: str
    signing_certificate_digest: str
    signing_time: datetime
    upload_id: str

    @field_validator("signing_time")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SignedContent(BaseModel):
    """Signed layer carried inside the envelope ciphertext."""

    model_config = ConfigDict(frozen=True)

    schema_version: Literal["1.0"] = ENVELOPE_SCHEMA_VERSION
    digest_algorithm: DigestAlgorithm
    signature_algorithm: SignatureAlgorithm
    signed_attributes: SignedAttributes
    signature: str
    signer_certificate: str
    intermediate_certificates: List[str] = Field(default_factory=list)
    content: str

    @property
    def content_bytes(self) -> bytes:
        return b64decode(self.content)

    @property
    def signature_bytes(self) -> bytes:
        return b64decode(self.signature)

    @property
    def signer_certificate_der(self) -> bytes:
        return b64decode(self.signer_certificate)

    @property
    def intermediate_certificates_der(self) -> List[bytes]:
        return [b64decode(value) for value in self.intermediate_certificates]


class Envelope(BaseModel):
    """Encrypted-and-signed upload as sent to the concentrator."""

    model_config = ConfigDict(frozen=True)

    schema_version: Literal["1.0"] = ENVELOPE_SCHEMA_VERSION
    envelope_type: Literal["EncryptedAndSignedUpload"] = "EncryptedAndSignedUpload"
    upload_id: str
    algorithms: AlgorithmIdentifiers
    recipient: RecipientIdentifier
    wrapped_content_key: str
    nonce: str
    ciphertext: str

    def associated_data(self) -> bytes:
        return envelope_associated_data(self.upload_id, self.algorithms, self.recipient)


def envelope_associated_data(
    upload_id: str, algorithms: AlgorithmIdentifiers, recipient: RecipientIdentifier
) -> bytes:
    """Envelope header fields bound into the AEAD tag."""
    return canonical_json_bytes(
        {
            "schema_version": ENVELOPE_SCHEMA_VERSION,
            "upload_id": upload_id,
            "algorithms": algorithms.model_dump(mode="json"),
            "recipient": recipient.model_dump(mode="json"),
        }
    )


@dataclass(frozen=True)
class ScheduleEntry:
    label: str
    instant: datetime
    device_tokens: List[str]


@dataclass(frozen=True)
class SubmissionOutcome:
    """Result of one submission attempt."""

    status: OutcomeStatus
    response_text: str = ""
    kind: Optional[FailureKind] = None
    cause: Optional[BaseException] = None
    upload_id: Optional[str] = None
    included_tokens: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @classmethod
    def success(cls, response_text: str, upload_id: str, included_tokens: List[str]) -> "SubmissionOutcome":
        return cls(
            status=OutcomeStatus.SUCCEEDED,
            response_text=response_text,
            upload_id=upload_id,
            included_tokens=list(included_tokens),
        )

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        response_text: str = "",
        cause: Optional[BaseException] = None,
        upload_id: Optional[str] = None,
    ) -> "SubmissionOutcome":
        return cls(
            status=OutcomeStatus.FAILED,
            response_text=response_text,
            kind=kind,
            cause=cause,
            upload_id=upload_id,
        )

    @classmethod
    def nothing_to_send(cls) -> "SubmissionOutcome":
        return cls(status=OutcomeStatus.NOTHING_TO_SEND, kind=FailureKind.NOTHING_TO_SEND)
