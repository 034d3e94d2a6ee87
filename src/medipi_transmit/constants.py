from __future__ import annotations

from enum import Enum


INTERACTION = "urn:nhs-itk:interaction:MediPi"
TRANSMITTED_LABEL = "TRANSMITTED"

# Status bar labels: idle, transmitting, completed.
TRANSMIT_LABEL_STATUS = (
    "Select data to transmit and press Transmit",
    "Transmitting data...",
    "Completed",
)
FAILED_LABEL = "Transmission failed"


class PropertyKey:
    """Configuration keys as they appear in the MediPi properties file."""

    OUTBOUND_PAYLOAD = "medipi.outboundpayload"
    CLEAR_ALL_AFTER_TRANSMISSION = "medipi.element.Transmitter.clearallaftertransmission"
    PATIENT_CERT_PASSWORD = "medipi.patient.cert.password"
    PATIENT_CERT_ALIAS = "medipi.patient.cert.alias"
    PATIENT_CERT_LOCATION = "medipi.patient.cert.location"
    CONCENTRATOR_URL = "medipi.concentrator.url"
    CONCENTRATOR_CERT_LOCATION = "medipi.concentrator.cert.location"
    DEVICE_CERT_LOCATION = "medipi.device.cert.location"
    DEVICE_KEY_LOCATION = "medipi.device.key.location"
    DEVICE_CERT_PASSWORD = "medipi.device.cert.password"
    TRUSTSTORE_LOCATION = "medipi.truststore.location"
    TRANSMIT_TIMEOUT = "medipi.transmit.timeout"
    TLS_MIN_VERSION = "medipi.transmit.tls.minversion"
    SUCCESS_MARKER = "medipi.transmit.successmarker"
    DIGEST_ALGORITHM = "medipi.upload.digest"
    SIGNATURE_ALGORITHM = "medipi.upload.signature"
    CONTENT_ENCRYPTION = "medipi.upload.encryption"
    KEY_WRAP = "medipi.upload.keywrap"


class SubmissionState(str, Enum):
    """Orchestrator state machine."""

    IDLE = "idle"
    PREPARING = "preparing"
    SENDING = "sending"
    REPORTING = "reporting"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOTHING_TO_SEND = "nothing_to_send"


class FailureKind(str, Enum):
    """Error kinds surfaced on a failed submission."""

    CONFIG = "config"
    CREDENTIAL = "credential"
    ASSEMBLY = "assembly"
    NOTHING_TO_SEND = "nothing_to_send"
    SERIALIZATION = "serialization"
    SIGN = "sign"
    ENCRYPT = "encrypt"
    VERIFY = "verify"
    ARCHIVE_IO = "archive_io"
    TRANSPORT = "transport"
    SERVER_REJECTED = "server_rejected"
    BUSY = "busy"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class DigestAlgorithm(str, Enum):
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"


class SignatureAlgorithm(str, Enum):
    RSA_PKCS1V15 = "rsassa-pkcs1-v1_5"
    RSA_PSS = "rsassa-pss"
    ECDSA = "ecdsa"


class ContentEncryptionAlgorithm(str, Enum):
    AES_128_GCM = "aes-128-gcm"
    AES_256_GCM = "aes-256-gcm"


class KeyWrapAlgorithm(str, Enum):
    RSA_OAEP = "rsaes-oaep"


class ExitCode(int, Enum):
    """Process exit codes."""

    SUCCESS = 0
    FAILED = 1
    ERROR = 2
    NOTHING_SENT = 10


class Limits:
    """Shared hard limits."""

    MAX_RESPONSE_LENGTH = 500
    DEFAULT_TIMEOUT_SECONDS = 30.0
    MAX_CHAIN_DEPTH = 5
