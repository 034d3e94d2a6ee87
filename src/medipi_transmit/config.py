from __future__ import annotations

import os
import string
from pathlib import Path
from typing import Dict, Literal, Mapping, Optional

from pydantic import Field, SecretStr, ValidationError, confloat, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    ContentEncryptionAlgorithm,
    DigestAlgorithm,
    KeyWrapAlgorithm,
    Limits,
    PropertyKey,
    SignatureAlgorithm,
)
from .errors import ConfigError
from .utils import is_truthy_flag

TlsVersionName = Literal["TLSv1.2", "TLSv1.3"]

# Properties-file key -> TransmitterConfig field
PROPERTY_FIELDS: Dict[str, str] = {
    PropertyKey.OUTBOUND_PAYLOAD: "outbound_payload",
    PropertyKey.CLEAR_ALL_AFTER_TRANSMISSION: "clear_all_after_transmission",
    PropertyKey.PATIENT_CERT_ALIAS: "patient_cert_alias",
    PropertyKey.PATIENT_CERT_LOCATION: "patient_cert_location",
    PropertyKey.CONCENTRATOR_URL: "concentrator_url",
    PropertyKey.CONCENTRATOR_CERT_LOCATION: "concentrator_cert_location",
    PropertyKey.DEVICE_CERT_LOCATION: "device_cert_location",
    PropertyKey.DEVICE_KEY_LOCATION: "device_key_location",
    PropertyKey.TRUSTSTORE_LOCATION: "truststore_location",
    PropertyKey.TRANSMIT_TIMEOUT: "transmit_timeout",
    PropertyKey.TLS_MIN_VERSION: "tls_min_version",
    PropertyKey.SUCCESS_MARKER: "success_marker",
    PropertyKey.DIGEST_ALGORITHM: "digest_algorithm",
    PropertyKey.SIGNATURE_ALGORITHM: "signature_algorithm",
    PropertyKey.CONTENT_ENCRYPTION: "content_encryption",
    PropertyKey.KEY_WRAP: "key_wrap",
}
FIELD_PROPERTIES: Dict[str, str] = {v: k for k, v in PROPERTY_FIELDS.items()}


class TransmitterConfig(BaseSettings):
    """Transmitter configuration loaded from the MediPi properties file or MEDIPI_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="MEDIPI_",
        frozen=True,
        extra="ignore",
    )

    # Archival copy of each outbound payload; empty disables it.
    outbound_payload: str = Field(default="")
    clear_all_after_transmission: bool = Field(default=False)

    # Patient signing credential (password comes from the environment indirection)
    patient_cert_alias: str = Field(default="")
    patient_cert_location: str = Field(default="")

    # Concentrator and TLS identity
    concentrator_url: str = Field(default="")
    concentrator_cert_location: str = Field(default="")
    device_cert_location: str = Field(default="")
    device_key_location: str = Field(default="")
    truststore_location: str = Field(default="")
    transmit_timeout: confloat(gt=0) = Field(default=Limits.DEFAULT_TIMEOUT_SECONDS)
    tls_min_version: TlsVersionName = Field(default="TLSv1.2")
    success_marker: str = Field(default="")

    # Envelope algorithms
    digest_algorithm: DigestAlgorithm = Field(default=DigestAlgorithm.SHA256)
    signature_algorithm: SignatureAlgorithm = Field(default=SignatureAlgorithm.RSA_PSS)
    content_encryption: ContentEncryptionAlgorithm = Field(
        default=ContentEncryptionAlgorithm.AES_256_GCM
    )
    key_wrap: KeyWrapAlgorithm = Field(default=KeyWrapAlgorithm.RSA_OAEP)

    @field_validator("clear_all_after_transmission", mode="before")
    @classmethod
    def _parse_medipi_flag(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return is_truthy_flag(value)
        return value

    @field_validator(
        "digest_algorithm",
        "signature_algorithm",
        "content_encryption",
        "key_wrap",
        mode="before",
    )
    @classmethod
    def _normalize_lowercase(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("tls_min_version", mode="before")
    @classmethod
    def _normalize_tls_version(cls, value: object) -> object:
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed.lower().startswith("tlsv"):
                return "TLSv" + trimmed[4:]
            return trimmed
        return value

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "TransmitterConfig":
        """Build a config from MediPi property keys; blank values fall back to defaults."""
        kwargs: Dict[str, object] = {}
        for key, field_name in PROPERTY_FIELDS.items():
            value = properties.get(key)
            if value is None or not value.strip():
                continue
            kwargs[field_name] = value.strip()
        try:
            return cls(**kwargs)
        except ValidationError as exc:
            raise ConfigError(f"Invalid transmitter configuration: {exc}") from exc

    @classmethod
    def from_properties_file(cls, path: Path) -> "TransmitterConfig":
        return cls.from_properties(read_properties(path))

    @property
    def archive_enabled(self) -> bool:
        return bool(self.outbound_payload.strip())

    def require(self, *field_names: str) -> None:
        """Raise ConfigError naming every missing property."""
        missing = [
            FIELD_PROPERTIES.get(name, name)
            for name in field_names
            if not str(getattr(self, name, "") or "").strip()
        ]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


def resolve_system_value(
    key: str, environ: Optional[Mapping[str, str]] = None
) -> Optional[SecretStr]:
    """
    Resolve a value through the environment indirection.

    Tries the exact property key first, then the upper-cased form with dots
    replaced by underscores (medipi.patient.cert.password ->
    MEDIPI_PATIENT_CERT_PASSWORD). Empty values count as absent.
    """
    env = os.environ if environ is None else environ
    for candidate in (key, key.upper().replace(".", "_")):
        value = env.get(candidate)
        if value:
            return SecretStr(value)
    return None


def read_properties(path: Path) -> Dict[str, str]:
    """Read a Java-style .properties file (key=value, key: value, '#'/'!' comments)."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read properties file {path}: {exc}") from exc
    return parse_properties(text)


def parse_properties(text: str) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    pending = ""
    for raw_line in text.splitlines():
        line = raw_line.lstrip() if not pending else raw_line.strip()
        if not pending and (not line or line[0] in "#!"):
            continue
        if _has_continuation(line):
            pending += line[:-1]
            continue
        line = pending + line
        pending = ""
        key, value = _split_property(line)
        if key:
            properties[key] = value
    if pending:
        key, value = _split_property(pending)
        if key:
            properties[key] = value
    return properties


def _has_continuation(line: str) -> bool:
    trailing = len(line) - len(line.rstrip("\\"))
    return trailing % 2 == 1


def _split_property(line: str) -> tuple[str, str]:
    """Split at the first unescaped '=', ':' or whitespace, then unescape both halves."""
    key_end = value_start = len(line)
    index = 0
    while index < len(line):
        char = line[index]
        if char == "\\":
            index += 2
            continue
        if char in "=:":
            key_end, value_start = index, index + 1
            break
        if char.isspace():
            key_end = value_start = index
            while value_start < len(line) and line[value_start].isspace():
                value_start += 1
            if value_start < len(line) and line[value_start] in "=:":
                value_start += 1
            break
        index += 1
    return _unescape(line[:key_end]), _unescape(line[value_start:].lstrip())


_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape(text: str) -> str:
    chars = []
    index = 0
    while index < len(text):
        char = text[index]
        index += 1
        if char != "\\":
            chars.append(char)
            continue
        if index >= len(text):
            break
        char = text[index]
        index += 1
        if char == "u":
            digits = text[index:index + 4]
            if len(digits) != 4 or any(d not in string.hexdigits for d in digits):
                raise ConfigError(f"Malformed \\uxxxx escape in properties: {text!r}")
            chars.append(chr(int(digits, 16)))
            index += 4
            continue
        chars.append(_ESCAPES.get(char, char))
    return "".join(chars)
