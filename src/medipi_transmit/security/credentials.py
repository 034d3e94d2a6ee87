from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ..config import TransmitterConfig, resolve_system_value
from ..constants import Limits, PropertyKey
from ..errors import CertificateError, ConfigError, KeystoreError
from ..utils import as_utc, utc_now, zeroize

REQUIRED_FIELDS = (
    "patient_cert_alias",
    "patient_cert_location",
    "concentrator_cert_location",
    "device_cert_location",
    "device_key_location",
    "truststore_location",
)


@dataclass
class TlsIdentity:
    """Mutual-TLS client identity, kept as file paths for ssl.SSLContext."""

    cert_path: Path
    key_path: Path
    certificate: x509.Certificate
    password: Optional[bytearray] = None

    def close(self) -> None:
        zeroize(self.password)
        self.password = None


@dataclass
class TrustAnchors:
    certificates: List[x509.Certificate]
    bundle_path: Path


@dataclass
class CredentialBundle:
    """Key material for one submission attempt. Call close() (or use `with`) when done."""

    patient_signing_key: Any
    patient_signing_cert: x509.Certificate
    recipient_cert: x509.Certificate
    device_tls_identity: TlsIdentity
    trust_anchors: TrustAnchors
    intermediates: List[x509.Certificate] = field(default_factory=list)
    closed: bool = False

    def close(self) -> None:
        self.device_tls_identity.close()
        self.patient_signing_key = None
        self.closed = True

    def __enter__(self) -> "CredentialBundle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def resolve_credentials(
    config: TransmitterConfig,
    environ: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> CredentialBundle:
    """
    Materialize signing key, recipient certificate, TLS identity and trust store.

    Raises ConfigError for missing settings, KeystoreError when key material
    cannot be opened, CertificateError when a certificate is out of date, does
    not chain to a trust anchor, or lacks the key usage its role needs.
    """
    config.require(*REQUIRED_FIELDS)
    password = resolve_system_value(PropertyKey.PATIENT_CERT_PASSWORD, environ)
    if password is None:
        raise ConfigError(
            f"Missing required configuration: {PropertyKey.PATIENT_CERT_PASSWORD}"
        )
    instant = as_utc(now or utc_now())

    anchors = _load_trust_anchors(Path(config.truststore_location))

    signing_key, signing_cert, intermediates = _load_patient_keystore(
        Path(config.patient_cert_location),
        config.patient_cert_alias,
        password.get_secret_value().encode("utf-8"),
    )
    _check_validity(signing_cert, "patient signing", instant)
    _check_key_usage(signing_cert, "digital_signature", "patient signing")
    verify_chain(signing_cert, anchors, intermediates, "patient signing", instant)

    recipient_cert = _load_certificate(Path(config.concentrator_cert_location), "concentrator")
    _check_validity(recipient_cert, "concentrator", instant)
    _check_key_usage(recipient_cert, "key_encipherment", "concentrator")
    verify_chain(recipient_cert, anchors, intermediates, "concentrator", instant)

    device_password = resolve_system_value(PropertyKey.DEVICE_CERT_PASSWORD, environ)
    identity = _load_tls_identity(
        Path(config.device_cert_location),
        Path(config.device_key_location),
        bytearray(device_password.get_secret_value(), "utf-8") if device_password else None,
    )
    _check_validity(identity.certificate, "device TLS", instant)
    verify_chain(identity.certificate, anchors, intermediates, "device TLS", instant)

    return CredentialBundle(
        patient_signing_key=signing_key,
        patient_signing_cert=signing_cert,
        recipient_cert=recipient_cert,
        device_tls_identity=identity,
        trust_anchors=TrustAnchors(
            certificates=anchors, bundle_path=Path(config.truststore_location)
        ),
        intermediates=intermediates,
    )


def _read_bytes(path: Path, role: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise KeystoreError(f"Cannot read {role} file {path}: {exc.strerror or exc}", "load") from exc


def _load_patient_keystore(path: Path, alias: str, password: bytes):
    data = _read_bytes(path, "patient keystore")
    try:
        keystore = pkcs12.load_pkcs12(data, password)
    except ValueError as exc:
        raise KeystoreError(
            "Cannot open patient keystore: wrong password or corrupt keystore", "password"
        ) from exc

    if keystore.key is None or keystore.cert is None:
        raise KeystoreError("Patient keystore holds no private key entry", "load")
    friendly_name = keystore.cert.friendly_name
    if friendly_name is not None and friendly_name.decode("utf-8", "replace") != alias:
        raise KeystoreError(f"Alias '{alias}' not found in patient keystore", "load")

    certificate = keystore.cert.certificate
    if not _same_public_key(keystore.key.public_key(), certificate):
        raise CertificateError("Patient signing key does not match its certificate", "key_usage")
    intermediates = [entry.certificate for entry in keystore.additional_certs]
    return keystore.key, certificate, intermediates


def _load_certificate(path: Path, role: str) -> x509.Certificate:
    data = _read_bytes(path, f"{role} certificate")
    try:
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise CertificateError(f"Cannot parse {role} certificate: {exc}", "load") from exc


def _load_trust_anchors(path: Path) -> List[x509.Certificate]:
    data = _read_bytes(path, "trust store")
    try:
        anchors = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise CertificateError(f"Cannot parse trust store {path}: {exc}", "load") from exc
    if not anchors:
        raise CertificateError(f"Trust store {path} holds no certificates", "chain")
    return anchors


def _load_tls_identity(
    cert_path: Path, key_path: Path, password: Optional[bytearray]
) -> TlsIdentity:
    cert_data = _read_bytes(cert_path, "device certificate")
    try:
        chain = x509.load_pem_x509_certificates(cert_data)
    except ValueError as exc:
        raise CertificateError(f"Cannot parse device certificate: {exc}", "load") from exc

    key_data = _read_bytes(key_path, "device key")
    try:
        key = serialization.load_pem_private_key(
            key_data, password=bytes(password) if password else None
        )
    except TypeError as exc:
        zeroize(password)
        raise KeystoreError(
            f"Device key password missing or not required: set {PropertyKey.DEVICE_CERT_PASSWORD}",
            "password",
        ) from exc
    except ValueError as exc:
        zeroize(password)
        raise KeystoreError("Cannot open device key: wrong password or corrupt key", "password") from exc

    certificate = chain[0]
    if not _same_public_key(key.public_key(), certificate):
        zeroize(password)
        raise CertificateError("Device TLS key does not match its certificate", "key_usage")
    return TlsIdentity(cert_path=cert_path, key_path=key_path, certificate=certificate, password=password)


def _same_public_key(public_key: Any, certificate: x509.Certificate) -> bool:
    der = serialization.Encoding.DER
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    return public_key.public_bytes(der, spki) == certificate.public_key().public_bytes(der, spki)


def _check_validity(certificate: x509.Certificate, role: str, instant: datetime) -> None:
    if instant < certificate.not_valid_before_utc:
        raise CertificateError(f"The {role} certificate is not yet valid", "expired")
    if instant > certificate.not_valid_after_utc:
        raise CertificateError(f"The {role} certificate has expired", "expired")


def _check_key_usage(certificate: x509.Certificate, usage: str, role: str) -> None:
    # No KeyUsage extension means the key is unrestricted.
    try:
        key_usage = certificate.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return
    if not getattr(key_usage, usage):
        raise CertificateError(
            f"The {role} certificate key usage does not permit {usage.replace('_', ' ')}",
            "key_usage",
        )


def _may_issue(certificate: x509.Certificate) -> bool:
    """True for CA certificates whose key may sign other certificates."""
    try:
        constraints = certificate.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    if not constraints.ca:
        return False
    try:
        key_usage = certificate.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return True
    return key_usage.key_cert_sign


def issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    if certificate.issuer != issuer.subject or not _may_issue(issuer):
        return False
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def verify_chain(
    certificate: x509.Certificate,
    anchors: Sequence[x509.Certificate],
    intermediates: Sequence[x509.Certificate],
    role: str,
    instant: datetime,
) -> None:
    current = certificate
    for _ in range(Limits.MAX_CHAIN_DEPTH):
        if current in anchors:
            return
        if any(issued_by(current, anchor) for anchor in anchors):
            return
        parent = next((c for c in intermediates if issued_by(current, c)), None)
        if parent is None:
            break
        _check_validity(parent, f"{role} issuing", instant)
        current = parent
    raise CertificateError(f"The {role} certificate does not chain to a trust anchor", "chain")
