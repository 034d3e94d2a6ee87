from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from medipi_transmit.config import TransmitterConfig
from medipi_transmit.errors import CertificateError, ConfigError, CredentialError, KeystoreError
from medipi_transmit.security.credentials import resolve_credentials


def _rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _write_keystore(
    path: Path,
    key,
    cert: x509.Certificate,
    password: str = "patient-pass",
    alias: str = "patient",
    cas=None,
) -> None:
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            name=alias.encode("utf-8"),
            key=key,
            cert=cert,
            cas=cas,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    )


def _write_cert(path: Path, cert: x509.Certificate) -> None:
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def _config(properties: dict, **overrides: str) -> TransmitterConfig:
    merged = dict(properties)
    merged.update(overrides)
    return TransmitterConfig.from_properties(merged)


def test_resolves_complete_bundle(pki, config, environ) -> None:
    with resolve_credentials(config, environ) as bundle:
        assert bundle.patient_signing_cert == pki.patient_cert
        assert bundle.recipient_cert == pki.concentrator_cert
        assert bundle.device_tls_identity.certificate == pki.device_cert
        assert bundle.trust_anchors.certificates == [pki.ca_cert]
        assert bundle.closed is False

    assert bundle.closed is True
    assert bundle.patient_signing_key is None


def test_wrong_password_is_password_error(config) -> None:
    with pytest.raises(KeystoreError) as excinfo:
        resolve_credentials(config, {"MEDIPI_PATIENT_CERT_PASSWORD": "bad-pass-7f3"})

    assert excinfo.value.sub_kind == "password"
    assert isinstance(excinfo.value, CredentialError)
    assert "bad-pass-7f3" not in str(excinfo.value)


def test_missing_password_is_config_error(config) -> None:
    with pytest.raises(ConfigError, match="medipi.patient.cert.password"):
        resolve_credentials(config, {})


def test_missing_location_is_config_error(properties, environ) -> None:
    cfg = _config(properties, **{"medipi.truststore.location": ""})

    with pytest.raises(ConfigError, match="medipi.truststore.location"):
        resolve_credentials(cfg, environ)


def test_unreadable_keystore_is_load_error(properties, environ, tmp_path) -> None:
    cfg = _config(properties, **{"medipi.patient.cert.location": str(tmp_path / "missing.p12")})

    with pytest.raises(KeystoreError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "load"


def test_alias_mismatch_is_load_error(properties, environ) -> None:
    cfg = _config(properties, **{"medipi.patient.cert.alias": "someone-else"})

    with pytest.raises(KeystoreError, match="someone-else"):
        resolve_credentials(cfg, environ)


def test_expired_signing_certificate(pki, properties, environ, tmp_path) -> None:
    key = _rsa_key()
    now = datetime.now(timezone.utc)
    expired = pki.issue(
        "patient-expired",
        key,
        digital_signature=True,
        not_before=now - timedelta(days=30),
        not_after=now - timedelta(days=1),
    )
    _write_keystore(tmp_path / "expired.p12", key, expired)
    cfg = _config(properties, **{"medipi.patient.cert.location": str(tmp_path / "expired.p12")})

    with pytest.raises(CertificateError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "expired"


def test_signing_certificate_needs_digital_signature(pki, properties, environ, tmp_path) -> None:
    key = _rsa_key()
    cert = pki.issue("patient-encrypt-only", key, key_encipherment=True)
    _write_keystore(tmp_path / "bad-usage.p12", key, cert)
    cfg = _config(properties, **{"medipi.patient.cert.location": str(tmp_path / "bad-usage.p12")})

    with pytest.raises(CertificateError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "key_usage"


def test_recipient_certificate_needs_key_encipherment(pki, properties, environ, tmp_path) -> None:
    cert = pki.issue("concentrator-sign-only", _rsa_key(), digital_signature=True)
    _write_cert(tmp_path / "recipient.pem", cert)
    cfg = _config(properties, **{"medipi.concentrator.cert.location": str(tmp_path / "recipient.pem")})

    with pytest.raises(CertificateError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "key_usage"


def test_recipient_must_chain_to_trust_anchor(cert_factory, properties, environ, tmp_path) -> None:
    stranger_key = _rsa_key()
    stranger = cert_factory("rogue-concentrator", stranger_key, key_encipherment=True)
    _write_cert(tmp_path / "rogue.pem", stranger)
    cfg = _config(properties, **{"medipi.concentrator.cert.location": str(tmp_path / "rogue.pem")})

    with pytest.raises(CertificateError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "chain"


def test_device_key_must_match_certificate(properties, environ, tmp_path) -> None:
    (tmp_path / "other-key.pem").write_bytes(
        _rsa_key().private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    cfg = _config(properties, **{"medipi.device.key.location": str(tmp_path / "other-key.pem")})

    with pytest.raises(CertificateError):
        resolve_credentials(cfg, environ)


def test_encrypted_device_key_uses_password_indirection(pki, properties, environ, tmp_path) -> None:
    (tmp_path / "device-key-enc.pem").write_bytes(
        pki.device_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b"device-pass"),
        )
    )
    cfg = _config(properties, **{"medipi.device.key.location": str(tmp_path / "device-key-enc.pem")})

    with pytest.raises(KeystoreError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "password"

    bundle = resolve_credentials(cfg, {**environ, "MEDIPI_DEVICE_CERT_PASSWORD": "device-pass"})
    password = bundle.device_tls_identity.password
    assert bytes(password) == b"device-pass"

    bundle.close()
    assert password == bytearray(len(b"device-pass"))
    assert bundle.device_tls_identity.password is None


def test_signing_certificate_chains_through_keystore_intermediate(
    chained_patient, properties, environ
) -> None:
    cfg = _config(properties, **{"medipi.patient.cert.location": str(chained_patient.keystore)})

    with resolve_credentials(cfg, environ) as bundle:
        assert bundle.patient_signing_cert == chained_patient.patient_cert
        assert bundle.intermediates == [chained_patient.intermediate_cert]


def test_end_entity_certificate_cannot_act_as_issuer(
    pki, cert_factory, properties, environ, tmp_path
) -> None:
    # The device certificate is a leaf; anything it signs must not chain.
    _write_keystore(
        tmp_path / "with-leaf.p12", pki.patient_key, pki.patient_cert, cas=[pki.device_cert]
    )
    forged = cert_factory(
        "concentrator",
        _rsa_key(),
        pki.device_cert.subject,
        pki.device_key,
        key_encipherment=True,
    )
    _write_cert(tmp_path / "forged.pem", forged)
    cfg = _config(
        properties,
        **{
            "medipi.patient.cert.location": str(tmp_path / "with-leaf.p12"),
            "medipi.concentrator.cert.location": str(tmp_path / "forged.pem"),
        },
    )

    with pytest.raises(CertificateError) as excinfo:
        resolve_credentials(cfg, environ)
    assert excinfo.value.sub_kind == "chain"
