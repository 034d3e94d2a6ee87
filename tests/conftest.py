from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from medipi_transmit.config import TransmitterConfig

PATIENT_PASSWORD = "patient-pass"
PATIENT_ALIAS = "patient"


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def issue_certificate(
    common_name: str,
    key,
    issuer_name: Optional[x509.Name] = None,
    issuer_key=None,
    *,
    is_ca: bool = False,
    digital_signature: bool = False,
    key_encipherment: bool = False,
    dns_name: Optional[str] = None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    subject = _name(common_name)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=digital_signature,
                content_commitment=False,
                key_encipherment=key_encipherment,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=is_ca,
                crl_sign=is_ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if dns_name:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False
        )
    return builder.sign(issuer_key or key, hashes.SHA256())


@dataclass
class Pki:
    ca_key: rsa.RSAPrivateKey
    ca_cert: x509.Certificate
    patient_key: rsa.RSAPrivateKey
    patient_cert: x509.Certificate
    concentrator_key: rsa.RSAPrivateKey
    concentrator_cert: x509.Certificate
    device_key: rsa.RSAPrivateKey
    device_cert: x509.Certificate

    def issue(self, common_name: str, key, **kwargs) -> x509.Certificate:
        return issue_certificate(common_name, key, self.ca_cert.subject, self.ca_key, **kwargs)


def new_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pki() -> Pki:
    ca_key = new_rsa_key()
    ca_cert = issue_certificate("MediPi Test CA", ca_key, is_ca=True)
    issuer = ca_cert.subject

    patient_key = new_rsa_key()
    concentrator_key = new_rsa_key()
    device_key = new_rsa_key()
    return Pki(
        ca_key=ca_key,
        ca_cert=ca_cert,
        patient_key=patient_key,
        patient_cert=issue_certificate(
            "patient-0001", patient_key, issuer, ca_key, digital_signature=True
        ),
        concentrator_key=concentrator_key,
        concentrator_cert=issue_certificate(
            "concentrator",
            concentrator_key,
            issuer,
            ca_key,
            key_encipherment=True,
            dns_name="concentrator.test",
        ),
        device_key=device_key,
        device_cert=issue_certificate(
            "device-0001", device_key, issuer, ca_key, digital_signature=True
        ),
    )


def write_pem_cert(path: Path, *certs: x509.Certificate) -> Path:
    path.write_bytes(b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs))
    return path


def write_patient_keystore(
    path: Path,
    key,
    cert: x509.Certificate,
    password: str = PATIENT_PASSWORD,
    alias: str = PATIENT_ALIAS,
    cas: Optional[list] = None,
) -> Path:
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            name=alias.encode("utf-8"),
            key=key,
            cert=cert,
            cas=cas,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    )
    return path


@pytest.fixture
def pki_dir(tmp_path: Path, pki: Pki) -> Path:
    directory = tmp_path / "pki"
    directory.mkdir()
    write_patient_keystore(directory / "patient.p12", pki.patient_key, pki.patient_cert)
    write_pem_cert(directory / "concentrator.pem", pki.concentrator_cert)
    write_pem_cert(directory / "device.pem", pki.device_cert)
    (directory / "device-key.pem").write_bytes(
        pki.device_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    write_pem_cert(directory / "truststore.pem", pki.ca_cert)
    return directory


@pytest.fixture
def properties(pki_dir: Path) -> Dict[str, str]:
    return {
        "medipi.patient.cert.alias": PATIENT_ALIAS,
        "medipi.patient.cert.location": str(pki_dir / "patient.p12"),
        "medipi.concentrator.url": "https://concentrator.test/upload",
        "medipi.concentrator.cert.location": str(pki_dir / "concentrator.pem"),
        "medipi.device.cert.location": str(pki_dir / "device.pem"),
        "medipi.device.key.location": str(pki_dir / "device-key.pem"),
        "medipi.truststore.location": str(pki_dir / "truststore.pem"),
    }


@pytest.fixture
def environ() -> Dict[str, str]:
    return {"MEDIPI_PATIENT_CERT_PASSWORD": PATIENT_PASSWORD}


@pytest.fixture
def config(properties: Dict[str, str]) -> TransmitterConfig:
    return TransmitterConfig.from_properties(properties)


@pytest.fixture
def credentials(config: TransmitterConfig, environ: Dict[str, str]):
    from medipi_transmit.security.credentials import resolve_credentials

    bundle = resolve_credentials(config, environ)
    yield bundle
    bundle.close()


@pytest.fixture
def cert_factory():
    """Issue ad hoc certificates outside the session PKI."""
    return issue_certificate


@dataclass
class ChainedPatient:
    intermediate_cert: x509.Certificate
    patient_key: rsa.RSAPrivateKey
    patient_cert: x509.Certificate
    keystore: Path


@pytest.fixture
def chained_patient(tmp_path: Path, pki: Pki) -> ChainedPatient:
    """Patient keystore whose certificate is issued by an intermediate CA carried in the keystore."""
    intermediate_key = new_rsa_key()
    intermediate_cert = pki.issue("MediPi Patient CA", intermediate_key, is_ca=True)
    patient_key = new_rsa_key()
    patient_cert = issue_certificate(
        "patient-0002",
        patient_key,
        intermediate_cert.subject,
        intermediate_key,
        digital_signature=True,
    )
    keystore = write_patient_keystore(
        tmp_path / "patient-chained.p12", patient_key, patient_cert, cas=[intermediate_cert]
    )
    return ChainedPatient(intermediate_cert, patient_key, patient_cert, keystore)
