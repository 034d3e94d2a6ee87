from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from ..config import TransmitterConfig
from ..constants import (
    ContentEncryptionAlgorithm,
    DigestAlgorithm,
    KeyWrapAlgorithm,
    SignatureAlgorithm,
)
from ..errors import (
    CertificateError,
    ConfigError,
    EncryptError,
    EnvelopeVerificationError,
    SignError,
)
from ..logging import MediPiLogger
from ..models import (
    AlgorithmIdentifiers,
    DevicesPayload,
    Envelope,
    RecipientIdentifier,
    SignedAttributes,
    SignedContent,
    b64decode,
    b64encode,
    envelope_associated_data,
)
from ..utils import canonical_json_bytes, utc_now, zeroize
from .credentials import CredentialBundle, verify_chain

NONCE_BYTES = 12

_DIGESTS: Dict[DigestAlgorithm, type] = {
    DigestAlgorithm.SHA256: hashes.SHA256,
    DigestAlgorithm.SHA384: hashes.SHA384,
    DigestAlgorithm.SHA512: hashes.SHA512,
}

_CEK_BYTES: Dict[ContentEncryptionAlgorithm, int] = {
    ContentEncryptionAlgorithm.AES_128_GCM: 16,
    ContentEncryptionAlgorithm.AES_256_GCM: 32,
}


def _digest(algorithm: DigestAlgorithm, data: bytes) -> bytes:
    h = hashes.Hash(_DIGESTS[algorithm]())
    h.update(data)
    return h.finalize()


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _sign(key: Any, algorithm: SignatureAlgorithm, digest: DigestAlgorithm, data: bytes) -> bytes:
    hash_alg = _DIGESTS[digest]()
    if algorithm == SignatureAlgorithm.ECDSA:
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise SignError("ecdsa signatures need an EC signing key")
        return key.sign(data, ec.ECDSA(hash_alg))
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SignError(f"{algorithm.value} signatures need an RSA signing key")
    if algorithm == SignatureAlgorithm.RSA_PSS:
        pad = padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=padding.PSS.DIGEST_LENGTH)
    else:
        pad = padding.PKCS1v15()
    return key.sign(data, pad, hash_alg)


def _verify(
    public_key: Any,
    algorithm: SignatureAlgorithm,
    digest: DigestAlgorithm,
    signature: bytes,
    data: bytes,
) -> None:
    hash_alg = _DIGESTS[digest]()
    if algorithm == SignatureAlgorithm.ECDSA:
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise EnvelopeVerificationError("Signer certificate does not hold an EC key")
        public_key.verify(signature, data, ec.ECDSA(hash_alg))
        return
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise EnvelopeVerificationError("Signer certificate does not hold an RSA key")
    if algorithm == SignatureAlgorithm.RSA_PSS:
        pad = padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=padding.PSS.DIGEST_LENGTH)
    else:
        pad = padding.PKCS1v15()
    public_key.verify(signature, data, pad, hash_alg)


def recipient_identifier(certificate: x509.Certificate) -> RecipientIdentifier:
    return RecipientIdentifier(
        issuer=certificate.issuer.rfc4514_string(),
        serial_number=format(certificate.serial_number, "x"),
    )


class EnvelopeBuilder:
    """
    Sign-then-encrypt builder for device uploads.

    The canonical payload bytes are digested into signed attributes that are
    signed with the patient key. The resulting signed layer is encrypted with a
    fresh AES-GCM content key, which is wrapped to the concentrator certificate
    with RSA-OAEP. Nothing partial is returned: any failure raises.
    """

    def __init__(
        self,
        algorithms: Optional[AlgorithmIdentifiers] = None,
        logger: Optional[MediPiLogger] = None,
    ):
        self.algorithms = algorithms or AlgorithmIdentifiers()
        self.logger = logger

    @classmethod
    def from_config(
        cls, config: TransmitterConfig, logger: Optional[MediPiLogger] = None
    ) -> "EnvelopeBuilder":
        try:
            algorithms = AlgorithmIdentifiers(
                digest=config.digest_algorithm,
                signature=config.signature_algorithm,
                content_encryption=config.content_encryption,
                key_wrap=config.key_wrap,
            )
        except ValidationError as exc:
            raise ConfigError(f"Unsupported envelope algorithm: {exc}") from exc
        return cls(algorithms, logger=logger)

    def build(
        self,
        payload: DevicesPayload,
        credentials: CredentialBundle,
        signing_time: Optional[datetime] = None,
    ) -> Envelope:
        content = payload.to_canonical_bytes()
        signed_blob = self._sign(payload.upload_id, content, credentials, signing_time)
        envelope = self._encrypt(payload.upload_id, signed_blob, credentials.recipient_cert)
        if self.logger:
            self.logger.info(
                "Envelope built",
                items=len(payload.items),
                content_bytes=len(content),
                ciphertext_bytes=len(envelope.ciphertext),
                algorithms=self.algorithms.model_dump(mode="json"),
            )
        return envelope

    def _sign(
        self,
        upload_id: str,
        content: bytes,
        credentials: CredentialBundle,
        signing_time: Optional[datetime],
    ) -> bytes:
        if credentials.closed or credentials.patient_signing_key is None:
            raise SignError("Patient signing key is no longer available")
        digest = self.algorithms.digest
        signer_der = credentials.patient_signing_cert.public_bytes(serialization.Encoding.DER)
        attributes = SignedAttributes(
            message_digest=b64encode(_digest(digest, content)),
            signing_certificate_digest=b64encode(_digest(digest, signer_der)),
            signing_time=signing_time or utc_now(),
            upload_id=upload_id,
        )
        try:
            signature = _sign(
                credentials.patient_signing_key,
                self.algorithms.signature,
                digest,
                canonical_json_bytes(attributes.model_dump(mode="json")),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SignError(f"Cannot sign devices payload: {exc}") from exc

        signed = SignedContent(
            digest_algorithm=digest,
            signature_algorithm=self.algorithms.signature,
            signed_attributes=attributes,
            signature=b64encode(signature),
            signer_certificate=b64encode(signer_der),
            intermediate_certificates=[
                b64encode(cert.public_bytes(serialization.Encoding.DER))
                for cert in credentials.intermediates
            ],
            content=b64encode(content),
        )
        return canonical_json_bytes(signed.model_dump(mode="json"))

    def _encrypt(
        self, upload_id: str, signed_blob: bytes, recipient_cert: x509.Certificate
    ) -> Envelope:
        if self.algorithms.key_wrap != KeyWrapAlgorithm.RSA_OAEP:
            raise EncryptError(f"Unsupported key wrap: {self.algorithms.key_wrap}")
        recipient_key = recipient_cert.public_key()
        if not isinstance(recipient_key, rsa.RSAPublicKey):
            raise EncryptError("rsaes-oaep key wrap needs an RSA concentrator certificate")

        recipient = recipient_identifier(recipient_cert)
        content_key = bytearray(os.urandom(_CEK_BYTES[self.algorithms.content_encryption]))
        try:
            nonce = os.urandom(NONCE_BYTES)
            aad = envelope_associated_data(upload_id, self.algorithms, recipient)
            ciphertext = AESGCM(bytes(content_key)).encrypt(nonce, signed_blob, aad)
            wrapped = recipient_key.encrypt(bytes(content_key), _oaep())
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise EncryptError(f"Cannot encrypt devices payload: {exc}") from exc
        finally:
            zeroize(content_key)

        return Envelope(
            upload_id=upload_id,
            algorithms=self.algorithms,
            recipient=recipient,
            wrapped_content_key=b64encode(wrapped),
            nonce=b64encode(nonce),
            ciphertext=b64encode(ciphertext),
        )


def decrypt_envelope(envelope: Envelope, recipient_key: Any) -> SignedContent:
    """Unwrap the content key and decrypt the signed layer (concentrator side)."""
    if not isinstance(recipient_key, rsa.RSAPrivateKey):
        raise EnvelopeVerificationError("Envelope recipient key must be an RSA private key")
    content_key: Optional[bytearray] = None
    try:
        content_key = bytearray(recipient_key.decrypt(b64decode(envelope.wrapped_content_key), _oaep()))
        plaintext = AESGCM(bytes(content_key)).decrypt(
            b64decode(envelope.nonce),
            b64decode(envelope.ciphertext),
            envelope.associated_data(),
        )
    except (ValueError, InvalidTag) as exc:
        raise EnvelopeVerificationError("Cannot decrypt envelope") from exc
    finally:
        zeroize(content_key)

    try:
        signed = SignedContent.model_validate_json(plaintext)
    except ValidationError as exc:
        raise EnvelopeVerificationError(f"Malformed signed content: {exc}") from exc
    if signed.signed_attributes.upload_id != envelope.upload_id:
        raise EnvelopeVerificationError("Signed upload id does not match the envelope header")
    return signed


def verify_signed_content(
    signed: SignedContent,
    trust_anchors: Optional[Sequence[x509.Certificate]] = None,
) -> bytes:
    """Check digests, signature and, given anchors, the signer chain; returns the payload bytes."""
    try:
        signer_der = signed.signer_certificate_der
        content = signed.content_bytes
        signature = signed.signature_bytes
        certificate = x509.load_der_x509_certificate(signer_der)
        intermediates = [
            x509.load_der_x509_certificate(der) for der in signed.intermediate_certificates_der
        ]
    except ValueError as exc:
        raise EnvelopeVerificationError(f"Malformed signed content: {exc}") from exc

    attributes = signed.signed_attributes
    digest = signed.digest_algorithm
    if b64encode(_digest(digest, signer_der)) != attributes.signing_certificate_digest:
        raise EnvelopeVerificationError("Signer certificate does not match signed attributes")
    if b64encode(_digest(digest, content)) != attributes.message_digest:
        raise EnvelopeVerificationError("Content digest does not match signed attributes")

    try:
        _verify(
            certificate.public_key(),
            signed.signature_algorithm,
            digest,
            signature,
            canonical_json_bytes(attributes.model_dump(mode="json")),
        )
    except InvalidSignature as exc:
        raise EnvelopeVerificationError("Signature does not verify") from exc

    if trust_anchors is not None:
        try:
            verify_chain(
                certificate, trust_anchors, intermediates, "signer", attributes.signing_time
            )
        except CertificateError as exc:
            raise EnvelopeVerificationError(f"Signer certificate is not trusted: {exc}") from exc
    return content


def open_envelope(
    envelope: Envelope,
    recipient_key: Any,
    trust_anchors: Optional[Sequence[x509.Certificate]] = None,
) -> bytes:
    return verify_signed_content(decrypt_envelope(envelope, recipient_key), trust_anchors)
