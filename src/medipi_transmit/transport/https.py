from __future__ import annotations

import asyncio
import ssl
from typing import Optional
from urllib.parse import urlparse

import httpx

from ..config import TransmitterConfig
from ..constants import Limits
from ..errors import ConfigError, TransportError
from ..logging import MediPiLogger
from ..models import Envelope
from ..security.credentials import CredentialBundle
from ..utils import truncate
from .base import Transport, TransportResult

USER_AGENT = "medipi-transmit"
UPLOAD_ID_HEADER = "X-MediPi-Upload-Id"

_TLS_VERSIONS = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


def build_ssl_context(credentials: CredentialBundle, min_version: str = "TLSv1.2") -> ssl.SSLContext:
    """Client context: trust store only, hostname checks, TLS floor, no renegotiation, client cert."""
    try:
        context = ssl.create_default_context(
            ssl.Purpose.SERVER_AUTH,
            cafile=str(credentials.trust_anchors.bundle_path),
        )
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        context.minimum_version = _TLS_VERSIONS[min_version]
        context.options |= getattr(ssl, "OP_NO_RENEGOTIATION", 0)
        identity = credentials.device_tls_identity
        context.load_cert_chain(
            certfile=str(identity.cert_path),
            keyfile=str(identity.key_path),
            password=bytes(identity.password) if identity.password else None,
        )
    except (ssl.SSLError, OSError, KeyError) as exc:
        raise TransportError(f"Cannot set up TLS client identity: {exc}", TransportError.HANDSHAKE) from exc
    return context


def _is_tls_failure(exc: BaseException) -> bool:
    current: Optional[BaseException] = exc
    seen = 0
    while current is not None and seen < 10:
        if isinstance(current, ssl.SSLError):
            return True
        text = str(current)
        if "CERTIFICATE_VERIFY_FAILED" in text or "SSL" in text or "TLS" in text:
            return True
        current = current.__cause__ or current.__context__
        seen += 1
    return False


class HttpsTransport(Transport):
    """Single HTTPS POST of the envelope over mutual TLS."""

    def __init__(
        self,
        url: str,
        timeout: float = Limits.DEFAULT_TIMEOUT_SECONDS,
        tls_min_version: str = "TLSv1.2",
        success_marker: str = "",
        logger: Optional[MediPiLogger] = None,
    ):
        parsed = urlparse(url)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ConfigError(f"Concentrator URL must be an https URL with a host: {url!r}")
        if tls_min_version not in _TLS_VERSIONS:
            raise ConfigError(f"Unsupported TLS minimum version: {tls_min_version}")
        self.url = url
        self.timeout = timeout
        self.tls_min_version = tls_min_version
        self.success_marker = success_marker
        self.logger = logger

    @classmethod
    def from_config(
        cls, config: TransmitterConfig, logger: Optional[MediPiLogger] = None
    ) -> "HttpsTransport":
        config.require("concentrator_url")
        return cls(
            config.concentrator_url,
            timeout=config.transmit_timeout,
            tls_min_version=config.tls_min_version,
            success_marker=config.success_marker,
            logger=logger,
        )

    async def send(self, envelope: Envelope, credentials: CredentialBundle) -> TransportResult:
        context = await asyncio.to_thread(build_ssl_context, credentials, self.tls_min_version)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            UPLOAD_ID_HEADER: envelope.upload_id,
        }
        body = envelope.model_dump_json()

        try:
            async with httpx.AsyncClient(verify=context, timeout=self.timeout) as client:
                response = await asyncio.wait_for(
                    client.post(self.url, content=body, headers=headers),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError(
                f"No response from concentrator within {self.timeout}s", TransportError.TIMEOUT
            ) from exc
        except httpx.ConnectError as exc:
            if _is_tls_failure(exc):
                raise TransportError(f"TLS handshake failed: {exc}", TransportError.HANDSHAKE) from exc
            raise TransportError(f"Cannot connect to concentrator: {exc}", TransportError.IO) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Connection error: {exc}", TransportError.IO) from exc

        response_text = truncate(response.text or "", Limits.MAX_RESPONSE_LENGTH)
        success = 200 <= response.status_code < 300
        if success and self.success_marker:
            success = self.success_marker in (response.text or "")

        if self.logger:
            if success:
                self.logger.info("Upload accepted", status=response.status_code)
            else:
                self.logger.warning("Upload not accepted", status=response.status_code)
        return TransportResult(
            success=success,
            response_text=response_text,
            status_code=response.status_code,
        )
