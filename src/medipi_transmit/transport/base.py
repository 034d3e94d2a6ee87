from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..models import Envelope
from ..security.credentials import CredentialBundle


@dataclass(frozen=True)
class TransportResult:
    success: bool
    response_text: str
    status_code: Optional[int] = None


class Transport(ABC):
    @abstractmethod
    async def send(self, envelope: Envelope, credentials: CredentialBundle) -> TransportResult:
        """
        Make exactly one delivery attempt.

        Returns success plus the server's response text. Raises
        TransportError for handshake, I/O and timeout failures. Never retries
        and never mutates its inputs.
        """
