from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Literal, Optional

from .constants import TRANSMIT_LABEL_STATUS, SubmissionState
from .logging import MediPiLogger

EventType = Literal["status", "message", "state", "busy"]
MessageLevel = Literal["info", "error"]


@dataclass(frozen=True)
class StatusEvent:
    type: EventType
    value: Any
    level: Optional[MessageLevel] = None


Subscriber = Callable[[StatusEvent], None]


class StatusChannel:
    """
    Observable submission status for UI collaborators.

    The orchestrator writes state, status text, the busy flag and user-facing
    messages here; subscribers render them. The displayed label falls back to
    the idle label whenever no submission is running.
    """

    def __init__(self, logger: Optional[MediPiLogger] = None):
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._logger = logger or MediPiLogger(component="status")
        self.state: SubmissionState = SubmissionState.IDLE
        self.status: str = TRANSMIT_LABEL_STATUS[0]
        self.busy: bool = False
        self.history: List[str] = []
        self.messages: List[StatusEvent] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    @property
    def label(self) -> str:
        return self.status if self.busy else TRANSMIT_LABEL_STATUS[0]

    def set_state(self, state: SubmissionState) -> None:
        self.state = state
        self._publish(StatusEvent("state", state))

    def set_busy(self, busy: bool) -> None:
        self.busy = busy
        self._publish(StatusEvent("busy", busy))

    def publish_status(self, text: str) -> None:
        self.status = text
        self.history.append(text)
        self._publish(StatusEvent("status", text))

    def notify(self, text: str) -> None:
        event = StatusEvent("message", text, level="info")
        self.messages.append(event)
        self._publish(event)

    def notify_error(self, text: str) -> None:
        event = StatusEvent("message", text, level="error")
        self.messages.append(event)
        self._publish(event)

    def _publish(self, event: StatusEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:
                self._logger.warning("Status subscriber failed", event=event.type, error=str(exc))
