"""MediPi patient-side transmitter: encrypted and signed uploads of device readings."""

from .config import TransmitterConfig
from .elements import Device, ElementRegistry, OtherElement, Scheduler, StaticDevice
from .models import DeviceData, DevicesPayload, Envelope, SubmissionOutcome
from .orchestrator import SubmissionOrchestrator
from .status import StatusChannel, StatusEvent

__all__ = [
    "TransmitterConfig",
    "Device",
    "ElementRegistry",
    "OtherElement",
    "Scheduler",
    "StaticDevice",
    "DeviceData",
    "DevicesPayload",
    "Envelope",
    "SubmissionOutcome",
    "SubmissionOrchestrator",
    "StatusChannel",
    "StatusEvent",
]

__version__ = "1.0.0"
