from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

from .constants import TRANSMITTED_LABEL
from .models import DeviceData, ScheduleEntry
from .utils import as_utc


class Device(ABC):
    """A measurement device that may hold a reading ready for transmission."""

    def __init__(self, token: str, name: Optional[str] = None):
        if not token:
            raise ValueError("Device token must be non-empty")
        self.token = token
        self.name = name or token

    @abstractmethod
    def has_data(self) -> bool:
        """True when a fresh reading is available."""

    @abstractmethod
    def get_data(self) -> Optional[DeviceData]:
        """Current reading, or None when the device holds no data."""

    @abstractmethod
    def reset(self) -> None:
        """Discard the current reading."""


class StaticDevice(Device):
    """Device whose reading is set directly (imports, tests, the CLI)."""

    def __init__(self, token: str, name: Optional[str] = None, data: Optional[DeviceData] = None):
        super().__init__(token, name)
        self._lock = threading.Lock()
        self._data = data

    def set_data(self, data: Optional[DeviceData]) -> None:
        with self._lock:
            self._data = data

    def has_data(self) -> bool:
        with self._lock:
            return self._data is not None

    def get_data(self) -> Optional[DeviceData]:
        with self._lock:
            return self._data

    def reset(self) -> None:
        self.set_data(None)


class Scheduler:
    """Schedule log that records when scheduled measurements were transmitted."""

    def __init__(self, token: str = "scheduler", running: bool = False):
        self.token = token
        self._lock = threading.Lock()
        self._running = running
        self._entries: List[ScheduleEntry] = []

    def is_active(self) -> bool:
        with self._lock:
            return self._running

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._running = running

    def record_transmitted(self, instant: datetime, device_tokens: Iterable[str]) -> ScheduleEntry:
        entry = ScheduleEntry(
            label=TRANSMITTED_LABEL,
            instant=as_utc(instant),
            device_tokens=list(device_tokens),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[ScheduleEntry]:
        with self._lock:
            return list(self._entries)


@dataclass(frozen=True)
class OtherElement:
    """Any dashboard element that neither measures nor schedules."""

    token: str


Element = Union[Device, Scheduler, OtherElement]


@dataclass(frozen=True)
class DeviceSnapshot:
    """Consistent view of one device taken at assembly time."""

    token: str
    has_data: bool
    data: Optional[DeviceData]


class ElementRegistry:
    """Ordered, thread-safe collection of loaded elements."""

    def __init__(self, elements: Optional[Iterable[Element]] = None):
        self._lock = threading.RLock()
        self._elements: List[Element] = []
        for element in elements or []:
            self.add(element)

    def add(self, element: Element) -> None:
        with self._lock:
            if any(existing.token == element.token for existing in self._elements):
                raise ValueError(f"Duplicate element token: {element.token}")
            self._elements.append(element)

    def elements(self) -> List[Element]:
        with self._lock:
            return list(self._elements)

    def devices(self) -> List[Device]:
        found: List[Device] = []
        for element in self.elements():
            match element:
                case Device():
                    found.append(element)
                case _:
                    pass
        return found

    def scheduler(self) -> Optional[Scheduler]:
        for element in self.elements():
            match element:
                case Scheduler():
                    return element
                case _:
                    continue
        return None

    def snapshot(self) -> List[DeviceSnapshot]:
        """Per-device (token, has-data, data) taken under the registry lock."""
        with self._lock:
            snapshots = []
            for device in self.devices():
                has_data = device.has_data()
                snapshots.append(
                    DeviceSnapshot(
                        token=device.token,
                        has_data=has_data,
                        data=device.get_data() if has_data else None,
                    )
                )
            return snapshots

    def clear_all(self) -> None:
        """Reset every device's data."""
        with self._lock:
            for device in self.devices():
                device.reset()
