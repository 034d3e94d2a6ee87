from __future__ import annotations

from datetime import datetime
from typing import Callable, Collection, Iterable, List, Optional, Union

from ..elements import DeviceSnapshot
from ..errors import AssemblyError, NothingToSend
from ..models import DeviceData, DevicesPayload

SelectionPredicate = Callable[[str], bool]
Selection = Union[None, Collection[str], SelectionPredicate]


def selection_predicate(selection: Selection) -> SelectionPredicate:
    """
    Normalize a selection into a predicate on device tokens.

    None selects every device, a collection selects its members, a callable is
    used as-is.
    """
    if selection is None:
        return lambda _token: True
    if callable(selection):
        return selection
    if isinstance(selection, str):
        raise TypeError("Selection must be a collection of device tokens, not a string")
    chosen = frozenset(selection)
    return lambda token: token in chosen


def assemble_payload(
    snapshot: Iterable[DeviceSnapshot],
    is_selected: SelectionPredicate,
    uploaded_at: Optional[datetime] = None,
) -> DevicesPayload:
    """
    Collect selected, data-bearing devices into one bundle.

    Items keep registry enumeration order. Devices that lost their data since
    selection are skipped; an empty result raises NothingToSend.
    """
    items: List[DeviceData] = []
    for device in snapshot:
        if not device.has_data or not is_selected(device.token):
            continue
        if device.data is None:
            raise AssemblyError(f"Device '{device.token}' reported data but returned none")
        if device.data.device_token != device.token:
            raise AssemblyError(
                f"Device '{device.token}' returned data for '{device.data.device_token}'"
            )
        items.append(device.data)

    if not items:
        raise NothingToSend("No selected device holds data")
    return DevicesPayload.new(items, uploaded_at=uploaded_at)
