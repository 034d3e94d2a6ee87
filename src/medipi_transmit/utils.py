from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

# Canonical UTC "spine" timestamp used in archive filenames.
SPINE_FORMAT_UTC = "%Y%m%d%H%M%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(instant: datetime) -> datetime:
    """Coerce a datetime to an aware UTC datetime (naive values are taken as UTC)."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def format_spine_utc(instant: Optional[datetime] = None) -> str:
    return as_utc(instant or utc_now()).strftime(SPINE_FORMAT_UTC)


def canonical_json_bytes(obj: Any) -> bytes:
    """
    Deterministic JSON encoding.

    Sorted keys, no insignificant whitespace, UTF-8, NaN/Infinity rejected.
    The same object always produces the same bytes.
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


def is_truthy_flag(value: Optional[str]) -> bool:
    """MediPi flag semantics: true unless absent, empty or starting with 'n'."""
    if value is None:
        return False
    stripped = value.strip()
    if not stripped:
        return False
    return not stripped.lower().startswith("n")


def zeroize(buffer: Optional[bytearray]) -> None:
    if buffer is None:
        return
    for i in range(len(buffer)):
        buffer[i] = 0
