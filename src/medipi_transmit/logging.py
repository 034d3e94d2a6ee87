from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


class MediPiLogger:
    """Structured JSON logger for submission attempts."""

    def __init__(self, upload_id: Optional[str] = None, component: str = "transmitter"):
        self.upload_id = upload_id
        self.component = component
        self._stage_starts: dict[str, datetime] = {}

    def bind(self, upload_id: str) -> "MediPiLogger":
        """Return a logger tagged with the given upload id."""
        return MediPiLogger(upload_id, component=self.component)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, **kwargs)

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Context manager that tracks stage timing."""
        start = datetime.now(timezone.utc)
        self._stage_starts[name] = start
        self.info("stage_start", stage=name)
        status = "ok"
        try:
            yield
        except BaseException as exc:
            status = "error"
            self.error("stage_error", stage=name, error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            end = datetime.now(timezone.utc)
            duration_ms = int((end - start).total_seconds() * 1000)
            self.info("stage_end", stage=name, duration_ms=duration_ms, status=status)

    def _emit(self, level: str, message: str, **kwargs: Any) -> None:
        """Emit one structured JSON line to stderr."""
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "component": self.component,
            "upload_id": self.upload_id,
            "message": message,
        }
        payload.update(self._sanitize(kwargs))

        sys.stderr.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        sys.stderr.flush()

    @staticmethod
    def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
        redacted: Dict[str, Any] = {}
        for key, value in fields.items():
            if MediPiLogger._is_sensitive_key(key):
                redacted[key] = "***"
            else:
                redacted[key] = value
        return redacted

    @staticmethod
    def _is_sensitive_key(key: str) -> bool:
        lowered = key.lower()
        return any(
            token in lowered
            for token in ("password", "passphrase", "secret", "private_key", "content_key", "cek")
        )
