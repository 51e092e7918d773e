from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "cookie"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-like keys while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


class ErrorLog:
    """Append-only JSON-lines file of route-boundary failures for admin review."""

    def __init__(self, path: Path | None, *, tail_lines: int = 200) -> None:
        self._path = path
        self._tail_lines = tail_lines

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)

    async def record(self, label: str, detail: dict[str, Any] | None = None) -> None:
        entry = {
            "time": datetime.now(timezone.utc).isoformat(),
            "label": label,
            "detail": sanitize_metadata(detail or {}),
        }
        path = self._path
        if path is None:
            return
        line = json.dumps(entry, default=str) + "\n"
        try:
            await asyncio.to_thread(self._append, path, line)
        except OSError as exc:
            # The error log must never turn a reported failure into a second one.
            logger.error("error_log_write_failed path=%s", path, exc_info=exc)

    @staticmethod
    def _read_tail(path: Path, limit: int) -> list[dict[str, Any]]:
        with path.open("r", encoding="utf-8") as handle:
            lines = deque(handle, maxlen=limit)
        entries: list[dict[str, Any]] = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except ValueError:
                entries.append({"raw": line.rstrip("\n")})
        return entries

    async def tail(self, limit: int | None = None) -> list[dict[str, Any]]:
        path = self._path
        if path is None or not path.exists():
            return []
        return await asyncio.to_thread(self._read_tail, path, limit or self._tail_lines)
