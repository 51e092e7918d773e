from __future__ import annotations

import json
import time
from collections import OrderedDict
from typing import Any, Callable

from logproxy.services.telemetry import Telemetry


def build_cache_key(
    *,
    operation: str,
    scope: str,
    index_pattern: str,
    pii_unmasked: bool,
    pii_rules: str,
    body: Any,
) -> str:
    """Compose the cache key for one proxied read.

    Every input that changes the response shape is part of the key: the
    caller scope, the masking variant and the serialized PII rules, so a
    policy change or a differently-privileged caller can never hit a stale
    or unmasked entry.
    """
    serialized = json.dumps(body or {}, sort_keys=True, separators=(",", ":"), default=str)
    variant = "unmasked" if pii_unmasked else "masked"
    return "|".join([operation, scope or "public", index_pattern, variant, pii_rules, serialized])


class ResponseCache:
    """TTL cache with insertion-order eviction.

    Expiry is checked on read. When the entry count exceeds ``max_entries`` the
    oldest inserted entry is dropped; reads do not refresh position.
    """

    def __init__(
        self,
        ttl_ms: int,
        max_entries: int,
        *,
        time_source: Callable[[], float] | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._ttl_ms = ttl_ms
        self._telemetry = telemetry or Telemetry()
        self._max_entries = max_entries
        self._time = time_source or time.monotonic
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return bool(self._ttl_ms) and self._ttl_ms > 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self._telemetry.increment("cache_miss")
            return None
        value, expires_at = entry
        if self._time() * 1000 > expires_at:
            del self._entries[key]
            self._telemetry.increment("cache_miss")
            return None
        self._telemetry.increment("cache_hit")
        return value

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        # Re-inserting moves the key to the newest position, matching a fresh insert.
        self._entries.pop(key, None)
        self._entries[key] = (value, self._time() * 1000 + self._ttl_ms)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
