from __future__ import annotations

import math
import time
from collections import Counter, deque
from typing import Callable, Iterable, NamedTuple


class _Request(NamedTuple):
    at: float
    route_class: str
    status_code: int
    latency_ms: float


class _UpstreamCall(NamedTuple):
    at: float
    operation: str
    latency_ms: float
    ok: bool


def route_class_for_path(path: str) -> str:
    # Per-index search URLs collapse into one class.
    for prefix, route_class in (("/search/", "search"), ("/export", "export"), ("/admin", "admin")):
        if path.startswith(prefix):
            return route_class
    return "other"


def _nearest_rank(ordered: list[float], fraction: float) -> float:
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def _summarize(values: Iterable[float], *, with_median: bool = False) -> dict[str, float]:
    ordered = sorted(values)
    summary = {"p95": _nearest_rank(ordered, 0.95), "max": ordered[-1]}
    if with_median:
        summary["p50"] = _nearest_rank(ordered, 0.5)
    return summary


class Telemetry:
    """Bounded in-memory samples and counters for one proxy process.

    Owned by the application state and handed to the collaborators that
    report into it; nothing here is shared between instances.
    """

    def __init__(
        self,
        *,
        max_requests: int = 20000,
        max_upstream_calls: int = 10000,
        max_exports: int = 2000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = clock or time.time
        self._requests: deque[_Request] = deque(maxlen=max_requests)
        self._upstream: deque[_UpstreamCall] = deque(maxlen=max_upstream_calls)
        self._exports: deque[float] = deque(maxlen=max_exports)
        self._counters: Counter[str] = Counter()

    def record_request(self, path: str, status_code: int, latency_ms: float) -> None:
        self._requests.append(_Request(self._clock(), route_class_for_path(path), status_code, latency_ms))

    def record_upstream(self, operation: str, latency_ms: float, ok: bool) -> None:
        self._upstream.append(_UpstreamCall(self._clock(), operation, latency_ms, ok))

    def record_export(self, duration_ms: float) -> None:
        # Export streams finish after the middleware has timed the request.
        self._exports.append(duration_ms)

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    def availability(self, window_s: int) -> float | None:
        cutoff = self._clock() - window_s
        statuses = [sample.status_code for sample in self._requests if sample.at >= cutoff]
        if not statuses:
            return None
        healthy = sum(1 for code in statuses if code < 500)
        return healthy / len(statuses) * 100.0

    def request_latency(self, window_s: int) -> dict[str, dict[str, dict[str, float]]]:
        """Latency per route class and status family (``2xx``, ``5xx`` ...)."""
        cutoff = self._clock() - window_s
        buckets: dict[str, dict[str, list[float]]] = {}
        for sample in self._requests:
            if sample.at < cutoff:
                continue
            family = f"{sample.status_code // 100}xx"
            buckets.setdefault(sample.route_class, {}).setdefault(family, []).append(sample.latency_ms)
        return {
            route_class: {family: _summarize(values, with_median=True) for family, values in families.items()}
            for route_class, families in buckets.items()
        }

    def upstream_latency(self, window_s: int) -> dict[str, dict[str, float]]:
        cutoff = self._clock() - window_s
        by_operation: dict[str, list[_UpstreamCall]] = {}
        for call in self._upstream:
            if call.at >= cutoff:
                by_operation.setdefault(call.operation, []).append(call)
        return {
            operation: {
                **_summarize(call.latency_ms for call in calls),
                "failures": sum(1 for call in calls if not call.ok),
            }
            for operation, calls in by_operation.items()
        }

    def export_durations(self) -> dict[str, float | None]:
        if not self._exports:
            return {"p95": None, "max": None}
        return _summarize(self._exports)

    def snapshot(self, window_s: int = 3600) -> dict[str, object]:
        return {
            "windowSeconds": window_s,
            "availability": self.availability(window_s),
            "requestLatency": self.request_latency(window_s),
            "upstreamLatency": self.upstream_latency(window_s),
            "exportDurations": self.export_durations(),
            "counters": self.counters(),
        }
