from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import time
import zlib
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from logproxy.core.errors import UpstreamError
from logproxy.domain.models import PiiRule
from logproxy.services.pii_masking import mask_hits
from logproxy.services.search_executor import SearchExecutor
from logproxy.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")
NO_LOGS_MESSAGE = "No logs found"
TIME_DESC_SORT = [
    {"timestamp": {"order": "desc", "unmapped_type": "date"}},
    {"@timestamp": {"order": "desc", "unmapped_type": "date"}},
]

# Strong references for fire-and-forget cursor cleanup scheduled after an aborted stream.
_cleanup_tasks: set[asyncio.Task[None]] = set()


class ExportState(str, Enum):
    ESTIMATING = "estimating"
    INITIAL_SEARCH = "initial_search"
    STREAMING_BATCHES = "streaming_batches"
    DRAINING_CURSOR = "draining_cursor"
    COMPLETED = "completed"
    FAILED = "failed"


class _ClientDisconnected(Exception):
    pass


def _cell(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class JsonLinesFormatter:
    content_suffix = "json"

    def header(self, first_hits: list[dict[str, Any]]) -> str:
        return ""

    def rows(self, hits: list[dict[str, Any]]) -> str:
        return "".join(json.dumps(hit.get("_source") or {}, default=str) + "\n" for hit in hits)

    def placeholder(self) -> str:
        return json.dumps({"message": NO_LOGS_MESSAGE}) + "\n"


class CsvFormatter:
    """CSV with columns fixed by the first hit; later fields are not reconciled."""

    content_suffix = "csv"

    def __init__(self) -> None:
        self._columns: list[str] = []

    def _write(self, rows: Iterable[list[Any]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerows(rows)
        return buffer.getvalue()

    def header(self, first_hits: list[dict[str, Any]]) -> str:
        source = first_hits[0].get("_source") or {}
        self._columns = [str(key) for key in source.keys()]
        return self._write([self._columns])

    def rows(self, hits: list[dict[str, Any]]) -> str:
        return self._write(
            [[_cell((hit.get("_source") or {}).get(column)) for column in self._columns] for hit in hits]
        )

    def placeholder(self) -> str:
        return self._write([["message"], [NO_LOGS_MESSAGE]])


def get_formatter(export_format: str) -> JsonLinesFormatter | CsvFormatter:
    if export_format == "csv":
        return CsvFormatter()
    return JsonLinesFormatter()


def _hits(data: Any) -> list[dict[str, Any]]:
    hits = (data or {}).get("hits", {}).get("hits") if isinstance(data, dict) else None
    return hits if isinstance(hits, list) else []


def _total_hits(data: Any) -> int:
    total = (data or {}).get("hits", {}).get("total", 0) if isinstance(data, dict) else 0
    if isinstance(total, dict):
        total = total.get("value", 0)
    try:
        return int(total or 0)
    except (TypeError, ValueError):
        return 0


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, UpstreamError):
        detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail, default=str)
        return f"Export failed: {detail}"
    return f"Export failed: {exc}"


class ExportStreamer:
    """Scroll an export query and yield gzip-compressed chunks.

    At most one batch of hits is held in memory; the caller's response stream
    pulls chunks, so a slow client slows the scroll loop. Failures after the
    first chunk are reported in-band as a JSON object inside the gzip body.
    """

    def __init__(
        self,
        executor: SearchExecutor,
        *,
        index_pattern: str,
        query: dict[str, Any],
        size: int,
        export_format: str,
        pii_rules: list[PiiRule],
        pii_unmasked: bool,
        batch_size: int,
        scroll_ttl: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        on_complete: Callable[[int], None] | None = None,
        on_error: Callable[[Exception], Awaitable[None]] | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._executor = executor
        self._telemetry = telemetry or Telemetry()
        self._index_pattern = index_pattern
        self._query = query
        self._size = size
        self._formatter = get_formatter(export_format)
        self._pii_rules = pii_rules
        self._pii_unmasked = pii_unmasked
        self._batch_size = batch_size
        self._scroll_ttl = scroll_ttl
        self._is_disconnected = is_disconnected
        self._on_complete = on_complete
        self._on_error = on_error
        self.state = ExportState.INITIAL_SEARCH
        self.exported = 0
        self._scroll_id: str | None = None

    def _mask(self, hits: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if self._pii_unmasked or not self._pii_rules:
            return hits
        return mask_hits(hits, self._pii_rules)

    async def _client_gone(self) -> bool:
        return self._is_disconnected is not None and await self._is_disconnected()

    async def _batches(self) -> AsyncIterator[str]:
        # Drives the state machine; yields serialized text, one batch at a time.
        body = {"query": self._query, "size": min(self._batch_size, self._size), "sort": TIME_DESC_SORT}
        self.state = ExportState.INITIAL_SEARCH
        data = await self._executor.search(self._index_pattern, body, params={"scroll": self._scroll_ttl})
        self._scroll_id = data.get("_scroll_id")
        hits = self._mask(_hits(data)[: self._size])
        if not hits:
            yield self._formatter.placeholder()
            return

        self.state = ExportState.STREAMING_BATCHES
        yield self._formatter.header(hits) + self._formatter.rows(hits)
        self.exported += len(hits)
        self._telemetry.increment("export_batches")

        self.state = ExportState.DRAINING_CURSOR
        while hits and self.exported < self._size and self._scroll_id:
            if await self._client_gone():
                raise _ClientDisconnected()
            data = await self._executor.scroll(self._scroll_id, self._scroll_ttl)
            self._scroll_id = data.get("_scroll_id") or self._scroll_id
            hits = self._mask(_hits(data)[: self._size - self.exported])
            if hits:
                yield self._formatter.rows(hits)
                self.exported += len(hits)
                self._telemetry.increment("export_batches")

    async def stream(self) -> AsyncIterator[bytes]:
        compressor = zlib.compressobj(9, zlib.DEFLATED, 31)
        started = time.monotonic()
        cursor_released = False
        try:
            try:
                async for text in self._batches():
                    chunk = compressor.compress(text.encode("utf-8"))
                    if chunk:
                        yield chunk
                if self._scroll_id:
                    await self._executor.clear_scroll(self._scroll_id)
                cursor_released = True
                self.state = ExportState.COMPLETED
                if self._on_complete is not None:
                    self._on_complete(self.exported)
                logger.info(
                    "export_completed index=%s exported=%s duration_ms=%.1f",
                    self._index_pattern,
                    self.exported,
                    (time.monotonic() - started) * 1000.0,
                )
            except _ClientDisconnected:
                self.state = ExportState.FAILED
                logger.info("export_aborted index=%s exported=%s", self._index_pattern, self.exported)
                return
            except Exception as exc:  # noqa: BLE001
                # Headers are already committed; the error travels inside the gzip body.
                self.state = ExportState.FAILED
                logger.exception("export_failed index=%s exported=%s", self._index_pattern, self.exported)
                if self._on_error is not None:
                    await self._on_error(exc)
                error_chunk = compressor.compress(json.dumps({"error": _failure_message(exc)}).encode("utf-8"))
                if error_chunk:
                    yield error_chunk
            yield compressor.flush()
        finally:
            self._telemetry.record_export((time.monotonic() - started) * 1000.0)
            if self._scroll_id and not cursor_released:
                self._release_later(self._scroll_id)

    def _release_later(self, scroll_id: str) -> None:
        # The generator may be closing under cancellation, so cleanup runs on its own task.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._executor.clear_scroll(scroll_id))
        _cleanup_tasks.add(task)
        task.add_done_callback(_cleanup_tasks.discard)


async def estimate_export(
    executor: SearchExecutor,
    *,
    index_pattern: str,
    query: dict[str, Any],
    sample_size: int,
    max_export_size: int,
) -> dict[str, Any]:
    # Average serialized _source size over a small sample, scaled by the total hit count.
    body = {"query": query, "size": sample_size, "track_total_hits": True, "sort": TIME_DESC_SORT}
    data = await executor.search(index_pattern, body)
    total_hits = _total_hits(data)
    sizes = [
        len(json.dumps(hit.get("_source") or {}, separators=(",", ":"), default=str))
        for hit in _hits(data)
        if isinstance(hit, dict)
    ]
    avg_bytes = round(sum(sizes) / len(sizes)) if sizes else 0
    return {
        "totalHits": total_hits,
        "sampleSize": len(sizes),
        "avgBytes": avg_bytes,
        "estimatedBytes": avg_bytes * total_hits,
        "maxExportSize": max_export_size,
    }
