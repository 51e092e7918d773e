from __future__ import annotations

from typing import Any


class LogProxyError(Exception):
    """Base error for logproxy."""


class PolicyViolationError(LogProxyError):
    """Caller is not permitted to use an index or feature."""


class RequestValidationFailed(LogProxyError):
    """Request payload or admin input is invalid."""


class UpstreamError(LogProxyError):
    """Search engine returned an error or could not be reached."""

    def __init__(self, status: int, detail: Any) -> None:
        super().__init__(f"search engine error status={status}")
        self.status = status
        self.detail = detail


class StorageError(LogProxyError):
    """JSON snapshot could not be read or written."""
