from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from logproxy.core.errors import RequestValidationFailed
from logproxy.domain.models import PolicySnapshot
from logproxy.persistence.json_store import load_json, save_json, save_json_async


logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"Invalid config at {location}: {message}" if location else f"Invalid config: {message}"


class PolicyStore:
    """Owns the current policy snapshot.

    The exposed reference is only ever rebound to a fully validated snapshot,
    so request handlers can read ``snapshot`` without locking.
    """

    def __init__(self, path: Path | None = None, snapshot: PolicySnapshot | None = None) -> None:
        self._path = path
        self._snapshot = snapshot or PolicySnapshot()

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    def load(self) -> PolicySnapshot:
        # Bad persisted config falls back to defaults instead of preventing startup.
        if self._path is None:
            return self._snapshot
        raw = load_json(self._path, {})
        try:
            snapshot = PolicySnapshot.model_validate(raw if isinstance(raw, dict) else {})
        except ValidationError as exc:
            logger.error("policy_load_invalid path=%s error=%s", self._path, _validation_message(exc))
            snapshot = PolicySnapshot()
        self._snapshot = snapshot
        save_json(self._path, snapshot.model_dump(by_alias=True))
        return snapshot

    async def replace(self, payload: dict[str, Any]) -> PolicySnapshot:
        try:
            snapshot = PolicySnapshot.model_validate(payload)
        except ValidationError as exc:
            raise RequestValidationFailed(_validation_message(exc)) from exc
        if self._path is not None:
            await save_json_async(self._path, snapshot.model_dump(by_alias=True))
        self._snapshot = snapshot
        logger.info(
            "policy_replaced index_options=%s pii_rules=%s teams=%s",
            len(snapshot.index_options),
            len(snapshot.pii_field_rules),
            len(snapshot.feature_toggles),
        )
        return snapshot
