from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from logproxy.core.errors import StorageError


logger = logging.getLogger(__name__)


def load_json(path: Path, fallback: Any) -> Any:
    # Missing or unreadable snapshots fall back so a corrupt file never blocks startup.
    if not path.exists():
        return fallback
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("json_snapshot_read_failed path=%s", path, exc_info=exc)
        return fallback


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def write_text_atomic(path: Path, text: str) -> None:
    # Write beside the target and rename over it so readers never see a partial file.
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StorageError(f"Failed to write {path}") from exc


def save_json(path: Path, data: Any) -> None:
    write_text_atomic(path, dump_json(data))


async def save_json_async(path: Path, data: Any) -> None:
    # Serialize on the loop thread so the worker thread never sees a dict mid-mutation.
    text = dump_json(data)
    await asyncio.to_thread(write_text_atomic, path, text)
