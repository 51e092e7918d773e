from __future__ import annotations

from typing import Iterator

import pytest

from logproxy.core.config import get_settings


@pytest.fixture(autouse=True)
def reset_process_state(monkeypatch, tmp_path) -> Iterator[None]:
    # Keep cached settings from leaking between tests.
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("ALERT_SCHEDULER_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
