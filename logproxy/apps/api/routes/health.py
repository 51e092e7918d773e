from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from logproxy.apps.api.deps import get_state
from logproxy.apps.api.state import AppState
from logproxy.core.errors import UpstreamError


router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/search-engine/status")
async def search_engine_status(state: AppState = Depends(get_state)) -> dict[str, Any]:
    result: dict[str, Any] = {"reachable": False, "status": None, "error": None}
    try:
        health_data = await state.executor.cluster_health()
    except UpstreamError as exc:
        result["error"] = exc.detail if isinstance(exc.detail, str) else str(exc)
        return result
    result["reachable"] = True
    result["status"] = health_data.get("status")
    return result
