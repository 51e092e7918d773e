from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from logproxy.apps.api.deps import caller_name, client_ip, get_state, require_role
from logproxy.apps.api.state import AppState
from logproxy.core.errors import RequestValidationFailed
from logproxy.domain.models import Caller


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

require_admin = require_role("admin")


@router.get("/config")
async def get_config(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.policy.snapshot.model_dump(by_alias=True)


@router.put("/config")
async def put_config(
    request: Request,
    payload: dict[str, Any] = Body(...),
    state: AppState = Depends(get_state),
    caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    # Fields left out of the payload keep their current values; the result is validated as a whole.
    merged = {**state.policy.snapshot.model_dump(by_alias=True), **payload}
    snapshot = await state.policy.replace(merged)
    state.metrics.log_activity(
        "config_update",
        user=caller_name(caller),
        ip=client_ip(request),
        message="App config updated",
    )
    return snapshot.model_dump(by_alias=True)


@router.get("/rules")
async def get_rules(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> list[dict[str, Any]]:
    return [rule.model_dump(by_alias=True, exclude_none=True) for rule in state.rules.rules]


@router.put("/rules")
async def put_rules(
    request: Request,
    payload: Any = Body(...),
    state: AppState = Depends(get_state),
    caller: Caller | None = Depends(require_admin),
) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise RequestValidationFailed("Alert rules must be a list")
    rules = await state.rules.replace(payload)
    state.metrics.log_activity(
        "alert_rules_update",
        user=caller_name(caller),
        ip=client_ip(request),
        message="Alert rules updated",
    )
    return [rule.model_dump(by_alias=True, exclude_none=True) for rule in rules]


@router.post("/rules/evaluate")
async def evaluate_rules(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return await state.scheduler.evaluate()


@router.get("/metrics")
async def metrics_snapshot(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.metrics.snapshot()


@router.get("/metrics-hourly")
async def metrics_hourly(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.metrics.hourly_usage(24)


@router.get("/metrics-weekly")
async def metrics_weekly(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.metrics.weekly_usage()


@router.get("/metrics-users-daily")
async def metrics_users_daily(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.metrics.top_users_today(7)


@router.get("/anomalies")
async def anomalies(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.metrics.anomaly_hints()


@router.get("/activity")
async def activity(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> list[dict[str, Any]]:
    return state.metrics.activity()


@router.get("/error-log")
async def error_log(
    limit: int | None = None,
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return {"entries": await state.error_log.tail(limit)}


@router.get("/telemetry")
async def telemetry_snapshot(
    state: AppState = Depends(get_state),
    _caller: Caller | None = Depends(require_admin),
) -> dict[str, Any]:
    return state.telemetry.snapshot(3600)
