from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from logproxy.apps.api.deps import caller_name, client_ip, get_current_caller, get_features, get_state
from logproxy.apps.api.state import AppState
from logproxy.core.errors import PolicyViolationError, RequestValidationFailed
from logproxy.domain.models import AlertRule, Caller, FeatureToggles
from logproxy.services.operability.alerts import normalize_rules


router = APIRouter()


def _visible(rules: list[AlertRule], caller: Caller | None) -> list[AlertRule]:
    # Non-admins only see rules owned by one of their teams.
    if caller is None or caller.role == "admin":
        return rules
    return [rule for rule in rules if rule.team in caller.teams]


def _dump(rules: list[AlertRule]) -> list[dict[str, Any]]:
    return [rule.model_dump(by_alias=True, exclude_none=True) for rule in rules]


@router.get("/rules")
async def list_team_rules(
    state: AppState = Depends(get_state),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> list[dict[str, Any]]:
    if not features.rules:
        raise PolicyViolationError("Feature disabled")
    return _dump(_visible(state.rules.rules, caller))


@router.put("/rules")
async def replace_team_rules(
    request: Request,
    payload: Any = Body(...),
    state: AppState = Depends(get_state),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> list[dict[str, Any]]:
    if not features.rules:
        raise PolicyViolationError("Feature disabled")
    if caller is not None and caller.role == "viewer":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    if not isinstance(payload, list):
        raise RequestValidationFailed("Alert rules must be a list")
    incoming = normalize_rules(payload)
    if caller is None or caller.role == "admin":
        merged = incoming
    else:
        # Editors replace their own teams' rules and leave every other team's untouched.
        teams = set(caller.teams)
        preserved = [rule for rule in state.rules.rules if rule.team not in teams]
        merged = preserved + [rule for rule in incoming if rule.team in teams]
    rules = await state.rules.replace_rules(merged)
    state.metrics.log_activity(
        "alert_rules_update",
        user=caller_name(caller),
        ip=client_ip(request),
        message="Alert rules updated",
    )
    return _dump(_visible(rules, caller))
