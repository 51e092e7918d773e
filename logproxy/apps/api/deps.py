from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from logproxy.apps.api.state import AppState
from logproxy.domain.models import Caller, FeatureToggles, PolicySnapshot
from logproxy.services.auth.identity import role_allows
from logproxy.services.features import effective_features


def get_state(request: Request) -> AppState:
    return request.app.state.logproxy


def get_policy(state: AppState = Depends(get_state)) -> PolicySnapshot:
    # Read the reference once per request so one handler never mixes two snapshots.
    return state.policy.snapshot


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_caller(request: Request, state: AppState = Depends(get_state)) -> Caller | None:
    """Resolve the bearer token to a caller; ``None`` only when auth is disabled."""
    if not state.users.auth_enabled:
        return None
    token = _bearer_token(request)
    if token is None:
        raise _auth_error("Unauthorized")
    user_id = state.tokens.resolve(token)
    caller = state.users.get(user_id) if user_id else None
    if caller is None:
        raise _auth_error("Unauthorized")
    return caller


async def get_features(
    state: AppState = Depends(get_state),
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
) -> FeatureToggles:
    return effective_features(policy, caller, auth_enabled=state.users.auth_enabled)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(caller: Caller | None = Depends(get_current_caller)) -> Caller | None:
        if caller is not None and not role_allows(role=caller.role, minimum_role=minimum_role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return caller

    return _dependency


def caller_key(caller: Caller | None) -> str:
    return caller.id if caller is not None else "public"


def caller_name(caller: Caller | None) -> str:
    return caller.username if caller is not None else "public"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""
