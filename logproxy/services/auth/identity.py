from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from logproxy.domain.models import Caller
from logproxy.persistence.json_store import load_json


logger = logging.getLogger(__name__)

ROLE_ORDER: dict[str, int] = {
    "viewer": 1,
    "editor": 2,
    "admin": 3,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def _normalize_user(raw: dict[str, Any], default_team: str) -> Caller | None:
    username = str(raw.get("username") or "").strip()
    if not username:
        return None
    try:
        role = normalize_role(str(raw.get("role") or "viewer"))
    except ValueError:
        role = "viewer"
    teams = [str(team).strip() for team in raw.get("teams") or [] if str(team).strip()]
    return Caller(
        id=str(raw.get("id") or uuid4()),
        username=username,
        role=role,
        teams=teams or [default_team],
    )


class UserDirectory:
    """Read-only view of the user registry maintained by the admin CRUD surface."""

    def __init__(
        self,
        path: Path | None = None,
        *,
        default_team: str = "core",
        users: list[Caller] | None = None,
    ) -> None:
        self._path = path
        self._default_team = default_team
        self._users: dict[str, Caller] = {user.id: user for user in users or []}

    @property
    def auth_enabled(self) -> bool:
        # An empty registry means the deployment runs without authentication.
        return bool(self._users)

    def load(self) -> int:
        if self._path is None:
            return len(self._users)
        raw = load_json(self._path, {"users": []})
        entries = raw.get("users") if isinstance(raw, dict) else None
        users: dict[str, Caller] = {}
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            user = _normalize_user(entry, self._default_team)
            if user is not None:
                users[user.id] = user
        self._users = users
        logger.info("user_directory_loaded users=%s", len(users))
        return len(users)

    def get(self, user_id: str) -> Caller | None:
        return self._users.get(user_id)


class TokenStore:
    """In-memory bearer tokens issued by the login flow."""

    def __init__(self, ttl_s: int, *, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s
        self._time = time_source or time.time
        self._tokens: dict[str, tuple[str, float]] = {}

    def issue(self, user_id: str) -> str:
        token = secrets.token_hex(32)
        self._tokens[token] = (user_id, self._time() + self._ttl_s)
        return token

    def resolve(self, token: str) -> str | None:
        entry = self._tokens.get(token)
        if entry is None:
            return None
        user_id, expires_at = entry
        if self._time() > expires_at:
            self._tokens.pop(token, None)
            return None
        return user_id

    def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)
