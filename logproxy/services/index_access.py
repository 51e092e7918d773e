from __future__ import annotations

from logproxy.domain.models import Caller, PolicySnapshot
from logproxy.services.wildcard import wildcard_match


def _bypasses(caller: Caller | None) -> bool:
    # Anonymous callers only exist when auth is disabled; admins see everything.
    return caller is None or caller.role == "admin"


def allowed_patterns(policy: PolicySnapshot, caller: Caller | None) -> list[str]:
    # Personal allow-lists replace team allow-lists rather than extending them.
    if _bypasses(caller):
        return []
    personal = policy.user_index_access.get(caller.username.strip())
    if personal:
        return list(personal)
    patterns: list[str] = []
    for team in caller.teams:
        patterns.extend(policy.team_index_access.get(team, []))
    return patterns


def _covered(allowed: list[str], index_pattern: str) -> bool:
    # A comma-separated target list is allowed only when every listed index is.
    targets = [part.strip() for part in index_pattern.split(",") if part.strip()]
    if not targets:
        return False
    return all(any(wildcard_match(pattern, target) for pattern in allowed) for target in targets)


def is_allowed(policy: PolicySnapshot, caller: Caller | None, index_pattern: str) -> bool:
    if _bypasses(caller):
        return True
    allowed = allowed_patterns(policy, caller)
    if not allowed:
        # No configured restriction means full access.
        return True
    return _covered(allowed, index_pattern)


def filter_options(policy: PolicySnapshot, caller: Caller | None, options: list[str]) -> list[str]:
    if _bypasses(caller):
        return list(options)
    allowed = allowed_patterns(policy, caller)
    if not allowed:
        return list(options)
    kept: list[str] = []
    for raw in options:
        pattern = str(raw or "").split("|")[0].strip()
        if _covered(allowed, pattern):
            kept.append(raw)
    return kept
