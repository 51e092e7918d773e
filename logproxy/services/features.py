from __future__ import annotations

from logproxy.domain.models import Caller, FeatureToggles, PolicySnapshot


def team_toggles(policy: PolicySnapshot, team: str | None) -> FeatureToggles:
    # Teams without explicit toggles get the default capability set.
    if not team:
        return FeatureToggles()
    return policy.feature_toggles.get(team) or FeatureToggles()


def effective_features(
    policy: PolicySnapshot,
    caller: Caller | None,
    *,
    auth_enabled: bool,
) -> FeatureToggles:
    """OR-combine the toggles of every team the caller belongs to.

    Restrictive flags such as ``limit_to_7_days`` are OR-ed the same way as
    permissive ones, so one restricted team restricts the caller.
    """
    if not auth_enabled:
        return FeatureToggles()
    if caller is None:
        return FeatureToggles.none()
    combined = FeatureToggles.none()
    for team in caller.teams:
        combined = combined.merge(team_toggles(policy, team))
    if caller.role == "admin":
        return FeatureToggles(
            pii_unmasked=combined.pii_unmasked,
            show_full_results=combined.show_full_results,
        )
    return combined
