from __future__ import annotations

from logproxy.domain.models import Caller, FeatureToggles, PolicySnapshot
from logproxy.services.features import effective_features


POLICY = PolicySnapshot.model_validate(
    {
        "featureToggles": {
            "restricted": {"exports": False, "limitTo7Days": True, "piiUnmasked": False},
            "trusted": {"exports": True, "limitTo7Days": False, "piiUnmasked": True},
            "locked": {
                "exports": False,
                "bookmarks": False,
                "rules": False,
                "queryBuilder": False,
            },
        }
    }
)


def _caller(teams: list[str], role: str = "viewer") -> Caller:
    return Caller(id="u-1", username="bob", role=role, teams=teams)


def test_permissive_flags_are_or_combined() -> None:
    features = effective_features(POLICY, _caller(["restricted", "trusted"]), auth_enabled=True)
    assert features.exports is True
    assert features.pii_unmasked is True


def test_restrictive_seven_day_limit_is_also_or_combined() -> None:
    # A permissive team membership does not lift a restriction imposed by another team.
    features = effective_features(POLICY, _caller(["trusted", "restricted"]), auth_enabled=True)
    assert features.limit_to_7_days is True


def test_single_locked_team_gets_nothing() -> None:
    features = effective_features(POLICY, _caller(["locked"]), auth_enabled=True)
    assert features.exports is False
    assert features.rules is False


def test_team_without_toggles_uses_defaults() -> None:
    features = effective_features(POLICY, _caller(["unknown"]), auth_enabled=True)
    assert features == FeatureToggles()


def test_auth_disabled_gets_permissive_defaults() -> None:
    features = effective_features(POLICY, None, auth_enabled=False)
    assert features.exports is True
    assert features.limit_to_7_days is False
    assert features.pii_unmasked is False


def test_admin_is_never_time_limited_but_inherits_pii_unmasking() -> None:
    admin = effective_features(POLICY, _caller(["restricted"], role="admin"), auth_enabled=True)
    assert admin.limit_to_7_days is False
    assert admin.exports is True
    assert admin.pii_unmasked is False
    trusted_admin = effective_features(POLICY, _caller(["trusted"], role="admin"), auth_enabled=True)
    assert trusted_admin.pii_unmasked is True


def test_toggles_serialize_with_wire_names() -> None:
    dumped = FeatureToggles().model_dump(by_alias=True)
    assert set(dumped) == {
        "exports",
        "bookmarks",
        "rules",
        "queryBuilder",
        "limitTo7Days",
        "piiUnmasked",
        "showFullResults",
    }
