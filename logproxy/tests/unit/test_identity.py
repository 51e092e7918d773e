from __future__ import annotations

import json

import pytest

from logproxy.services.auth.identity import TokenStore, UserDirectory, normalize_role, role_allows


def test_role_ordering() -> None:
    assert role_allows(role="admin", minimum_role="editor")
    assert role_allows(role="editor", minimum_role="editor")
    assert not role_allows(role="viewer", minimum_role="editor")
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValueError):
        normalize_role("owner")


def test_user_directory_normalizes_entries(tmp_path) -> None:
    path = tmp_path / "users.json"
    path.write_text(
        json.dumps(
            {
                "users": [
                    {"id": "u1", "username": "alice", "role": "ADMIN", "teams": ["ops", " "]},
                    {"id": "u2", "username": "bob", "role": "superuser"},
                    {"id": "u3", "username": "  "},
                ]
            }
        ),
        encoding="utf-8",
    )
    directory = UserDirectory(path, default_team="core")
    assert directory.load() == 2
    assert directory.auth_enabled
    alice = directory.get("u1")
    assert alice is not None and alice.role == "admin" and alice.teams == ["ops"]
    bob = directory.get("u2")
    assert bob is not None and bob.role == "viewer" and bob.teams == ["core"]
    assert directory.get("u3") is None


def test_empty_directory_disables_auth(tmp_path) -> None:
    directory = UserDirectory(tmp_path / "users.json")
    assert directory.load() == 0
    assert not directory.auth_enabled


def test_tokens_expire_after_ttl() -> None:
    clock = {"now": 1000.0}
    tokens = TokenStore(600, time_source=lambda: clock["now"])
    token = tokens.issue("u1")
    assert tokens.resolve(token) == "u1"
    clock["now"] += 601
    assert tokens.resolve(token) is None
    assert tokens.resolve("unknown") is None

    other = tokens.issue("u2")
    tokens.revoke(other)
    assert tokens.resolve(other) is None
