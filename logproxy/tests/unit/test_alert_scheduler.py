from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from logproxy.domain.models import AlertRule
from logproxy.services.operability.alerts import (
    AlertRuleStore,
    AlertScheduler,
    format_alert,
    normalize_rules,
)
from logproxy.tests.utils.app import RecordingNotifier


T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


class _FixedCounts:
    def __init__(self, counts: dict[str, int]) -> None:
        self.counts = counts

    def query_count_since(self, query: str, window_minutes: int, *, now: datetime | None = None) -> int:
        return self.counts.get(query, 0)


class _FailingFirst:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_alert(self, subject: str, body: str, to: str | None = None) -> bool:
        if "boom" in subject:
            raise RuntimeError("smtp down")
        self.sent.append(subject)
        return True


def _store(tmp_path, rules: list[dict]) -> AlertRuleStore:
    store = AlertRuleStore(tmp_path / "alert-rules.json", tmp_path / "alert-state.json")
    store._rules = normalize_rules(rules)
    return store


def test_normalize_rules_drops_incomplete_entries() -> None:
    rules = normalize_rules(
        {
            "rules": [
                {"id": "r1", "name": "Errors", "query": "level:error", "threshold": "5", "windowMinutes": 30},
                {"name": "No query"},
                {"query": "no name"},
                "not a rule",
            ]
        }
    )
    assert [rule.id for rule in rules] == ["r1"]
    assert rules[0].threshold == 5
    assert rules[0].window_minutes == 30


@pytest.mark.asyncio
async def test_rule_fires_once_per_window(tmp_path) -> None:
    store = _store(tmp_path, [{"id": "r1", "name": "Errors", "query": "level:error", "threshold": 5, "windowMinutes": 60}])
    notifier = RecordingNotifier()
    scheduler = AlertScheduler(store, _FixedCounts({"level:error": 6}), notifier)

    first = await scheduler.evaluate(T0)
    assert first["fired"] == ["r1"]
    assert len(notifier.sent) == 1

    second = await scheduler.evaluate(T0 + timedelta(minutes=30))
    assert second["fired"] == []
    assert second["suppressed"] == ["r1"]
    assert len(notifier.sent) == 1

    third = await scheduler.evaluate(T0 + timedelta(minutes=61))
    assert third["fired"] == ["r1"]
    assert len(notifier.sent) == 2


@pytest.mark.asyncio
async def test_count_must_exceed_threshold(tmp_path) -> None:
    store = _store(tmp_path, [{"id": "r1", "name": "Errors", "query": "level:error", "threshold": 5}])
    notifier = RecordingNotifier()
    summary = await AlertScheduler(store, _FixedCounts({"level:error": 5}), notifier).evaluate(T0)
    assert summary["evaluated"] == 1
    assert summary["fired"] == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_zero_threshold_rules_are_skipped(tmp_path) -> None:
    store = _store(tmp_path, [{"id": "r1", "name": "Off", "query": "x", "threshold": 0}])
    notifier = RecordingNotifier()
    summary = await AlertScheduler(store, _FixedCounts({"x": 100}), notifier).evaluate(T0)
    assert summary["evaluated"] == 0
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_unsent_alert_is_retried_next_cycle(tmp_path) -> None:
    store = _store(tmp_path, [{"id": "r1", "name": "Errors", "query": "q", "threshold": 1}])
    notifier = RecordingNotifier(result=False)
    scheduler = AlertScheduler(store, _FixedCounts({"q": 2}), notifier)

    summary = await scheduler.evaluate(T0)
    assert summary["failed"] == ["r1"]
    assert store.last_triggered_at("r1") is None

    notifier.result = True
    summary = await scheduler.evaluate(T0 + timedelta(minutes=1))
    assert summary["fired"] == ["r1"]


@pytest.mark.asyncio
async def test_send_exception_does_not_block_other_rules(tmp_path) -> None:
    store = _store(
        tmp_path,
        [
            {"id": "r1", "name": "First", "query": "boom", "threshold": 1},
            {"id": "r2", "name": "Second", "query": "fine", "threshold": 1},
        ],
    )
    reported: list[tuple[str, dict]] = []

    async def on_error(label: str, detail: dict) -> None:
        reported.append((label, detail))

    sender = _FailingFirst()
    scheduler = AlertScheduler(store, _FixedCounts({"boom": 3, "fine": 3}), sender, on_error=on_error)
    summary = await scheduler.evaluate(T0)
    assert summary["failed"] == ["r1"]
    assert summary["fired"] == ["r2"]
    assert len(sender.sent) == 1
    assert reported == [("alert", {"ruleId": "r1", "detail": "smtp down"})]


@pytest.mark.asyncio
async def test_last_fired_time_survives_reload(tmp_path) -> None:
    store = _store(tmp_path, [{"id": "r1", "name": "Errors", "query": "q", "threshold": 1, "windowMinutes": 60}])
    await store.replace_rules(store.rules)
    await AlertScheduler(store, _FixedCounts({"q": 2}), RecordingNotifier()).evaluate(T0)

    state = json.loads((tmp_path / "alert-state.json").read_text(encoding="utf-8"))
    assert state == {"lastTriggeredAt": {"r1": T0.isoformat()}}

    reloaded = AlertRuleStore(tmp_path / "alert-rules.json", tmp_path / "alert-state.json")
    reloaded.load()
    assert reloaded.last_triggered_at("r1") == T0
    notifier = RecordingNotifier()
    summary = await AlertScheduler(reloaded, _FixedCounts({"q": 2}), notifier).evaluate(T0 + timedelta(minutes=10))
    assert summary["suppressed"] == ["r1"]
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_replace_persists_rules(tmp_path) -> None:
    store = AlertRuleStore(tmp_path / "alert-rules.json", tmp_path / "alert-state.json")
    rules = await store.replace([{"id": "r9", "name": "Timeouts", "query": "timeout", "threshold": 3, "team": "core"}])
    assert [rule.id for rule in rules] == ["r9"]
    persisted = json.loads((tmp_path / "alert-rules.json").read_text(encoding="utf-8"))
    assert persisted["rules"][0] == {
        "id": "r9",
        "name": "Timeouts",
        "query": "timeout",
        "threshold": 3,
        "windowMinutes": 60,
        "team": "core",
    }


def test_format_alert_lists_rule_details() -> None:
    rule = AlertRule(id="r1", name="Errors", query="level:error", threshold=5, window_minutes=15, team="payments")
    subject, body = format_alert(rule, count=9, now=T0)
    assert subject == 'Alert: "level:error" exceeded 5/15m'
    assert body.splitlines() == [
        "Rule: Errors",
        "Rule ID: r1",
        f"Triggered at: {T0.isoformat()}",
        "Query: level:error",
        "Threshold: 5",
        "Window (minutes): 15",
        "Count: 9",
        "Team: payments",
    ]
