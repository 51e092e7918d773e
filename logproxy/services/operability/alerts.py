from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from pydantic import ValidationError

from logproxy.core.errors import StorageError
from logproxy.domain.models import AlertRule
from logproxy.persistence.json_store import load_json, save_json_async
from logproxy.services.metrics_store import MetricsStore
from logproxy.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


class AlertSender(Protocol):
    async def send_alert(self, subject: str, body: str, to: str | None = None) -> bool: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_rules(payload: Any) -> list[AlertRule]:
    # Accept either {"rules": [...]} or a bare list; rules without a name or query are dropped.
    entries = payload.get("rules") if isinstance(payload, dict) else payload
    rules: list[AlertRule] = []
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict):
            continue
        try:
            rule = AlertRule.model_validate(entry)
        except ValidationError as exc:
            logger.warning("alert_rule_dropped error=%s", exc.errors()[0].get("msg") if exc.errors() else exc)
            continue
        if rule.name and rule.query:
            rules.append(rule)
    return rules


class AlertRuleStore:
    """Alert rules plus the per-rule last-fired timestamps, in separate files."""

    def __init__(self, rules_path: Path | None = None, state_path: Path | None = None) -> None:
        self._rules_path = rules_path
        self._state_path = state_path
        self._rules: list[AlertRule] = []
        self._last_triggered: dict[str, str] = {}

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    def load(self) -> None:
        if self._rules_path is not None:
            self._rules = normalize_rules(load_json(self._rules_path, {"rules": []}))
        if self._state_path is not None:
            state = load_json(self._state_path, {"lastTriggeredAt": {}})
            last = state.get("lastTriggeredAt") if isinstance(state, dict) else None
            last = last if isinstance(last, dict) else {}
            self._last_triggered = {str(k): str(v) for k, v in last.items() if v}
        logger.info("alert_rules_loaded rules=%s", len(self._rules))

    async def replace(self, payload: Any) -> list[AlertRule]:
        return await self.replace_rules(normalize_rules(payload))

    async def replace_rules(self, rules: list[AlertRule]) -> list[AlertRule]:
        if self._rules_path is not None:
            await save_json_async(
                self._rules_path,
                {"rules": [rule.model_dump(by_alias=True, exclude_none=True) for rule in rules]},
            )
        self._rules = rules
        return self.rules

    def last_triggered_at(self, rule_id: str) -> datetime | None:
        raw = self._last_triggered.get(rule_id)
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    async def mark_triggered(self, rule_id: str, when: datetime) -> None:
        self._last_triggered[rule_id] = when.isoformat()
        if self._state_path is not None:
            await save_json_async(self._state_path, {"lastTriggeredAt": dict(self._last_triggered)})


def format_alert(rule: AlertRule, *, count: int, now: datetime) -> tuple[str, str]:
    subject = f'Alert: "{rule.query}" exceeded {rule.threshold}/{rule.window_minutes}m'
    lines = [
        f"Rule: {rule.name or rule.id}",
        f"Rule ID: {rule.id}",
        f"Triggered at: {now.isoformat()}",
        f"Query: {rule.query}",
        f"Threshold: {rule.threshold}",
        f"Window (minutes): {rule.window_minutes}",
        f"Count: {count}",
    ]
    if rule.team:
        lines.append(f"Team: {rule.team}")
    return subject, "\n".join(lines)


class AlertScheduler:
    """Evaluates threshold rules against hourly query counts.

    A rule fires when its count exceeds the threshold and it has not fired
    within its own window. The last-fired time only advances after a successful
    send, so a failed send is retried on the next cycle.
    """

    def __init__(
        self,
        rules: AlertRuleStore,
        metrics: MetricsStore,
        sender: AlertSender,
        *,
        time_source: Callable[[], datetime] | None = None,
        on_error: Callable[[str, dict[str, Any]], Any] | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._rules = rules
        self._metrics = metrics
        self._sender = sender
        self._now = time_source or _utc_now
        self._on_error = on_error
        self._telemetry = telemetry or Telemetry()

    def _suppressed(self, rule: AlertRule, now: datetime) -> bool:
        last = self._rules.last_triggered_at(rule.id)
        return last is not None and now - last < timedelta(minutes=rule.window_minutes)

    async def evaluate(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._now()
        summary: dict[str, Any] = {"evaluated": 0, "fired": [], "suppressed": [], "failed": []}
        for rule in self._rules.rules:
            if rule.threshold < 1 or not rule.query:
                continue
            summary["evaluated"] += 1
            count = self._metrics.query_count_since(rule.query, rule.window_minutes, now=now)
            if count <= rule.threshold:
                continue
            if self._suppressed(rule, now):
                summary["suppressed"].append(rule.id)
                continue
            subject, body = format_alert(rule, count=count, now=now)
            try:
                sent = await self._sender.send_alert(subject, body, to=rule.email)
            except Exception as exc:  # noqa: BLE001 - one rule's failure must not block the rest.
                logger.exception("alert_send_failed rule_id=%s", rule.id)
                self._telemetry.increment("alert_send_failures")
                summary["failed"].append(rule.id)
                if self._on_error is not None:
                    await self._on_error("alert", {"ruleId": rule.id, "detail": str(exc)})
                continue
            if not sent:
                summary["failed"].append(rule.id)
                continue
            try:
                await self._rules.mark_triggered(rule.id, now)
            except StorageError:
                # The in-memory timestamp is already set; only durability across restarts is lost.
                logger.exception("alert_state_save_failed rule_id=%s", rule.id)
            summary["fired"].append(rule.id)
            logger.info("alert_fired rule_id=%s count=%s threshold=%s", rule.id, count, rule.threshold)
        return summary
