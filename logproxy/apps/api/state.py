from __future__ import annotations

from dataclasses import dataclass

from logproxy.core.config import Settings, get_settings
from logproxy.services.auth.identity import TokenStore, UserDirectory
from logproxy.services.error_log import ErrorLog
from logproxy.services.metrics_store import MetricsStore
from logproxy.services.operability.alerts import AlertRuleStore, AlertScheduler
from logproxy.services.operability.notifications import EmailNotifier
from logproxy.services.policy_store import PolicyStore
from logproxy.services.response_cache import ResponseCache
from logproxy.services.search_executor import SearchExecutor
from logproxy.services.telemetry import Telemetry


@dataclass
class AppState:
    """Process-owned collaborators handed to request handlers through ``app.state``."""

    settings: Settings
    policy: PolicyStore
    users: UserDirectory
    tokens: TokenStore
    cache: ResponseCache
    executor: SearchExecutor
    metrics: MetricsStore
    rules: AlertRuleStore
    scheduler: AlertScheduler
    error_log: ErrorLog
    telemetry: Telemetry


def build_state(settings: Settings | None = None) -> AppState:
    # Load every JSON snapshot under data_dir; missing files start from defaults.
    settings = settings or get_settings()
    policy = PolicyStore(settings.data_path("app-config.json"))
    policy.load()
    users = UserDirectory(settings.data_path("users.json"), default_team=settings.default_team)
    users.load()
    metrics = MetricsStore(
        settings.data_path("metrics.json"),
        activity_max_entries=settings.activity_max_entries,
    )
    metrics.load()
    rules = AlertRuleStore(settings.data_path("rules.json"), settings.data_path("rules-state.json"))
    rules.load()
    error_log = ErrorLog(settings.data_path("error.log"), tail_lines=settings.error_log_tail_lines)
    telemetry = Telemetry()
    scheduler = AlertScheduler(
        rules,
        metrics,
        EmailNotifier(settings, telemetry=telemetry),
        on_error=error_log.record,
        telemetry=telemetry,
    )
    return AppState(
        settings=settings,
        policy=policy,
        users=users,
        tokens=TokenStore(settings.auth_token_ttl_minutes * 60),
        cache=ResponseCache(settings.cache_ttl_ms, settings.cache_max_entries, telemetry=telemetry),
        executor=SearchExecutor(settings, telemetry=telemetry),
        metrics=metrics,
        rules=rules,
        scheduler=scheduler,
        error_log=error_log,
        telemetry=telemetry,
    )
