from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from logproxy.core.config import get_settings
from logproxy.services.metrics_store import MetricsStore
from logproxy.services.operability.alerts import AlertScheduler


logger = logging.getLogger(__name__)


async def run_alert_cycle(scheduler: AlertScheduler) -> dict[str, Any]:
    summary = await scheduler.evaluate()
    if summary["fired"] or summary["failed"]:
        logger.info(
            "alert_cycle evaluated=%s fired=%s failed=%s",
            summary["evaluated"],
            len(summary["fired"]),
            len(summary["failed"]),
        )
    return summary


async def run_alert_loop(
    scheduler: AlertScheduler,
    *,
    interval_s: int | None = None,
    refresh: Callable[[], None] | None = None,
) -> None:
    # Evaluate on a fixed cadence independent of request traffic.
    interval = max(1, interval_s or get_settings().alert_eval_interval_s)
    while True:
        try:
            if refresh is not None:
                refresh()
            await run_alert_cycle(scheduler)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("alert evaluation cycle failed")
        await asyncio.sleep(interval)


async def run_metrics_flush_loop(metrics: MetricsStore, *, interval_s: int | None = None) -> None:
    interval = max(1, interval_s or get_settings().metrics_flush_interval_s)
    while True:
        await asyncio.sleep(interval)
        try:
            await metrics.flush()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("metrics flush failed")
