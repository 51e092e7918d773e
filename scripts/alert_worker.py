from __future__ import annotations

import asyncio

from logproxy.apps.api.state import AppState, build_state
from logproxy.core.logging import configure_logging
from logproxy.services.operability.worker import run_alert_loop


def _reload(state: AppState) -> None:
    # The API process owns metrics and rules; read its latest snapshots before each cycle.
    state.metrics.load()
    state.rules.load()


async def _main() -> None:
    # Run with ALERT_SCHEDULER_ENABLED=false on the API so only one process sends alerts.
    configure_logging()
    state = build_state()
    await run_alert_loop(
        state.scheduler,
        interval_s=state.settings.alert_eval_interval_s,
        refresh=lambda: _reload(state),
    )


if __name__ == "__main__":
    asyncio.run(_main())
