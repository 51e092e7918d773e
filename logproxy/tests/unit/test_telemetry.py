from __future__ import annotations

from logproxy.services.telemetry import Telemetry, route_class_for_path


class FakeClock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


def test_route_class_groups_per_index_search_paths() -> None:
    assert route_class_for_path("/search/logs-app") == "search"
    assert route_class_for_path("/export/estimate") == "export"
    assert route_class_for_path("/admin/metrics") == "admin"
    assert route_class_for_path("/config") == "other"


def test_instances_do_not_share_samples() -> None:
    first = Telemetry()
    second = Telemetry()
    first.increment("cache_hit")
    first.record_request("/search/logs", 200, 5.0)
    assert second.counters() == {}
    assert second.availability(60) is None


def test_availability_counts_only_server_errors_inside_window() -> None:
    clock = FakeClock()
    telemetry = Telemetry(clock=clock)
    telemetry.record_request("/search/logs", 502, 10.0)
    clock.now += 120
    telemetry.record_request("/search/logs", 200, 10.0)
    telemetry.record_request("/search/logs", 403, 10.0)
    telemetry.record_request("/search/logs", 500, 10.0)
    assert telemetry.availability(60) == 2 / 3 * 100.0
    assert telemetry.availability(600) == 50.0


def test_snapshot_groups_latency_and_failures() -> None:
    telemetry = Telemetry(clock=FakeClock())
    for latency in (10.0, 20.0, 30.0):
        telemetry.record_request("/search/logs", 200, latency)
    telemetry.record_upstream("search", 12.0, ok=True)
    telemetry.record_upstream("search", 40.0, ok=False)
    telemetry.record_export(250.0)
    telemetry.increment("export_batches", 2)

    snapshot = telemetry.snapshot(3600)
    assert snapshot["windowSeconds"] == 3600
    assert snapshot["requestLatency"] == {"search": {"2xx": {"p50": 20.0, "p95": 30.0, "max": 30.0}}}
    assert snapshot["upstreamLatency"] == {"search": {"p95": 40.0, "max": 40.0, "failures": 1}}
    assert snapshot["exportDurations"] == {"p95": 250.0, "max": 250.0}
    assert snapshot["counters"] == {"export_batches": 2}


def test_export_durations_empty_until_recorded() -> None:
    assert Telemetry().export_durations() == {"p95": None, "max": None}
