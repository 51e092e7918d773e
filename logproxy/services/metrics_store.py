from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from logproxy.persistence.json_store import load_json, save_json_async


logger = logging.getLogger(__name__)

MATCH_ALL_QUERY = "(match_all)"
# Hourly buckets older than this are dropped; alert windows and dashboards never look further back.
HOURLY_RETENTION = timedelta(days=8)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def hour_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")


def _empty_day() -> dict[str, Any]:
    return {"searches": 0, "exports": 0, "queries": {}, "ips": {}, "users": {}, "exportsByFormat": {}}


def _percent(value: int, maximum: int) -> int:
    return round(value / maximum * 100) if maximum else 0


class MetricsStore:
    """Rolling usage counters, durable through periodic JSON snapshots.

    Mutations only mark the store dirty; ``flush`` writes the snapshot. Every
    mutation is a single synchronous step, so concurrent request handlers on the
    event loop never interleave inside one.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        activity_max_entries: int = 500,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = path
        self._activity_max = activity_max_entries
        self._now = time_source or _utc_now
        self._by_date: dict[str, dict[str, Any]] = {}
        self._hourly_queries: dict[str, dict[str, int]] = {}
        self._hourly_totals: dict[str, dict[str, int]] = {}
        self._activity: list[dict[str, Any]] = []
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    def load(self) -> None:
        if self._path is None:
            return
        raw = load_json(self._path, {})
        if not isinstance(raw, dict):
            raw = {}
        by_date = raw.get("byDate") if isinstance(raw.get("byDate"), dict) else {}
        for day in by_date.values():
            if isinstance(day, dict):
                for key, value in _empty_day().items():
                    day.setdefault(key, value)
        self._by_date = {key: day for key, day in by_date.items() if isinstance(day, dict)}
        self._hourly_queries = raw.get("hourlyQueries") if isinstance(raw.get("hourlyQueries"), dict) else {}
        self._hourly_totals = raw.get("hourlyTotals") if isinstance(raw.get("hourlyTotals"), dict) else {}
        activity = raw.get("activity") if isinstance(raw.get("activity"), list) else []
        self._activity = activity[: self._activity_max]
        logger.info("metrics_loaded days=%s hours=%s", len(self._by_date), len(self._hourly_totals))

    def to_dict(self) -> dict[str, Any]:
        return {
            "byDate": self._by_date,
            "hourlyQueries": self._hourly_queries,
            "hourlyTotals": self._hourly_totals,
            "activity": self._activity,
        }

    async def flush(self) -> bool:
        if self._path is None or not self._dirty:
            return False
        # Clear first so mutations made during the write mark the store dirty again.
        self._dirty = False
        try:
            await save_json_async(self._path, self.to_dict())
        except Exception:
            self._dirty = True
            raise
        return True

    def _day(self, now: datetime) -> dict[str, Any]:
        return self._by_date.setdefault(day_key(now), _empty_day())

    def _hour_totals(self, now: datetime) -> dict[str, int]:
        return self._hourly_totals.setdefault(hour_key(now), {"searches": 0, "exports": 0})

    def _prune_hourly(self, now: datetime) -> None:
        cutoff = hour_key(now - HOURLY_RETENTION)
        for buckets in (self._hourly_queries, self._hourly_totals):
            for key in [key for key in buckets if key < cutoff]:
                del buckets[key]

    def log_activity(self, activity_type: str, **meta: Any) -> None:
        self._activity.insert(
            0,
            {
                "time": self._now().isoformat(),
                "type": activity_type,
                "query": meta.get("query") or "",
                "format": meta.get("format") or "",
                "size": meta.get("size") or 0,
                "indexPattern": meta.get("index_pattern") or "",
                "user": meta.get("user") or "public",
                "ip": meta.get("ip") or "",
                "message": meta.get("message") or "",
            },
        )
        del self._activity[self._activity_max :]
        self._dirty = True

    def record_search(self, query: str, ip: str | None, *, index_pattern: str = "", user: str | None = None) -> None:
        now = self._now()
        text = query or MATCH_ALL_QUERY
        user_key = user or "public"
        day = self._day(now)
        day["searches"] += 1
        day["queries"][text] = day["queries"].get(text, 0) + 1
        if ip:
            day["ips"][ip] = day["ips"].get(ip, 0) + 1
        day["users"][user_key] = day["users"].get(user_key, 0) + 1
        bucket = self._hourly_queries.setdefault(hour_key(now), {})
        bucket[text] = bucket.get(text, 0) + 1
        self._hour_totals(now)["searches"] += 1
        self._prune_hourly(now)
        self.log_activity("search", query=text, index_pattern=index_pattern, user=user_key, ip=ip)

    def record_export(
        self,
        export_format: str,
        ip: str | None,
        *,
        index_pattern: str = "",
        size: int = 0,
        query: str = "",
        user: str | None = None,
    ) -> None:
        now = self._now()
        user_key = user or "public"
        day = self._day(now)
        day["exports"] += 1
        day["exportsByFormat"][export_format] = day["exportsByFormat"].get(export_format, 0) + 1
        if ip:
            day["ips"][ip] = day["ips"].get(ip, 0) + 1
        day["users"][user_key] = day["users"].get(user_key, 0) + 1
        self._hour_totals(now)["exports"] += 1
        self.log_activity(
            "export",
            format=export_format,
            size=size,
            index_pattern=index_pattern,
            query=query,
            user=user_key,
            ip=ip,
        )

    def query_count_since(self, query: str, window_minutes: int, *, now: datetime | None = None) -> int:
        """Sum ``query`` hits over the trailing ``ceil(window / 60)`` hour buckets.

        Windowing is coarse: the current partial hour counts as a full bucket, so
        a 90 minute window reads two whole hours.
        """
        current = (now or self._now()).replace(minute=0, second=0, microsecond=0)
        buckets = math.ceil(window_minutes / 60)
        total = 0
        for offset in range(buckets):
            bucket = self._hourly_queries.get(hour_key(current - timedelta(hours=offset)), {})
            total += int(bucket.get(query, 0))
        return total

    def snapshot(self) -> dict[str, Any]:
        # Falls back to the most recent recorded day when today has no searches yet.
        effective_key = day_key(self._now())
        day = self._by_date.get(effective_key) or _empty_day()
        if day["searches"] == 0 and self._by_date:
            effective_key = sorted(self._by_date)[-1]
            day = self._by_date[effective_key]
        top_queries = sorted(day["queries"].items(), key=lambda item: item[1], reverse=True)[:5]
        return {
            "date": effective_key,
            "searchesToday": day["searches"],
            "topQueries": [{"query": query, "count": count} for query, count in top_queries],
            "activeUsers": len(day["ips"]),
            "activeUserIps": list(day["ips"]),
            "exportsToday": day["exports"],
            "exportByFormat": dict(day["exportsByFormat"]),
        }

    def hourly_series(self, hours: int) -> list[dict[str, Any]]:
        current = self._now().replace(minute=0, second=0, microsecond=0)
        series = []
        for offset in range(hours - 1, -1, -1):
            key = hour_key(current - timedelta(hours=offset))
            entry = self._hourly_totals.get(key) or {}
            series.append({"hour": key, "searches": entry.get("searches", 0), "exports": entry.get("exports", 0)})
        return series

    def hourly_usage(self, hours: int = 24) -> dict[str, Any]:
        series = self.hourly_series(hours)
        totals = [item["searches"] + item["exports"] for item in series]
        maximum = max([1, *totals])
        return {
            "hours": [
                {"hour": item["hour"], "total": total, "percent": _percent(total, maximum)}
                for item, total in zip(series, totals)
            ]
        }

    def weekly_usage(self) -> dict[str, Any]:
        today = self._now()
        days = []
        for offset in range(6, -1, -1):
            key = day_key(today - timedelta(days=offset))
            day = self._by_date.get(key) or _empty_day()
            total = day["searches"] + day["exports"]
            days.append({"date": key, "searches": day["searches"], "exports": day["exports"], "total": total})
        maximum = max([1, *(day["total"] for day in days)])
        return {"days": [{**day, "percent": _percent(day["total"], maximum)} for day in days]}

    def top_users_today(self, limit: int = 7) -> dict[str, Any]:
        day = self._by_date.get(day_key(self._now())) or _empty_day()
        users = sorted(day["users"].items(), key=lambda item: item[1], reverse=True)[:limit]
        maximum = max([1, *(count for _, count in users)])
        return {
            "users": [
                {"user": user, "count": count, "percent": _percent(count, maximum)} for user, count in users
            ]
        }

    def anomaly_hints(self, window_hours: int = 6) -> dict[str, Any]:
        # Compare the current hour against the average of the preceding window.
        series = self.hourly_series(window_hours + 1)
        current = series[-1]
        baseline = series[:-1]

        def average(key: str) -> float:
            return sum(item[key] for item in baseline) / len(baseline) if baseline else 0.0

        hints = []
        avg_searches = average("searches")
        if (avg_searches > 0 and current["searches"] >= avg_searches * 2 and current["searches"] >= 10) or (
            avg_searches == 0 and current["searches"] >= 20
        ):
            hints.append({"type": "searches_spike", "current": current["searches"], "baseline": round(avg_searches, 1)})
        avg_exports = average("exports")
        if (avg_exports > 0 and current["exports"] >= avg_exports * 2 and current["exports"] >= 5) or (
            avg_exports == 0 and current["exports"] >= 10
        ):
            hints.append({"type": "exports_spike", "current": current["exports"], "baseline": round(avg_exports, 1)})
        return {"hour": current["hour"], "hints": hints}

    def activity(self, limit: int | None = None) -> list[dict[str, Any]]:
        entries = self._activity if limit is None else self._activity[:limit]
        return [dict(entry) for entry in entries]
