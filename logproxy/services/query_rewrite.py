from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

from logproxy.core.errors import RequestValidationFailed
from logproxy.domain.models import PolicySnapshot


DEFAULT_TIME_FIELDS = ("timestamp", "@timestamp")
RECENT_WINDOW = timedelta(days=7)
# Extra slack so a query issued right at the boundary does not flap between runs.
RECENT_GRACE = timedelta(minutes=5)
DATE_FORMAT = "strict_date_optional_time"
# Keys accepted next to the DSL body on /search; never forwarded upstream.
EXTRA_SEARCH_KEYS = ("q", "mode", "start", "end")

_ADVANCED_TOKENS = re.compile(r"[:()]|\b(AND|OR|NOT)\b")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(value: datetime) -> str:
    # Millisecond precision with a Z suffix, accepted by strict_date_optional_time.
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def time_fields(policy: PolicySnapshot, index_pattern: str) -> list[str]:
    setting = policy.index_setting(index_pattern)
    fields = list(DEFAULT_TIME_FIELDS)
    if setting is not None and setting.time_field:
        fields = [setting.time_field] + [field for field in fields if field != setting.time_field]
    return fields


def _range_filter(fields: list[str], bounds: dict[str, Any]) -> dict[str, Any]:
    # Heterogeneous indices name the time field differently, so any candidate may satisfy the range.
    def range_for(field: str) -> dict[str, Any]:
        return {"range": {field: {**bounds, "format": DATE_FORMAT}}}

    if len(fields) == 1:
        return range_for(fields[0])
    return {"bool": {"should": [range_for(field) for field in fields], "minimum_should_match": 1}}


def recent_cutoff(now: datetime | None = None) -> str:
    return iso_timestamp((now or _utc_now()) - RECENT_WINDOW - RECENT_GRACE)


def build_recent_only_filter(
    policy: PolicySnapshot,
    index_pattern: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    return _range_filter(time_fields(policy, index_pattern), {"gte": recent_cutoff(now)})


def build_time_range_filter(
    policy: PolicySnapshot,
    index_pattern: str,
    start: str,
    end: str,
) -> dict[str, Any]:
    return _range_filter(time_fields(policy, index_pattern), {"gte": start, "lte": end})


def merge_clause(query: Any, clause: dict[str, Any], *, occur: str = "filter") -> dict[str, Any]:
    """Add ``clause`` to ``query`` under ``bool.<occur>`` without dropping caller clauses.

    The input is never mutated; a new top-level dict is returned.
    """
    if not query:
        return {"bool": {occur: [clause]}}
    if not isinstance(query, dict):
        raise RequestValidationFailed("query must be an object")
    existing_bool = query.get("bool")
    if isinstance(existing_bool, dict):
        next_bool = dict(existing_bool)
        current = next_bool.get(occur)
        if isinstance(current, list):
            next_bool[occur] = [*current, clause]
        elif current:
            next_bool[occur] = [current, clause]
        else:
            next_bool[occur] = [clause]
        return {**query, "bool": next_bool}
    if occur == "must":
        return {"bool": {"must": [query, clause]}}
    return {"bool": {"must": [query], occur: [clause]}}


def apply_recent_only_filter(
    policy: PolicySnapshot,
    query: Any,
    index_pattern: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    return merge_clause(query, build_recent_only_filter(policy, index_pattern, now=now))


def is_advanced_query(text: str) -> bool:
    return bool(_ADVANCED_TOKENS.search(text)) or '"' in text


def build_query_clause(
    policy: PolicySnapshot,
    index_pattern: str,
    text: str,
    mode: str | None = None,
) -> dict[str, Any]:
    setting = policy.index_setting(index_pattern)
    fields = list(setting.search_fields) if setting is not None else []
    effective_mode = mode or (setting.search_mode if setting is not None else "") or "relevant"
    if effective_mode == "exact" and not is_advanced_query(text):
        if fields:
            return {"multi_match": {"query": text, "fields": fields, "type": "phrase"}}
        return {"match_phrase": {"message": text}}
    if fields:
        return {"query_string": {"query": text, "fields": fields}}
    return {"query_string": {"query": text, "default_field": "message"}}


def apply_search_field_defaults(policy: PolicySnapshot, query: Any, index_pattern: str) -> Any:
    # Fill configured search fields into query_string clauses that name none.
    setting = policy.index_setting(index_pattern)
    if setting is None or not setting.search_fields:
        return query
    fields = list(setting.search_fields)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node
        result: dict[str, Any] = {}
        for key, value in node.items():
            if key == "query_string" and isinstance(value, dict):
                if "fields" not in value and "default_field" not in value:
                    value = {**value, "fields": fields}
                result[key] = value
            else:
                result[key] = walk(value)
        return result

    return walk(query)


def rewrite_search_body(
    policy: PolicySnapshot,
    body: dict[str, Any] | None,
    index_pattern: str,
    *,
    limit_recent: bool,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Produce the body forwarded to the search engine for one /search call."""
    rewritten = dict(body or {})
    text = rewritten.pop("q", None)
    mode = rewritten.pop("mode", None)
    start = rewritten.pop("start", None)
    end = rewritten.pop("end", None)
    if mode not in (None, "", "exact", "relevant"):
        raise RequestValidationFailed("mode must be 'exact' or 'relevant'")
    if bool(start) != bool(end):
        raise RequestValidationFailed("start and end must be provided together")

    query = rewritten.get("query")
    if isinstance(text, str) and text.strip():
        clause = build_query_clause(policy, index_pattern, text.strip(), mode)
        query = clause if not query else merge_clause(query, clause, occur="must")
    if start and end:
        query = merge_clause(query, build_time_range_filter(policy, index_pattern, str(start), str(end)))
    if query is not None:
        query = apply_search_field_defaults(policy, query, index_pattern)
    if limit_recent:
        # Server-enforced ceiling; the UI may narrow it further but never widen it.
        query = apply_recent_only_filter(policy, query, index_pattern, now=now)
    if query is not None:
        rewritten["query"] = query
    return rewritten


def extract_query_text(body: Any) -> str:
    # First query_string.query found depth-first; used as the metrics/alert key.
    if not isinstance(body, dict):
        return ""
    query_string = body.get("query_string")
    if isinstance(query_string, dict) and isinstance(query_string.get("query"), str):
        return query_string["query"]
    for value in body.values():
        if isinstance(value, dict):
            found = extract_query_text(value)
            if found:
                return found
        elif isinstance(value, list):
            for item in value:
                found = extract_query_text(item)
                if found:
                    return found
    return ""
