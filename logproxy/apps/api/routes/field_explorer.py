from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from logproxy.apps.api.deps import caller_key, get_current_caller, get_features, get_policy, get_state
from logproxy.apps.api.routes.search import INDEX_NOT_ALLOWED
from logproxy.apps.api.state import AppState
from logproxy.core.errors import PolicyViolationError, RequestValidationFailed, UpstreamError
from logproxy.domain.models import Caller, CamelModel, FeatureToggles, PiiAction, PolicySnapshot
from logproxy.services.index_access import is_allowed
from logproxy.services.pii_masking import PiiMatcher, build_matchers, partial_mask, pii_action
from logproxy.services.query_rewrite import build_recent_only_filter, build_time_range_filter
from logproxy.services.response_cache import build_cache_key


logger = logging.getLogger(__name__)
router = APIRouter()

MAX_FIELDS = 30
MAX_TOP_N = 50
_PII_STRICTNESS = {None: 0, "partial": 1, "mask": 2, "hide": 3}


class FieldExplorerRequest(CamelModel):
    index_pattern: str | None = None
    fields: list[str] = Field(default_factory=list)
    top_n: int | None = None
    start: str | None = None
    end: str | None = None


def sanitize_agg_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def pick_aggregatable_field(field: str, field_caps: dict[str, Any]) -> str | None:
    # Prefer the field itself, then its keyword sub-field; text-only fields cannot be aggregated.
    for candidate in (field, f"{field}.keyword"):
        caps = field_caps.get(candidate)
        if isinstance(caps, dict) and any(
            isinstance(entry, dict) and entry.get("aggregatable") for entry in caps.values()
        ):
            return candidate
    return None


def field_pii_action(field: str, actual: str, matchers: list[PiiMatcher]) -> PiiAction | None:
    # A keyword sub-field carries the same values as its parent; the stricter rule applies.
    return max(pii_action(field, matchers), pii_action(actual, matchers), key=_PII_STRICTNESS.__getitem__)


@router.post("/field-explorer")
async def field_explorer(
    payload: FieldExplorerRequest,
    request: Request,
    state: AppState = Depends(get_state),
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> dict[str, Any]:
    index_pattern = payload.index_pattern or policy.default_index_pattern
    if not is_allowed(policy, caller, index_pattern):
        raise PolicyViolationError(INDEX_NOT_ALLOWED)
    if bool(payload.start) != bool(payload.end):
        raise RequestValidationFailed("start and end must be provided together")
    top_n = min(max(payload.top_n or policy.field_explorer_top_n, 1), MAX_TOP_N)
    requested = payload.fields or list(policy.field_explorer_fields)
    fields = [field.strip() for field in requested[:MAX_FIELDS] if field.strip()]
    if not fields:
        return {"fields": []}

    cache_key = build_cache_key(
        operation="field-explorer",
        scope=caller_key(caller),
        index_pattern=index_pattern,
        pii_unmasked=features.pii_unmasked,
        pii_rules=policy.pii_rules_fingerprint(),
        body={
            "recentOnly": features.limit_to_7_days,
            "start": payload.start,
            "end": payload.end,
            "topN": top_n,
            "fields": fields,
        },
    )
    cached = state.cache.get(cache_key)
    if cached is not None:
        return cached

    try:
        field_caps = await state.executor.field_caps(
            index_pattern, [name for field in fields for name in (field, f"{field}.keyword")]
        )
    except UpstreamError as exc:
        # Best effort: aggregate on the raw names when capabilities are unavailable.
        logger.info("field_caps_unavailable index=%s status=%s", index_pattern, exc.status)
        field_caps = {}

    matchers = [] if features.pii_unmasked else build_matchers(policy.pii_field_rules)
    aggs: dict[str, Any] = {}
    agg_map: list[tuple[str, str, str, bool]] = []
    for field in fields:
        actual = pick_aggregatable_field(field, field_caps) if field_caps else field
        if not actual:
            continue
        action = field_pii_action(field, actual, matchers)
        if action in ("hide", "mask"):
            continue
        agg_name = sanitize_agg_name(field)
        aggs[agg_name] = {"terms": {"field": actual, "size": top_n}}
        agg_map.append((agg_name, field, actual, action == "partial"))
    if not agg_map:
        return {"fields": []}

    filters: list[dict[str, Any]] = []
    if payload.start and payload.end:
        filters.append(build_time_range_filter(policy, index_pattern, payload.start, payload.end))
    if features.limit_to_7_days:
        filters.append(build_recent_only_filter(policy, index_pattern))

    request.state.upstream_label = "Field explorer failed"
    try:
        data = await state.executor.search(
            index_pattern, {"size": 0, "query": {"bool": {"filter": filters}}, "aggs": aggs}
        )
    except UpstreamError as exc:
        await state.error_log.record(
            "field-explorer",
            {"status": exc.status, "detail": exc.detail, "indexPattern": index_pattern},
        )
        raise

    aggregations = data.get("aggregations") or {}
    result = {
        "fields": [
            {
                "field": field,
                "actualField": actual,
                "values": [
                    {
                        "value": partial_mask(bucket.get("key")) if partial else bucket.get("key"),
                        "count": bucket.get("doc_count", 0),
                    }
                    for bucket in (aggregations.get(agg_name) or {}).get("buckets", [])
                ],
            }
            for agg_name, field, actual, partial in agg_map
        ]
    }
    state.cache.set(cache_key, result)
    return result
