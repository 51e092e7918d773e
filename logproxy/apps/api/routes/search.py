from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from logproxy.apps.api.deps import (
    caller_key,
    caller_name,
    client_ip,
    get_current_caller,
    get_features,
    get_policy,
    get_state,
)
from logproxy.apps.api.state import AppState
from logproxy.core.errors import PolicyViolationError, UpstreamError
from logproxy.domain.models import Caller, FeatureToggles, PolicySnapshot
from logproxy.services.index_access import is_allowed
from logproxy.services.pii_masking import mask_search_response
from logproxy.services.query_rewrite import extract_query_text, rewrite_search_body
from logproxy.services.response_cache import build_cache_key


logger = logging.getLogger(__name__)
router = APIRouter()

INDEX_NOT_ALLOWED = "Index not allowed for your team."


@router.post("/search/{index_pattern}")
@router.post("/search/{index_pattern}/_search", include_in_schema=False)
async def search(
    index_pattern: str,
    request: Request,
    payload: dict[str, Any] | None = Body(default=None),
    state: AppState = Depends(get_state),
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> Any:
    # guard -> rewrite -> cache -> execute -> mask -> cache
    if not is_allowed(policy, caller, index_pattern):
        raise PolicyViolationError(INDEX_NOT_ALLOWED)
    body = rewrite_search_body(policy, payload, index_pattern, limit_recent=features.limit_to_7_days)

    cache_key = build_cache_key(
        operation="search",
        scope=caller_key(caller),
        index_pattern=index_pattern,
        pii_unmasked=features.pii_unmasked,
        pii_rules=policy.pii_rules_fingerprint(),
        body=body,
    )
    cached = state.cache.get(cache_key)
    if cached is not None:
        return cached

    request.state.upstream_label = "Search failed"
    try:
        data = await state.executor.search(index_pattern, body)
    except UpstreamError as exc:
        logger.warning("search_failed index=%s status=%s", index_pattern, exc.status)
        await state.error_log.record(
            "search",
            {"status": exc.status, "detail": exc.detail, "indexPattern": index_pattern},
        )
        raise

    query_text = extract_query_text(payload) or str((payload or {}).get("q") or "").strip()
    state.metrics.record_search(
        query_text,
        client_ip(request),
        index_pattern=index_pattern,
        user=caller_name(caller),
    )
    result = data if features.pii_unmasked else mask_search_response(data, policy.pii_field_rules)
    state.cache.set(cache_key, result)
    return result
