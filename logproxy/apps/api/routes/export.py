from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import Field

from logproxy.apps.api.deps import (
    caller_name,
    client_ip,
    get_current_caller,
    get_features,
    get_policy,
    get_state,
)
from logproxy.apps.api.routes.search import INDEX_NOT_ALLOWED
from logproxy.apps.api.state import AppState
from logproxy.core.errors import PolicyViolationError, RequestValidationFailed, UpstreamError
from logproxy.domain.models import Caller, CamelModel, FeatureToggles, PolicySnapshot
from logproxy.services.export_stream import EXPORT_FORMATS, ExportStreamer, estimate_export
from logproxy.services.index_access import is_allowed
from logproxy.services.query_rewrite import apply_recent_only_filter, extract_query_text


logger = logging.getLogger(__name__)
router = APIRouter()


class ExportEstimateRequest(CamelModel):
    query: dict[str, Any] | None = None
    index_pattern: str | None = None


class ExportRequest(ExportEstimateRequest):
    size: int | None = Field(default=None)


def _authorize_export(
    policy: PolicySnapshot,
    caller: Caller | None,
    features: FeatureToggles,
    index_pattern: str,
) -> None:
    if not features.exports:
        raise PolicyViolationError("Feature disabled")
    if not is_allowed(policy, caller, index_pattern):
        raise PolicyViolationError(INDEX_NOT_ALLOWED)


def _effective_query(
    policy: PolicySnapshot,
    features: FeatureToggles,
    query: dict[str, Any] | None,
    index_pattern: str,
) -> dict[str, Any]:
    if features.limit_to_7_days:
        return apply_recent_only_filter(policy, query, index_pattern)
    return query or {"match_all": {}}


@router.post("/export/estimate")
async def export_estimate(
    payload: ExportEstimateRequest,
    request: Request,
    state: AppState = Depends(get_state),
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> dict[str, Any]:
    index_pattern = payload.index_pattern or policy.default_index_pattern
    _authorize_export(policy, caller, features, index_pattern)
    request.state.upstream_label = "Estimate failed"
    try:
        return await estimate_export(
            state.executor,
            index_pattern=index_pattern,
            query=_effective_query(policy, features, payload.query, index_pattern),
            sample_size=state.settings.export_estimate_sample,
            max_export_size=policy.max_export_size,
        )
    except UpstreamError as exc:
        await state.error_log.record(
            "export-estimate",
            {"status": exc.status, "detail": exc.detail, "indexPattern": index_pattern},
        )
        raise


@router.post("/export/{export_format}")
async def export(
    export_format: str,
    payload: ExportRequest,
    request: Request,
    state: AppState = Depends(get_state),
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
    features: FeatureToggles = Depends(get_features),
) -> StreamingResponse:
    if export_format not in EXPORT_FORMATS:
        raise RequestValidationFailed(f"Unsupported export format: {export_format}")
    index_pattern = payload.index_pattern or policy.default_index_pattern
    _authorize_export(policy, caller, features, index_pattern)
    size = policy.max_export_size if payload.size is None else payload.size
    # Every check that can reject the export happens before the response is committed.
    if size > policy.max_export_size:
        raise RequestValidationFailed(f"Max export size: {policy.max_export_size} records")
    if size < 1:
        raise RequestValidationFailed("Export size must be at least 1")

    ip = client_ip(request)
    user = caller_name(caller)
    query_text = extract_query_text(payload.query)

    def _record_export(exported: int) -> None:
        state.metrics.record_export(
            export_format,
            ip,
            index_pattern=index_pattern,
            size=size,
            query=query_text,
            user=user,
        )

    async def _record_failure(exc: Exception) -> None:
        detail = exc.detail if isinstance(exc, UpstreamError) else str(exc)
        await state.error_log.record("export", {"detail": detail, "indexPattern": index_pattern, "format": export_format})

    streamer = ExportStreamer(
        state.executor,
        index_pattern=index_pattern,
        query=_effective_query(policy, features, payload.query, index_pattern),
        size=size,
        export_format=export_format,
        pii_rules=list(policy.pii_field_rules),
        pii_unmasked=features.pii_unmasked,
        batch_size=state.settings.export_batch_size,
        scroll_ttl=state.settings.export_scroll_ttl,
        is_disconnected=request.is_disconnected,
        on_complete=_record_export,
        on_error=_record_failure,
        telemetry=state.telemetry,
    )
    filename = f"logs-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.{export_format}.gz"
    logger.info("export_started index=%s format=%s size=%s user=%s", index_pattern, export_format, size, user)
    return StreamingResponse(
        streamer.stream(),
        media_type="application/gzip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
