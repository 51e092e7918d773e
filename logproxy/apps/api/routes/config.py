from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from logproxy.apps.api.deps import get_current_caller, get_features, get_policy
from logproxy.domain.models import Caller, FeatureToggles, PolicySnapshot
from logproxy.services.index_access import filter_options, is_allowed


router = APIRouter()


@router.get("/config")
async def public_config(
    policy: PolicySnapshot = Depends(get_policy),
    caller: Caller | None = Depends(get_current_caller),
) -> dict[str, Any]:
    # Only index options the caller may search are advertised.
    index_options = filter_options(policy, caller, policy.index_options)
    settings = [
        entry.model_dump(by_alias=True)
        for entry in policy.index_pattern_settings
        if is_allowed(policy, caller, entry.pattern)
    ]
    default_pattern = policy.default_index_pattern
    if not is_allowed(policy, caller, default_pattern):
        default_pattern = index_options[0].split("|")[0].strip() if index_options else ""
    return {
        "defaultIndexPattern": default_pattern,
        "indexOptions": index_options,
        "indexPatternSettings": settings,
        "fieldExplorerFields": list(policy.field_explorer_fields),
        "fieldExplorerTopN": policy.field_explorer_top_n,
        "maxExportSize": policy.max_export_size,
    }


@router.get("/feature-toggles")
async def feature_toggles(features: FeatureToggles = Depends(get_features)) -> dict[str, bool]:
    return features.model_dump(by_alias=True)
