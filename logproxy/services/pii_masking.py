from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from logproxy.domain.models import PiiAction, PiiRule
from logproxy.services.wildcard import wildcard_to_regex


MASKED = "[masked]"

# Returned by a transform callback to drop the node from its parent container.
REMOVE = object()

JsonValue = Any
NodeHandler = Callable[[str, JsonValue], Optional[object]]


@dataclass(frozen=True)
class PiiMatcher:
    pattern: str
    action: PiiAction

    def matches(self, path: str) -> bool:
        return wildcard_to_regex(self.pattern).fullmatch(path) is not None


def build_matchers(rules: Iterable[PiiRule]) -> list[PiiMatcher]:
    return [PiiMatcher(pattern=rule.pattern, action=rule.action) for rule in rules if rule.pattern]


def pii_action(path: str, matchers: list[PiiMatcher]) -> PiiAction | None:
    """Resolve the action for ``path``: hide wins outright, then mask beats partial."""
    action: PiiAction | None = None
    for matcher in matchers:
        if not matcher.matches(path):
            continue
        if matcher.action == "hide":
            return "hide"
        if matcher.action == "mask":
            action = "mask"
        elif action != "mask":
            action = "partial"
    return action


def partial_mask(value: JsonValue) -> JsonValue:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return MASKED
    # Render scalars the way they appear on the wire (true, 42) before slicing.
    raw = value if isinstance(value, str) else json.dumps(value)
    if not raw:
        return ""
    if len(raw) <= 2:
        return "*" * len(raw)
    if len(raw) <= 4:
        return f"{raw[0]}***{raw[-1]}"
    return f"{raw[:2]}***{raw[-2:]}"


def _join(path: str, segment: str) -> str:
    return f"{path}.{segment}" if path else segment


def transform(value: JsonValue, handler: NodeHandler, path: str = "") -> JsonValue:
    """Depth-first copy of a JSON tree driven by a per-path callback.

    ``handler(path, value)`` returns ``None`` to recurse unchanged, ``REMOVE`` to
    drop the node, or a replacement wrapped in a one-tuple. Array indices are
    path segments, so ``items.0.email`` addresses the first element.
    """
    outcome = handler(path, value)
    if outcome is REMOVE:
        return REMOVE
    if outcome is not None:
        return outcome[0]
    if isinstance(value, list):
        items = []
        for index, item in enumerate(value):
            result = transform(item, handler, _join(path, str(index)))
            if result is not REMOVE:
                items.append(result)
        return items
    if isinstance(value, dict):
        fields = {}
        for key, item in value.items():
            result = transform(item, handler, _join(path, str(key)))
            if result is not REMOVE:
                fields[key] = result
        return fields
    return value


def _pii_handler(matchers: list[PiiMatcher]) -> NodeHandler:
    def handle(path: str, value: JsonValue) -> object | None:
        action = pii_action(path, matchers)
        if action == "hide":
            return REMOVE
        if action == "mask":
            return (MASKED,)
        if action == "partial":
            return (partial_mask(value),)
        return None

    return handle


def mask_document(document: JsonValue, rules: Iterable[PiiRule]) -> JsonValue:
    """Return a masked copy of ``document``; a hidden root yields ``None``."""
    matchers = build_matchers(rules)
    if not matchers:
        return copy.deepcopy(document)
    result = transform(document, _pii_handler(matchers))
    return None if result is REMOVE else result


def mask_hits(hits: list[Any], rules: Iterable[PiiRule]) -> list[Any]:
    # Only _source is masked; _id, _index and _score are metadata.
    matchers = build_matchers(rules)
    if not hits or not matchers:
        return hits
    handler = _pii_handler(matchers)
    masked = []
    for hit in hits:
        if not isinstance(hit, dict) or not hit.get("_source"):
            masked.append(hit)
            continue
        source = transform(hit["_source"], handler)
        masked.append({**hit, "_source": {} if source is REMOVE else source})
    return masked


def mask_search_response(data: Any, rules: Iterable[PiiRule]) -> Any:
    if not isinstance(data, dict):
        return data
    hits_block = data.get("hits")
    if not isinstance(hits_block, dict) or not isinstance(hits_block.get("hits"), list):
        return data
    return {**data, "hits": {**hits_block, "hits": mask_hits(hits_block["hits"], rules)}}
