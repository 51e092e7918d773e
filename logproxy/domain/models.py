from __future__ import annotations

from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


PiiAction = Literal["hide", "mask", "partial"]
Role = Literal["viewer", "editor", "admin"]
SearchMode = Literal["", "exact", "relevant"]

DEFAULT_INDEX_OPTIONS = ["logs-*", "app-logs-*", "*"]
DEFAULT_FIELD_EXPLORER_FIELDS = ["service", "level", "host", "env", "logger", "error_code"]


class CamelModel(BaseModel):
    # Persisted JSON and the browser UI both speak camelCase.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(item).strip() for item in values if str(item).strip()]


class PiiRule(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    pattern: str
    action: PiiAction = "mask"


class IndexPatternSetting(CamelModel):
    pattern: str
    time_field: str = ""
    search_fields: list[str] = Field(default_factory=list)
    search_mode: SearchMode = ""

    @field_validator("pattern", mode="before")
    @classmethod
    def _strip_label(cls, value: Any) -> str:
        # Options may carry a "|label" suffix for display; only the pattern matters here.
        return str(value or "").split("|")[0].strip()

    @field_validator("search_fields", mode="before")
    @classmethod
    def _clean_fields(cls, value: Any) -> list[str]:
        return _clean_strings(value)

    @field_validator("search_mode", mode="before")
    @classmethod
    def _coerce_mode(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in {"exact", "relevant"} else ""


class FeatureToggles(CamelModel):
    exports: bool = True
    bookmarks: bool = True
    rules: bool = True
    query_builder: bool = True
    limit_to_7_days: bool = Field(default=False, alias="limitTo7Days")
    pii_unmasked: bool = False
    show_full_results: bool = False

    @classmethod
    def none(cls) -> "FeatureToggles":
        # Starting point for OR-combining team toggles.
        return cls(
            exports=False,
            bookmarks=False,
            rules=False,
            query_builder=False,
            limit_to_7_days=False,
            pii_unmasked=False,
            show_full_results=False,
        )

    def merge(self, other: "FeatureToggles") -> "FeatureToggles":
        return FeatureToggles(
            exports=self.exports or other.exports,
            bookmarks=self.bookmarks or other.bookmarks,
            rules=self.rules or other.rules,
            query_builder=self.query_builder or other.query_builder,
            limit_to_7_days=self.limit_to_7_days or other.limit_to_7_days,
            pii_unmasked=self.pii_unmasked or other.pii_unmasked,
            show_full_results=self.show_full_results or other.show_full_results,
        )


class PolicySnapshot(CamelModel):
    """Admin-configured access, PII and toggle policy.

    Instances are treated as immutable; updates build a new snapshot and swap it
    in whole so concurrent readers never observe a half-applied change.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    default_index_pattern: str = "logs-*"
    index_options: list[str] = Field(default_factory=lambda: list(DEFAULT_INDEX_OPTIONS))
    index_pattern_settings: list[IndexPatternSetting] = Field(default_factory=list)
    team_index_access: dict[str, list[str]] = Field(default_factory=dict)
    user_index_access: dict[str, list[str]] = Field(default_factory=dict)
    pii_field_rules: list[PiiRule] = Field(default_factory=list)
    feature_toggles: dict[str, FeatureToggles] = Field(default_factory=dict)
    max_export_size: int = Field(default=100000, ge=1)
    field_explorer_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_FIELD_EXPLORER_FIELDS))
    field_explorer_top_n: int = Field(default=10, ge=1)

    @field_validator("default_index_pattern", mode="before")
    @classmethod
    def _default_pattern(cls, value: Any) -> str:
        return str(value or "").strip() or "logs-*"

    @field_validator("index_options", "field_explorer_fields", mode="before")
    @classmethod
    def _clean_lists(cls, value: Any) -> list[str]:
        return _clean_strings(value)

    @field_validator("index_pattern_settings", mode="before")
    @classmethod
    def _drop_empty_settings(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        kept = []
        for entry in value:
            if isinstance(entry, IndexPatternSetting):
                kept.append(entry)
                continue
            if not isinstance(entry, dict):
                continue
            if str(entry.get("pattern") or "").split("|")[0].strip():
                kept.append(entry)
        return kept

    @field_validator("team_index_access", "user_index_access", mode="before")
    @classmethod
    def _clean_access(cls, value: Any) -> dict[str, list[str]]:
        if not isinstance(value, dict):
            return {}
        cleaned: dict[str, list[str]] = {}
        for key, patterns in value.items():
            patterns = _clean_strings(patterns)
            if patterns and str(key).strip():
                cleaned[str(key).strip()] = patterns
        return cleaned

    @field_validator("pii_field_rules", mode="before")
    @classmethod
    def _normalize_pii_rules(cls, value: Any) -> list[dict[str, str]]:
        # Bare strings mean "mask"; unknown actions degrade to mask rather than leaking.
        if not isinstance(value, list):
            return []
        rules: list[dict[str, str]] = []
        for rule in value:
            if isinstance(rule, str):
                pattern, action = rule.strip(), "mask"
            elif isinstance(rule, dict):
                pattern = str(rule.get("pattern") or "").strip()
                action = rule.get("action")
            elif isinstance(rule, PiiRule):
                pattern, action = rule.pattern, rule.action
            else:
                continue
            if not pattern:
                continue
            rules.append({"pattern": pattern, "action": action if action in {"hide", "partial"} else "mask"})
        return rules

    def index_setting(self, index_pattern: str) -> IndexPatternSetting | None:
        for entry in self.index_pattern_settings:
            if entry.pattern == index_pattern:
                return entry
        return None

    def pii_rules_fingerprint(self) -> str:
        return "[" + ",".join(f"{rule.pattern}:{rule.action}" for rule in self.pii_field_rules) + "]"


class Caller(CamelModel):
    id: str
    username: str
    role: Role = "viewer"
    teams: list[str] = Field(default_factory=list)


class AlertRule(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    query: str
    threshold: int = 0
    window_minutes: int = 60
    team: str | None = None
    email: str | None = None

    @field_validator("name", "query", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("team", "email", mode="before")
    @classmethod
    def _optional_strip(cls, value: Any) -> str | None:
        text = str(value or "").strip()
        return text or None

    @field_validator("threshold", mode="before")
    @classmethod
    def _threshold(cls, value: Any) -> int:
        try:
            return int(float(value or 0))
        except (TypeError, ValueError):
            return 0

    @field_validator("window_minutes", mode="before")
    @classmethod
    def _window(cls, value: Any) -> int:
        try:
            minutes = int(float(value or 60))
        except (TypeError, ValueError):
            return 60
        return minutes if minutes > 0 else 60
