from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


ActionType = Literal["github_issue", "in_app_notification", "escalate_review"]
TriggerMode = Literal["any", "all"]
LogStatus = Literal["pending", "success", "error"]
Severity = Literal["info", "warning", "critical"]
Priority = Literal["low", "medium", "high", "critical"]

REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"


def normalize_tags(values: list[str]) -> list[str]:
    """Strip whitespace, drop blanks and duplicates, keep first-seen order."""
    seen: set[str] = set()
    normalized: list[str] = []
    for value in values:
        tag = str(value).strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        normalized.append(tag)
    return normalized


class GithubIssueConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action_type: Literal["github_issue"]
    repo: str = Field(pattern=REPO_PATTERN)
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    title: str | None = Field(default=None, max_length=256)


class InAppNotificationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action_type: Literal["in_app_notification"]
    severity: Severity = "info"
    notify_message: str | None = Field(default=None, max_length=2000)


class EscalateReviewConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action_type: Literal["escalate_review"]
    priority: Priority = "high"


ActionConfig = Annotated[
    GithubIssueConfig | InAppNotificationConfig | EscalateReviewConfig,
    Field(discriminator="action_type"),
]

_action_config_adapter = TypeAdapter(ActionConfig)


def parse_action_config(action_type: str, config: dict[str, Any] | None) -> GithubIssueConfig | InAppNotificationConfig | EscalateReviewConfig:
    payload = dict(config or {})
    payload.pop("action_type", None)
    return _action_config_adapter.validate_python({**payload, "action_type": action_type})


def dump_action_config(config: GithubIssueConfig | InAppNotificationConfig | EscalateReviewConfig) -> dict[str, Any]:
    return config.model_dump(mode="json", exclude={"action_type"}, exclude_none=True)


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger_tags: list[str] = Field(min_length=1)
    trigger_mode: TriggerMode = "any"
    action_type: ActionType
    action_config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @field_validator("trigger_tags")
    @classmethod
    def validate_trigger_tags(cls, value: list[str]) -> list[str]:
        tags = normalize_tags(value)
        if not tags:
            raise ValueError("trigger_tags must contain at least one non-blank tag")
        return tags

    @model_validator(mode="after")
    def validate_action_config(self) -> "AutomationRuleCreate":
        self.action_config = dump_action_config(parse_action_config(self.action_type, self.action_config))
        return self


class AutomationRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger_tags: list[str] | None = None
    trigger_mode: TriggerMode | None = None
    action_type: ActionType | None = None
    action_config: dict[str, Any] | None = None
    enabled: bool | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @field_validator("trigger_tags")
    @classmethod
    def validate_trigger_tags(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        tags = normalize_tags(value)
        if not tags:
            raise ValueError("trigger_tags must contain at least one non-blank tag")
        return tags


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    description: str | None
    trigger_tags: list[str]
    trigger_mode: str
    action_type: str
    action_config: dict[str, Any]
    enabled: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


class BulkToggleRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)
    enabled: bool


class BulkToggleResult(BaseModel):
    id: UUID
    enabled: bool


class BulkToggleResponse(BaseModel):
    updated: int
    results: list[BulkToggleResult]


class BulkDeleteRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class BulkDeleteResponse(BaseModel):
    deleted: int


class TriggerRequest(BaseModel):
    export_id: str = Field(min_length=1, max_length=255)
    tags: list[str] = Field(default_factory=list)
    previous_tags: list[str] = Field(default_factory=list)

    @field_validator("export_id")
    @classmethod
    def strip_export_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("export_id must not be blank")
        return stripped

    @field_validator("tags", "previous_tags")
    @classmethod
    def clean_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)


class TriggeredRule(BaseModel):
    rule_id: UUID
    rule_name: str
    action_type: str
    log_id: UUID


class TriggerResponse(BaseModel):
    triggered: int
    rules: list[TriggeredRule]
    message: str | None = None


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    rule_id: UUID | None
    export_id: str
    action_type: str
    status: str
    result: dict[str, Any] | None
    error_message: str | None
    event_context: dict[str, Any]
    retry_of_log_id: UUID | None
    created_at: datetime
    completed_at: datetime | None
    rule_name: str | None = None


class AutomationLogDetail(AutomationLogRead):
    rule_action_type: str | None = None
    rule_trigger_tags: list[str] | None = None
    rule_action_config: dict[str, Any] | None = None
    rule_trigger_mode: str | None = None
    rule_description: str | None = None


class AutomationLogPage(BaseModel):
    logs: list[AutomationLogRead]
    total: int
    page: int
    limit: int


class LogListFilters(BaseModel):
    rule_id: UUID | None = None
    export_id: str | None = None
    status: LogStatus | None = None
    action_type: ActionType | None = None
    date_from: date | None = None
    date_to: date | None = None
    tag: str | None = None
    search: str | None = None
    sort_by: str = "created_at"
    sort_dir: str = "desc"
    page: int = 1
    limit: int = 50


class ClearLogsRequest(BaseModel):
    rule_id: UUID | None = None
    status: LogStatus | None = None
    older_than_days: int | None = Field(default=None, ge=1)


class AnalyticsFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: UUID | None = None
    status: LogStatus | None = None
    date_from: date | None = None
    date_to: date | None = None


class AnalyticsStats(BaseModel):
    total_executions: int
    success_count: int
    error_count: int
    pending_count: int
    success_rate: float
    active_rules: int
    unique_exports: int


class TrendPoint(BaseModel):
    date: str
    total: int
    success: int
    errors: int
    pending: int


class StatusCount(BaseModel):
    status: str
    count: int


class ActionTypeCount(BaseModel):
    action_type: str
    count: int


class RuleBreakdown(BaseModel):
    rule_id: UUID | None
    rule_name: str | None
    action_type: str
    rule_enabled: bool | None
    total: int
    success: int
    errors: int


class TagCount(BaseModel):
    tag: str
    count: int


class RecentError(BaseModel):
    id: UUID
    rule_id: UUID | None
    export_id: str
    action_type: str
    error_message: str | None
    created_at: datetime
    rule_name: str | None


class HourlyCount(BaseModel):
    hour: int
    count: int


class AnalyticsSnapshot(BaseModel):
    stats: AnalyticsStats
    trend: list[TrendPoint]
    status_breakdown: list[StatusCount]
    rule_breakdown: list[RuleBreakdown]
    action_type_breakdown: list[ActionTypeCount]
    top_tags: list[TagCount]
    recent_errors: list[RecentError]
    hourly_activity: list[HourlyCount]
    filters: AnalyticsFilters


class AutomationNotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID | None
    log_id: UUID
    export_id: str
    severity: str
    message: str
    status: str
    created_at: datetime


class ExportReviewFlagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID | None
    log_id: UUID
    export_id: str
    priority: str
    reason: str | None
    status: str
    created_at: datetime
