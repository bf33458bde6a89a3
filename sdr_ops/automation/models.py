from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, JSON, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sdr_ops.core.database import Base


ACTION_TYPES = ("github_issue", "in_app_notification", "escalate_review")
TRIGGER_MODES = ("any", "all")
LOG_STATUSES = ("pending", "success", "error")
TERMINAL_LOG_STATUSES = frozenset({"success", "error"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationRule(Base):
    __tablename__ = "automation_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_tags: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    trigger_mode: Mapped[str] = mapped_column(String(8), nullable=False, default="any", server_default="any")
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class AutomationLog(Base):
    __tablename__ = "automation_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # no FK: logs outlive rule edits and are removed explicitly on rule delete
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    export_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    retry_of_log_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AutomationNotification(Base):
    __tablename__ = "automation_notification"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    log_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    export_id: Mapped[str] = mapped_column(String(255), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info", server_default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Queued", server_default="Queued")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("log_id", name="uq_automation_notification_log_id"),)


class ExportReviewFlag(Base):
    __tablename__ = "export_review_flag"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    log_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    export_id: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="high", server_default="high")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Open", server_default="Open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("log_id", name="uq_export_review_flag_log_id"),)


Index("ix_automation_rule_org_enabled", AutomationRule.organization_id, AutomationRule.enabled)
Index("ix_automation_rule_org_created", AutomationRule.organization_id, AutomationRule.created_at)
Index("ix_automation_log_org_created", AutomationLog.organization_id, AutomationLog.created_at)
Index("ix_automation_log_org_rule", AutomationLog.organization_id, AutomationLog.rule_id)
Index("ix_automation_log_org_status", AutomationLog.organization_id, AutomationLog.status)
Index("ix_automation_log_export_id", AutomationLog.export_id)
Index("ix_automation_notification_org_created", AutomationNotification.organization_id, AutomationNotification.created_at)
Index("ix_export_review_flag_org_status", ExportReviewFlag.organization_id, ExportReviewFlag.status)
