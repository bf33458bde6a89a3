from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import Select, and_, or_, select
from sqlalchemy.orm import Session

from sdr_ops import audit
from sdr_ops.automation.analytics import AutomationAnalyticsService, analytics_cache, day_start, next_day_start
from sdr_ops.automation.matcher import TagChangeEvent, TriggerMatcher
from sdr_ops.automation.models import AutomationLog, AutomationRule, utcnow
from sdr_ops.automation.queue import DispatchQueue, get_dispatch_queue
from sdr_ops.automation.repository import AutomationLogRepository, AutomationRuleRepository, SideEffectRepository
from sdr_ops.automation.schemas import (
    AnalyticsFilters,
    AnalyticsSnapshot,
    AutomationLogDetail,
    AutomationLogPage,
    AutomationLogRead,
    AutomationNotificationRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    BulkToggleResponse,
    BulkToggleResult,
    ClearLogsRequest,
    ExportReviewFlagRead,
    LogListFilters,
    TriggeredRule,
    TriggerRequest,
    TriggerResponse,
    dump_action_config,
    parse_action_config,
)
from sdr_ops.core.config import get_settings
from sdr_ops.metrics import observe_trigger_event


logger = logging.getLogger("app.automation.service")
tracer = trace.get_tracer("app.automation.service")

PERM_RULES_READ = "automation.rules.read"
PERM_RULES_MANAGE = "automation.rules.manage"
PERM_LOGS_READ = "automation.logs.read"
PERM_LOGS_MANAGE = "automation.logs.manage"
PERM_TRIGGER = "automation.trigger"

ALL_PERMISSIONS = frozenset({PERM_RULES_READ, PERM_RULES_MANAGE, PERM_LOGS_READ, PERM_LOGS_MANAGE, PERM_TRIGGER})

_NON_NULLABLE_RULE_FIELDS = ("name", "trigger_tags", "trigger_mode", "action_type", "action_config", "enabled")


@dataclass
class ActorUser:
    user_id: str
    organization_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _require_permission(actor_user: ActorUser, permission: str) -> None:
    if permission not in actor_user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(slots=True)
class AutomationRuleService:
    rule_repository: AutomationRuleRepository = AutomationRuleRepository()
    log_repository: AutomationLogRepository = AutomationLogRepository()

    def list_rules(self, session: Session, actor_user: ActorUser) -> list[AutomationRuleRead]:
        _require_permission(actor_user, PERM_RULES_READ)
        rows = self.rule_repository.list_all(session, actor_user.organization_id)
        return [self._to_read(row) for row in rows]

    def get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRuleRead:
        _require_permission(actor_user, PERM_RULES_READ)
        return self._to_read(self._load_rule(session, actor_user, rule_id))

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        _require_permission(actor_user, PERM_RULES_MANAGE)

        rule = AutomationRule(
            organization_id=actor_user.organization_id,
            name=dto.name,
            description=dto.description,
            trigger_tags=dto.trigger_tags,
            trigger_mode=dto.trigger_mode,
            action_type=dto.action_type,
            action_config=dto.action_config,
            enabled=dto.enabled,
            created_by=actor_user.user_id,
        )
        session.add(rule)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type="automation.rule",
            entity_id=str(rule.id),
            action="automation.rule.created",
            before=None,
            after=self._to_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        logger.info(
            "automation.rule_created",
            extra={"organization_id": rule.organization_id, "rule_id": str(rule.id), "action_type": rule.action_type},
        )
        return self._to_read(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: AutomationRuleUpdate,
    ) -> AutomationRuleRead:
        _require_permission(actor_user, PERM_RULES_MANAGE)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
        null_fields = [key for key in _NON_NULLABLE_RULE_FIELDS if key in payload and payload[key] is None]
        if null_fields:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Fields cannot be null: {', '.join(null_fields)}",
            )

        rule = self._load_rule(session, actor_user, rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        if "action_type" in payload or "action_config" in payload:
            action_type = payload.get("action_type", rule.action_type)
            action_config = payload.get("action_config", rule.action_config)
            try:
                payload["action_config"] = dump_action_config(parse_action_config(action_type, action_config))
            except ValidationError as exc:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=exc.errors(include_url=False, include_context=False),
                ) from exc

        for key in ["name", "description", "trigger_tags", "trigger_mode", "action_type", "action_config", "enabled"]:
            if key in payload:
                setattr(rule, key, payload[key])
        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type="automation.rule",
            entity_id=str(rule.id),
            action="automation.rule.updated",
            before=before,
            after=self._to_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        return self._to_read(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> int:
        """Delete a rule and its execution logs in one transaction; returns the number of logs removed."""
        _require_permission(actor_user, PERM_RULES_MANAGE)
        rule = self._load_rule(session, actor_user, rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        deleted_logs = self.log_repository.delete_for_rules(session, actor_user.organization_id, [rule.id])
        self.rule_repository.delete_many(session, actor_user.organization_id, [rule.id])

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type="automation.rule",
            entity_id=str(rule_id),
            action="automation.rule.deleted",
            before=before,
            after={"deleted_logs": deleted_logs},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        analytics_cache.invalidate(actor_user.organization_id)
        return deleted_logs

    def bulk_toggle(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_ids: list[uuid.UUID],
        enabled: bool,
    ) -> BulkToggleResponse:
        _require_permission(actor_user, PERM_RULES_MANAGE)
        updated_ids = self.rule_repository.set_enabled(session, actor_user.organization_id, rule_ids, enabled, utcnow())

        for rule_id in updated_ids:
            audit.record(
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                entity_type="automation.rule",
                entity_id=str(rule_id),
                action="automation.rule.toggled",
                before=None,
                after={"enabled": enabled},
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        return BulkToggleResponse(
            updated=len(updated_ids),
            results=[BulkToggleResult(id=rule_id, enabled=enabled) for rule_id in updated_ids],
        )

    def bulk_delete(self, session: Session, actor_user: ActorUser, rule_ids: list[uuid.UUID]) -> int:
        _require_permission(actor_user, PERM_RULES_MANAGE)
        owned = list(self.rule_repository.by_ids(session, actor_user.organization_id, rule_ids))
        if not owned:
            return 0

        self.log_repository.delete_for_rules(session, actor_user.organization_id, owned)
        deleted = self.rule_repository.delete_many(session, actor_user.organization_id, owned)

        for rule_id in owned:
            audit.record(
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                entity_type="automation.rule",
                entity_id=str(rule_id),
                action="automation.rule.deleted",
                before=None,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        analytics_cache.invalidate(actor_user.organization_id)
        return deleted

    def _load_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRule:
        rule = self.rule_repository.get(session, actor_user.organization_id, rule_id)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
        return rule

    def _to_read(self, rule: AutomationRule) -> AutomationRuleRead:
        return AutomationRuleRead.model_validate(rule)


class AutomationTriggerService:
    def __init__(self, matcher: TriggerMatcher | None = None, dispatch_queue: DispatchQueue | None = None) -> None:
        self.matcher = matcher or TriggerMatcher()
        self._dispatch_queue = dispatch_queue

    @property
    def dispatch_queue(self) -> DispatchQueue:
        return self._dispatch_queue or get_dispatch_queue()

    def trigger_for(self, session: Session, actor_user: ActorUser, request: TriggerRequest) -> TriggerResponse:
        _require_permission(actor_user, PERM_TRIGGER)
        return self.trigger(session, actor_user.organization_id, request, correlation_id=actor_user.correlation_id)

    def trigger(
        self,
        session: Session,
        organization_id: str,
        request: TriggerRequest,
        *,
        source: str = "api",
        correlation_id: str | None = None,
    ) -> TriggerResponse:
        event = TagChangeEvent.build(request.export_id, request.tags, request.previous_tags)

        with tracer.start_as_current_span("automation.trigger") as span:
            span.set_attribute("organization_id", organization_id)
            span.set_attribute("export_id", event.export_id)
            span.set_attribute("source", source)
            span.set_attribute("correlation_id", correlation_id or "")

            matched = self.matcher.match_rules(session, organization_id, event)
            observe_trigger_event(source, [rule.trigger_mode for rule in matched])
            span.set_attribute("matched_count", len(matched))

            logger.info(
                "automation.triggered",
                extra={
                    "organization_id": organization_id,
                    "export_id": event.export_id,
                    "matched_count": len(matched),
                },
            )
            if not matched:
                return TriggerResponse(triggered=0, rules=[], message="No matching automation rules")

            logs: list[AutomationLog] = []
            for rule in matched:
                log = AutomationLog(
                    organization_id=organization_id,
                    rule_id=rule.id,
                    export_id=event.export_id,
                    action_type=rule.action_type,
                    status="pending",
                    event_context=event.to_context(),
                    correlation_id=correlation_id,
                )
                session.add(log)
                logs.append(log)
            session.flush()

            triggered = [
                TriggeredRule(rule_id=rule.id, rule_name=rule.name, action_type=rule.action_type, log_id=log.id)
                for rule, log in zip(matched, logs)
            ]
            log_ids = [log.id for log in logs]
            session.commit()
            analytics_cache.invalidate(organization_id)

            self.dispatch_queue.submit(session, log_ids)

        return TriggerResponse(
            triggered=len(triggered),
            rules=triggered,
            message=f"Triggered {len(triggered)} automation rule(s)",
        )

    def handle_tags_changed_event(self, session: Session, envelope: dict[str, Any]) -> TriggerResponse | None:
        organization_id = str(envelope.get("organization_id") or "").strip()
        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        export_id = str(payload.get("export_id") or "").strip()
        if not organization_id or not export_id:
            logger.warning(
                "automation.event_ignored",
                extra={"event_name": envelope.get("event_type"), "error": "missing organization_id or export_id"},
            )
            return None

        request = TriggerRequest(
            export_id=export_id,
            tags=list(payload.get("tags") or []),
            previous_tags=list(payload.get("previous_tags") or []),
        )
        correlation_id = str(envelope.get("correlation_id") or "").strip() or None
        return self.trigger(session, organization_id, request, source="event", correlation_id=correlation_id)


class AutomationLogService:
    _sort_columns: dict[str, Any] = {
        "created_at": AutomationLog.created_at,
        "status": AutomationLog.status,
        "action_type": AutomationLog.action_type,
        "rule_name": AutomationRule.name,
        "export_id": AutomationLog.export_id,
    }

    def __init__(
        self,
        log_repository: AutomationLogRepository | None = None,
        rule_repository: AutomationRuleRepository | None = None,
        dispatch_queue: DispatchQueue | None = None,
        analytics_service: AutomationAnalyticsService | None = None,
    ) -> None:
        self.log_repository = log_repository or AutomationLogRepository()
        self.rule_repository = rule_repository or AutomationRuleRepository()
        self._dispatch_queue = dispatch_queue
        self.analytics_service = analytics_service or AutomationAnalyticsService()

    @property
    def dispatch_queue(self) -> DispatchQueue:
        return self._dispatch_queue or get_dispatch_queue()

    def list_logs(self, session: Session, actor_user: ActorUser, filters: LogListFilters) -> AutomationLogPage:
        _require_permission(actor_user, PERM_LOGS_READ)
        page = max(1, filters.page)
        limit = min(get_settings().automation_log_page_max, max(1, filters.limit))
        organization_id = actor_user.organization_id

        stmt: Select[Any] = (
            select(AutomationLog, AutomationRule.name)
            .outerjoin(
                AutomationRule,
                and_(AutomationRule.id == AutomationLog.rule_id, AutomationRule.organization_id == AutomationLog.organization_id),
            )
            .where(AutomationLog.organization_id == organization_id)
        )
        if filters.rule_id is not None:
            stmt = stmt.where(AutomationLog.rule_id == filters.rule_id)
        if filters.export_id:
            stmt = stmt.where(AutomationLog.export_id == filters.export_id)
        if filters.status:
            stmt = stmt.where(AutomationLog.status == filters.status)
        if filters.action_type:
            stmt = stmt.where(AutomationLog.action_type == filters.action_type)
        if filters.date_from is not None:
            stmt = stmt.where(AutomationLog.created_at >= day_start(filters.date_from))
        if filters.date_to is not None:
            stmt = stmt.where(AutomationLog.created_at < next_day_start(filters.date_to))
        if filters.tag and filters.tag.strip():
            tagged_rule_ids = self.rule_repository.rule_ids_with_tag(session, organization_id, filters.tag.strip())
            if not tagged_rule_ids:
                return AutomationLogPage(logs=[], total=0, page=page, limit=limit)
            stmt = stmt.where(AutomationLog.rule_id.in_(tagged_rule_ids))
        if filters.search and filters.search.strip():
            pattern = f"%{_escape_like(filters.search.strip())}%"
            stmt = stmt.where(
                or_(
                    AutomationRule.name.ilike(pattern, escape="\\"),
                    AutomationLog.export_id.ilike(pattern, escape="\\"),
                    AutomationLog.error_message.ilike(pattern, escape="\\"),
                )
            )

        sort_column = self._sort_columns.get(filters.sort_by, AutomationLog.created_at)
        ordering = sort_column.asc() if filters.sort_dir.lower() == "asc" else sort_column.desc()
        stmt = stmt.order_by(ordering, AutomationLog.id)

        rows, total = self.log_repository.page(session, stmt, offset=(page - 1) * limit, limit=limit)
        logs = [self._to_read(log, rule_name) for log, rule_name in rows]
        return AutomationLogPage(logs=logs, total=total, page=page, limit=limit)

    def get_log(self, session: Session, actor_user: ActorUser, log_id: uuid.UUID) -> AutomationLogDetail:
        _require_permission(actor_user, PERM_LOGS_READ)
        found = self.log_repository.get_with_rule(session, actor_user.organization_id, log_id)
        if found is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Log not found")

        log, rule = found
        detail = AutomationLogDetail.model_validate(log)
        if rule is not None:
            detail.rule_name = rule.name
            detail.rule_action_type = rule.action_type
            detail.rule_trigger_tags = list(rule.trigger_tags or [])
            detail.rule_action_config = dict(rule.action_config or {})
            detail.rule_trigger_mode = rule.trigger_mode
            detail.rule_description = rule.description
        return detail

    def bulk_delete(self, session: Session, actor_user: ActorUser, log_ids: list[uuid.UUID]) -> int:
        _require_permission(actor_user, PERM_LOGS_MANAGE)
        deleted = self.log_repository.delete_by_ids(session, actor_user.organization_id, log_ids)
        session.commit()
        analytics_cache.invalidate(actor_user.organization_id)
        logger.info("automation.logs_deleted", extra={"organization_id": actor_user.organization_id, "matched_count": deleted})
        return deleted

    def clear_logs(self, session: Session, actor_user: ActorUser, request: ClearLogsRequest) -> int:
        _require_permission(actor_user, PERM_LOGS_MANAGE)
        conditions: list[Any] = []
        if request.rule_id is not None:
            conditions.append(AutomationLog.rule_id == request.rule_id)
        if request.status is not None:
            conditions.append(AutomationLog.status == request.status)
        if request.older_than_days is not None:
            conditions.append(AutomationLog.created_at < utcnow() - timedelta(days=request.older_than_days))
        if not conditions:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="At least one filter is required to clear logs",
            )

        deleted = self.log_repository.delete_where(session, actor_user.organization_id, conditions)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type="automation.log",
            entity_id="*",
            action="automation.logs.cleared",
            before=None,
            after={**request.model_dump(mode="json", exclude_none=True), "deleted": deleted},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        analytics_cache.invalidate(actor_user.organization_id)
        return deleted

    def retry_log(self, session: Session, actor_user: ActorUser, log_id: uuid.UUID) -> AutomationLogRead:
        _require_permission(actor_user, PERM_LOGS_MANAGE)
        original = self.log_repository.get(session, actor_user.organization_id, log_id)
        if original is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Log not found")
        if original.status != "error":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only failed executions can be retried")

        rule = (
            self.rule_repository.get(session, actor_user.organization_id, original.rule_id)
            if original.rule_id is not None
            else None
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Rule no longer exists")

        retry = AutomationLog(
            organization_id=actor_user.organization_id,
            rule_id=rule.id,
            export_id=original.export_id,
            action_type=rule.action_type,
            status="pending",
            event_context=dict(original.event_context or {}),
            retry_of_log_id=original.id,
            correlation_id=actor_user.correlation_id,
        )
        session.add(retry)
        session.commit()
        retry_id = retry.id
        analytics_cache.invalidate(actor_user.organization_id)
        logger.info(
            "automation.retry_requested",
            extra={"organization_id": actor_user.organization_id, "log_id": str(retry_id), "rule_id": str(rule.id)},
        )

        self.dispatch_queue.submit(session, [retry_id])
        refreshed = self.log_repository.get(session, actor_user.organization_id, retry_id)
        return self._to_read(refreshed or retry, rule.name)

    def analytics(self, session: Session, actor_user: ActorUser, filters: AnalyticsFilters) -> AnalyticsSnapshot:
        _require_permission(actor_user, PERM_LOGS_READ)
        return self.analytics_service.compute(session, actor_user.organization_id, filters)

    def _to_read(self, log: AutomationLog, rule_name: str | None) -> AutomationLogRead:
        read = AutomationLogRead.model_validate(log)
        read.rule_name = rule_name
        return read


@dataclass(slots=True)
class AutomationInboxService:
    side_effects: SideEffectRepository = SideEffectRepository()

    def list_notifications(self, session: Session, actor_user: ActorUser, limit: int) -> list[AutomationNotificationRead]:
        _require_permission(actor_user, PERM_LOGS_READ)
        rows = self.side_effects.list_notifications(session, actor_user.organization_id, min(200, max(1, limit)))
        return [AutomationNotificationRead.model_validate(row) for row in rows]

    def list_review_flags(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None,
        limit: int,
    ) -> list[ExportReviewFlagRead]:
        _require_permission(actor_user, PERM_LOGS_READ)
        rows = self.side_effects.list_review_flags(session, actor_user.organization_id, status_filter, min(200, max(1, limit)))
        return [ExportReviewFlagRead.model_validate(row) for row in rows]


rule_service = AutomationRuleService()
trigger_service = AutomationTriggerService()
log_service = AutomationLogService()
inbox_service = AutomationInboxService()
