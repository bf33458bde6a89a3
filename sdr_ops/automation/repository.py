from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, select, update
from sqlalchemy.orm import Session

from sdr_ops.automation.models import AutomationLog, AutomationNotification, AutomationRule, ExportReviewFlag


class AutomationRuleRepository:
    """Rule queries; every statement is bound to one organization."""

    def scoped(self, organization_id: str) -> Select[tuple[AutomationRule]]:
        return select(AutomationRule).where(AutomationRule.organization_id == organization_id)

    def get(self, session: Session, organization_id: str, rule_id: uuid.UUID) -> AutomationRule | None:
        return session.scalar(self.scoped(organization_id).where(AutomationRule.id == rule_id))

    def list_all(self, session: Session, organization_id: str) -> Sequence[AutomationRule]:
        stmt = self.scoped(organization_id).order_by(AutomationRule.created_at.desc(), AutomationRule.id)
        return session.scalars(stmt).all()

    def list_enabled(self, session: Session, organization_id: str) -> Sequence[AutomationRule]:
        stmt = self.scoped(organization_id).where(AutomationRule.enabled.is_(True))
        return session.scalars(stmt.order_by(AutomationRule.created_at.asc(), AutomationRule.id)).all()

    def by_ids(self, session: Session, organization_id: str, rule_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, AutomationRule]:
        if not rule_ids:
            return {}
        rows = session.scalars(self.scoped(organization_id).where(AutomationRule.id.in_(list(rule_ids)))).all()
        return {row.id: row for row in rows}

    def set_enabled(self, session: Session, organization_id: str, rule_ids: Sequence[uuid.UUID], enabled: bool, now: datetime) -> list[uuid.UUID]:
        owned = list(
            session.scalars(
                select(AutomationRule.id).where(
                    and_(AutomationRule.organization_id == organization_id, AutomationRule.id.in_(list(rule_ids)))
                )
            ).all()
        )
        if owned:
            session.execute(
                update(AutomationRule)
                .where(and_(AutomationRule.organization_id == organization_id, AutomationRule.id.in_(owned)))
                .values(enabled=enabled, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
        return owned

    def delete_many(self, session: Session, organization_id: str, rule_ids: Sequence[uuid.UUID]) -> int:
        result = session.execute(
            delete(AutomationRule)
            .where(and_(AutomationRule.organization_id == organization_id, AutomationRule.id.in_(list(rule_ids))))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def rule_ids_with_tag(self, session: Session, organization_id: str, tag: str) -> list[uuid.UUID]:
        # JSON containment differs per dialect; membership is resolved in Python
        rows = session.execute(
            select(AutomationRule.id, AutomationRule.trigger_tags).where(AutomationRule.organization_id == organization_id)
        ).all()
        return [rule_id for rule_id, tags in rows if isinstance(tags, list) and tag in tags]


class AutomationLogRepository:
    """Execution log queries; every statement is bound to one organization."""

    def scoped(self, organization_id: str) -> Select[tuple[AutomationLog]]:
        return select(AutomationLog).where(AutomationLog.organization_id == organization_id)

    def get(self, session: Session, organization_id: str, log_id: uuid.UUID) -> AutomationLog | None:
        return session.scalar(self.scoped(organization_id).where(AutomationLog.id == log_id))

    def get_unscoped(self, session: Session, log_id: uuid.UUID) -> AutomationLog | None:
        return session.scalar(select(AutomationLog).where(AutomationLog.id == log_id))

    def get_with_rule(self, session: Session, organization_id: str, log_id: uuid.UUID) -> tuple[AutomationLog, AutomationRule | None] | None:
        stmt = (
            select(AutomationLog, AutomationRule)
            .outerjoin(
                AutomationRule,
                and_(AutomationRule.id == AutomationLog.rule_id, AutomationRule.organization_id == AutomationLog.organization_id),
            )
            .where(and_(AutomationLog.organization_id == organization_id, AutomationLog.id == log_id))
        )
        row = session.execute(stmt).first()
        if row is None:
            return None
        return row[0], row[1]

    def page(
        self,
        session: Session,
        stmt: Select[Any],
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[tuple[AutomationLog, str | None]], int]:
        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
        rows = session.execute(stmt.offset(offset).limit(limit)).all()
        return [(row[0], row[1]) for row in rows], int(total)

    def delete_by_ids(self, session: Session, organization_id: str, log_ids: Sequence[uuid.UUID]) -> int:
        result = session.execute(
            delete(AutomationLog)
            .where(and_(AutomationLog.organization_id == organization_id, AutomationLog.id.in_(list(log_ids))))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def delete_for_rules(self, session: Session, organization_id: str, rule_ids: Sequence[uuid.UUID]) -> int:
        result = session.execute(
            delete(AutomationLog)
            .where(and_(AutomationLog.organization_id == organization_id, AutomationLog.rule_id.in_(list(rule_ids))))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def delete_where(self, session: Session, organization_id: str, conditions: list[Any]) -> int:
        result = session.execute(
            delete(AutomationLog)
            .where(and_(AutomationLog.organization_id == organization_id, *conditions))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def stale_pending_counts(self, session: Session, cutoff: datetime) -> dict[str, int]:
        rows = session.execute(
            select(AutomationLog.organization_id, func.count())
            .where(and_(AutomationLog.status == "pending", AutomationLog.created_at < cutoff))
            .group_by(AutomationLog.organization_id)
        ).all()
        return {str(organization_id): int(count) for organization_id, count in rows}


class SideEffectRepository:
    def notification_for_log(self, session: Session, log_id: uuid.UUID) -> AutomationNotification | None:
        return session.scalar(select(AutomationNotification).where(AutomationNotification.log_id == log_id))

    def review_flag_for_log(self, session: Session, log_id: uuid.UUID) -> ExportReviewFlag | None:
        return session.scalar(select(ExportReviewFlag).where(ExportReviewFlag.log_id == log_id))

    def list_notifications(self, session: Session, organization_id: str, limit: int) -> Sequence[AutomationNotification]:
        stmt = (
            select(AutomationNotification)
            .where(AutomationNotification.organization_id == organization_id)
            .order_by(AutomationNotification.created_at.desc())
            .limit(limit)
        )
        return session.scalars(stmt).all()

    def list_review_flags(self, session: Session, organization_id: str, status: str | None, limit: int) -> Sequence[ExportReviewFlag]:
        stmt = select(ExportReviewFlag).where(ExportReviewFlag.organization_id == organization_id)
        if status:
            stmt = stmt.where(ExportReviewFlag.status == status)
        return session.scalars(stmt.order_by(ExportReviewFlag.created_at.desc()).limit(limit)).all()
