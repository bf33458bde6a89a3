from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from sdr_ops import events
from sdr_ops.automation.actions import ActionDispatcher, ActionResult
from sdr_ops.automation.analytics import analytics_cache
from sdr_ops.automation.matcher import TagChangeEvent
from sdr_ops.automation.models import TERMINAL_LOG_STATUSES, AutomationLog, utcnow
from sdr_ops.automation.repository import AutomationLogRepository, AutomationRuleRepository
from sdr_ops.context import reset_correlation_id, set_correlation_id
from sdr_ops.metrics import observe_dispatch


logger = logging.getLogger("app.automation.dispatch")
tracer = trace.get_tracer("app.automation.dispatch")

MAX_ERROR_MESSAGE_LENGTH = 2000


class AutomationDispatchRunner:
    """Executes one dispatch attempt for a pending execution log row.

    Safe to run more than once for the same row: a row that already reached
    ``success`` or ``error`` is returned untouched.
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher | None = None,
        log_repository: AutomationLogRepository | None = None,
        rule_repository: AutomationRuleRepository | None = None,
    ) -> None:
        self.dispatcher = dispatcher or ActionDispatcher()
        self.log_repository = log_repository or AutomationLogRepository()
        self.rule_repository = rule_repository or AutomationRuleRepository()

    def run(self, session: Session, log_id: uuid.UUID, *, attempt: int = 1) -> AutomationLog | None:
        log = self.log_repository.get_unscoped(session, log_id)
        if log is None:
            logger.warning("automation.dispatch_missing_log", extra={"log_id": str(log_id)})
            return None
        if log.status in TERMINAL_LOG_STATUSES:
            logger.info(
                "automation.dispatch_skipped",
                extra={"log_id": str(log.id), "status": log.status, "organization_id": log.organization_id},
            )
            return log

        organization_id = log.organization_id
        action_type = log.action_type
        token = set_correlation_id(log.correlation_id)
        started = time.perf_counter()
        final_status = "error"
        superseded = False

        with tracer.start_as_current_span("automation.dispatch") as span:
            span.set_attribute("log_id", str(log.id))
            span.set_attribute("rule_id", str(log.rule_id) if log.rule_id else "")
            span.set_attribute("action_type", action_type)
            span.set_attribute("organization_id", organization_id)
            span.set_attribute("correlation_id", log.correlation_id or "")
            span.set_attribute("attempt", attempt)

            logger.info(
                "automation.dispatch_started",
                extra={
                    "log_id": str(log.id),
                    "rule_id": str(log.rule_id) if log.rule_id else None,
                    "export_id": log.export_id,
                    "action_type": action_type,
                    "organization_id": organization_id,
                    "attempt": attempt,
                    "status": "pending",
                },
            )

            try:
                outcome = self._execute(session, log)
                session.refresh(log)
                if log.status in TERMINAL_LOG_STATUSES:
                    superseded = True
                else:
                    self._complete(log, outcome)
                    session.add(log)
                    session.commit()
                final_status = log.status
            except OperationalError as exc:
                session.rollback()
                final_status = "retry"
                span.set_status(Status(StatusCode.ERROR, "storage unavailable"))
                logger.warning(
                    "automation.dispatch_storage_error",
                    extra={"log_id": str(log_id), "attempt": attempt, "error": str(exc)},
                )
                raise
            except Exception as exc:
                session.rollback()
                log = self.log_repository.get_unscoped(session, log_id)
                if log is None:
                    raise
                if log.status in TERMINAL_LOG_STATUSES:
                    superseded = True
                    final_status = log.status
                    logger.warning(
                        "automation.dispatch_error_after_completion",
                        extra={"log_id": str(log_id), "status": log.status, "error": str(exc)},
                    )
                else:
                    self._complete(log, ActionResult.failed(str(exc) or exc.__class__.__name__))
                    session.add(log)
                    session.commit()
                    final_status = "error"
                    logger.exception(
                        "automation.dispatch_failed",
                        extra={"log_id": str(log_id), "action_type": action_type, "error": str(exc)},
                    )
            finally:
                duration = time.perf_counter() - started
                observe_dispatch(action_type=action_type, status=final_status, duration=duration)
                span.set_attribute("status", final_status)
                reset_correlation_id(token)

            if final_status == "error":
                span.set_status(Status(StatusCode.ERROR, log.error_message or "dispatch failed"))

        if superseded:
            # another delivery already completed this row and published its outcome
            logger.info(
                "automation.dispatch_skipped",
                extra={"log_id": str(log.id), "status": log.status, "organization_id": organization_id},
            )
            return log

        logger.info(
            "automation.dispatch_finished",
            extra={
                "log_id": str(log.id),
                "action_type": action_type,
                "organization_id": organization_id,
                "status": log.status,
                "duration_ms": round(duration * 1000, 2),
                "error": log.error_message,
            },
        )
        analytics_cache.invalidate(organization_id)
        events.publish(
            {
                "event_type": events.AUTOMATION_LOG_COMPLETED,
                "organization_id": organization_id,
                "correlation_id": log.correlation_id,
                "payload": self._event_payload(log),
            }
        )
        return log

    def _execute(self, session: Session, log: AutomationLog) -> ActionResult:
        rule = self.rule_repository.get(session, log.organization_id, log.rule_id) if log.rule_id else None
        if rule is None:
            return ActionResult.failed("rule not found")

        context = log.event_context or {}
        event = TagChangeEvent.build(
            log.export_id,
            context.get("new_tags") or [],
            context.get("previous_tags") or [],
        )
        return self.dispatcher.dispatch(session, rule, event, log.id)

    def _complete(self, log: AutomationLog, outcome: ActionResult) -> None:
        log.completed_at = utcnow()
        if outcome.success:
            log.status = "success"
            log.result = outcome.result
            log.error_message = None
            return
        log.status = "error"
        log.result = None
        log.error_message = (outcome.error_message or "dispatch failed")[:MAX_ERROR_MESSAGE_LENGTH]

    def _event_payload(self, log: AutomationLog) -> dict[str, Any]:
        return {
            "log_id": str(log.id),
            "rule_id": str(log.rule_id) if log.rule_id else None,
            "export_id": log.export_id,
            "action_type": log.action_type,
            "status": log.status,
        }
