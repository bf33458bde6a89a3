from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Protocol

from sqlalchemy.orm import Session

from sdr_ops.automation.dispatch import AutomationDispatchRunner
from sdr_ops.automation.tasks import dispatch_automation_task
from sdr_ops.core.config import get_settings


logger = logging.getLogger("app.automation.queue")


class DispatchQueue(Protocol):
    def submit(self, session: Session, log_ids: Sequence[uuid.UUID]) -> None: ...


class InlineDispatchQueue:
    """Runs dispatches in the caller's process and session, one log row at a time."""

    def __init__(self, runner: AutomationDispatchRunner | None = None) -> None:
        self.runner = runner or AutomationDispatchRunner()

    def submit(self, session: Session, log_ids: Sequence[uuid.UUID]) -> None:
        for log_id in log_ids:
            try:
                self.runner.run(session, log_id)
            except Exception as exc:
                # row stays pending and is reported by the stale sweep
                logger.exception("automation.inline_dispatch_failed", extra={"log_id": str(log_id), "error": str(exc)})


class CeleryDispatchQueue:
    def submit(self, session: Session, log_ids: Sequence[uuid.UUID]) -> None:
        for log_id in log_ids:
            try:
                result = dispatch_automation_task.delay(str(log_id))
            except Exception as exc:
                logger.exception("automation.enqueue_failed", extra={"log_id": str(log_id), "error": str(exc)})
                continue
            logger.info("automation.enqueued", extra={"log_id": str(log_id), "task_id": result.id})


def get_dispatch_queue() -> DispatchQueue:
    mode = get_settings().automation_dispatch_mode.lower()
    if mode == "celery":
        return CeleryDispatchQueue()
    return InlineDispatchQueue()
