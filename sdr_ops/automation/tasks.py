from __future__ import annotations

import uuid

from sqlalchemy.exc import OperationalError

from sdr_ops.automation.dispatch import AutomationDispatchRunner
from sdr_ops.automation.sweep import sweep_stale_pending
from sdr_ops.core.celery_app import celery_app
from sdr_ops.core.config import get_settings
from sdr_ops.core.database import SessionLocal


_runner = AutomationDispatchRunner()


@celery_app.task(
    bind=True,
    name="automation.dispatch",
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=get_settings().automation_dispatch_max_retries,
)
def dispatch_automation_task(self, log_id: str) -> str:  # type: ignore[no-untyped-def]
    session = SessionLocal()
    try:
        log = _runner.run(session, uuid.UUID(log_id), attempt=self.request.retries + 1)
        return log.status if log is not None else "missing"
    finally:
        session.close()


@celery_app.task(name="automation.sweep_stale_pending")
def sweep_stale_pending_task() -> dict[str, int]:
    session = SessionLocal()
    try:
        return sweep_stale_pending(session)
    finally:
        session.close()
