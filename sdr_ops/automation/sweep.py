from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from sdr_ops.automation.models import utcnow
from sdr_ops.automation.repository import AutomationLogRepository
from sdr_ops.core.config import get_settings
from sdr_ops.metrics import set_stale_pending_logs


logger = logging.getLogger("app.automation.sweep")


def sweep_stale_pending(
    session: Session,
    *,
    now: datetime | None = None,
    threshold_minutes: int | None = None,
    repository: AutomationLogRepository | None = None,
) -> dict[str, int]:
    """Report pending rows that never reached a terminal state.

    Rows are left as they are; the counts feed the gauge and a warning per
    organization so operators can retry or clear them.
    """
    minutes = threshold_minutes if threshold_minutes is not None else get_settings().automation_stale_pending_minutes
    cutoff = (now or utcnow()) - timedelta(minutes=minutes)
    counts = (repository or AutomationLogRepository()).stale_pending_counts(session, cutoff)

    set_stale_pending_logs(sum(counts.values()))
    for organization_id, count in sorted(counts.items()):
        logger.warning(
            "automation.stale_pending_logs",
            extra={"organization_id": organization_id, "stale_count": count, "status": "pending"},
        )
    return counts
