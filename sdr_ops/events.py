from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sdr_ops.context import get_correlation_id
from sdr_ops.core.events import event_bus

EXPORT_TAGS_CHANGED = "export.tags_changed"
AUTOMATION_LOG_COMPLETED = "automation.log.completed"

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Record an event envelope and fan it out on the in-process bus.

    Envelopes carry ``event_type`` plus a ``payload`` dict; ``event_id``,
    ``occurred_at`` and ``correlation_id`` are filled in when missing.
    """
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
