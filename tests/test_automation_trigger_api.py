from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi import HTTPException, Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sdr_ops import audit, events
from sdr_ops.automation.analytics import analytics_cache
from sdr_ops.automation.api import get_current_user
from sdr_ops.automation.models import AutomationLog, AutomationNotification, ExportReviewFlag
from sdr_ops.automation.schemas import TriggerRequest
from sdr_ops.automation.service import ALL_PERMISSIONS, ActorUser, trigger_service
from sdr_ops.core.config import get_settings
from sdr_ops.core.database import Base, get_db
from sdr_ops.core.events import InProcessEventBus, InternalEvent
from sdr_ops.main import app
from sdr_ops.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    analytics_cache.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    analytics_cache.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="sdr-1",
            organization_id="org-1",
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_rule(client: TestClient, **overrides) -> dict:
    payload = {
        "name": "Urgent exports",
        "trigger_tags": ["urgent"],
        "trigger_mode": "any",
        "action_type": "in_app_notification",
        "action_config": {},
        "enabled": True,
    }
    payload.update(overrides)
    response = client.post("/api/automation-rules", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_trigger_dispatches_matching_rule_end_to_end(client: TestClient, db_session: Session) -> None:
    rule = _create_rule(client, action_config={"severity": "critical", "notify_message": "{rule_name}: {export_id} got {added_tags}"})

    response = client.post(
        "/api/automation-trigger",
        json={"export_id": "e1", "tags": ["urgent"], "previous_tags": []},
        headers={"X-Correlation-Id": "corr-trigger-1"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["triggered"] == 1
    assert body["message"] == "Triggered 1 automation rule(s)"
    assert body["rules"][0]["rule_id"] == rule["id"]
    assert body["rules"][0]["rule_name"] == "Urgent exports"
    assert body["rules"][0]["action_type"] == "in_app_notification"

    logs = db_session.scalars(select(AutomationLog)).all()
    assert len(logs) == 1
    log = logs[0]
    assert str(log.id) == body["rules"][0]["log_id"]
    assert log.status == "success"
    assert log.completed_at is not None
    assert log.correlation_id == "corr-trigger-1"
    assert log.event_context == {"new_tags": ["urgent"], "previous_tags": [], "added_tags": ["urgent"]}

    notification = db_session.scalar(select(AutomationNotification))
    assert notification is not None
    assert notification.log_id == log.id
    assert notification.severity == "critical"
    assert notification.message == "Urgent exports: e1 got urgent"
    assert log.result["notification_id"] == str(notification.id)

    completed = [item for item in events.published_events if item["event_type"] == "automation.log.completed"]
    assert completed
    assert completed[-1]["payload"]["status"] == "success"
    assert completed[-1]["correlation_id"] == "corr-trigger-1"


def test_trigger_without_matches_reports_zero(client: TestClient, db_session: Session) -> None:
    _create_rule(client)

    response = client.post("/api/automation-trigger", json={"export_id": "e2", "tags": ["other"]})
    assert response.status_code == 200
    assert response.json() == {"triggered": 0, "rules": [], "message": "No matching automation rules"}
    assert db_session.scalars(select(AutomationLog)).all() == []


def test_trigger_requires_trigger_permission(client: TestClient, db_session: Session) -> None:
    _create_rule(client)

    def override_without_trigger(request: Request) -> ActorUser:
        return ActorUser(
            user_id="viewer-1",
            organization_id="org-1",
            permissions=set(ALL_PERMISSIONS) - {"automation.trigger"},
        )

    app.dependency_overrides[get_current_user] = override_without_trigger
    response = client.post("/api/automation-trigger", json={"export_id": "e2", "tags": ["urgent"]})

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "automation_trigger_failed"
    assert body["message"] == "Missing permission: automation.trigger"
    assert db_session.scalars(select(AutomationLog)).all() == []


def test_trigger_service_checks_permission_before_matching(db_session: Session) -> None:
    actor = ActorUser(user_id="viewer-1", organization_id="org-1", permissions={"automation.rules.read"})

    with pytest.raises(HTTPException) as exc_info:
        trigger_service.trigger_for(db_session, actor, TriggerRequest(export_id="e2", tags=["urgent"]))

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Missing permission: automation.trigger"


def test_trigger_rejects_blank_export_id(client: TestClient) -> None:
    response = client.post("/api/automation-trigger", json={"export_id": "   ", "tags": ["urgent"]})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_failed"


def test_failed_action_is_recorded_and_does_not_block_other_rules(client: TestClient, db_session: Session) -> None:
    github_rule = _create_rule(
        client,
        name="File issue",
        action_type="github_issue",
        action_config={"repo": "acme/sdr-ops"},
    )
    review_rule = _create_rule(
        client,
        name="Escalate",
        action_type="escalate_review",
        action_config={"priority": "critical"},
    )

    response = client.post("/api/automation-trigger", json={"export_id": "e3", "tags": ["urgent"]})
    assert response.status_code == 200
    assert response.json()["triggered"] == 2

    logs = {str(log.rule_id): log for log in db_session.scalars(select(AutomationLog)).all()}
    failed = logs[github_rule["id"]]
    assert failed.status == "error"
    assert failed.error_message == "GitHub token is not configured"
    assert failed.result is None

    escalated = logs[review_rule["id"]]
    assert escalated.status == "success"
    flag = db_session.scalar(select(ExportReviewFlag))
    assert flag is not None
    assert flag.priority == "critical"
    assert flag.export_id == "e3"
    assert flag.status == "Open"


def test_all_mode_rule_fires_only_on_completion(client: TestClient) -> None:
    _create_rule(client, name="Both tags", trigger_tags=["urgent", "escalated"], trigger_mode="all")

    partial = client.post("/api/automation-trigger", json={"export_id": "e4", "tags": ["urgent"]})
    assert partial.json()["triggered"] == 0

    completed = client.post(
        "/api/automation-trigger",
        json={"export_id": "e4", "tags": ["urgent", "escalated"], "previous_tags": ["urgent"]},
    )
    assert completed.json()["triggered"] == 1

    unrelated = client.post(
        "/api/automation-trigger",
        json={"export_id": "e4", "tags": ["urgent", "escalated", "vip"], "previous_tags": ["urgent", "escalated"]},
    )
    assert unrelated.json()["triggered"] == 0


def test_tags_changed_event_triggers_rules(client: TestClient, db_session: Session) -> None:
    _create_rule(client)

    events.publish(
        {
            "event_type": "export.tags_changed",
            "organization_id": "org-1",
            "correlation_id": "corr-event-7",
            "payload": {"export_id": "e5", "tags": ["urgent"], "previous_tags": []},
        }
    )

    log = db_session.scalar(select(AutomationLog).where(AutomationLog.export_id == "e5"))
    assert log is not None
    assert log.status == "success"
    assert log.correlation_id == "corr-event-7"


def test_tags_changed_event_without_export_is_ignored(client: TestClient, db_session: Session) -> None:
    _create_rule(client)

    events.publish({"event_type": "export.tags_changed", "organization_id": "org-1", "payload": {"tags": ["urgent"]}})

    assert db_session.scalars(select(AutomationLog)).all() == []


def test_side_effect_inboxes_list_created_records(client: TestClient) -> None:
    _create_rule(client, name="Notify")
    _create_rule(client, name="Review", action_type="escalate_review", action_config={})
    client.post("/api/automation-trigger", json={"export_id": "e6", "tags": ["urgent"]})

    notifications = client.get("/api/automation-notifications")
    assert notifications.status_code == 200
    assert [item["export_id"] for item in notifications.json()] == ["e6"]
    assert notifications.json()[0]["status"] == "Queued"

    flags = client.get("/api/export-review-flags", params={"status": "Open"})
    assert flags.status_code == 200
    assert len(flags.json()) == 1
    assert flags.json()[0]["priority"] == "high"

    closed = client.get("/api/export-review-flags", params={"status": "Closed"})
    assert closed.json() == []


def test_event_bus_keeps_delivering_after_a_handler_fails(caplog: pytest.LogCaptureFixture) -> None:
    bus = InProcessEventBus()
    received: list[str] = []

    def broken(event: InternalEvent) -> None:
        raise RuntimeError("subscriber down")

    def recorder(event: InternalEvent) -> None:
        received.append(event.payload["export_id"])

    bus.subscribe("export.tags_changed", broken)
    bus.subscribe("export.tags_changed", recorder)
    bus.subscribe("export.tags_changed", recorder)

    with caplog.at_level(logging.ERROR, logger="app.events"):
        delivered = bus.publish("export.tags_changed", {"export_id": "exp-bus"})

    assert delivered == 1
    assert received == ["exp-bus"]
    failures = [record for record in caplog.records if record.getMessage() == "event.handler_failed"]
    assert failures and getattr(failures[0], "event_name", None) == "export.tags_changed"
