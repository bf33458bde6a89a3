from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sdr_ops import audit, events
from sdr_ops.automation.analytics import analytics_cache
from sdr_ops.automation.api import get_current_user
from sdr_ops.automation.models import AutomationLog, AutomationRule, utcnow
from sdr_ops.automation.service import ALL_PERMISSIONS, ActorUser
from sdr_ops.core.config import get_settings
from sdr_ops.core.database import Base, get_db
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
            user_id="ops-1",
            organization_id="org-1",
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _rule(session: Session, name: str, tags: list[str], *, organization_id: str = "org-1") -> AutomationRule:
    rule = AutomationRule(
        organization_id=organization_id,
        name=name,
        trigger_tags=tags,
        trigger_mode="any",
        action_type="in_app_notification",
        action_config={},
        enabled=True,
        created_by="seed",
    )
    session.add(rule)
    session.commit()
    return rule


def _log(
    session: Session,
    rule: AutomationRule | None,
    *,
    export_id: str = "exp-1",
    status: str = "success",
    age_days: float = 0,
    error_message: str | None = None,
    organization_id: str = "org-1",
) -> AutomationLog:
    created_at = utcnow() - timedelta(days=age_days)
    log = AutomationLog(
        organization_id=organization_id,
        rule_id=rule.id if rule else None,
        export_id=export_id,
        action_type="in_app_notification",
        status=status,
        error_message=error_message,
        event_context={"new_tags": ["urgent"], "previous_tags": [], "added_tags": ["urgent"]},
        created_at=created_at,
        completed_at=None if status == "pending" else created_at,
    )
    session.add(log)
    session.commit()
    return log


def _count_logs(session: Session) -> int:
    return int(session.scalar(select(func.count()).select_from(AutomationLog)) or 0)


def test_list_logs_pages_newest_first_with_rule_names(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    oldest = _log(db_session, rule, export_id="exp-old", age_days=3)
    newest = _log(db_session, rule, export_id="exp-new", age_days=0)
    _log(db_session, rule, export_id="exp-mid", age_days=1)
    _log(db_session, rule, export_id="exp-foreign", organization_id="org-2")

    response = client.get("/api/automation-logs", params={"limit": 2})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert body["page"] == 1
    assert body["limit"] == 2
    assert [item["id"] for item in body["logs"]] == [str(newest.id), str(_find(db_session, "exp-mid").id)]
    assert body["logs"][0]["rule_name"] == "Urgent exports"

    second_page = client.get("/api/automation-logs", params={"limit": 2, "page": 2}).json()
    assert [item["id"] for item in second_page["logs"]] == [str(oldest.id)]

    ascending = client.get("/api/automation-logs", params={"sort_dir": "asc"}).json()
    assert ascending["logs"][0]["export_id"] == "exp-old"


def test_list_logs_sort_by_columns(client: TestClient, db_session: Session) -> None:
    bravo = _rule(db_session, "Bravo exports", ["urgent"])
    alpha = _rule(db_session, "Alpha exports", ["vip"])
    _log(db_session, bravo, export_id="exp-c", status="success", age_days=2)
    _log(db_session, alpha, export_id="exp-a", status="pending", age_days=1)
    _log(db_session, None, export_id="exp-b", status="error", age_days=0, error_message="rule not found")

    def export_ids(**params: str) -> list[str]:
        response = client.get("/api/automation-logs", params=params)
        assert response.status_code == 200
        return [item["export_id"] for item in response.json()["logs"]]

    by_rule = client.get("/api/automation-logs", params={"sort_by": "rule_name", "sort_dir": "asc"}).json()["logs"]
    assert [item["rule_name"] for item in by_rule if item["rule_name"]] == ["Alpha exports", "Bravo exports"]
    assert [item["export_id"] for item in by_rule if item["rule_name"] is None] == ["exp-b"]
    by_rule_desc = client.get("/api/automation-logs", params={"sort_by": "rule_name", "sort_dir": "desc"}).json()["logs"]
    assert [item["rule_name"] for item in by_rule_desc if item["rule_name"]] == ["Bravo exports", "Alpha exports"]

    assert export_ids(sort_by="export_id", sort_dir="asc") == ["exp-a", "exp-b", "exp-c"]
    assert export_ids(sort_by="export_id", sort_dir="desc") == ["exp-c", "exp-b", "exp-a"]
    assert export_ids(sort_by="status", sort_dir="asc") == ["exp-b", "exp-a", "exp-c"]

    assert export_ids(sort_by="bogus") == ["exp-b", "exp-a", "exp-c"]
    assert export_ids(sort_by="bogus", sort_dir="asc") == ["exp-c", "exp-a", "exp-b"]


def _find(session: Session, export_id: str) -> AutomationLog:
    log = session.scalar(select(AutomationLog).where(AutomationLog.export_id == export_id))
    assert log is not None
    return log


def test_list_logs_clamps_page_and_limit(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    _log(db_session, rule)

    response = client.get("/api/automation-logs", params={"limit": 500, "page": 0})
    assert response.status_code == 200
    body = response.json()
    assert body["limit"] == 200
    assert body["page"] == 1
    assert body["total"] == 1

    tiny = client.get("/api/automation-logs", params={"limit": 0}).json()
    assert tiny["limit"] == 1


def test_list_logs_filters(client: TestClient, db_session: Session) -> None:
    urgent = _rule(db_session, "Urgent exports", ["urgent"])
    vip = _rule(db_session, "VIP exports", ["vip", "enterprise"])
    failed = _log(db_session, urgent, export_id="exp-1", status="error", error_message="GitHub API error 502: Bad Gateway")
    _log(db_session, urgent, export_id="exp-2", status="success")
    vip_log = _log(db_session, vip, export_id="exp-3", status="pending", age_days=10)

    by_status = client.get("/api/automation-logs", params={"status": "error"}).json()
    assert [item["id"] for item in by_status["logs"]] == [str(failed.id)]

    by_rule = client.get("/api/automation-logs", params={"rule_id": str(vip.id)}).json()
    assert [item["id"] for item in by_rule["logs"]] == [str(vip_log.id)]

    by_export = client.get("/api/automation-logs", params={"export_id": "exp-2"}).json()
    assert by_export["total"] == 1

    by_tag = client.get("/api/automation-logs", params={"tag": "enterprise"}).json()
    assert [item["id"] for item in by_tag["logs"]] == [str(vip_log.id)]

    unknown_tag = client.get("/api/automation-logs", params={"tag": "nobody-uses-this"}).json()
    assert unknown_tag == {"logs": [], "total": 0, "page": 1, "limit": 50}

    by_search_error = client.get("/api/automation-logs", params={"search": "bad gateway"}).json()
    assert [item["id"] for item in by_search_error["logs"]] == [str(failed.id)]

    by_search_rule = client.get("/api/automation-logs", params={"search": "VIP"}).json()
    assert [item["id"] for item in by_search_rule["logs"]] == [str(vip_log.id)]

    literal_percent = client.get("/api/automation-logs", params={"search": "%"}).json()
    assert literal_percent["total"] == 0

    date_to = (utcnow() - timedelta(days=5)).date().isoformat()
    by_date = client.get("/api/automation-logs", params={"date_to": date_to}).json()
    assert [item["id"] for item in by_date["logs"]] == [str(vip_log.id)]

    invalid_status = client.get("/api/automation-logs", params={"status": "exploded"})
    assert invalid_status.status_code == 422


def test_get_log_includes_rule_details(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    log = _log(db_session, rule)
    orphan = _log(db_session, None, export_id="exp-orphan")

    detail = client.get(f"/api/automation-logs/{log.id}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["rule_name"] == "Urgent exports"
    assert body["rule_trigger_tags"] == ["urgent"]
    assert body["rule_trigger_mode"] == "any"
    assert body["event_context"]["added_tags"] == ["urgent"]

    orphan_detail = client.get(f"/api/automation-logs/{orphan.id}").json()
    assert orphan_detail["rule_name"] is None

    missing = client.get(f"/api/automation-logs/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "automation_log_get_failed"
    assert missing.json()["message"] == "Log not found"


def test_bulk_delete_logs(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    first = _log(db_session, rule)
    second = _log(db_session, rule)
    _log(db_session, rule)
    foreign = _log(db_session, None, organization_id="org-2")

    response = client.post("/api/automation-logs/bulk-delete", json={"ids": [str(first.id), str(second.id), str(foreign.id)]})
    assert response.status_code == 200
    assert response.json() == {"deleted": 2}
    assert _count_logs(db_session) == 2


def test_clear_logs_requires_a_filter(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    _log(db_session, rule)

    response = client.post("/api/automation-logs/clear", json={})
    assert response.status_code == 400
    assert response.json()["code"] == "automation_log_clear_failed"
    assert response.json()["message"] == "At least one filter is required to clear logs"
    assert _count_logs(db_session) == 1


def test_clear_logs_older_than_days(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    _log(db_session, rule, age_days=45)
    _log(db_session, rule, age_days=31)
    recent = _log(db_session, rule, age_days=29)
    _log(db_session, None, age_days=60, organization_id="org-2")

    response = client.post("/api/automation-logs/clear", json={"older_than_days": 30})
    assert response.status_code == 200
    assert response.json() == {"deleted": 2}

    remaining = db_session.scalars(select(AutomationLog).where(AutomationLog.organization_id == "org-1")).all()
    assert [log.id for log in remaining] == [recent.id]
    assert _count_logs(db_session) == 2

    assert [entry["action"] for entry in audit.entries_for("org-1", "automation.log")] == ["automation.logs.cleared"]


def test_clear_logs_by_status_and_rule(client: TestClient, db_session: Session) -> None:
    urgent = _rule(db_session, "Urgent exports", ["urgent"])
    vip = _rule(db_session, "VIP exports", ["vip"])
    _log(db_session, urgent, status="error")
    _log(db_session, urgent, status="success")
    _log(db_session, vip, status="error")

    response = client.post("/api/automation-logs/clear", json={"rule_id": str(urgent.id), "status": "error"})
    assert response.json() == {"deleted": 1}
    assert _count_logs(db_session) == 2

    invalid = client.post("/api/automation-logs/clear", json={"older_than_days": 0})
    assert invalid.status_code == 422


def test_retry_failed_log_creates_new_attempt(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    failed = _log(db_session, rule, status="error", error_message="GitHub API error 502: Bad Gateway")

    response = client.post(f"/api/automation-logs/{failed.id}/retry")
    assert response.status_code == 201
    body = response.json()
    assert body["id"] != str(failed.id)
    assert body["retry_of_log_id"] == str(failed.id)
    assert body["status"] == "success"
    assert body["rule_name"] == "Urgent exports"
    assert body["event_context"] == failed.event_context

    db_session.expire_all()
    original = db_session.get(AutomationLog, failed.id)
    assert original is not None
    assert original.status == "error"
    assert _count_logs(db_session) == 2


def test_retry_rejects_non_failed_or_orphaned_logs(client: TestClient, db_session: Session) -> None:
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    succeeded = _log(db_session, rule, status="success")
    orphan = _log(db_session, None, status="error")

    not_failed = client.post(f"/api/automation-logs/{succeeded.id}/retry")
    assert not_failed.status_code == 409
    assert not_failed.json()["code"] == "automation_log_retry_failed"

    orphaned = client.post(f"/api/automation-logs/{orphan.id}/retry")
    assert orphaned.status_code == 409
    assert orphaned.json()["message"] == "Rule no longer exists"

    missing = client.post(f"/api/automation-logs/{uuid.uuid4()}/retry")
    assert missing.status_code == 404


def test_log_routes_require_log_permissions(client: TestClient, db_session: Session) -> None:
    def read_only_user(request: Request) -> ActorUser:
        return ActorUser(user_id="viewer-1", organization_id="org-1", permissions={"automation.logs.read"})

    app.dependency_overrides[get_current_user] = read_only_user
    rule = _rule(db_session, "Urgent exports", ["urgent"])
    _log(db_session, rule)

    assert client.get("/api/automation-logs").status_code == 200
    forbidden = client.post("/api/automation-logs/clear", json={"status": "success"})
    assert forbidden.status_code == 403
    assert forbidden.json()["message"] == "Missing permission: automation.logs.manage"
    assert _count_logs(db_session) == 1
