from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sdr_ops.automation.analytics import analytics_cache
from sdr_ops.automation.api import get_current_user as automation_get_current_user
from sdr_ops.automation.service import ALL_PERMISSIONS, ActorUser
from sdr_ops.core.config import get_settings
from sdr_ops.core.database import Base, get_db
from sdr_ops.main import app
from sdr_ops.middleware.rate_limit import TokenBucket, reset_rate_limiter, route_group


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_AUTOMATION_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    analytics_cache.clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()
    analytics_cache.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id="org-1",
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[automation_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _rule_payload(index: int) -> dict:
    return {
        "name": f"Rate Limit Rule {index}",
        "trigger_tags": ["urgent"],
        "action_type": "in_app_notification",
        "action_config": {},
    }


def _token(sub: str, org_id: str) -> str:
    settings = get_settings()
    return jwt.encode({"sub": sub, "org_id": org_id}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_mutating_automation_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/automation-rules", json=_rule_payload(index)) for index in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["details"]["retry_after_seconds"] >= 1
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/automation-rules", json=_rule_payload(0))
    assert create.status_code == 201

    responses = [client.get("/api/automation-rules") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/automation-rules", json=_rule_payload(index)).status_code == 201
    assert client.post("/api/automation-rules", json=_rule_payload(3)).status_code == 429

    trigger = client.post("/api/automation-trigger", json={"export_id": "exp-1", "tags": ["urgent"]})
    assert trigger.status_code == 200


def test_callers_are_limited_independently(client: TestClient) -> None:
    first_caller = {"Authorization": f"Bearer {_token('user-1', 'org-1')}"}
    second_caller = {"Authorization": f"Bearer {_token('user-2', 'org-1')}"}

    for index in range(3):
        assert client.post("/api/automation-rules", json=_rule_payload(index), headers=first_caller).status_code == 201
    assert client.post("/api/automation-rules", json=_rule_payload(3), headers=first_caller).status_code == 429
    assert client.post("/api/automation-rules", json=_rule_payload(4), headers=second_caller).status_code == 201


def test_token_bucket_refills_over_the_window() -> None:
    bucket = TokenBucket(capacity=60, tokens=0.0, updated_at=0.0)

    assert bucket.consume(0.5) == 1
    assert bucket.consume(1.0) == 0
    assert bucket.consume(1.0) == 1


def test_route_group_uses_first_segment_after_api() -> None:
    assert route_group("/api/automation-rules/7b0c/retry") == "automation-rules"
    assert route_group("/api/automation-logs/clear") == "automation-logs"
    assert route_group("/api") == "automation"
