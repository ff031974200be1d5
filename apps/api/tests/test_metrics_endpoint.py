from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser, opportunity_service
from app.main import app
from app.ticketing.models import CustomerQuotation


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"ticketing.quotations.send", "crm.opportunities.read"},
            correlation_id=f"metrics-{uuid.uuid4().hex[:8]}",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _seed_quotation(session: Session) -> CustomerQuotation:
    opportunity = opportunity_service.create_opportunity(
        session,
        ActorUser(user_id="seed", permissions=set()),
        name="Metrics Opportunity",
    )
    quotation = CustomerQuotation(
        quotation_number=f"QUO-{uuid.uuid4().hex[:8].upper()}",
        opportunity_id=opportunity.id,
        customer_phone="081234567890",
    )
    session.add(quotation)
    session.commit()
    return quotation


def test_metrics_endpoint_exposes_http_and_dispatch_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    quotation = _seed_quotation(db_session)
    sent = client.post(f"/api/ticketing/customer-quotations/{quotation.id}/send", json={"method": "whatsapp"})
    assert sent.status_code == 200

    invalid = client.post(f"/api/ticketing/customer-quotations/{quotation.id}/send", json={"method": "pigeon"})
    assert invalid.status_code == 422

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "quotation_dispatch_total" in body
    assert "quotation_dispatch_duration_seconds" in body
    assert "quotation_preflight_total" in body
    assert "opportunity_stage_changes_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/ticketing/customer-quotations/{id}/send"' in body
    assert 'channel="whatsapp",outcome="sent"' in body
    assert 'channel="invalid",outcome="validation"' in body
    assert 'stage="Quote Sent"' in body


def test_metrics_require_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
