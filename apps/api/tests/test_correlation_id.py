from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMPipelineUpdate
from app.crm.service import ActorUser, opportunity_service
from app.main import app
from app.middleware.correlation_id import resolve_correlation_id
from app.ticketing.models import QuotationSendLog


ALL_PERMISSIONS = {
    "ticketing.quotations.create",
    "ticketing.quotations.read",
    "ticketing.quotations.send",
    "crm.opportunities.read",
}


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_quotation(client: TestClient, correlation_id: str, opportunity_id: uuid.UUID | None = None) -> dict:
    payload: dict[str, object] = {
        "quotation_number": f"QUO-{uuid.uuid4().hex[:8].upper()}",
        "customer_name": "Budi Santoso",
        "customer_phone": "081234567890",
    }
    if opportunity_id is not None:
        payload["opportunity_id"] = str(opportunity_id)
    response = client.post("/api/ticketing/customer-quotations", json=payload, headers={"X-Correlation-Id": correlation_id})
    assert response.status_code == 201
    return response.json()


@pytest.mark.parametrize(
    ("raw", "kept"),
    [
        ("abc-123", True),
        ("svc:req.42_a", True),
        ("  padded-id  ", True),
        ("has spaces", False),
        ("x" * 129, False),
        ("", False),
        (None, False),
    ],
)
def test_resolve_correlation_id(raw: str | None, kept: bool) -> None:
    resolved = resolve_correlation_id(raw)
    if kept:
        assert resolved == raw.strip()  # type: ignore[union-attr]
    else:
        assert str(uuid.UUID(resolved)) == resolved


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/ticketing/customer-quotations/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_defaults_to_correlation_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})
    assert response.headers.get("x-request-id") == "abc-123"

    response = client.get("/health", headers={"X-Correlation-Id": "abc-123", "X-Request-Id": "req-9"})
    assert response.headers.get("x-request-id") == "req-9"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    quotation = _create_quotation(client, "corr-audit-1")

    quotation_audits = audit.entries_for("ticketing.customer_quotation", quotation["id"])
    assert quotation_audits
    assert quotation_audits[-1]["correlation_id"] == "corr-audit-1"


def test_send_propagates_correlation_id_end_to_end(client: TestClient, db_session: Session) -> None:
    opportunity = opportunity_service.create_opportunity(
        db_session,
        ActorUser(user_id="seed", permissions=set()),
        name="Corr Opportunity",
    )
    db_session.commit()
    quotation = _create_quotation(client, "corr-create-1", opportunity.id)

    response = client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/send",
        json={"method": "whatsapp"},
        headers={"X-Correlation-Id": "corr-send-1"},
    )
    assert response.status_code == 200
    assert response.json()["correlation_id"] == "corr-send-1"

    send_log = db_session.scalar(
        select(QuotationSendLog).where(QuotationSendLog.quotation_id == uuid.UUID(quotation["id"]))
    )
    assert send_log is not None
    assert send_log.correlation_id == "corr-send-1"

    updates = db_session.scalars(
        select(CRMPipelineUpdate).where(CRMPipelineUpdate.opportunity_id == opportunity.id)
    ).all()
    assert updates
    assert all(update.correlation_id == "corr-send-1" for update in updates)

    dispatch_events = [
        item
        for item in events.published_events
        if item.get("event_type") in {"ticketing.quotation.sent", "crm.opportunity.stage_changed"}
    ]
    assert dispatch_events
    assert all(item.get("correlation_id") == "corr-send-1" for item in dispatch_events)


def test_retried_send_with_same_correlation_id_is_replayed(client: TestClient, db_session: Session) -> None:
    opportunity = opportunity_service.create_opportunity(
        db_session,
        ActorUser(user_id="seed", permissions=set()),
        name="Replay Opportunity",
    )
    db_session.commit()
    quotation = _create_quotation(client, "corr-create-2", opportunity.id)
    url = f"/api/ticketing/customer-quotations/{quotation['id']}/send"

    first = client.post(url, json={"method": "whatsapp"}, headers={"X-Correlation-Id": "corr-retry-1"})
    second = client.post(url, json={"method": "whatsapp"}, headers={"X-Correlation-Id": "corr-retry-1"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["data"]["is_resend"] is False
    assert second.json()["data"]["pipeline_updates_created"] == first.json()["data"]["pipeline_updates_created"]
    sent_events = [item for item in events.published_events if item.get("event_type") == "ticketing.quotation.sent"]
    assert len(sent_events) == 1
