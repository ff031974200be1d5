from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMLead, CRMOpportunity
from app.crm.service import ActorUser, opportunity_service
from app.main import app
from app.ticketing.api import get_dispatch_service
from app.ticketing.models import CustomerQuotation
from app.ticketing.rendering import ChannelRenderer, ChannelSettings
from app.ticketing.schemas import RenderedEmail
from app.ticketing.service import QuotationDispatchService


SALES_PERMISSIONS = {
    "ticketing.quotations.create",
    "ticketing.quotations.read",
    "ticketing.quotations.send",
    "ticketing.quotations.reject",
}


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[RenderedEmail] = []

    def send(self, message: RenderedEmail, *, correlation_id: str) -> str:
        self.sent.append(message)
        return f"<{correlation_id}@example.test>"


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
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def client(
    db_session: Session,
    transport: RecordingTransport,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    permissions = {
        "sales": SALES_PERMISSIONS,
        "viewer": {"ticketing.quotations.read"},
    }
    state = {"current": "sales"}

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=f"{state['current']}-1",
            permissions=permissions[state["current"]],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def override_dispatch_service() -> QuotationDispatchService:
        renderer = ChannelRenderer(
            ChannelSettings(
                public_base_url="https://crm.example.test",
                company_name="UGC Logistics",
                company_legal_name="PT. UGC Logistics",
                company_phone="+62 21 1234567",
                company_address="Jakarta",
                company_email="sales@ugclogistics.example",
            )
        )
        return QuotationDispatchService(renderer=renderer, email_transport=transport)

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_dispatch_service] = override_dispatch_service
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _seed_opportunity(session: Session, lead: CRMLead | None = None) -> uuid.UUID:
    opportunity = opportunity_service.create_opportunity(
        session,
        ActorUser(user_id="seed", permissions=set()),
        name="FTL Jakarta - Surabaya",
        source_lead_id=lead.id if lead is not None else None,
    )
    session.commit()
    return opportunity.id


def _create_quotation(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "quotation_number": f"QUO-{uuid.uuid4().hex[:8].upper()}",
        "customer_name": "Budi Santoso",
        "customer_company": "PT Maju Jaya",
        "customer_email": "budi@majujaya.example",
        "customer_phone": "081234567890",
        "service_type": "FTL Trucking",
        "origin_city": "Jakarta",
        "destination_city": "Surabaya",
        "items": [
            {"component_name": "Trucking CDD", "selling_rate": 1000000},
            {"component_name": "Handling", "selling_rate": 500000},
        ],
    }
    payload.update(overrides)
    response = client.post("/api/ticketing/customer-quotations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_read_quotation(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    opportunity_id = _seed_opportunity(db_session)

    created = _create_quotation(test_client, opportunity_id=str(opportunity_id))

    assert created["status"] == "draft"
    assert created["sequence_number"] == 1
    assert created["previous_rejected_count"] == 0
    assert created["sequence_label"] == "1st quotation"
    assert Decimal(str(created["total_selling_rate"])) == Decimal("1500000")
    assert created["valid_until"] is not None
    assert [item["position"] for item in created["items"]] == [1, 2]

    fetched = test_client.get(f"/api/ticketing/customer-quotations/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["quotation_number"] == created["quotation_number"]


def test_send_by_email_syncs_pipeline(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    transport: RecordingTransport,
) -> None:
    test_client, _ = client
    opportunity_id = _seed_opportunity(db_session)
    quotation = _create_quotation(test_client, opportunity_id=str(opportunity_id))

    response = test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/send",
        json={"method": "email"},
        headers={"X-Correlation-Id": "corr-send-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["correlation_id"] == "corr-send-1"
    assert body["data"]["old_stage"] == "Prospecting"
    assert body["data"]["new_stage"] == "Quote Sent"
    assert body["data"]["quotation_status"] == "sent"
    assert body["data"]["sent_to"] == "budi@majujaya.example"
    assert body["message"].startswith(f"1st quotation {quotation['quotation_number']} sent via email.")
    assert response.headers["x-correlation-id"] == "corr-send-1"
    assert len(transport.sent) == 1
    assert transport.sent[0].subject == f"Penawaran Harga - {quotation['quotation_number']} | UGC Logistics"

    sent_events = [item for item in events.published_events if item["event_type"] == "ticketing.quotation.sent"]
    assert [item["correlation_id"] for item in sent_events] == ["corr-send-1"]


def test_rejection_then_revision_moves_to_negotiation(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    opportunity_id = _seed_opportunity(db_session)
    first = _create_quotation(test_client, opportunity_id=str(opportunity_id))
    sent = test_client.post(f"/api/ticketing/customer-quotations/{first['id']}/send", json={"method": "whatsapp"})
    assert sent.status_code == 200

    rejected = test_client.post(
        f"/api/ticketing/customer-quotations/{first['id']}/reject",
        json={"reason_type": "kompetitor_lebih_murah", "competitor_name": "PT Cepat", "competitor_amount": 1200000},
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["rejection_reason"] == "kompetitor_lebih_murah"

    revision = _create_quotation(test_client, opportunity_id=str(opportunity_id))
    assert revision["sequence_number"] == 2
    assert revision["previous_rejected_count"] == 1
    assert revision["sequence_label"] == "2nd quotation (1st revision)"

    response = test_client.post(f"/api/ticketing/customer-quotations/{revision['id']}/send", json={"method": "email"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["old_stage"] == "Quote Sent"
    assert data["new_stage"] == "Negotiation"
    assert data["sequence_label"] == "2nd quotation (1st revision)"
    db_session.expire_all()
    assert db_session.get(CRMOpportunity, opportunity_id).stage == "Negotiation"


def test_invalid_channel_error_envelope(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    quotation = _create_quotation(test_client)

    response = test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/send",
        json={"method": "fax"},
        headers={"X-Correlation-Id": "corr-invalid-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "INVALID_CHANNEL"
    assert body["severity"] == "validation"
    assert body["retryable"] is False
    assert body["message_sent"] is False
    assert body["correlation_id"] == "corr-invalid-1"
    assert response.headers["x-correlation-id"] == "corr-invalid-1"


def test_ambiguous_opportunity_blocks_send(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    transport: RecordingTransport,
) -> None:
    test_client, _ = client
    lead = CRMLead(company_name="PT Maju Jaya")
    db_session.add(lead)
    db_session.commit()
    _seed_opportunity(db_session, lead)
    _seed_opportunity(db_session, lead)
    quotation = _create_quotation(test_client, opportunity_id=str(uuid.uuid4()), lead_id=str(lead.id))

    response = test_client.post(f"/api/ticketing/customer-quotations/{quotation['id']}/send", json={"method": "email"})

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "AMBIGUOUS_OPPORTUNITY"
    assert body["details"]["quotation_id"] == quotation["id"]
    assert transport.sent == []
    db_session.expire_all()
    assert db_session.get(CustomerQuotation, uuid.UUID(quotation["id"])).status == "draft"


def test_send_requires_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    quotation = _create_quotation(test_client)
    set_actor("viewer")

    response = test_client.post(f"/api/ticketing/customer-quotations/{quotation['id']}/send", json={"method": "email"})

    assert response.status_code == 403
    assert response.json()["code"] == "ticketing_quotation_send_forbidden"


def test_unknown_quotation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.get(f"/api/ticketing/customer-quotations/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["error_code"] == "QUOTATION_NOT_FOUND"


def test_reject_requires_sent_status(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    quotation = _create_quotation(test_client)

    response = test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/reject",
        json={"reason_type": "tarif_tidak_masuk"},
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "INVALID_STATUS_TRANSITION"


def test_reject_reason_details_are_validated(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    quotation = _create_quotation(test_client)

    response = test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/reject",
        json={"reason_type": "budget_customer_tidak_cukup"},
    )

    assert response.status_code == 422


def test_send_route_is_mounted_in_openapi(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/openapi.json")

    assert response.status_code == 200
    paths = response.json()["paths"]
    assert "post" in paths["/api/ticketing/customer-quotations/{quotation_id}/send"]


def test_rejected_quotation_is_not_delivered_again(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    transport: RecordingTransport,
) -> None:
    test_client, _ = client
    quotation = _create_quotation(test_client)
    assert test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/send", json={"method": "whatsapp"}
    ).status_code == 200
    assert test_client.post(
        f"/api/ticketing/customer-quotations/{quotation['id']}/reject",
        json={"reason_type": "tarif_tidak_masuk"},
    ).status_code == 200

    response = test_client.post(f"/api/ticketing/customer-quotations/{quotation['id']}/send", json={"method": "email"})

    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "INVALID_STATUS_TRANSITION"
    assert body["message_sent"] is False
    assert transport.sent == []
