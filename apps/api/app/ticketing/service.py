from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.crm.models import CRMLead
from app.crm.service import ActorUser
from app.metrics import observe_quotation_dispatch
from app.ticketing.errors import (
    QuotationDispatchError,
    Severity,
    classified_error,
    validation_error,
)
from app.ticketing.gateway import QuotationSendGateway, SqlQuotationSendGateway
from app.ticketing.models import CustomerQuotation, CustomerQuotationItem, TicketingTicket
from app.ticketing.preflight import PreflightChecker
from app.ticketing.rendering import ChannelRenderer
from app.ticketing.schemas import (
    SUPPORTED_CHANNELS,
    DispatchResult,
    MarkSentRequest,
    MarkSentResult,
    QuotationCreate,
    QuotationItemRead,
    QuotationRead,
    QuotationRejectRequest,
    QuotationSendRequest,
    RenderedEmail,
    RenderedWhatsApp,
)
from app.ticketing.sequence import sequence_label
from app.ticketing.transport import EmailTransport


logger = logging.getLogger("app.ticketing.dispatch")

GatewayFactory = Callable[[Session], QuotationSendGateway]

_CHANNEL_NAMES = {"email": "email", "whatsapp": "WhatsApp"}
SENDABLE_STATUSES = frozenset({"draft", "sent"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotationDispatchService:
    """Send a quotation over one channel and sync the pipeline exactly once.

    Order per call: validate channel, load, preflight, render/deliver,
    Mark-Sent. At most one preflight and one Mark-Sent; no retries here.
    """

    def __init__(
        self,
        renderer: ChannelRenderer,
        email_transport: EmailTransport | None = None,
        gateway_factory: GatewayFactory = SqlQuotationSendGateway,
    ):
        self.renderer = renderer
        self.email_transport = email_transport
        self.gateway_factory = gateway_factory

    def dispatch(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        request: QuotationSendRequest,
    ) -> DispatchResult:
        started = time.perf_counter()
        correlation_id = actor_user.correlation_id or get_correlation_id() or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        try:
            return self._observed_dispatch(session, actor_user, quotation_id, request, correlation_id, started)
        finally:
            reset_correlation_id(token)

    def _observed_dispatch(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        request: QuotationSendRequest,
        correlation_id: str,
        started: float,
    ) -> DispatchResult:
        channel = request.method
        try:
            result = self._dispatch(session, actor_user, quotation_id, request, correlation_id)
        except QuotationDispatchError as exc:
            if exc.correlation_id is None:
                exc.correlation_id = correlation_id
            label = channel if channel in SUPPORTED_CHANNELS else "invalid"
            observe_quotation_dispatch(label, exc.severity.value, time.perf_counter() - started)
            log = logger.error if exc.severity in (Severity.INTERNAL, Severity.TRANSPORT) else logger.warning
            log(
                "quotation.dispatch_failed",
                extra={
                    "quotation_id": str(quotation_id),
                    "channel": channel,
                    "error_code": exc.code,
                    "severity": exc.severity.value,
                    "message_sent": exc.message_sent,
                },
            )
            raise

        outcome = "fallback" if result.fallback else ("resend" if result.is_resend else "sent")
        observe_quotation_dispatch(channel, outcome, time.perf_counter() - started)
        logger.info(
            "quotation.dispatched",
            extra={
                "quotation_id": str(quotation_id),
                "channel": channel,
                "outcome": outcome,
                "old_stage": result.old_stage.value if result.old_stage else None,
                "new_stage": result.new_stage.value if result.new_stage else None,
                "is_resend": result.is_resend,
            },
        )
        return result

    def _dispatch(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        request: QuotationSendRequest,
        correlation_id: str,
    ) -> DispatchResult:
        channel = request.method
        if channel not in SUPPORTED_CHANNELS:
            raise validation_error(
                "INVALID_CHANNEL",
                f"Unsupported send method: {channel}",
                allowed=sorted(SUPPORTED_CHANNELS),
            )

        gateway = self.gateway_factory(session)
        quotation = gateway.load_quotation(quotation_id)
        if quotation is None:
            raise QuotationDispatchError("QUOTATION_NOT_FOUND", "Quotation not found", severity=Severity.NOT_FOUND)
        if quotation.status not in SENDABLE_STATUSES:
            raise classified_error(
                "INVALID_STATUS_TRANSITION",
                f"Quotation cannot be sent from status {quotation.status}",
                details={"status": quotation.status},
            )

        PreflightChecker(gateway).check(quotation.id, quotation.opportunity_id, correlation_id)

        pdf_url = request.pdf_url or self.renderer.pdf_url(quotation)
        validation_url = self.renderer.validation_url(quotation)
        rendered_email: RenderedEmail | None = None
        rendered_whatsapp: RenderedWhatsApp | None = None
        fallback = False
        message_sent = False

        if channel == "email":
            recipient = (request.recipient or quotation.customer_email or "").strip()
            if not recipient:
                raise validation_error("MISSING_RECIPIENT", "No recipient email address for this quotation")
            rendered_email = self.renderer.render_email(quotation, recipient, validation_url)
            if self.email_transport is None:
                fallback = True
            else:
                try:
                    self.email_transport.send(rendered_email, correlation_id=correlation_id)
                except Exception as exc:
                    raise QuotationDispatchError(
                        "EMAIL_SEND_FAILED",
                        "Email could not be delivered; the quotation was not marked as sent",
                        severity=Severity.TRANSPORT,
                        status_code=502,
                        details={"error": str(exc)},
                        message_sent=False,
                    ) from exc
                message_sent = True
        else:
            rendered_whatsapp = self.renderer.render_whatsapp(quotation, pdf_url)
            recipient = (
                request.recipient
                or self.renderer.normalize_phone(quotation.customer_phone)
                or quotation.customer_phone
                or "manual"
            )

        mark_request = MarkSentRequest(
            quotation_id=quotation.id,
            sent_via=channel,
            sent_to=recipient,
            actor_user_id=actor_user.user_id,
            correlation_id=correlation_id,
            allow_autocreate=False,
        )
        try:
            marked = gateway.mark_sent(mark_request)
        except Exception as exc:
            logger.exception(
                "quotation.mark_sent_transport_error",
                extra={"quotation_id": str(quotation.id), "message_sent": message_sent},
            )
            raise QuotationDispatchError(
                "MARK_SENT_TRANSPORT_ERROR",
                "Quotation delivery state could not be recorded",
                severity=Severity.TRANSPORT,
                status_code=500,
                details={"error": str(exc)},
                message_sent=message_sent,
            ) from exc

        if not marked.success:
            raise classified_error(
                marked.error_code,
                marked.error or "Quotation could not be marked as sent",
                details={
                    "quotation_opportunity_id": str(marked.quotation_opportunity_id)
                    if marked.quotation_opportunity_id
                    else None,
                },
                message_sent=message_sent,
            )

        return self._build_result(
            quotation,
            request,
            marked,
            channel=channel,
            recipient=recipient,
            fallback=fallback,
            correlation_id=correlation_id,
            pdf_url=pdf_url,
            validation_url=validation_url,
            rendered_email=rendered_email,
            rendered_whatsapp=rendered_whatsapp,
        )

    def _build_result(
        self,
        quotation: CustomerQuotation,
        request: QuotationSendRequest,
        marked: MarkSentResult,
        *,
        channel: str,
        recipient: str,
        fallback: bool,
        correlation_id: str,
        pdf_url: str,
        validation_url: str,
        rendered_email: RenderedEmail | None,
        rendered_whatsapp: RenderedWhatsApp | None,
    ) -> DispatchResult:
        sequence = marked.quotation_sequence or quotation.sequence_number
        previous_rejected = marked.previous_rejected_count or quotation.previous_rejected_count
        label = marked.sequence_label or sequence_label(sequence, previous_rejected)
        is_resend = request.is_resend or marked.is_resend
        stage_changed = marked.old_stage is not None and marked.old_stage != marked.new_stage

        parts = [f"{label} {quotation.quotation_number} {'re-sent' if is_resend else 'sent'} via {_CHANNEL_NAMES[channel]}."]
        if stage_changed:
            parts.append(f"Pipeline moved from {marked.old_stage.value} to {marked.new_stage.value}.")
        if fallback:
            parts.append("Email delivery is not configured; please send the email manually.")
        elif channel == "whatsapp":
            parts.append("Open the WhatsApp link to deliver the message.")

        return DispatchResult(
            quotation_id=quotation.id,
            quotation_number=quotation.quotation_number,
            method=channel,
            sent_to=recipient,
            fallback=fallback,
            quotation_status=marked.quotation_status,
            old_stage=marked.old_stage,
            new_stage=marked.new_stage,
            stage_changed=stage_changed,
            ticket_status=marked.ticket_status,
            opportunity_id=marked.opportunity_id,
            opportunity_source=marked.opportunity_source,
            pipeline_updates_created=marked.pipeline_updates_created,
            activities_created=marked.activities_created,
            quotation_sequence=sequence,
            sequence_label=label,
            previous_rejected_count=previous_rejected,
            is_resend=is_resend,
            message=" ".join(parts),
            correlation_id=correlation_id,
            pdf_url=pdf_url,
            validation_url=validation_url,
            email=rendered_email,
            whatsapp=rendered_whatsapp,
        )


class QuotationService:
    entity_type = "ticketing.customer_quotation"

    def create_quotation(self, session: Session, actor_user: ActorUser, dto: QuotationCreate) -> QuotationRead:
        ticket = session.get(TicketingTicket, dto.ticket_id) if dto.ticket_id else None
        if dto.ticket_id and ticket is None:
            raise QuotationDispatchError("TICKET_NOT_FOUND", "Ticket not found", severity=Severity.NOT_FOUND)
        if dto.lead_id and session.get(CRMLead, dto.lead_id) is None:
            raise QuotationDispatchError("LEAD_NOT_FOUND", "Lead not found", severity=Severity.NOT_FOUND)

        opportunity_id = dto.opportunity_id or (ticket.opportunity_id if ticket is not None else None)
        lead_id = dto.lead_id or (ticket.lead_id if ticket is not None else None)
        sequence, previous_rejected = self._chain_position(session, opportunity_id, dto.ticket_id, lead_id)

        quotation = CustomerQuotation(
            quotation_number=dto.quotation_number,
            status="draft",
            opportunity_id=opportunity_id,
            lead_id=lead_id,
            ticket_id=dto.ticket_id,
            sequence_number=sequence,
            previous_rejected_count=previous_rejected,
            customer_name=dto.customer_name,
            customer_company=dto.customer_company,
            customer_email=dto.customer_email,
            customer_phone=dto.customer_phone,
            service_type=dto.service_type,
            origin_city=dto.origin_city,
            destination_city=dto.destination_city,
            currency=dto.currency,
            total_selling_rate=sum((item.selling_rate for item in dto.items), Decimal("0")),
            validity_days=dto.validity_days,
            valid_until=dto.valid_until or date.today() + timedelta(days=dto.validity_days),
            created_by_user_id=actor_user.user_id,
            items=[
                CustomerQuotationItem(position=index, component_name=item.component_name, selling_rate=item.selling_rate)
                for index, item in enumerate(dto.items, start=1)
            ],
        )
        session.add(quotation)
        session.flush()

        created = self._to_read(quotation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(quotation.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            session=session,
        )
        session.commit()
        return created

    def get_quotation(self, session: Session, quotation_id: uuid.UUID) -> QuotationRead:
        return self._to_read(self._load(session, quotation_id))

    def reject_quotation(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        dto: QuotationRejectRequest,
    ) -> QuotationRead:
        quotation = self._load(session, quotation_id)
        if quotation.status == "rejected":
            return self._to_read(quotation)
        if quotation.status != "sent":
            raise classified_error(
                "INVALID_STATUS_TRANSITION",
                f"Quotation cannot be rejected in current status: {quotation.status}",
                correlation_id=actor_user.correlation_id,
            )

        before = self._to_read(quotation).model_dump(mode="json")
        quotation.status = "rejected"
        quotation.rejection_reason = dto.reason_type
        quotation.rejection_notes = self._rejection_notes(dto, quotation.currency)
        quotation.rejected_at = utcnow()
        if quotation.ticket is not None:
            quotation.ticket.status = "need_adjustment"
        lead = session.get(CRMLead, quotation.lead_id) if quotation.lead_id else None
        if lead is not None:
            lead.quotation_status = "rejected"
        session.flush()

        updated = self._to_read(quotation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(quotation.id),
            action="reject",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            session=session,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "ticketing.quotation.rejected",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "correlation_id": actor_user.correlation_id,
                "version": 1,
                "payload": {
                    "quotation_id": str(quotation.id),
                    "reason_type": dto.reason_type,
                    "opportunity_id": str(quotation.opportunity_id) if quotation.opportunity_id else None,
                },
            },
            session=session,
        )
        session.commit()
        return updated

    def _chain_position(
        self,
        session: Session,
        opportunity_id: uuid.UUID | None,
        ticket_id: uuid.UUID | None,
        lead_id: uuid.UUID | None,
    ) -> tuple[int, int]:
        if opportunity_id is not None:
            chain = CustomerQuotation.opportunity_id == opportunity_id
        elif ticket_id is not None:
            chain = CustomerQuotation.ticket_id == ticket_id
        elif lead_id is not None:
            chain = CustomerQuotation.lead_id == lead_id
        else:
            return 1, 0

        earlier = session.scalar(select(func.count()).select_from(CustomerQuotation).where(chain)) or 0
        rejected = (
            session.scalar(
                select(func.count()).select_from(CustomerQuotation).where(chain, CustomerQuotation.status == "rejected")
            )
            or 0
        )
        return earlier + 1, rejected

    def _rejection_notes(self, dto: QuotationRejectRequest, currency: str) -> str | None:
        parts: list[str] = []
        if dto.competitor_name:
            parts.append(f"competitor: {dto.competitor_name}")
        if dto.competitor_amount is not None:
            parts.append(f"competitor amount: {dto.competitor_amount} {currency}")
        if dto.customer_budget is not None:
            parts.append(f"customer budget: {dto.customer_budget} {currency}")
        if dto.notes:
            parts.append(dto.notes)
        return "; ".join(parts) or None

    def _load(self, session: Session, quotation_id: uuid.UUID) -> CustomerQuotation:
        quotation = session.scalar(
            select(CustomerQuotation)
            .where(CustomerQuotation.id == quotation_id)
            .options(selectinload(CustomerQuotation.items), selectinload(CustomerQuotation.ticket))
        )
        if quotation is None:
            raise QuotationDispatchError("QUOTATION_NOT_FOUND", "Quotation not found", severity=Severity.NOT_FOUND)
        return quotation

    def _to_read(self, quotation: CustomerQuotation) -> QuotationRead:
        return QuotationRead(
            id=quotation.id,
            quotation_number=quotation.quotation_number,
            status=quotation.status,
            opportunity_id=quotation.opportunity_id,
            lead_id=quotation.lead_id,
            ticket_id=quotation.ticket_id,
            sequence_number=quotation.sequence_number,
            previous_rejected_count=quotation.previous_rejected_count,
            sequence_label=sequence_label(quotation.sequence_number, quotation.previous_rejected_count),
            customer_name=quotation.customer_name,
            customer_company=quotation.customer_company,
            customer_email=quotation.customer_email,
            customer_phone=quotation.customer_phone,
            currency=quotation.currency,
            total_selling_rate=quotation.total_selling_rate,
            validity_days=quotation.validity_days,
            valid_until=quotation.valid_until,
            sent_via=quotation.sent_via,
            sent_to=quotation.sent_to,
            sent_at=quotation.sent_at,
            rejection_reason=quotation.rejection_reason,
            created_by_user_id=quotation.created_by_user_id,
            created_at=quotation.created_at,
            items=[QuotationItemRead.model_validate(item) for item in quotation.items],
        )


quotation_service = QuotationService()
