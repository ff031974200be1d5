from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.models import CRMActivity, CRMLead, CRMOpportunity
from app.crm.service import opportunity_service
from app.crm.stages import OpportunityStage, forward_path
from app.ticketing.models import CustomerQuotation, QuotationSendLog, TicketingTicket
from app.ticketing.schemas import MarkSentRequest, MarkSentResult, PreflightVerdict
from app.ticketing.sequence import sequence_label


tracer = trace.get_tracer("app.ticketing.gateway")
logger = logging.getLogger("app.ticketing.gateway")

TICKET_WAITING_CUSTOMER = "waiting_customer"
TICKET_FINAL_STATUSES = frozenset({"closed", "resolved"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotationSendGateway(Protocol):
    def load_quotation(self, quotation_id: uuid.UUID) -> CustomerQuotation | None: ...

    def preflight(self, quotation_id: uuid.UUID) -> PreflightVerdict: ...

    def mark_sent(self, request: MarkSentRequest) -> MarkSentResult: ...


class SqlQuotationSendGateway:
    """Preflight and Mark-Sent against the local database.

    Preflight only reads. Mark-Sent runs in a single transaction and records its
    result per (quotation, correlation id) so a retried call replays instead of
    repeating side effects.
    """

    def __init__(self, session: Session):
        self.session = session

    def load_quotation(self, quotation_id: uuid.UUID) -> CustomerQuotation | None:
        return self.session.scalar(
            select(CustomerQuotation)
            .where(CustomerQuotation.id == quotation_id)
            .options(
                selectinload(CustomerQuotation.ticket),
                selectinload(CustomerQuotation.items),
                selectinload(CustomerQuotation.creator),
            )
        )

    def preflight(self, quotation_id: uuid.UUID) -> PreflightVerdict:
        with tracer.start_as_current_span("ticketing.preflight") as span:
            span.set_attribute("quotation_id", str(quotation_id))
            quotation = self.session.get(CustomerQuotation, quotation_id)
            if quotation is None:
                return PreflightVerdict(
                    repair_failed=True,
                    error="Quotation not found",
                    error_code="QUOTATION_NOT_FOUND",
                )
            if quotation.opportunity_id is None:
                return PreflightVerdict(can_proceed=True)

            opportunity = self.session.get(CRMOpportunity, quotation.opportunity_id)
            if opportunity is not None:
                span.set_attribute("opportunity_id", str(opportunity.id))
                return PreflightVerdict(
                    can_proceed=True,
                    opportunity_id=opportunity.id,
                    opportunity_stage=OpportunityStage(opportunity.stage),
                )

            span.set_attribute("orphan_opportunity_id", str(quotation.opportunity_id))
            candidates, source = self._repair_candidates(quotation)
            if len(candidates) == 1:
                resolved = candidates[0]
                return PreflightVerdict(
                    can_proceed=True,
                    needs_repair=True,
                    opportunity_id=resolved.id,
                    resolved_opportunity_id=resolved.id,
                    orphan_opportunity_id=quotation.opportunity_id,
                    resolution_source=source,
                    opportunity_stage=OpportunityStage(resolved.stage),
                )
            if candidates:
                return PreflightVerdict(
                    repair_failed=True,
                    orphan_opportunity_id=quotation.opportunity_id,
                    resolution_source=source,
                    error="Multiple possible opportunities found for orphaned reference",
                    error_code="AMBIGUOUS_OPPORTUNITY",
                )
            return PreflightVerdict(
                repair_failed=True,
                orphan_opportunity_id=quotation.opportunity_id,
                error="Referenced opportunity does not exist and no repair candidate was found",
                error_code="NO_REPAIR_CANDIDATE",
            )

    def mark_sent(self, request: MarkSentRequest) -> MarkSentResult:
        with tracer.start_as_current_span("ticketing.mark_sent") as span:
            span.set_attribute("quotation_id", str(request.quotation_id))
            span.set_attribute("correlation_id", request.correlation_id)
            span.set_attribute("channel", request.sent_via)

            replay = self._load_send_log(request.quotation_id, request.correlation_id)
            if replay is not None:
                span.set_attribute("replayed", True)
                return replay

            if request.allow_autocreate:
                return MarkSentResult(
                    success=False,
                    error="Automatic opportunity creation is not supported",
                    error_code="INSUFFICIENT_DATA",
                )

            try:
                result = self._mark_sent(request)
            except HTTPException as exc:
                self.session.rollback()
                if exc.status_code != status.HTTP_409_CONFLICT:
                    raise
                logger.warning(
                    "quotation.mark_sent_conflict",
                    extra={"quotation_id": str(request.quotation_id), "error": str(exc.detail)},
                )
                return MarkSentResult(
                    success=False,
                    error="Opportunity was changed by another request; retry the send",
                    error_code="CONFLICT_STALE_OPPORTUNITY",
                )
            except Exception:
                self.session.rollback()
                raise

            span.set_attribute("pipeline_updates_created", result.pipeline_updates_created)
            return result

    def _mark_sent(self, request: MarkSentRequest) -> MarkSentResult:
        quotation = self.session.scalar(
            select(CustomerQuotation).where(CustomerQuotation.id == request.quotation_id).with_for_update()
        )
        if quotation is None:
            return MarkSentResult(success=False, error="Quotation not found", error_code="QUOTATION_NOT_FOUND")

        current_status = quotation.status
        if current_status == "sent":
            result = self._resend(quotation, request)
        elif current_status != "draft":
            self.session.rollback()
            return MarkSentResult(
                success=False,
                quotation_status=current_status,
                error=f"Quotation cannot be sent from status {current_status}",
                error_code="INVALID_STATUS_TRANSITION",
            )
        else:
            opportunity, source, failure = self._resolve_opportunity(quotation)
            if failure is not None:
                self.session.rollback()
                return failure
            result = self._first_send(quotation, opportunity, source, request)

        # Audit entries and events queued above are released by this commit.
        self._store_send_log(request, result)
        self.session.commit()
        return result

    def _resend(self, quotation: CustomerQuotation, request: MarkSentRequest) -> MarkSentResult:
        quotation.sent_via = request.sent_via
        quotation.sent_to = request.sent_to
        quotation.sent_at = utcnow()
        opportunity = self.session.get(CRMOpportunity, quotation.opportunity_id) if quotation.opportunity_id else None
        stage = OpportunityStage(opportunity.stage) if opportunity is not None else None
        ticket = quotation.ticket
        logger.info(
            "quotation.resend",
            extra={
                "quotation_id": str(quotation.id),
                "channel": request.sent_via,
            },
        )
        return MarkSentResult(
            success=True,
            quotation_status="sent",
            old_stage=stage,
            new_stage=stage,
            ticket_status=ticket.status if ticket is not None else None,
            opportunity_id=opportunity.id if opportunity is not None else None,
            opportunity_source="quotation" if opportunity is not None else None,
            quotation_sequence=quotation.sequence_number,
            sequence_label=sequence_label(quotation.sequence_number, quotation.previous_rejected_count),
            previous_rejected_count=quotation.previous_rejected_count,
            is_resend=True,
        )

    def _first_send(
        self,
        quotation: CustomerQuotation,
        opportunity: CRMOpportunity | None,
        source: str | None,
        request: MarkSentRequest,
    ) -> MarkSentResult:
        before = self._snapshot(quotation)
        quotation.status = "sent"
        quotation.sent_via = request.sent_via
        quotation.sent_to = request.sent_to
        quotation.sent_at = utcnow()
        label = sequence_label(quotation.sequence_number, quotation.previous_rejected_count)

        old_stage: OpportunityStage | None = None
        new_stage: OpportunityStage | None = None
        pipeline_updates = 0
        if opportunity is not None:
            old_stage = OpportunityStage(opportunity.stage)
            target = OpportunityStage.NEGOTIATION if quotation.previous_rejected_count > 0 else OpportunityStage.QUOTE_SENT
            for step in forward_path(old_stage, target):
                opportunity_service.apply_stage(
                    self.session,
                    opportunity,
                    step,
                    actor_user_id=request.actor_user_id,
                    source="quotation_sent",
                    correlation_id=request.correlation_id,
                    notes=f"{label} {quotation.quotation_number} sent via {request.sent_via}",
                )
                pipeline_updates += 1
            new_stage = OpportunityStage(opportunity.stage)

        ticket = quotation.ticket
        if ticket is not None and ticket.status not in TICKET_FINAL_STATUSES:
            ticket.status = TICKET_WAITING_CUSTOMER

        lead_id = quotation.lead_id or (opportunity.source_lead_id if opportunity is not None else None)
        lead = self.session.get(CRMLead, lead_id) if lead_id is not None else None
        if lead is not None:
            lead.quotation_status = "sent"

        activities = 0
        activity_target = self._activity_target(quotation, opportunity, ticket)
        if activity_target is not None:
            entity_type, entity_id = activity_target
            self.session.add(
                CRMActivity(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    activity_type="Email" if request.sent_via == "email" else "WhatsApp",
                    subject=f"Quotation {quotation.quotation_number} sent",
                    body=f"{label} sent via {request.sent_via} to {request.sent_to}",
                    owner_user_id=request.actor_user_id,
                    correlation_id=request.correlation_id,
                )
            )
            activities = 1
        self.session.flush()

        audit.record(
            actor_user_id=request.actor_user_id,
            entity_type="ticketing.customer_quotation",
            entity_id=str(quotation.id),
            action="send",
            before=before,
            after=self._snapshot(quotation),
            correlation_id=request.correlation_id,
            session=self.session,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "ticketing.quotation.sent",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": request.actor_user_id,
                "correlation_id": request.correlation_id,
                "version": 1,
                "payload": {
                    "quotation_id": str(quotation.id),
                    "quotation_number": quotation.quotation_number,
                    "sent_via": request.sent_via,
                    "opportunity_id": str(opportunity.id) if opportunity is not None else None,
                    "old_stage": old_stage.value if old_stage is not None else None,
                    "new_stage": new_stage.value if new_stage is not None else None,
                },
            },
            session=self.session,
        )

        return MarkSentResult(
            success=True,
            quotation_status="sent",
            old_stage=old_stage,
            new_stage=new_stage,
            ticket_status=ticket.status if ticket is not None else None,
            opportunity_id=opportunity.id if opportunity is not None else None,
            opportunity_source=source,
            pipeline_updates_created=pipeline_updates,
            activities_created=activities,
            quotation_sequence=quotation.sequence_number,
            sequence_label=label,
            previous_rejected_count=quotation.previous_rejected_count,
            is_resend=False,
        )

    def _resolve_opportunity(
        self,
        quotation: CustomerQuotation,
    ) -> tuple[CRMOpportunity | None, str | None, MarkSentResult | None]:
        if quotation.opportunity_id is not None:
            opportunity = self.session.get(CRMOpportunity, quotation.opportunity_id)
            if opportunity is not None:
                return opportunity, "quotation", None

            candidates, source = self._repair_candidates(quotation)
            if len(candidates) == 1:
                repaired = candidates[0]
                logger.warning(
                    "quotation.opportunity_repaired",
                    extra={
                        "quotation_id": str(quotation.id),
                        "opportunity_id": str(repaired.id),
                        "resolution_source": source,
                    },
                )
                quotation.opportunity_id = repaired.id
                return repaired, f"repaired:{source}", None

            code = "CONFLICT_AMBIGUOUS_OPPORTUNITY" if candidates else "OPPORTUNITY_NOT_FOUND"
            return (
                None,
                None,
                MarkSentResult(
                    success=False,
                    error="Referenced opportunity does not exist",
                    error_code=code,
                    quotation_opportunity_id=quotation.opportunity_id,
                ),
            )

        ticket = quotation.ticket
        if ticket is not None and ticket.opportunity_id is not None:
            opportunity = self.session.get(CRMOpportunity, ticket.opportunity_id)
            if opportunity is not None:
                quotation.opportunity_id = opportunity.id
                return opportunity, "ticket", None

        if quotation.lead_id is not None:
            candidates = self._lead_opportunities(quotation.lead_id)
            if len(candidates) == 1:
                quotation.opportunity_id = candidates[0].id
                return candidates[0], "lead", None

        return None, None, None

    def _repair_candidates(self, quotation: CustomerQuotation) -> tuple[list[CRMOpportunity], str | None]:
        if quotation.lead_id is not None:
            by_lead = self._lead_opportunities(quotation.lead_id)
            if by_lead:
                return by_lead, "lead"

        ticket = quotation.ticket
        if ticket is not None and ticket.opportunity_id not in (None, quotation.opportunity_id):
            opportunity = self.session.get(CRMOpportunity, ticket.opportunity_id)
            if opportunity is not None:
                return [opportunity], "ticket"
        return [], None

    def _lead_opportunities(self, lead_id: uuid.UUID) -> list[CRMOpportunity]:
        return list(
            self.session.scalars(
                select(CRMOpportunity).where(CRMOpportunity.source_lead_id == lead_id).order_by(CRMOpportunity.created_at)
            )
        )

    def _activity_target(
        self,
        quotation: CustomerQuotation,
        opportunity: CRMOpportunity | None,
        ticket: TicketingTicket | None,
    ) -> tuple[str, uuid.UUID] | None:
        if opportunity is not None:
            return "opportunity", opportunity.id
        if ticket is not None:
            return "ticket", ticket.id
        if quotation.lead_id is not None:
            return "lead", quotation.lead_id
        return None

    def _load_send_log(self, quotation_id: uuid.UUID, correlation_id: str) -> MarkSentResult | None:
        row = self.session.scalar(
            select(QuotationSendLog).where(
                and_(QuotationSendLog.quotation_id == quotation_id, QuotationSendLog.correlation_id == correlation_id)
            )
        )
        if row is None:
            return None
        return MarkSentResult.model_validate_json(row.result_json)

    def _store_send_log(self, request: MarkSentRequest, result: MarkSentResult) -> None:
        self.session.add(
            QuotationSendLog(
                quotation_id=request.quotation_id,
                correlation_id=request.correlation_id,
                sent_via=request.sent_via,
                sent_to=request.sent_to,
                actor_user_id=request.actor_user_id,
                result_json=result.model_dump_json(),
            )
        )

    def _snapshot(self, quotation: CustomerQuotation) -> dict[str, str | None]:
        return {
            "status": quotation.status,
            "opportunity_id": str(quotation.opportunity_id) if quotation.opportunity_id else None,
            "sent_via": quotation.sent_via,
            "sent_to": quotation.sent_to,
        }
