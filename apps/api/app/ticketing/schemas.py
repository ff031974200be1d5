from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.crm.stages import OpportunityStage


Channel = Literal["email", "whatsapp"]
QuotationStatus = Literal["draft", "sent", "accepted", "rejected", "expired", "revoked"]
RejectionReason = Literal[
    "tarif_tidak_masuk",
    "kompetitor_lebih_murah",
    "budget_customer_tidak_cukup",
    "service_tidak_sesuai",
    "waktu_tidak_sesuai",
    "other",
]

SUPPORTED_CHANNELS: frozenset[str] = frozenset({"email", "whatsapp"})


class PreflightVerdict(BaseModel):
    can_proceed: bool = False
    needs_repair: bool = False
    repair_failed: bool = False
    opportunity_id: UUID | None = None
    resolved_opportunity_id: UUID | None = None
    orphan_opportunity_id: UUID | None = None
    resolution_source: str | None = None
    error: str | None = None
    error_code: str | None = None
    opportunity_stage: OpportunityStage | None = None


class MarkSentRequest(BaseModel):
    quotation_id: UUID
    sent_via: Channel
    sent_to: str = Field(min_length=1)
    actor_user_id: str
    correlation_id: str = Field(min_length=1)
    allow_autocreate: bool = False


class MarkSentResult(BaseModel):
    success: bool
    quotation_status: QuotationStatus | None = None
    old_stage: OpportunityStage | None = None
    new_stage: OpportunityStage | None = None
    ticket_status: str | None = None
    opportunity_id: UUID | None = None
    opportunity_source: str | None = None
    pipeline_updates_created: int = 0
    activities_created: int = 0
    quotation_sequence: int | None = None
    sequence_label: str | None = None
    previous_rejected_count: int = 0
    is_resend: bool = False
    error: str | None = None
    error_code: str | None = None
    quotation_opportunity_id: UUID | None = None


class QuotationItemCreate(BaseModel):
    component_name: str = Field(min_length=1)
    selling_rate: Decimal = Field(ge=Decimal("0"))


class QuotationItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    component_name: str
    selling_rate: Decimal


class QuotationCreate(BaseModel):
    quotation_number: str = Field(min_length=1)
    opportunity_id: UUID | None = None
    lead_id: UUID | None = None
    ticket_id: UUID | None = None
    customer_name: str | None = None
    customer_company: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    service_type: str | None = None
    origin_city: str | None = None
    destination_city: str | None = None
    currency: str = Field(default="IDR", min_length=1)
    validity_days: int = Field(default=14, ge=1)
    valid_until: date | None = None
    items: list[QuotationItemCreate] = Field(default_factory=list)


class QuotationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quotation_number: str
    status: QuotationStatus | str
    opportunity_id: UUID | None
    lead_id: UUID | None
    ticket_id: UUID | None
    sequence_number: int
    previous_rejected_count: int
    sequence_label: str
    customer_name: str | None
    customer_company: str | None
    customer_email: str | None
    customer_phone: str | None
    currency: str
    total_selling_rate: Decimal
    validity_days: int
    valid_until: date | None
    sent_via: Channel | None
    sent_to: str | None
    sent_at: datetime | None
    rejection_reason: str | None
    created_by_user_id: str | None
    created_at: datetime
    items: list[QuotationItemRead] = Field(default_factory=list)


class QuotationSendRequest(BaseModel):
    # Plain str so unsupported channels reach the orchestrator's own validation.
    method: str
    recipient: str | None = None
    is_resend: bool = Field(default=False, alias="isResend")
    pdf_url: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class QuotationRejectRequest(BaseModel):
    reason_type: RejectionReason
    competitor_name: str | None = None
    competitor_amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    customer_budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    notes: str | None = None

    @model_validator(mode="after")
    def validate_reason_details(self) -> QuotationRejectRequest:
        if self.reason_type == "kompetitor_lebih_murah" and not self.competitor_name and self.competitor_amount is None:
            raise ValueError("competitor_name or competitor_amount is required when the competitor is cheaper")
        if self.reason_type == "budget_customer_tidak_cukup" and self.customer_budget is None:
            raise ValueError("customer_budget is required when the customer budget is insufficient")
        return self


class RenderedEmail(BaseModel):
    subject: str
    html: str
    text: str
    recipient: str


class RenderedWhatsApp(BaseModel):
    text: str
    url: str | None


class DispatchResult(BaseModel):
    success: bool = True
    quotation_id: UUID
    quotation_number: str
    method: Channel
    sent_to: str
    fallback: bool = False
    quotation_status: QuotationStatus | None = None
    old_stage: OpportunityStage | None = None
    new_stage: OpportunityStage | None = None
    stage_changed: bool = False
    ticket_status: str | None = None
    opportunity_id: UUID | None = None
    opportunity_source: str | None = None
    pipeline_updates_created: int = 0
    activities_created: int = 0
    quotation_sequence: int | None = None
    sequence_label: str
    previous_rejected_count: int = 0
    is_resend: bool = False
    message: str
    correlation_id: str
    pdf_url: str | None = None
    validation_url: str | None = None
    email: RenderedEmail | None = None
    whatsapp: RenderedWhatsApp | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "data": self.model_dump(mode="json"),
            "message": self.message,
            "correlation_id": self.correlation_id,
        }
