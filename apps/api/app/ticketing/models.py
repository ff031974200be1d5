from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    __tablename__ = "user_profile"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str | None] = mapped_column(String(64), nullable=True)


class TicketingTicket(Base):
    __tablename__ = "ticketing_ticket"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open", server_default="open")
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    opportunity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CustomerQuotation(Base):
    __tablename__ = "customer_quotation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    # Plain references: dangling values are detected by preflight, not by the database.
    opportunity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ticketing_ticket.id", ondelete="SET NULL"),
        nullable=True,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    previous_rejected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    customer_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_company: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    origin_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    destination_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="IDR", server_default="IDR")
    total_selling_rate: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    validity_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14, server_default="14")
    valid_until: Mapped[date | None] = mapped_column(Date(), nullable=True)
    validation_code: Mapped[str] = mapped_column(String(64), nullable=False, default=lambda: uuid.uuid4().hex[:12])
    sent_via: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sent_to: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejection_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    ticket: Mapped[TicketingTicket | None] = relationship("TicketingTicket")
    creator: Mapped[UserProfile | None] = relationship(
        "UserProfile",
        primaryjoin="foreign(CustomerQuotation.created_by_user_id) == UserProfile.user_id",
        viewonly=True,
    )
    items: Mapped[list[CustomerQuotationItem]] = relationship(
        "CustomerQuotationItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CustomerQuotationItem.position",
    )


class CustomerQuotationItem(Base):
    __tablename__ = "customer_quotation_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    component_name: Mapped[str] = mapped_column(Text, nullable=False)
    selling_rate: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    quotation: Mapped[CustomerQuotation] = relationship("CustomerQuotation", back_populates="items")


class QuotationSendLog(Base):
    __tablename__ = "customer_quotation_send_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    correlation_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sent_via: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_to: Mapped[str] = mapped_column(String(320), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("quotation_id", "correlation_id", name="uq_customer_quotation_send_log_correlation"),
    )


Index("ix_customer_quotation_opportunity_id", CustomerQuotation.opportunity_id)
Index("ix_customer_quotation_ticket_id", CustomerQuotation.ticket_id)
Index("ix_customer_quotation_lead_id", CustomerQuotation.lead_id)
Index("ix_customer_quotation_item_quotation_id", CustomerQuotationItem.quotation_id)
