"""create quotation dispatch tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "user_profile",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("contact_name", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("quotation_status", sa.String(length=32), nullable=True),
        sa.Column("owner_user_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="Prospecting"),
        sa.Column("source_lead_id", sa.Uuid(), nullable=True),
        sa.Column("owner_user_id", sa.String(length=255), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["source_lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_source_lead_id", "crm_opportunity", ["source_lead_id"], unique=False)
    op.create_index("ix_crm_opportunity_stage", "crm_opportunity", ["stage"], unique=False)

    op.create_table(
        "crm_opportunity_stage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by_user_id", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("opportunity_id", "sequence", name="uq_crm_opportunity_stage_history_sequence"),
    )

    op.create_table(
        "crm_pipeline_update",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("old_stage", sa.String(length=32), nullable=False),
        sa.Column("new_stage", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("updated_by_user_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_update_opportunity_id", "crm_pipeline_update", ["opportunity_id"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("owner_user_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Done"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_entity", "crm_activity", ["entity_type", "entity_id"], unique=False)

    op.create_table(
        "crm_idempotency_key",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_key_endpoint_key"),
    )

    op.create_table(
        "ticketing_ticket",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("ticket_code", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ticket_code"),
    )

    op.create_table(
        "customer_quotation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("ticket_id", sa.Uuid(), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_rejected_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("customer_name", sa.Text(), nullable=True),
        sa.Column("customer_company", sa.Text(), nullable=True),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("customer_phone", sa.String(length=64), nullable=True),
        sa.Column("service_type", sa.String(length=128), nullable=True),
        sa.Column("origin_city", sa.String(length=128), nullable=True),
        sa.Column("destination_city", sa.String(length=128), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="IDR"),
        sa.Column("total_selling_rate", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("validity_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("valid_until", sa.Date(), nullable=True),
        sa.Column("validation_code", sa.String(length=64), nullable=False),
        sa.Column("sent_via", sa.String(length=16), nullable=True),
        sa.Column("sent_to", sa.String(length=320), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=64), nullable=True),
        sa.Column("rejection_notes", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by_user_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["ticket_id"], ["ticketing_ticket.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quotation_number"),
    )
    op.create_index("ix_customer_quotation_opportunity_id", "customer_quotation", ["opportunity_id"], unique=False)
    op.create_index("ix_customer_quotation_ticket_id", "customer_quotation", ["ticket_id"], unique=False)
    op.create_index("ix_customer_quotation_lead_id", "customer_quotation", ["lead_id"], unique=False)

    op.create_table(
        "customer_quotation_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("component_name", sa.Text(), nullable=False),
        sa.Column("selling_rate", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.ForeignKeyConstraint(["quotation_id"], ["customer_quotation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customer_quotation_item_quotation_id", "customer_quotation_item", ["quotation_id"], unique=False)

    op.create_table(
        "customer_quotation_send_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column("sent_via", sa.String(length=16), nullable=False),
        sa.Column("sent_to", sa.String(length=320), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["quotation_id"], ["customer_quotation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quotation_id", "correlation_id", name="uq_customer_quotation_send_log_correlation"),
    )


def downgrade() -> None:
    op.drop_table("customer_quotation_send_log")
    op.drop_index("ix_customer_quotation_item_quotation_id", table_name="customer_quotation_item")
    op.drop_table("customer_quotation_item")
    op.drop_index("ix_customer_quotation_lead_id", table_name="customer_quotation")
    op.drop_index("ix_customer_quotation_ticket_id", table_name="customer_quotation")
    op.drop_index("ix_customer_quotation_opportunity_id", table_name="customer_quotation")
    op.drop_table("customer_quotation")
    op.drop_table("ticketing_ticket")
    op.drop_table("crm_idempotency_key")
    op.drop_index("ix_crm_activity_entity", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_index("ix_crm_pipeline_update_opportunity_id", table_name="crm_pipeline_update")
    op.drop_table("crm_pipeline_update")
    op.drop_table("crm_opportunity_stage_history")
    op.drop_index("ix_crm_opportunity_stage", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_source_lead_id", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_table("crm_lead")
    op.drop_table("user_profile")
