"""Add payments table for M-Pesa STK Push and manual receipts.

Revision ID: 9e4a6d3c21f8
Revises: 5b1f0c2a7d10
Create Date: 2026-10-19 09:30:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "9e4a6d3c21f8"
down_revision = "5b1f0c2a7d10"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("payment_reference", sa.String(length=64), nullable=False),
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="KES"),
        sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="mpesa"),
        sa.Column("payment_gateway", sa.String(length=32), nullable=False, server_default="safaricom_mpesa"),
        sa.Column("verification_method", sa.String(length=32), nullable=True),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(length=32), nullable=True),
        sa.Column("phone_number", sa.String(length=15), nullable=True),
        sa.Column("paybill_account_number", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("stk_push_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_stk_push_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.UniqueConstraint("payment_reference", name="uq_payments_payment_reference"),
        sa.UniqueConstraint("gateway_transaction_id", name="uq_payments_gateway_transaction_id"),
        sa.UniqueConstraint("mpesa_receipt_number", name="uq_payments_mpesa_receipt_number"),
    )
    op.create_index("ix_payments_advertiser_id", "payments", ["advertiser_id"])
    op.create_index("ix_payments_campaign_id", "payments", ["campaign_id"])
    op.create_index("ix_payments_phone_number", "payments", ["phone_number"])
    op.create_index("ix_payments_advertiser_status", "payments", ["advertiser_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_payments_advertiser_status", table_name="payments")
    op.drop_index("ix_payments_phone_number", table_name="payments")
    op.drop_index("ix_payments_campaign_id", table_name="payments")
    op.drop_index("ix_payments_advertiser_id", table_name="payments")
    op.drop_table("payments")
