"""initial payment intent schema

Revision ID: 0001_payments
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_intents",
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("merchant_request_id", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("correlation_id"),
    )
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])
    op.create_index("ix_payment_intents_merchant_request_id", "payment_intents", ["merchant_request_id"])

    op.create_table(
        "intent_timeline",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["correlation_id"], ["payment_intents.correlation_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_intent_timeline_correlation_id", "intent_timeline", ["correlation_id"])
    op.create_index("ix_intent_timeline_created_at", "intent_timeline", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_intent_timeline_created_at", table_name="intent_timeline")
    op.drop_index("ix_intent_timeline_correlation_id", table_name="intent_timeline")
    op.drop_table("intent_timeline")
    op.drop_index("ix_payment_intents_merchant_request_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_status", table_name="payment_intents")
    op.drop_table("payment_intents")
