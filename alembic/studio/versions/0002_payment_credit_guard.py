"""payment credit guard and status timeline

Revision ID: 0002_studio
Revises: 0001_studio
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_studio"
down_revision = "0001_studio"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per external charge; the webhook upserts by this id.
    op.create_index("ix_payments_mercadopago_id", "payments", ["mercadopago_id"], unique=True)
    op.add_column("payments", sa.Column("credited_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_payments_approved_uncredited",
        "payments",
        ["created_at"],
        postgresql_where=sa.text("status = 'approved' AND credited_at IS NULL"),
    )

    op.create_table(
        "payment_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_payment_timeline_payment_id", "payment_timeline", ["payment_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_timeline_payment_id", table_name="payment_timeline")
    op.drop_table("payment_timeline")
    op.drop_index("ix_payments_approved_uncredited", table_name="payments")
    op.drop_column("payments", "credited_at")
    op.drop_index("ix_payments_mercadopago_id", table_name="payments")
