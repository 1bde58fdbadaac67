"""
Alembic migration: booking core (orders, assignments, specialists, devices, outbox)

Revision ID: 2026_10_19_0001
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "2026_10_19_0001"
down_revision = None
branch_labels = None
depends_on = None

ORDER_STATUS = ("pending", "upcoming", "in_progress", "completed", "cancelled")
TRACKING_STAGE = ("moving", "arrived", "waiting", "working", "invoice_requested", "payment_received")
READINESS_STATUS = ("pending", "ready", "not_ready", "no_response", "needs_reassignment")


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    order_status = sa.Enum(*ORDER_STATUS, name="order_status")
    tracking_stage = sa.Enum(*TRACKING_STAGE, name="tracking_stage")
    readiness_status = sa.Enum(*READINESS_STATUS, name="readiness_status")

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(32), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("status", order_status, nullable=False, server_default="pending"),
        sa.Column("tracking_stage", tracking_stage, nullable=True),
        _ts("waiting_started_at", nullable=True),
        _ts("waiting_ends_at", nullable=True),
        sa.Column("specialist_readiness_status", readiness_status, nullable=True),
        _ts("readiness_check_sent_at", nullable=True),
        sa.Column("readiness_reminder_count", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        _ts("readiness_last_reminder_at", nullable=True),
        sa.Column("movement_reminder_count", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        _ts("movement_last_reminder_at", nullable=True),
        sa.Column("readiness_penalty_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("booking_date", sa.Date(), nullable=True),
        sa.Column("booking_time", sa.String(16), nullable=True),
        _ts("created_at", server_default=sa.text("now()"), nullable=False),
        _ts("updated_at", server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.UniqueConstraint("order_number", name="uq_orders__order_number"),
    )
    op.create_index("ix_orders__company_id", "orders", ["company_id"])
    op.create_index("ix_orders__status_readiness", "orders", ["status", "specialist_readiness_status"])
    op.create_index("ix_orders__tracking_stage", "orders", ["tracking_stage"])

    op.create_table(
        "specialists",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("offline_until", nullable=True),
        sa.Column("current_order_id", sa.Integer(), nullable=True),
        _ts("created_at", server_default=sa.text("now()"), nullable=False),
        _ts("updated_at", server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_specialists"),
        sa.ForeignKeyConstraint(
            ["current_order_id"], ["orders.id"],
            name="fk_specialists__current_order_id__orders", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_specialists__phone", "specialists", ["phone"])
    op.create_index("ix_specialists__company_id", "specialists", ["company_id"])

    op.create_table(
        "device_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("specialist_id", sa.Integer(), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(16), nullable=True),
        _ts("last_used_at", nullable=True),
        _ts("created_at", server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_device_tokens"),
        sa.ForeignKeyConstraint(
            ["specialist_id"], ["specialists.id"],
            name="fk_device_tokens__specialist_id__specialists", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_device_tokens__specialist_id", "device_tokens", ["specialist_id"])

    op.create_table(
        "order_specialists",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("specialist_id", sa.Integer(), nullable=False),
        sa.Column("is_accepted", sa.Boolean(), nullable=True),
        sa.Column("quoted_price", sa.Numeric(10, 2), nullable=True),
        _ts("quoted_at", nullable=True),
        _ts("rejected_at", nullable=True),
        _ts("created_at", server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_order_specialists"),
        sa.ForeignKeyConstraint(
            ["order_id"], ["orders.id"],
            name="fk_order_specialists__order_id__orders", ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["specialist_id"], ["specialists.id"],
            name="fk_order_specialists__specialist_id__specialists", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_order_specialists__order_id", "order_specialists", ["order_id"])
    op.create_index("ix_order_specialists__specialist_id", "order_specialists", ["specialist_id"])
    op.create_index("ix_order_specialists__created_at", "order_specialists", ["created_at"])
    op.create_index(
        "ix_order_specialists__specialist_accepted",
        "order_specialists",
        ["specialist_id", "is_accepted"],
    )

    op.create_table(
        "notifications_outbox",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("specialist_id", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _ts("created_at", server_default=sa.text("now()"), nullable=False),
        _ts("processed_at", nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_notifications_outbox"),
        sa.ForeignKeyConstraint(
            ["specialist_id"], ["specialists.id"],
            name="fk_notifications_outbox__specialist_id__specialists", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_notifications_outbox__specialist_id", "notifications_outbox", ["specialist_id"])
    op.create_index("ix_notifications_outbox__created_at", "notifications_outbox", ["created_at"])


def downgrade() -> None:
    op.drop_table("notifications_outbox")
    op.drop_table("order_specialists")
    op.drop_table("device_tokens")
    op.drop_table("specialists")
    op.drop_table("orders")
    for name in ("readiness_status", "tracking_stage", "order_status"):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
