"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subjects",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("company_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subjects_status", "subjects", ["status"])

    op.create_table(
        "subject_credentials",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.BigInteger(), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("app_private_key", sa.Text(), nullable=False, server_default=""),
        sa.Column("app_public_cert", sa.Text(), nullable=False, server_default=""),
        sa.Column("alipay_root_cert", sa.Text(), nullable=False, server_default=""),
        sa.Column("alipay_public_cert", sa.Text(), nullable=False, server_default=""),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subject_credentials_subject_id", "subject_credentials", ["subject_id"], unique=True)

    op.create_table(
        "complaints",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.BigInteger(), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("task_id", sa.String(length=64), nullable=False),
        sa.Column("provider_complaint_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("complaint_no", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("complainant_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("complainant_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("complaint_reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("complained_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("agent_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("subject_id", "task_id", name="uq_complaints_subject_task"),
    )
    op.create_index("ix_complaints_complaint_no", "complaints", ["complaint_no"])
    op.create_index("ix_complaints_agent_id", "complaints", ["agent_id"])
    op.create_index("ix_complaints_subject_complainant", "complaints", ["subject_id", "complainant_id"])

    op.create_table(
        "complaint_details",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("complaint_id", sa.BigInteger(), sa.ForeignKey("complaints.id"), nullable=False),
        sa.Column("merchant_order_no", sa.String(length=64), nullable=False),
        sa.Column("platform_order_no", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("trade_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("complaint_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("agent_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_pushed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pushed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("complaint_id", "merchant_order_no", name="uq_complaint_details_order"),
    )
    op.create_index("ix_complaint_details_complaint_id", "complaint_details", ["complaint_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.BigInteger(), nullable=False),
        sa.Column("merchant_order_no", sa.String(length=64), nullable=False),
        sa.Column("platform_order_no", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("buyer_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("pay_status", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pay_ip", sa.String(length=45), nullable=False, server_default=""),
        sa.Column("first_open_ip", sa.String(length=45), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orders_subject_merchant_no", "orders", ["subject_id", "merchant_order_no"])
    op.create_index("ix_orders_subject_platform_no", "orders", ["subject_id", "platform_order_no"])

    op.create_table(
        "blacklist_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("counterparty_id", sa.String(length=64), nullable=False),
        sa.Column("device_code", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("subject_id", sa.BigInteger(), nullable=True),
        sa.Column("risk_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_risk_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remark", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # NULL device/ip must collide with NULL, which needs NULLS NOT DISTINCT (Postgres 15+).
    op.create_index(
        "uq_blacklist_identity",
        "blacklist_entries",
        ["counterparty_id", "device_code", "ip_address"],
        unique=True,
        postgresql_nulls_not_distinct=True,
    )

    op.create_table(
        "notification_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retry", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notification_queue_status_priority", "notification_queue", ["status", "priority"])


def downgrade() -> None:
    op.drop_index("ix_notification_queue_status_priority", table_name="notification_queue")
    op.drop_table("notification_queue")
    op.drop_index("uq_blacklist_identity", table_name="blacklist_entries")
    op.drop_table("blacklist_entries")
    op.drop_index("ix_orders_subject_platform_no", table_name="orders")
    op.drop_index("ix_orders_subject_merchant_no", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_complaint_details_complaint_id", table_name="complaint_details")
    op.drop_table("complaint_details")
    op.drop_index("ix_complaints_subject_complainant", table_name="complaints")
    op.drop_index("ix_complaints_agent_id", table_name="complaints")
    op.drop_index("ix_complaints_complaint_no", table_name="complaints")
    op.drop_table("complaints")
    op.drop_index("ix_subject_credentials_subject_id", table_name="subject_credentials")
    op.drop_table("subject_credentials")
    op.drop_index("ix_subjects_status", table_name="subjects")
    op.drop_table("subjects")
