from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# SQLite only autoincrements INTEGER primary keys; Postgres gets BIGSERIAL.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")
JsonDoc = JSON().with_variant(JSONB(), "postgresql")

SUBJECT_STATUS_ACTIVE = 1
ORDER_PAY_STATUS_PAID = 1


class Base(DeclarativeBase):
    pass


class Subject(Base):
    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(128), default="")
    # Provider application id used for every gateway call of this tenant.
    app_id: Mapped[str] = mapped_column(String(64))
    # 1 = active; anything else keeps the tenant out of reconciliation.
    status: Mapped[int] = mapped_column(Integer, default=SUBJECT_STATUS_ACTIVE, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    credential: Mapped[SubjectCredential | None] = relationship(back_populates="subject", uselist=False)

    @property
    def is_active(self) -> bool:
        return self.status == SUBJECT_STATUS_ACTIVE


class SubjectCredential(Base):
    __tablename__ = "subject_credentials"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("subjects.id"), unique=True, index=True)
    # Blobs are AES-CFB encrypted and base64 encoded, or plaintext PEM.
    app_private_key: Mapped[str] = mapped_column(Text, default="")
    app_public_cert: Mapped[str] = mapped_column(Text, default="")
    alipay_root_cert: Mapped[str] = mapped_column(Text, default="")
    alipay_public_cert: Mapped[str] = mapped_column(Text, default="")
    # Bumped on every rotation so cached clients built from older material are dropped.
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    subject: Mapped[Subject] = relationship(back_populates="credential")


class Complaint(Base):
    __tablename__ = "complaints"
    __table_args__ = (
        UniqueConstraint("subject_id", "task_id", name="uq_complaints_subject_task"),
        Index("ix_complaints_subject_complainant", "subject_id", "complainant_id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("subjects.id"))
    # Provider task id is the dedup key within a tenant.
    task_id: Mapped[str] = mapped_column(String(64))
    # Provider numeric id; zero is legal but anomalous.
    provider_complaint_id: Mapped[int] = mapped_column(BigInteger, default=0)
    # First merchant order number of the complaint.
    complaint_no: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32))
    complainant_id: Mapped[str] = mapped_column(String(64), default="")
    complainant_name: Mapped[str] = mapped_column(String(128), default="")
    complaint_reason: Mapped[str] = mapped_column(Text, default="")
    complained_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    agent_id: Mapped[int] = mapped_column(Integer, default=0, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    details: Mapped[list[ComplaintDetail]] = relationship(back_populates="complaint")


class ComplaintDetail(Base):
    __tablename__ = "complaint_details"
    __table_args__ = (
        UniqueConstraint("complaint_id", "merchant_order_no", name="uq_complaint_details_order"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    complaint_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("complaints.id"), index=True)
    merchant_order_no: Mapped[str] = mapped_column(String(64))
    platform_order_no: Mapped[str] = mapped_column(String(64), default="")
    trade_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    complaint_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    agent_id: Mapped[int] = mapped_column(Integer, default=0)
    # Flipped by the downstream push job once the line reached the notification channel.
    is_pushed: Mapped[bool] = mapped_column(Boolean, default=False)
    pushed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    complaint: Mapped[Complaint] = relationship(back_populates="details")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_subject_merchant_no", "subject_id", "merchant_order_no"),
        Index("ix_orders_subject_platform_no", "subject_id", "platform_order_no"),
    )

    # Written by the payment side; the complaint workers only read it.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(BigInteger)
    merchant_order_no: Mapped[str] = mapped_column(String(64))
    platform_order_no: Mapped[str] = mapped_column(String(64), default="")
    buyer_id: Mapped[str] = mapped_column(String(64), default="")
    pay_status: Mapped[int] = mapped_column(Integer, default=0)
    pay_ip: Mapped[str] = mapped_column(String(45), default="")
    first_open_ip: Mapped[str] = mapped_column(String(45), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_paid(self) -> bool:
        return self.pay_status == ORDER_PAY_STATUS_PAID


class BlacklistEntry(Base):
    __tablename__ = "blacklist_entries"
    __table_args__ = (
        # NULL device/ip are literal key values, so two NULLs collide on Postgres 15+.
        Index(
            "uq_blacklist_identity",
            "counterparty_id",
            "device_code",
            "ip_address",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    counterparty_id: Mapped[str] = mapped_column(String(64))
    device_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    # Tenant that first reported the counterparty; not part of the identity key.
    subject_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    risk_count: Mapped[int] = mapped_column(Integer, default=1)
    last_risk_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remark: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationMessage(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        Index("ix_notification_queue_status_priority", "status", "priority"),
    )

    # Drained by the chat bot sender; this service only enqueues.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(64))
    priority: Mapped[int] = mapped_column(Integer, default=5)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonDoc, default=dict)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retry: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
