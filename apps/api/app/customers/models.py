from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


HISTORY_ACTION_TYPES = (
    "status_change",
    "manager_change",
    "info_update",
    "document_upload",
    "memo_added",
    "org_change",
)


class Customer(Base):
    __tablename__ = "customer"
    __table_args__ = (
        Index("ix_customer_status_code", "status_code"),
        Index("ix_customer_manager_id", "manager_id"),
        Index("ix_customer_team_id", "team_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[str] = mapped_column(String(32), nullable=False, default="상담대기", server_default="상담대기")
    manager_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manager_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    entry_source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Amounts are recorded in units of 10,000 KRW.
    contract_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    execution_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    contract_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    execution_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contract_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    processing_org: Mapped[str | None] = mapped_column(String(32), nullable=True)

    recent_memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    clawed_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    processing_orgs: Mapped[list[CustomerProcessingOrg]] = relationship(
        "CustomerProcessingOrg",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CustomerProcessingOrg.sort_order",
    )


class CustomerProcessingOrg(Base):
    __tablename__ = "customer_processing_org"
    __table_args__ = (
        UniqueConstraint(
            "customer_id",
            "org",
            "is_re_execution",
            name="uq_customer_processing_org_customer_org",
        ),
        CheckConstraint("status IN ('진행중', '부결', '승인')", name="ck_customer_processing_org_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    org: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(8), nullable=False, default="진행중", server_default="진행중")
    execution_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    execution_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    is_re_execution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="processing_orgs")


class StatusLog(Base):
    __tablename__ = "customer_status_log"
    __table_args__ = (Index("ix_customer_status_log_customer_changed", "customer_id", "changed_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    previous_status: Mapped[str] = mapped_column(String(32), nullable=False)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_by_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CustomerHistoryLog(Base):
    __tablename__ = "customer_history_log"
    __table_args__ = (
        Index("ix_customer_history_log_customer_changed", "customer_id", "changed_at"),
        CheckConstraint(
            "action_type IN ('status_change', 'manager_change', 'info_update', "
            "'document_upload', 'memo_added', 'org_change')",
            name="ck_customer_history_log_action_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_by_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
