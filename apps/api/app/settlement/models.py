from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementItem(Base):
    __tablename__ = "settlement_item"
    __table_args__ = (
        Index("ix_settlement_item_customer_key", "customer_id", "settlement_key"),
        Index("ix_settlement_item_month_manager", "settlement_month", "manager_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    settlement_key: Mapped[str] = mapped_column(String(64), nullable=False)
    settlement_month: Mapped[str] = mapped_column(String(7), nullable=False)
    processing_org: Mapped[str | None] = mapped_column(String(32), nullable=True)

    base_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    category_bonus: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    amount_bonus: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    manager_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manager_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_clawback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    original_item_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement_item.id", ondelete="SET NULL"),
        nullable=True,
    )
    clawback_applied_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
