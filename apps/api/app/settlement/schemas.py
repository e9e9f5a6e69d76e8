from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SettlementItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    settlement_key: str
    settlement_month: str
    processing_org: str | None
    base_amount: Decimal
    commission_rate: Decimal
    amount: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    category_bonus: int
    amount_bonus: int
    manager_id: str | None
    manager_name: str | None
    team_id: str | None
    team_name: str | None
    is_clawback: bool
    original_item_id: UUID | None
    clawback_applied_at: date | None
    created_at: datetime
    updated_at: datetime


class ClawbackRequest(BaseModel):
    clawback_month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class ClawbackRead(BaseModel):
    clawback_created: bool
    items: list[SettlementItemRead]
    total_amount: Decimal


class ManagerSettlementSummary(BaseModel):
    manager_id: str | None
    manager_name: str | None
    contract_count: int
    execution_count: int
    total_amount: Decimal
    tax_amount: Decimal
    clawback_count: int
    clawback_amount: Decimal
    final_payment: Decimal


class SettlementSummaryRead(BaseModel):
    settlement_month: str
    managers: list[ManagerSettlementSummary]
