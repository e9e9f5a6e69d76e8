from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.settlement.schemas import ClawbackRead, SettlementItemRead


OrgStatus = Literal["진행중", "부결", "승인"]


class ProcessingOrgInput(BaseModel):
    org: str = Field(min_length=1)
    status: OrgStatus = "진행중"
    execution_date: date | None = None
    execution_amount: Decimal | None = None
    is_re_execution: bool = False


class ProcessingOrgRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org: str
    status: OrgStatus
    execution_date: date | None
    execution_amount: Decimal | None
    is_re_execution: bool


class FinancialPatch(BaseModel):
    contract_date: date | None = None
    contract_amount: Decimal | None = None
    commission_rate: Decimal | None = None
    execution_date: date | None = None
    execution_amount: Decimal | None = None
    processing_org: str | None = None
    processing_orgs: list[ProcessingOrgInput] | None = None


class TransitionRequest(FinancialPatch):
    previous_status: str = Field(min_length=1)
    new_status: str = Field(min_length=1)
    expected_row_version: int | None = None
    clawback_date: date | None = None


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1)
    company_name: str | None = None
    manager_id: str | None = None
    manager_name: str | None = None
    team_id: str | None = None
    team_name: str | None = None
    entry_source: str | None = None
    entry_date: date | None = None


class ManagerReassign(BaseModel):
    manager_id: str = Field(min_length=1)
    manager_name: str | None = None
    team_id: str | None = None
    team_name: str | None = None


class MemoCreate(BaseModel):
    content: str = Field(min_length=1)


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company_name: str | None
    status_code: str
    manager_id: str | None
    manager_name: str | None
    team_id: str | None
    team_name: str | None
    entry_source: str | None
    entry_date: date | None
    contract_amount: Decimal | None
    commission_rate: Decimal | None
    execution_amount: Decimal | None
    contract_date: date | None
    execution_date: date | None
    contract_completion_date: date | None
    processing_org: str | None
    processing_orgs: list[ProcessingOrgRead] = Field(default_factory=list)
    recent_memo: str | None
    clawed_back_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StatusLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    previous_status: str
    new_status: str
    changed_by: str
    changed_by_name: str | None
    changed_at: datetime


class HistoryLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    action_type: str
    old_value: str | None
    new_value: str | None
    description: str
    changed_by: str
    changed_by_name: str | None
    changed_at: datetime


class TransitionRead(BaseModel):
    customer: CustomerRead
    status_log: StatusLogRead
    settlement_items: list[SettlementItemRead] = Field(default_factory=list)
    clawback: ClawbackRead | None = None


class RequirementsRead(BaseModel):
    status: str
    category: str
    path: str | None
    requires_contract_info: bool
    requires_processing_org: bool
    requires_execution_info: bool
    requires_clawback_date: bool


class FunnelRead(BaseModel):
    total: int
    counts: dict[str, int]
