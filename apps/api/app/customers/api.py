from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_actor_user, require_authenticated
from app.core.auth import ActorUser
from app.core.database import get_db
from app.customers.audit import audit_logger
from app.customers.schemas import (
    CustomerCreate,
    CustomerRead,
    FinancialPatch,
    FunnelRead,
    HistoryLogRead,
    ManagerReassign,
    MemoCreate,
    RequirementsRead,
    StatusLogRead,
    TransitionRead,
    TransitionRequest,
)
from app.customers.service import TransitionOutcome, customer_store, customer_workflow
from app.customers.status import UnknownStatusError, get_definition
from app.settlement.schemas import ClawbackRead, SettlementItemRead

router = APIRouter(prefix="/api/customers", tags=["customers"])


def _transition_read(outcome: TransitionOutcome) -> TransitionRead:
    clawback = None
    if outcome.clawback is not None:
        clawback = ClawbackRead(
            clawback_created=outcome.clawback.clawback_created,
            items=[SettlementItemRead.model_validate(item) for item in outcome.clawback.items],
            total_amount=outcome.clawback.total_amount,
        )
    return TransitionRead(
        customer=CustomerRead.model_validate(outcome.customer),
        status_log=StatusLogRead.model_validate(outcome.status_log),
        settlement_items=[SettlementItemRead.model_validate(item) for item in outcome.settlement_items],
        clawback=clawback,
    )


@router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> CustomerRead | JSONResponse:
    try:
        require_authenticated(user)
        return CustomerRead.model_validate(customer_store.create_customer(db, user, dto))
    except HTTPException as exc:
        return error_response(request, exc, code="customer_create_failed")


@router.get("", response_model=list[CustomerRead])
def list_customers(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    manager_id: str | None = Query(default=None),
    team_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[CustomerRead] | JSONResponse:
    try:
        customers = customer_store.list_customers(
            db,
            status_filter=status_filter,
            manager_id=manager_id,
            team_id=team_id,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(request, exc, code="customer_list_failed")
    return [CustomerRead.model_validate(customer) for customer in customers]


@router.get("/funnel", response_model=FunnelRead)
def get_funnel(
    manager_id: str | None = Query(default=None),
    team_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> FunnelRead:
    return customer_store.funnel(db, manager_id=manager_id, team_id=team_id)


@router.get("/statuses/{status_code}/requirements", response_model=RequirementsRead)
def get_status_requirements(request: Request, status_code: str) -> RequirementsRead | JSONResponse:
    try:
        definition = get_definition(status_code)
    except UnknownStatusError as exc:
        return error_response(
            request,
            HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)),
            code="unknown_status",
        )
    requirements = definition.requirements
    return RequirementsRead(
        status=definition.code,
        category=definition.category,
        path=definition.path,
        requires_contract_info=requirements.requires_contract_info,
        requires_processing_org=requirements.requires_processing_org,
        requires_execution_info=requirements.requires_execution_info,
        requires_clawback_date=requirements.requires_clawback_date,
    )


@router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CustomerRead | JSONResponse:
    try:
        return CustomerRead.model_validate(customer_store.get_customer(db, customer_id))
    except HTTPException as exc:
        return error_response(request, exc, code="customer_read_failed")


@router.post("/{customer_id}/status", response_model=TransitionRead)
def change_status(
    request: Request,
    customer_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> TransitionRead | JSONResponse:
    try:
        require_authenticated(user)
        outcome = customer_workflow.change_status(db, customer_id, dto, user)
        return _transition_read(outcome)
    except HTTPException as exc:
        return error_response(request, exc, code="customer_status_change_failed")


@router.patch("/{customer_id}/financials", response_model=CustomerRead)
def update_financials(
    request: Request,
    customer_id: uuid.UUID,
    dto: FinancialPatch,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> CustomerRead | JSONResponse:
    try:
        require_authenticated(user)
        customer_store.update_financial_fields(db, customer_id, dto, user)
        return CustomerRead.model_validate(customer_store.get_customer(db, customer_id))
    except HTTPException as exc:
        return error_response(request, exc, code="customer_update_failed")


@router.post("/{customer_id}/manager", response_model=CustomerRead)
def reassign_manager(
    request: Request,
    customer_id: uuid.UUID,
    dto: ManagerReassign,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> CustomerRead | JSONResponse:
    try:
        require_authenticated(user)
        return CustomerRead.model_validate(customer_store.reassign_manager(db, customer_id, dto, user))
    except HTTPException as exc:
        return error_response(request, exc, code="customer_manager_change_failed")


@router.post("/{customer_id}/memos", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def add_memo(
    request: Request,
    customer_id: uuid.UUID,
    dto: MemoCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> CustomerRead | JSONResponse:
    try:
        require_authenticated(user)
        return CustomerRead.model_validate(customer_store.add_memo(db, customer_id, dto.content, user))
    except HTTPException as exc:
        return error_response(request, exc, code="customer_memo_failed")


@router.get("/{customer_id}/status-logs", response_model=list[StatusLogRead])
def list_status_logs(
    request: Request,
    customer_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[StatusLogRead] | JSONResponse:
    try:
        customer_store.get_customer(db, customer_id)
    except HTTPException as exc:
        return error_response(request, exc, code="customer_read_failed")
    return [StatusLogRead.model_validate(row) for row in audit_logger.list_status_logs(db, customer_id, limit=limit)]


@router.get("/{customer_id}/history", response_model=list[HistoryLogRead])
def list_history(
    request: Request,
    customer_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[HistoryLogRead] | JSONResponse:
    try:
        customer_store.get_customer(db, customer_id)
    except HTTPException as exc:
        return error_response(request, exc, code="customer_read_failed")
    return [HistoryLogRead.model_validate(row) for row in audit_logger.list_history(db, customer_id, limit=limit)]
