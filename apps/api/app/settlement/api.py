from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_actor_user, require_authenticated
from app.core.auth import ActorUser
from app.core.database import get_db
from app.settlement.schemas import ClawbackRead, ClawbackRequest, SettlementItemRead, SettlementSummaryRead
from app.settlement.service import clawback_processor, settlement_reconciler, settlement_report_service

router = APIRouter(prefix="/api/settlements", tags=["settlements"])


@router.get("", response_model=list[SettlementItemRead])
def list_settlement_items(
    request: Request,
    settlement_month: str | None = Query(default=None, alias="month"),
    manager_id: str | None = Query(default=None),
    customer_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[SettlementItemRead] | JSONResponse:
    try:
        items = settlement_report_service.list_items(
            db,
            settlement_month=settlement_month,
            manager_id=manager_id,
            customer_id=customer_id,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(request, exc, code="settlement_list_failed")
    return [SettlementItemRead.model_validate(item) for item in items]


@router.get("/summary", response_model=SettlementSummaryRead)
def get_monthly_summary(
    request: Request,
    settlement_month: str = Query(alias="month"),
    db: Session = Depends(get_db),
) -> SettlementSummaryRead | JSONResponse:
    try:
        return settlement_report_service.monthly_summary(db, settlement_month)
    except HTTPException as exc:
        return error_response(request, exc, code="settlement_summary_failed")


@router.post("/customers/{customer_id}/sync", response_model=list[SettlementItemRead])
def sync_customer_settlement(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> list[SettlementItemRead] | JSONResponse:
    try:
        require_authenticated(user)
        items = settlement_reconciler.sync_settlement(db, customer_id, actor_user_id=user.user_id)
    except HTTPException as exc:
        return error_response(request, exc, code="settlement_sync_failed")
    return [SettlementItemRead.model_validate(item) for item in items]


@router.post("/customers/{customer_id}/clawback", response_model=ClawbackRead)
def process_clawback(
    request: Request,
    customer_id: uuid.UUID,
    dto: ClawbackRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_actor_user),
) -> ClawbackRead | JSONResponse:
    try:
        require_authenticated(user)
        result = clawback_processor.process_clawback(db, customer_id, dto.clawback_month, actor_user_id=user.user_id)
    except HTTPException as exc:
        return error_response(request, exc, code="settlement_clawback_failed")
    return ClawbackRead(
        clawback_created=result.clawback_created,
        items=[SettlementItemRead.model_validate(item) for item in result.items],
        total_amount=result.total_amount,
    )
