from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.customers.models import Customer
from app.customers.status import ORG_APPROVED
from app.metrics import observe_ranking_request
from app.rankings.engine import (
    InvalidPeriodError,
    RankingEntry,
    Scope,
    ScoringCustomer,
    approved_orgs_of,
    parse_period,
    rank,
)
from app.rankings.schemas import CustomerScoreRead, RankingEntryRead, RankingRead


logger = logging.getLogger("app.rankings")


def to_scoring_customer(customer: Customer) -> ScoringCustomer:
    approved = [row for row in customer.processing_orgs if row.status == ORG_APPROVED]
    execution_date = customer.execution_date
    if execution_date is None:
        execution_date = min((row.execution_date for row in approved if row.execution_date is not None), default=None)
    execution_amount = customer.execution_amount
    if not execution_amount:
        amounts = [row.execution_amount for row in approved if row.execution_amount]
        execution_amount = sum(amounts, Decimal("0")) if amounts else execution_amount
    return ScoringCustomer(
        customer_id=str(customer.id),
        status_code=customer.status_code,
        manager_id=customer.manager_id,
        manager_name=customer.manager_name,
        team_id=customer.team_id,
        team_name=customer.team_name,
        contract_amount=customer.contract_amount,
        execution_amount=execution_amount,
        execution_date=execution_date,
        contract_completion_date=customer.contract_completion_date,
        updated_date=customer.updated_at.date() if customer.updated_at else None,
        entry_date=customer.entry_date,
        processing_org=customer.processing_org,
        approved_orgs=approved_orgs_of((row.org, row.status) for row in customer.processing_orgs),
    )


def _to_read(position: int, entry: RankingEntry) -> RankingEntryRead:
    return RankingEntryRead(
        rank=position,
        key=entry.key,
        name=entry.name,
        total_score=entry.total_score,
        breakdown=[
            CustomerScoreRead(
                customer_id=score.customer_id,
                score_date=score.score_date,
                base=score.base,
                category_bonus=score.category_bonus,
                amount_bonus=score.amount_bonus,
                total=score.total,
            )
            for score in entry.breakdown
        ],
    )


@dataclass(slots=True)
class RankingService:
    def load_customers(self, session: Session) -> list[ScoringCustomer]:
        stmt = (
            select(Customer)
            .options(selectinload(Customer.processing_orgs))
            .order_by(Customer.created_at, Customer.id)
        )
        return [to_scoring_customer(customer) for customer in session.scalars(stmt)]

    def get_rankings(self, session: Session, period: str, scope: Scope = "manager") -> RankingRead:
        try:
            resolved = parse_period(period)
        except InvalidPeriodError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        entries = rank(self.load_customers(session), resolved, scope)
        observe_ranking_request(scope)
        logger.info("rankings.computed", extra={"item_count": len(entries)})
        return RankingRead(
            period=resolved.label,
            scope=scope,
            entries=[_to_read(position, entry) for position, entry in enumerate(entries, start=1)],
        )


ranking_service = RankingService()
