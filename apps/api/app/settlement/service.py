from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import events
from app.core.clock import business_date, month_key, utcnow
from app.core.config import get_settings
from app.customers.models import Customer
from app.customers.status import ORG_APPROVED, UNREGISTERED_ORG, UnknownStatusError, get_definition
from app.metrics import observe_clawback_items, observe_settlement_items_written
from app.settlement.bonus import BONUS_TABLE_VERSION, amount_bonus, category_bonus
from app.settlement.models import SettlementItem
from app.settlement.schemas import ManagerSettlementSummary, SettlementSummaryRead


logger = logging.getLogger("app.settlement")
tracer = trace.get_tracer("app.settlement")

CENT = Decimal("0.01")
ZERO = Decimal("0")
CONTRACT_KEY = "contract"
EXECUTION_KEY = "execution"
RE_EXECUTION_SUFFIX = "(재집행)"
CLAWBACK_KEY_SUFFIX = ":clawback"
MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
GENERATION_SEPARATOR = "#"


def base_key(settlement_key: str) -> str:
    return settlement_key.split(GENERATION_SEPARATOR, 1)[0]


def generation_key(key: str, reversed_count: int) -> str:
    if reversed_count == 0:
        return key
    return f"{key}{GENERATION_SEPARATOR}{reversed_count + 1}"


def _positive(value: Decimal | None) -> bool:
    return value is not None and value > 0


@dataclass(frozen=True, slots=True)
class SettlementLine:
    key: str
    month: str
    processing_org: str | None
    base_amount: Decimal
    commission_rate: Decimal
    category_bonus: int = 0
    amount_bonus: int = 0


def primary_org(customer: Customer) -> str:
    if customer.processing_org:
        return customer.processing_org
    for org_row in customer.processing_orgs:
        if org_row.status == ORG_APPROVED:
            return org_row.org
    return UNREGISTERED_ORG


def compute_settlement_lines(customer: Customer, *, default_rate: Decimal, today: date) -> list[SettlementLine]:
    """Settlement rows a customer should currently carry, keyed by settlement key.

    Non-postpaid paths recognise commission on the contract amount. Every execution
    recognises commission on its own amount: one row per approved organization, the
    re-executed ones keyed ``"<org>(재집행)"``. Customers recorded before organization
    rows existed fall back to the customer-level execution fields.
    """
    definition = get_definition(customer.status_code)
    rate = customer.commission_rate if _positive(customer.commission_rate) else default_rate
    lines: list[SettlementLine] = []

    if definition.path != "postpaid" and _positive(customer.contract_amount):
        contract_day = customer.contract_date or customer.contract_completion_date or today
        lines.append(
            SettlementLine(
                key=CONTRACT_KEY,
                month=month_key(contract_day),
                processing_org=None,
                base_amount=customer.contract_amount,
                commission_rate=rate,
            )
        )

    if not definition.is_execution_completed:
        return lines

    execution_lines: list[SettlementLine] = []
    for org_row in customer.processing_orgs:
        if org_row.status != ORG_APPROVED or not _positive(org_row.execution_amount):
            continue
        key = f"{org_row.org}{RE_EXECUTION_SUFFIX}" if org_row.is_re_execution else org_row.org
        execution_day = org_row.execution_date or customer.execution_date or today
        execution_lines.append(
            SettlementLine(
                key=key,
                month=month_key(execution_day),
                processing_org=org_row.org,
                base_amount=org_row.execution_amount,
                commission_rate=rate,
                category_bonus=category_bonus(org_row.org),
                amount_bonus=amount_bonus(org_row.execution_amount),
            )
        )

    if not execution_lines and _positive(customer.execution_amount):
        org = primary_org(customer)
        execution_lines.append(
            SettlementLine(
                key=customer.processing_org or EXECUTION_KEY,
                month=month_key(customer.execution_date or today),
                processing_org=org,
                base_amount=customer.execution_amount,
                commission_rate=rate,
                category_bonus=category_bonus(org),
                amount_bonus=amount_bonus(customer.execution_amount),
            )
        )

    return lines + execution_lines


def settle_amounts(base_amount: Decimal, commission_rate: Decimal, tax_rate: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    amount = (base_amount * commission_rate / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    tax_amount = (amount * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return amount, tax_amount, amount - tax_amount


def _commit(session: Session, detail: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("settlement.commit_failed", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail) from exc


def _load_customer(session: Session, customer_id: uuid.UUID) -> Customer:
    customer = session.scalar(
        select(Customer).where(Customer.id == customer_id).options(selectinload(Customer.processing_orgs))
    )
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="customer not found")
    return customer


def list_customer_items(session: Session, customer_id: uuid.UUID) -> list[SettlementItem]:
    stmt = (
        select(SettlementItem)
        .where(SettlementItem.customer_id == customer_id)
        .order_by(SettlementItem.created_at, SettlementItem.settlement_key)
    )
    return list(session.scalars(stmt))


def _attribution(customer: Customer) -> dict[str, Any]:
    return {
        "manager_id": customer.manager_id,
        "manager_name": customer.manager_name,
        "team_id": customer.team_id,
        "team_name": customer.team_name,
    }


def publish_synced(customer_id: uuid.UUID, items: list[SettlementItem], *, actor_user_id: str | None = None) -> None:
    events.publish(
        events.build_envelope(
            "settlement.synced",
            {
                "customer_id": str(customer_id),
                "item_count": len(items),
                "settlement_keys": [item.settlement_key for item in items if not item.is_clawback],
                "bonus_table_version": BONUS_TABLE_VERSION,
            },
            actor_user_id=actor_user_id,
        )
    )


@dataclass(slots=True)
class SettlementReconciler:
    clock: Callable[[], datetime] = utcnow

    def sync_settlement(
        self,
        session: Session,
        customer_id: uuid.UUID,
        *,
        commit: bool = True,
        actor_user_id: str | None = None,
    ) -> list[SettlementItem]:
        with tracer.start_as_current_span("settlement.sync") as span:
            span.set_attribute("customer_id", str(customer_id))
            customer = _load_customer(session, customer_id)
            existing = list_customer_items(session, customer_id)
            try:
                definition = get_definition(customer.status_code)
            except UnknownStatusError as exc:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
            if not definition.is_financially_significant:
                span.set_attribute("settlement.skipped", True)
                return existing

            settings = get_settings()
            lines = compute_settlement_lines(
                customer,
                default_rate=Decimal(str(settings.default_commission_rate)),
                today=business_date(self.clock()),
            )
            tax_rate = Decimal(str(settings.withholding_tax_rate))
            attribution = _attribution(customer)

            reversed_ids = {item.original_item_id for item in existing if item.is_clawback}
            originals = [item for item in existing if not item.is_clawback]
            # Reversed rows are closed; a new recognition opens the next generation of the key.
            current = {base_key(item.settlement_key): item for item in originals if item.id not in reversed_ids}
            generations: dict[str, int] = {}
            for item in originals:
                if item.id in reversed_ids:
                    key = base_key(item.settlement_key)
                    generations[key] = generations.get(key, 0) + 1
            wanted: set[str] = set()
            created = 0
            updated = 0
            removed = 0

            for line in lines:
                wanted.add(line.key)
                amount, tax_amount, net_amount = settle_amounts(line.base_amount, line.commission_rate, tax_rate)
                values: dict[str, Any] = {
                    "settlement_month": line.month,
                    "processing_org": line.processing_org,
                    "base_amount": line.base_amount,
                    "commission_rate": line.commission_rate,
                    "amount": amount,
                    "tax_amount": tax_amount,
                    "net_amount": net_amount,
                    "category_bonus": line.category_bonus,
                    "amount_bonus": line.amount_bonus,
                    **attribution,
                }
                item = current.get(line.key)
                if item is None:
                    session.add(
                        SettlementItem(
                            customer_id=customer.id,
                            settlement_key=generation_key(line.key, generations.get(line.key, 0)),
                            is_clawback=False,
                            **values,
                        )
                    )
                    created += 1
                    continue

                changed = False
                for name, value in values.items():
                    if getattr(item, name) != value:
                        setattr(item, name, value)
                        changed = True
                if changed:
                    updated += 1

            for key, item in current.items():
                if key not in wanted:
                    session.delete(item)
                    removed += 1

            session.flush()
            if commit:
                _commit(session, "settlement sync could not be committed; retry")

            items = list_customer_items(session, customer_id)
            span.set_attribute("settlement.created", created)
            span.set_attribute("settlement.updated", updated)
            observe_settlement_items_written("created", created)
            observe_settlement_items_written("updated", updated)
            observe_settlement_items_written("removed", removed)
            logger.info(
                "settlement.synced",
                extra={
                    "customer_id": str(customer_id),
                    "status": customer.status_code,
                    "item_count": len(items),
                },
            )
            if commit:
                publish_synced(customer_id, items, actor_user_id=actor_user_id)
            return items

    def propagate_assignment(self, session: Session, customer: Customer) -> int:
        """Copy the customer's manager/team onto every settlement row it owns.

        Recognised amounts are left untouched; the caller commits.
        """
        attribution = _attribution(customer)
        items = list_customer_items(session, customer.id)
        for item in items:
            for name, value in attribution.items():
                setattr(item, name, value)
        session.flush()
        observe_settlement_items_written("reassigned", len(items))
        return len(items)


@dataclass(slots=True)
class ClawbackResult:
    clawback_created: bool
    items: list[SettlementItem]
    total_amount: Decimal

    @property
    def signed_total(self) -> Decimal:
        return -self.total_amount


def parse_clawback_month(value: str) -> date:
    if not isinstance(value, str) or not MONTH_RE.match(value):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="clawback month must be formatted YYYY-MM",
        )
    year, month = value.split("-")
    return date(int(year), int(month), 1)


@dataclass(slots=True)
class ClawbackProcessor:
    clock: Callable[[], datetime] = utcnow

    def process_clawback(
        self,
        session: Session,
        customer_id: uuid.UUID,
        clawback_month: str,
        *,
        commit: bool = True,
        actor_user_id: str | None = None,
    ) -> ClawbackResult:
        applied_at = parse_clawback_month(clawback_month)
        with tracer.start_as_current_span("settlement.clawback") as span:
            span.set_attribute("customer_id", str(customer_id))
            span.set_attribute("settlement_month", clawback_month)
            customer = _load_customer(session, customer_id)
            existing = list_customer_items(session, customer_id)
            originals = [item for item in existing if not item.is_clawback]

            guard_enabled = get_settings().clawback_guard_enabled
            if guard_enabled:
                reversed_ids = {item.original_item_id for item in existing if item.is_clawback}
                originals = [item for item in originals if item.id not in reversed_ids]

            if not originals:
                logger.info(
                    "settlement.clawback_skipped",
                    extra={"customer_id": str(customer_id), "settlement_month": clawback_month, "item_count": 0},
                )
                return ClawbackResult(clawback_created=False, items=[], total_amount=ZERO)

            reversals: list[SettlementItem] = []
            for original in originals:
                reversal = SettlementItem(
                    customer_id=customer.id,
                    settlement_key=f"{original.settlement_key}{CLAWBACK_KEY_SUFFIX}",
                    settlement_month=clawback_month,
                    processing_org=original.processing_org,
                    base_amount=original.base_amount,
                    commission_rate=original.commission_rate,
                    amount=-original.amount,
                    tax_amount=-original.tax_amount,
                    net_amount=-original.net_amount,
                    category_bonus=0,
                    amount_bonus=0,
                    manager_id=original.manager_id,
                    manager_name=original.manager_name,
                    team_id=original.team_id,
                    team_name=original.team_name,
                    is_clawback=True,
                    original_item_id=original.id,
                    clawback_applied_at=applied_at,
                )
                session.add(reversal)
                reversals.append(reversal)

            total_amount = sum((item.amount for item in originals), ZERO)
            if guard_enabled:
                customer.clawed_back_at = self.clock()
            session.flush()
            if commit:
                _commit(session, "clawback could not be committed; retry")

            result = ClawbackResult(clawback_created=True, items=reversals, total_amount=total_amount)
            span.set_attribute("settlement.clawback_items", len(reversals))
            observe_clawback_items(len(reversals))
            logger.info(
                "settlement.clawback_created",
                extra={
                    "customer_id": str(customer_id),
                    "settlement_month": clawback_month,
                    "item_count": len(reversals),
                },
            )
            if commit:
                publish_clawback(customer_id, clawback_month, result, actor_user_id=actor_user_id)
            return result


def publish_clawback(
    customer_id: uuid.UUID,
    clawback_month: str,
    result: ClawbackResult,
    *,
    actor_user_id: str | None = None,
) -> None:
    events.publish(
        events.build_envelope(
            "settlement.clawback_created",
            {
                "customer_id": str(customer_id),
                "settlement_month": clawback_month,
                "item_count": len(result.items),
                "total_amount": format(result.total_amount.quantize(CENT), "f"),
            },
            actor_user_id=actor_user_id,
        )
    )


@dataclass(slots=True)
class SettlementReportService:
    def list_items(
        self,
        session: Session,
        *,
        settlement_month: str | None = None,
        manager_id: str | None = None,
        customer_id: uuid.UUID | None = None,
        limit: int = 200,
    ) -> list[SettlementItem]:
        stmt = select(SettlementItem)
        if settlement_month is not None:
            parse_clawback_month(settlement_month)
            stmt = stmt.where(SettlementItem.settlement_month == settlement_month)
        if manager_id is not None:
            stmt = stmt.where(SettlementItem.manager_id == manager_id)
        if customer_id is not None:
            stmt = stmt.where(SettlementItem.customer_id == customer_id)
        stmt = stmt.order_by(SettlementItem.settlement_month.desc(), SettlementItem.created_at).limit(limit)
        return list(session.scalars(stmt))

    def monthly_summary(self, session: Session, settlement_month: str) -> SettlementSummaryRead:
        items = self.list_items(session, settlement_month=settlement_month, limit=100_000)
        grouped: dict[str | None, list[SettlementItem]] = {}
        for item in items:
            grouped.setdefault(item.manager_id, []).append(item)

        managers: list[ManagerSettlementSummary] = []
        for manager_id, rows in grouped.items():
            recognised = [row for row in rows if not row.is_clawback]
            contract_rows = [row for row in recognised if base_key(row.settlement_key) == CONTRACT_KEY]
            clawbacks = [row for row in rows if row.is_clawback]
            managers.append(
                ManagerSettlementSummary(
                    manager_id=manager_id,
                    manager_name=next((row.manager_name for row in rows if row.manager_name), None),
                    contract_count=len({row.customer_id for row in contract_rows}),
                    execution_count=len(recognised) - len(contract_rows),
                    total_amount=sum((row.amount for row in recognised), ZERO),
                    tax_amount=sum((row.tax_amount for row in rows), ZERO),
                    clawback_count=len(clawbacks),
                    clawback_amount=sum((row.amount for row in clawbacks), ZERO),
                    final_payment=sum((row.net_amount for row in rows), ZERO),
                )
            )
        managers.sort(key=lambda entry: entry.final_payment, reverse=True)
        return SettlementSummaryRead(settlement_month=settlement_month, managers=managers)


settlement_reconciler = SettlementReconciler()
clawback_processor = ClawbackProcessor()
settlement_report_service = SettlementReportService()
