"""Staff ranking scores.

Everything here is a pure function of the customers passed in and the requested
period. Nothing is cached between calls.
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Literal

from app.customers.status import ORG_APPROVED, UNREGISTERED_ORG, STATUS_TABLE, StatusDefinition, has_reached
from app.settlement.bonus import amount_bonus, category_bonus


Scope = Literal["manager", "team"]

PREPAID_BASE_WITH_CONTRACT = 10
BASE_WITHOUT_CONTRACT = 5
POSTPAID_BASE = 5

_PERIOD_RE = re.compile(r"^(?P<year>\d{4})-(?P<part>0[1-9]|1[0-2]|H1|H2|Y)$")


class InvalidPeriodError(ValueError):
    def __init__(self, value: str) -> None:
        super().__init__(f"invalid period {value!r}; expected YYYY-MM, YYYY-H1, YYYY-H2 or YYYY-Y")
        self.value = value


@dataclass(frozen=True, slots=True)
class Period:
    label: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end

    def months(self) -> list[Period]:
        result: list[Period] = []
        for month in range(self.start.month, self.end.month + 1):
            result.append(parse_period(f"{self.start.year:04d}-{month:02d}"))
        return result


def parse_period(value: str) -> Period:
    match = _PERIOD_RE.match(value or "")
    if match is None:
        raise InvalidPeriodError(value)
    year = int(match.group("year"))
    part = match.group("part")
    if part == "Y":
        first_month, last_month = 1, 12
    elif part == "H1":
        first_month, last_month = 1, 6
    elif part == "H2":
        first_month, last_month = 7, 12
    else:
        first_month = last_month = int(part)
    last_day = calendar.monthrange(year, last_month)[1]
    return Period(label=value, start=date(year, first_month, 1), end=date(year, last_month, last_day))


@dataclass(frozen=True, slots=True)
class ScoringCustomer:
    customer_id: str
    status_code: str
    manager_id: str | None = None
    manager_name: str | None = None
    team_id: str | None = None
    team_name: str | None = None
    contract_amount: Decimal | None = None
    execution_amount: Decimal | None = None
    execution_date: date | None = None
    contract_completion_date: date | None = None
    updated_date: date | None = None
    entry_date: date | None = None
    processing_org: str | None = None
    approved_orgs: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CustomerScore:
    customer_id: str
    score_date: date
    base: int
    category_bonus: int
    amount_bonus: int

    @property
    def total(self) -> int:
        return self.base + self.category_bonus + self.amount_bonus


@dataclass(slots=True)
class RankingEntry:
    key: str
    name: str | None
    total_score: int = 0
    breakdown: list[CustomerScore] = field(default_factory=list)


def _scoring_org(customer: ScoringCustomer) -> str:
    if customer.processing_org:
        return customer.processing_org
    if customer.approved_orgs:
        return customer.approved_orgs[0]
    return UNREGISTERED_ORG


def _contract_base(customer: ScoringCustomer) -> int:
    if customer.contract_amount is not None and customer.contract_amount != 0:
        return PREPAID_BASE_WITH_CONTRACT
    return BASE_WITHOUT_CONTRACT


def _score_date_and_base(customer: ScoringCustomer, definition: StatusDefinition) -> tuple[date | None, int] | None:
    if definition.is_execution_completed:
        score_date = (
            customer.execution_date
            or customer.contract_completion_date
            or customer.updated_date
            or customer.entry_date
        )
        base = POSTPAID_BASE if definition.path == "postpaid" else _contract_base(customer)
        return score_date, base
    # Only the prepaid path earns points before an execution.
    if definition.path == "prepaid" and has_reached(definition.code, "contract"):
        return customer.contract_completion_date, _contract_base(customer)
    return None


def score_customer(customer: ScoringCustomer) -> CustomerScore | None:
    """Points a customer earns and the date they count on; None when it earns nothing."""
    definition = STATUS_TABLE.get(customer.status_code)
    if definition is None:
        return None
    resolved = _score_date_and_base(customer, definition)
    if resolved is None:
        return None
    score_date, base = resolved
    if score_date is None:
        return None
    return CustomerScore(
        customer_id=customer.customer_id,
        score_date=score_date,
        base=base,
        category_bonus=category_bonus(_scoring_org(customer)),
        # No execution amount counts before the execution itself.
        amount_bonus=amount_bonus(customer.execution_amount) if definition.is_execution_completed else 0,
    )


def rank(customers: Iterable[ScoringCustomer], period: Period | str, scope: Scope = "manager") -> list[RankingEntry]:
    resolved = parse_period(period) if isinstance(period, str) else period
    entries: dict[str, RankingEntry] = {}
    for customer in customers:
        if scope == "team":
            key, name = customer.team_id, customer.team_name
        else:
            key, name = customer.manager_id, customer.manager_name
        if not key:
            continue
        score = score_customer(customer)
        if score is None or not resolved.contains(score.score_date):
            continue
        entry = entries.get(key)
        if entry is None:
            entry = RankingEntry(key=key, name=name)
            entries[key] = entry
        entry.total_score += score.total
        entry.breakdown.append(score)
    # sorted() is stable: equal totals keep first-seen order.
    return sorted(entries.values(), key=lambda item: item.total_score, reverse=True)


def approved_orgs_of(rows: Iterable[tuple[str, str]]) -> tuple[str, ...]:
    return tuple(org for org, org_status in rows if org_status == ORG_APPROVED)
