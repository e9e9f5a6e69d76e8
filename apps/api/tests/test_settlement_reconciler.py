from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import Base
from app.customers.models import Customer, CustomerProcessingOrg
from app.customers.schemas import ManagerReassign
from app.customers.service import CustomerStateStore
from app.settlement.models import SettlementItem
from app.settlement.service import (
    SettlementReconciler,
    SettlementReportService,
    compute_settlement_lines,
    settle_amounts,
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


ACTOR = ActorUser(user_id="u-1", name="관리자", roles=["super_admin"])


def _create_customer(session: Session, status_code: str, **overrides: object) -> Customer:
    values: dict[str, object] = {
        "name": "정산 고객",
        "status_code": status_code,
        "manager_id": "m-1",
        "manager_name": "김담당",
        "team_id": "t-1",
        "team_name": "1팀",
    }
    values.update(overrides)
    customer = Customer(**values)
    session.add(customer)
    session.commit()
    session.refresh(customer)
    return customer


def _items(session: Session, customer: Customer) -> list[SettlementItem]:
    return list(
        session.scalars(
            select(SettlementItem)
            .where(SettlementItem.customer_id == customer.id)
            .order_by(SettlementItem.settlement_key)
        )
    )


def test_settle_amounts_withholds_tax() -> None:
    amount, tax_amount, net_amount = settle_amounts(Decimal("5000"), Decimal("3"), Decimal("0.033"))
    assert amount == Decimal("150.00")
    assert tax_amount == Decimal("4.95")
    assert net_amount == Decimal("145.05")


def test_prepaid_contract_recognises_commission_on_contract_amount(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "계약완료(선불)",
        contract_amount=Decimal("5000"),
        commission_rate=Decimal("3"),
        contract_date=date(2024, 4, 1),
        contract_completion_date=date(2024, 4, 2),
    )

    items = SettlementReconciler().sync_settlement(db_session, customer.id)

    assert len(items) == 1
    item = items[0]
    assert item.settlement_key == "contract"
    assert item.settlement_month == "2024-04"
    assert item.base_amount == Decimal("5000")
    assert item.amount == Decimal("150.00")
    assert item.tax_amount == Decimal("4.95")
    assert item.net_amount == Decimal("145.05")
    assert item.manager_id == "m-1"
    assert item.is_clawback is False
    assert [envelope["event_type"] for envelope in events.published_events] == ["settlement.synced"]


def test_sync_is_idempotent(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "집행완료(선불)",
        contract_amount=Decimal("5000"),
        commission_rate=Decimal("3"),
        contract_date=date(2024, 4, 1),
        processing_orgs=[
            CustomerProcessingOrg(
                org="신보",
                status="승인",
                execution_date=date(2024, 5, 10),
                execution_amount=Decimal("12000"),
            )
        ],
    )
    reconciler = SettlementReconciler()

    first = [
        (item.id, item.settlement_key, item.settlement_month, item.amount, item.net_amount)
        for item in reconciler.sync_settlement(db_session, customer.id)
    ]
    second = [
        (item.id, item.settlement_key, item.settlement_month, item.amount, item.net_amount)
        for item in reconciler.sync_settlement(db_session, customer.id)
    ]

    assert sorted(first) == sorted(second)
    assert len(_items(db_session, customer)) == 2


def test_postpaid_contract_alone_recognises_nothing(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "계약완료(후불)",
        contract_amount=Decimal("5000"),
        commission_rate=Decimal("3"),
        contract_date=date(2024, 4, 1),
    )

    assert SettlementReconciler().sync_settlement(db_session, customer.id) == []


def test_each_approved_org_and_re_execution_gets_its_own_row(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "집행완료(선불)",
        contract_amount=Decimal("5000"),
        contract_date=date(2024, 4, 1),
        processing_orgs=[
            CustomerProcessingOrg(
                org="신보",
                status="승인",
                execution_date=date(2024, 5, 10),
                execution_amount=Decimal("12000"),
                sort_order=0,
            ),
            CustomerProcessingOrg(org="기보", status="부결", sort_order=1),
            CustomerProcessingOrg(
                org="신보",
                status="승인",
                execution_date=date(2024, 7, 1),
                execution_amount=Decimal("3000"),
                is_re_execution=True,
                sort_order=2,
            ),
        ],
    )

    SettlementReconciler().sync_settlement(db_session, customer.id)

    items = {item.settlement_key: item for item in _items(db_session, customer)}
    assert set(items) == {"contract", "신보", "신보(재집행)"}
    # No recorded rate falls back to the default 3%.
    assert items["contract"].commission_rate == Decimal("3")
    assert items["신보"].settlement_month == "2024-05"
    assert items["신보"].amount == Decimal("360.00")
    assert items["신보"].category_bonus == 30
    assert items["신보"].amount_bonus == 30
    assert items["신보(재집행)"].settlement_month == "2024-07"
    assert items["신보(재집행)"].amount == Decimal("90.00")
    assert items["신보(재집행)"].amount_bonus == 10


def test_customer_level_execution_is_used_without_org_rows(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "집행완료",
        processing_org="일시적",
        execution_date=date(2024, 8, 20),
        execution_amount=Decimal("6000"),
        commission_rate=Decimal("2.5"),
    )

    items = SettlementReconciler().sync_settlement(db_session, customer.id)

    assert [item.settlement_key for item in items] == ["일시적"]
    assert items[0].amount == Decimal("150.00")
    assert items[0].category_bonus == 20
    assert items[0].amount_bonus == 20


def test_rows_no_longer_backed_by_an_execution_are_removed(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "집행완료(후불)",
        processing_orgs=[
            CustomerProcessingOrg(
                org="중진공",
                status="승인",
                execution_date=date(2024, 5, 10),
                execution_amount=Decimal("8000"),
                sort_order=0,
            ),
            CustomerProcessingOrg(
                org="기보",
                status="승인",
                execution_date=date(2024, 5, 12),
                execution_amount=Decimal("2000"),
                sort_order=1,
            ),
        ],
    )
    reconciler = SettlementReconciler()
    reconciler.sync_settlement(db_session, customer.id)
    assert {item.settlement_key for item in _items(db_session, customer)} == {"중진공", "기보"}

    org_row = next(row for row in customer.processing_orgs if row.org == "기보")
    org_row.status = "부결"
    db_session.commit()
    reconciler.sync_settlement(db_session, customer.id)

    assert {item.settlement_key for item in _items(db_session, customer)} == {"중진공"}


def test_insignificant_status_returns_existing_rows_untouched(db_session: Session) -> None:
    customer = _create_customer(db_session, "신청완료(선불)", contract_amount=Decimal("5000"))

    assert SettlementReconciler().sync_settlement(db_session, customer.id) == []
    assert _items(db_session, customer) == []


def test_reassignment_propagates_to_every_row_without_touching_amounts(db_session: Session) -> None:
    customer = _create_customer(
        db_session,
        "집행완료(선불)",
        contract_amount=Decimal("5000"),
        commission_rate=Decimal("3"),
        contract_date=date(2024, 4, 1),
        processing_orgs=[
            CustomerProcessingOrg(
                org="신보",
                status="승인",
                execution_date=date(2024, 5, 10),
                execution_amount=Decimal("12000"),
            )
        ],
    )
    SettlementReconciler().sync_settlement(db_session, customer.id)
    before = {item.id: item.amount for item in _items(db_session, customer)}

    CustomerStateStore().reassign_manager(
        db_session,
        customer.id,
        ManagerReassign(manager_id="m-2", manager_name="박담당", team_id="t-2", team_name="2팀"),
        ACTOR,
    )

    items = _items(db_session, customer)
    assert {item.id: item.amount for item in items} == before
    assert {(item.manager_id, item.manager_name, item.team_id, item.team_name) for item in items} == {
        ("m-2", "박담당", "t-2", "2팀")
    }
    assert any(envelope["event_type"] == "customer.manager_changed" for envelope in events.published_events)


def test_compute_lines_for_outsourced_contract_uses_contract_date_month() -> None:
    customer = Customer(
        name="계산 고객",
        status_code="계약완료(외주)",
        contract_amount=Decimal("2000"),
        contract_completion_date=date(2024, 2, 29),
    )

    lines = compute_settlement_lines(customer, default_rate=Decimal("3"), today=date(2024, 3, 5))

    assert [(line.key, line.month, line.base_amount) for line in lines] == [("contract", "2024-02", Decimal("2000"))]


def test_monthly_summary_groups_by_manager(db_session: Session) -> None:
    first = _create_customer(
        db_session,
        "집행완료(후불)",
        processing_org="신보",
        execution_date=date(2024, 5, 10),
        execution_amount=Decimal("12000"),
    )
    second = _create_customer(
        db_session,
        "계약완료(선불)",
        manager_id="m-2",
        manager_name="박담당",
        contract_amount=Decimal("1000"),
        contract_date=date(2024, 5, 3),
    )
    reconciler = SettlementReconciler()
    reconciler.sync_settlement(db_session, first.id)
    reconciler.sync_settlement(db_session, second.id)

    summary = SettlementReportService().monthly_summary(db_session, "2024-05")

    by_manager = {entry.manager_id: entry for entry in summary.managers}
    assert by_manager["m-1"].execution_count == 1
    assert by_manager["m-1"].contract_count == 0
    assert by_manager["m-1"].total_amount == Decimal("360.00")
    assert by_manager["m-1"].final_payment == Decimal("348.12")
    assert by_manager["m-2"].contract_count == 1
    assert by_manager["m-2"].total_amount == Decimal("30.00")
    assert by_manager["m-2"].final_payment == Decimal("29.01")
    assert [entry.manager_id for entry in summary.managers] == ["m-1", "m-2"]
