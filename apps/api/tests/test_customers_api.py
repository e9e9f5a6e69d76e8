from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


ACTOR_HEADERS = {"X-Actor-Name": quote("김팀장")}


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
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["team_leader"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="leader-1", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_customer(client: TestClient, **overrides: object) -> dict:
    body: dict[str, object] = {
        "name": "홍길동",
        "company_name": "길동상사",
        "manager_id": "m-1",
        "manager_name": "김담당",
        "team_id": "t-1",
        "team_name": "1팀",
    }
    body.update(overrides)
    response = client.post("/api/customers", json=body, headers=ACTOR_HEADERS)
    assert response.status_code == 201
    return response.json()


def _transition(client: TestClient, customer: dict, new_status: str, **fields: object) -> dict:
    response = client.post(
        f"/api/customers/{customer['id']}/status",
        json={"previous_status": customer["status_code"], "new_status": new_status, **fields},
        headers=ACTOR_HEADERS,
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_customer_lifecycle_through_execution(client: TestClient) -> None:
    customer = _create_customer(client)
    assert customer["status_code"] == "상담대기"
    assert customer["row_version"] == 1

    contracted = _transition(
        client,
        customer,
        "계약완료(선불)",
        contract_date="2024-04-01",
        contract_amount="5000",
        commission_rate="3",
    )
    assert contracted["customer"]["status_code"] == "계약완료(선불)"
    assert contracted["customer"]["contract_completion_date"] is not None
    assert contracted["status_log"]["changed_by"] == "leader-1"
    assert contracted["status_log"]["changed_by_name"] == "김팀장"
    assert [item["settlement_key"] for item in contracted["settlement_items"]] == ["contract"]
    assert Decimal(contracted["settlement_items"][0]["amount"]) == Decimal("150.00")

    executed = _transition(
        client,
        contracted["customer"],
        "집행완료(선불)",
        execution_date="2024-05-10",
        execution_amount="12000",
        processing_orgs=[
            {"org": "신보", "status": "승인", "execution_date": "2024-05-10", "execution_amount": "12000"},
            {"org": "기보", "status": "부결"},
        ],
    )
    assert executed["customer"]["processing_org"] == "신보"
    assert {item["settlement_key"] for item in executed["settlement_items"]} == {"contract", "신보"}

    settlements = client.get("/api/settlements", params={"customer_id": customer["id"]})
    assert settlements.status_code == 200
    assert len(settlements.json()) == 2

    may = client.get("/api/rankings", params={"period": "2024-05"})
    assert may.status_code == 200
    entries = may.json()["entries"]
    assert [(entry["rank"], entry["key"], entry["total_score"]) for entry in entries] == [(1, "m-1", 70)]

    logs = client.get(f"/api/customers/{customer['id']}/status-logs")
    assert logs.status_code == 200
    assert [row["new_status"] for row in logs.json()] == ["집행완료(선불)", "계약완료(선불)"]

    history = client.get(f"/api/customers/{customer['id']}/history")
    assert history.status_code == 200
    action_types = {row["action_type"] for row in history.json()}
    assert {"status_change", "info_update", "org_change"} <= action_types

    event_types = [envelope["event_type"] for envelope in events.published_events]
    assert event_types.count("customer.status_changed") == 2


def test_execution_recorded_only_on_org_rows_scores_in_execution_month(client: TestClient) -> None:
    customer = _create_customer(client)
    contracted = _transition(
        client,
        customer,
        "계약완료(선불)",
        contract_date="2024-04-01",
        contract_amount="5000",
        commission_rate="3",
    )

    executed = _transition(
        client,
        contracted["customer"],
        "집행완료(선불)",
        processing_orgs=[
            {"org": "신보", "status": "승인", "execution_date": "2024-05-10", "execution_amount": "12000"},
        ],
    )

    assert executed["customer"]["execution_date"] == "2024-05-10"
    assert Decimal(executed["customer"]["execution_amount"]) == Decimal("12000")
    execution_row = next(item for item in executed["settlement_items"] if item["settlement_key"] == "신보")
    assert execution_row["settlement_month"] == "2024-05"
    assert execution_row["amount_bonus"] == 30

    may = client.get("/api/rankings", params={"period": "2024-05"}).json()["entries"]
    assert [(entry["key"], entry["total_score"]) for entry in may] == [("m-1", 70)]
    assert client.get("/api/rankings", params={"period": "2024-04"}).json()["entries"] == []


def test_stale_transition_is_rejected_with_envelope(client: TestClient) -> None:
    customer = _create_customer(client)
    _transition(client, customer, "단기부재")

    response = client.post(
        f"/api/customers/{customer['id']}/status",
        json={"previous_status": "상담대기", "new_status": "장기부재"},
        headers={"X-Correlation-Id": "stale-1"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "customer_status_change_failed"
    assert body["correlation_id"] == "stale-1"
    assert response.headers["x-correlation-id"] == "stale-1"


def test_unknown_status_is_rejected(client: TestClient) -> None:
    customer = _create_customer(client)

    response = client.post(
        f"/api/customers/{customer['id']}/status",
        json={"previous_status": "상담대기", "new_status": "계약완료(무료)"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "customer_status_change_failed"
    assert client.get(f"/api/customers/{customer['id']}").json()["status_code"] == "상담대기"


def test_contract_without_required_fields_is_rejected(client: TestClient) -> None:
    customer = _create_customer(client)

    response = client.post(
        f"/api/customers/{customer['id']}/status",
        json={"previous_status": "상담대기", "new_status": "계약완료(후불)", "contract_amount": "5000"},
    )

    assert response.status_code == 422
    assert "commission_rate" in response.json()["message"]


@pytest.mark.parametrize("roles", [["staff"]])
def test_staff_cannot_record_execution(client: TestClient) -> None:
    customer = _create_customer(client)

    response = client.post(
        f"/api/customers/{customer['id']}/status",
        json={
            "previous_status": "상담대기",
            "new_status": "집행완료(후불)",
            "execution_date": "2024-05-10",
            "execution_amount": "1000",
        },
    )

    assert response.status_code == 403


@pytest.mark.parametrize("roles", [["guest"]])
def test_guest_cannot_mutate(client: TestClient) -> None:
    response = client.post("/api/customers", json={"name": "익명"})

    assert response.status_code == 401
    assert response.json()["code"] == "customer_create_failed"


def test_status_requirements_lookup(client: TestClient) -> None:
    response = client.get("/api/customers/statuses/최종부결/requirements")
    assert response.status_code == 200
    assert response.json()["requires_clawback_date"] is True

    unknown = client.get("/api/customers/statuses/없는상태/requirements")
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "unknown_status"


def test_funnel_and_group_filter(client: TestClient) -> None:
    first = _create_customer(client, name="고객1")
    second = _create_customer(client, name="고객2")
    _create_customer(client, name="고객3")
    _transition(client, first, "인증불가")
    _transition(client, second, "업력미달")

    funnel = client.get("/api/customers/funnel")
    assert funnel.status_code == 200
    body = funnel.json()
    assert body["total"] == 3
    assert body["counts"]["쓰레기통"] == 1
    assert body["counts"]["희망타겟"] == 1
    assert body["counts"]["상담대기"] == 1

    trash = client.get("/api/customers", params={"status": "쓰레기통"})
    assert [row["name"] for row in trash.json()] == ["고객1"]
    everyone = client.get("/api/customers", params={"status": "전체"})
    assert len(everyone.json()) == 3
    waiting = client.get("/api/customers", params={"status": "상담대기"})
    assert [row["name"] for row in waiting.json()] == ["고객3"]

    unknown = client.get("/api/customers", params={"status": "없는그룹"})
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "customer_list_failed"


def test_reassign_manager_moves_settlement_rows(client: TestClient) -> None:
    customer = _create_customer(client)
    _transition(
        client,
        customer,
        "계약완료(외주)",
        contract_date="2024-04-01",
        contract_amount="2000",
        commission_rate="3",
    )

    response = client.post(
        f"/api/customers/{customer['id']}/manager",
        json={"manager_id": "m-2", "manager_name": "박담당", "team_id": "t-2", "team_name": "2팀"},
        headers=ACTOR_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["manager_id"] == "m-2"

    items = client.get("/api/settlements", params={"customer_id": customer["id"]}).json()
    assert [(item["manager_id"], Decimal(item["amount"])) for item in items] == [("m-2", Decimal("60.00"))]


def test_clawback_endpoint_and_summary(client: TestClient) -> None:
    customer = _create_customer(client)
    _transition(
        client,
        customer,
        "계약완료(선불)",
        contract_date="2024-04-01",
        contract_amount="5000",
        commission_rate="3",
    )

    response = client.post(
        f"/api/settlements/customers/{customer['id']}/clawback",
        json={"clawback_month": "2024-06"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["clawback_created"] is True
    assert Decimal(body["total_amount"]) == Decimal("150.00")

    summary = client.get("/api/settlements/summary", params={"month": "2024-06"})
    assert summary.status_code == 200
    managers = summary.json()["managers"]
    assert len(managers) == 1
    assert managers[0]["clawback_count"] == 1
    assert Decimal(managers[0]["final_payment"]) == Decimal("-145.05")

    bad = client.post(
        f"/api/settlements/customers/{customer['id']}/clawback",
        json={"clawback_month": "2024-6"},
    )
    assert bad.status_code == 422


def test_memo_is_recorded(client: TestClient) -> None:
    customer = _create_customer(client)

    response = client.post(
        f"/api/customers/{customer['id']}/memos",
        json={"content": "다음주 재통화"},
        headers=ACTOR_HEADERS,
    )

    assert response.status_code == 201
    assert response.json()["recent_memo"] == "다음주 재통화"
    history = client.get(f"/api/customers/{customer['id']}/history").json()
    assert history[0]["action_type"] == "memo_added"


def test_missing_customer_returns_404_envelope(client: TestClient) -> None:
    response = client.get(f"/api/customers/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "customer_read_failed"


def test_invalid_ranking_period(client: TestClient) -> None:
    response = client.get("/api/rankings", params={"period": "2024-Q1"})

    assert response.status_code == 422
    assert response.json()["code"] == "ranking_failed"
