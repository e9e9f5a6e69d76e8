from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import events
from app.core.auth import ActorUser
from app.core.clock import business_date, month_key, utcnow
from app.core.config import get_settings
from app.customers.audit import CustomerAuditLogger, HistoryEntry, audit_logger
from app.customers.models import Customer, CustomerProcessingOrg, StatusLog
from app.customers.schemas import (
    CustomerCreate,
    FinancialPatch,
    FunnelRead,
    ManagerReassign,
    ProcessingOrgInput,
    TransitionRequest,
)
from app.customers.status import (
    ALL_FILTER,
    DEFAULT_STATUS,
    ORG_APPROVED,
    UNREGISTERED_ORG,
    StatusDefinition,
    UnknownStatusError,
    count_by_category,
    get_definition,
    group_members,
    is_known,
    is_known_org,
)
from app.metrics import observe_status_transition, observe_transition_rejection
from app.settlement.models import SettlementItem
from app.settlement.service import (
    ClawbackProcessor,
    ClawbackResult,
    SettlementReconciler,
    clawback_processor,
    publish_clawback,
    publish_synced,
    settlement_reconciler,
)


logger = logging.getLogger("app.customers")
tracer = trace.get_tracer("app.customers")

FIELD_LABELS: dict[str, str] = {
    "contract_date": "계약일",
    "contract_amount": "계약금액",
    "commission_rate": "자문료율",
    "execution_date": "집행일",
    "execution_amount": "집행금액",
}


def _format_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _is_meaningful(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, Decimal):
        return value > 0
    if isinstance(value, str):
        return bool(value.strip()) and value != UNREGISTERED_ORG
    return True


def _validate_orgs(patch: FinancialPatch) -> None:
    candidates: list[str] = []
    if patch.processing_org is not None and patch.processing_org != UNREGISTERED_ORG:
        candidates.append(patch.processing_org)
    candidates.extend(item.org for item in patch.processing_orgs or [])
    for org in candidates:
        if not is_known_org(org):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown processing organization: {org}",
            )


def _org_label(row: CustomerProcessingOrg | ProcessingOrgInput) -> str:
    label = f"{row.org}(재집행)" if row.is_re_execution else row.org
    return f"{label}:{row.status}"


@dataclass(slots=True)
class CustomerStateStore:
    """Owns the customer aggregate. Every mutation goes through here."""

    clock: Callable[[], datetime] = utcnow
    audit: CustomerAuditLogger = field(default_factory=lambda: audit_logger)
    reconciler: SettlementReconciler = field(default_factory=lambda: settlement_reconciler)

    def _commit(self, session: Session, detail: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("customer.commit_failed", extra={"error": str(exc)})
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail) from exc

    def create_customer(self, session: Session, actor: ActorUser, dto: CustomerCreate) -> Customer:
        customer = Customer(
            name=dto.name.strip(),
            company_name=dto.company_name,
            status_code=DEFAULT_STATUS,
            manager_id=dto.manager_id,
            manager_name=dto.manager_name,
            team_id=dto.team_id,
            team_name=dto.team_name,
            entry_source=dto.entry_source,
            entry_date=dto.entry_date or business_date(self.clock()),
        )
        session.add(customer)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="customer could not be created") from exc
        session.refresh(customer)
        logger.info("customer.created", extra={"customer_id": str(customer.id), "status": customer.status_code})
        return customer

    def get_customer(self, session: Session, customer_id: uuid.UUID) -> Customer:
        customer = session.scalar(
            select(Customer).where(Customer.id == customer_id).options(selectinload(Customer.processing_orgs))
        )
        if customer is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="customer not found")
        return customer

    def list_customers(
        self,
        session: Session,
        *,
        status_filter: str | None = None,
        manager_id: str | None = None,
        team_id: str | None = None,
        limit: int = 100,
    ) -> list[Customer]:
        stmt = select(Customer).options(selectinload(Customer.processing_orgs))
        if status_filter and status_filter != ALL_FILTER:
            members = group_members(status_filter)
            if members:
                stmt = stmt.where(Customer.status_code.in_(sorted(members)))
            elif not is_known(status_filter):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"unknown status filter: {status_filter}",
                )
            else:
                stmt = stmt.where(Customer.status_code == status_filter)
        if manager_id is not None:
            stmt = stmt.where(Customer.manager_id == manager_id)
        if team_id is not None:
            stmt = stmt.where(Customer.team_id == team_id)
        stmt = stmt.order_by(Customer.created_at.desc()).limit(limit)
        return list(session.scalars(stmt))

    def funnel(self, session: Session, *, manager_id: str | None = None, team_id: str | None = None) -> FunnelRead:
        stmt = select(Customer.status_code)
        if manager_id is not None:
            stmt = stmt.where(Customer.manager_id == manager_id)
        if team_id is not None:
            stmt = stmt.where(Customer.team_id == team_id)
        statuses = list(session.scalars(stmt))
        counts = count_by_category(statuses)
        return FunnelRead(total=sum(counts.values()), counts=counts)

    def transition(
        self,
        session: Session,
        customer_id: uuid.UUID,
        previous_status: str,
        new_status: str,
        actor: ActorUser,
        *,
        expected_row_version: int | None = None,
        commit: bool = True,
    ) -> StatusLog:
        """Move a customer from ``previous_status`` to ``new_status``.

        The status update is a compare-and-set on the stored status (and row version when
        given); a mismatch is a 409 and nothing is written. ``contract_completion_date`` is
        filled only while it is still empty. The status log row is written in the same
        unit of work. History rows are the caller's concern.
        """
        try:
            definition = get_definition(new_status)
        except UnknownStatusError as exc:
            observe_transition_rejection("unknown_status")
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        customer = self.get_customer(session, customer_id)
        now = self.clock()
        values: dict[str, Any] = {
            "status_code": new_status,
            "updated_at": now,
            "row_version": Customer.row_version + 1,
        }
        if definition.is_contract_completed:
            values["contract_completion_date"] = func.coalesce(Customer.contract_completion_date, business_date(now))

        conditions = [Customer.id == customer_id, Customer.status_code == previous_status]
        if expected_row_version is not None:
            conditions.append(Customer.row_version == expected_row_version)

        result = session.execute(update(Customer).where(and_(*conditions)).values(**values))
        if result.rowcount == 0:
            session.rollback()
            observe_transition_rejection("conflict")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="customer status changed concurrently; reload and retry",
            )

        status_log = StatusLog(
            customer_id=customer_id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by=actor.user_id,
            changed_by_name=actor.name,
            changed_at=now,
        )
        session.add(status_log)
        session.flush()
        session.refresh(customer)

        if commit:
            self._commit(session, "status change could not be committed; retry")
            self.audit.record(session, self.status_history_entry(status_log, actor))
            observe_status_transition(definition.category)
        return status_log

    @staticmethod
    def status_history_entry(status_log: StatusLog, actor: ActorUser) -> HistoryEntry:
        return HistoryEntry(
            customer_id=status_log.customer_id,
            action_type="status_change",
            description=f"상태 변경: {status_log.previous_status} → {status_log.new_status}",
            changed_by=actor.user_id,
            changed_by_name=actor.name,
            old_value=status_log.previous_status,
            new_value=status_log.new_status,
        )

    def update_financial_fields(
        self,
        session: Session,
        customer_id: uuid.UUID,
        patch: FinancialPatch,
        actor: ActorUser,
        *,
        commit: bool = True,
    ) -> list[HistoryEntry]:
        """Apply the non-empty, non-zero values of ``patch``.

        Empty values never overwrite what is already recorded. Returns one history entry
        per changed field or organization; on a standalone call they are recorded after
        the commit, inside a larger unit of work the caller records them.
        """
        _validate_orgs(patch)
        customer = self.get_customer(session, customer_id)
        entries: list[HistoryEntry] = []

        for name, label in FIELD_LABELS.items():
            new_value = getattr(patch, name)
            if not _is_meaningful(new_value):
                continue
            old_value = getattr(customer, name)
            if old_value == new_value:
                continue
            setattr(customer, name, new_value)
            entries.append(
                HistoryEntry(
                    customer_id=customer.id,
                    action_type="info_update",
                    description=f"{label} 변경",
                    changed_by=actor.user_id,
                    changed_by_name=actor.name,
                    old_value=_format_value(old_value),
                    new_value=_format_value(new_value),
                )
            )

        if _is_meaningful(patch.processing_org) and patch.processing_org != customer.processing_org:
            entries.append(self._org_entry(customer, actor, customer.processing_org, patch.processing_org))
            customer.processing_org = patch.processing_org

        for org_input in patch.processing_orgs or []:
            entry = self._apply_org_row(customer, org_input, actor)
            if entry is not None:
                entries.append(entry)

        if customer.processing_org is None and customer.processing_orgs:
            first = next((row.org for row in customer.processing_orgs if row.status == ORG_APPROVED), None)
            first = first or customer.processing_orgs[0].org
            entries.append(self._org_entry(customer, actor, None, first))
            customer.processing_org = first

        entries.extend(self._fill_execution_from_orgs(customer, actor))

        if not entries:
            return entries

        customer.updated_at = self.clock()
        if commit:
            customer.row_version = customer.row_version + 1
        session.flush()

        if commit:
            self._commit(session, "customer update could not be committed; retry")
            self.audit.record_many(session, entries)
            logger.info(
                "customer.financials_updated",
                extra={"customer_id": str(customer_id), "item_count": len(entries)},
            )
        return entries

    @staticmethod
    def _org_entry(customer: Customer, actor: ActorUser, old: str | None, new: str | None) -> HistoryEntry:
        return HistoryEntry(
            customer_id=customer.id,
            action_type="org_change",
            description="진행기관 변경",
            changed_by=actor.user_id,
            changed_by_name=actor.name,
            old_value=old,
            new_value=new,
        )

    def _apply_org_row(
        self,
        customer: Customer,
        org_input: ProcessingOrgInput,
        actor: ActorUser,
    ) -> HistoryEntry | None:
        row = next(
            (
                existing
                for existing in customer.processing_orgs
                if existing.org == org_input.org and existing.is_re_execution == org_input.is_re_execution
            ),
            None,
        )
        if row is None:
            row = CustomerProcessingOrg(
                org=org_input.org,
                status=org_input.status,
                execution_date=org_input.execution_date,
                execution_amount=org_input.execution_amount if _is_meaningful(org_input.execution_amount) else None,
                is_re_execution=org_input.is_re_execution,
                sort_order=len(customer.processing_orgs),
            )
            customer.processing_orgs.append(row)
            return self._org_entry(customer, actor, None, _org_label(row))

        before = _org_label(row)
        changed = False
        if org_input.status != row.status:
            row.status = org_input.status
            changed = True
        if org_input.execution_date is not None and org_input.execution_date != row.execution_date:
            row.execution_date = org_input.execution_date
            changed = True
        if _is_meaningful(org_input.execution_amount) and org_input.execution_amount != row.execution_amount:
            row.execution_amount = org_input.execution_amount
            changed = True
        if not changed:
            return None
        return self._org_entry(customer, actor, before, _org_label(row))

    def _fill_execution_from_orgs(self, customer: Customer, actor: ActorUser) -> list[HistoryEntry]:
        """Fill empty customer-level execution fields from the approved organization rows.

        The date is the earliest approved execution, the amount the sum of them.
        """
        approved = [row for row in customer.processing_orgs if row.status == ORG_APPROVED]
        derived: dict[str, Any] = {}
        if customer.execution_date is None:
            dates = [row.execution_date for row in approved if row.execution_date is not None]
            if dates:
                derived["execution_date"] = min(dates)
        if not _is_meaningful(customer.execution_amount):
            amounts = [row.execution_amount for row in approved if _is_meaningful(row.execution_amount)]
            if amounts:
                derived["execution_amount"] = sum(amounts, Decimal("0"))

        entries: list[HistoryEntry] = []
        for name, value in derived.items():
            old_value = getattr(customer, name)
            setattr(customer, name, value)
            entries.append(
                HistoryEntry(
                    customer_id=customer.id,
                    action_type="info_update",
                    description=f"{FIELD_LABELS[name]} 변경",
                    changed_by=actor.user_id,
                    changed_by_name=actor.name,
                    old_value=_format_value(old_value),
                    new_value=_format_value(value),
                )
            )
        return entries

    def reassign_manager(
        self,
        session: Session,
        customer_id: uuid.UUID,
        dto: ManagerReassign,
        actor: ActorUser,
    ) -> Customer:
        customer = self.get_customer(session, customer_id)
        old_manager = customer.manager_name or customer.manager_id
        team_id = dto.team_id if dto.team_id is not None else customer.team_id
        team_name = dto.team_name if dto.team_name is not None else customer.team_name
        if (
            customer.manager_id == dto.manager_id
            and customer.manager_name == dto.manager_name
            and customer.team_id == team_id
            and customer.team_name == team_name
        ):
            return customer

        customer.manager_id = dto.manager_id
        customer.manager_name = dto.manager_name
        customer.team_id = team_id
        customer.team_name = team_name
        customer.updated_at = self.clock()
        customer.row_version = customer.row_version + 1
        session.flush()

        propagated = self.reconciler.propagate_assignment(session, customer)
        if get_definition(customer.status_code).is_financially_significant:
            self.reconciler.sync_settlement(session, customer_id, commit=False)
        self._commit(session, "manager change could not be committed; retry")

        customer = self.get_customer(session, customer_id)
        new_manager = customer.manager_name or customer.manager_id
        self.audit.record(
            session,
            HistoryEntry(
                customer_id=customer_id,
                action_type="manager_change",
                description=f"담당자 변경: {old_manager or '-'} → {new_manager}",
                changed_by=actor.user_id,
                changed_by_name=actor.name,
                old_value=old_manager,
                new_value=new_manager,
            ),
        )
        events.publish(
            events.build_envelope(
                "customer.manager_changed",
                {
                    "customer_id": str(customer_id),
                    "manager_id": customer.manager_id,
                    "team_id": customer.team_id,
                    "settlement_items": propagated,
                },
                actor_user_id=actor.user_id,
            )
        )
        logger.info("customer.manager_changed", extra={"customer_id": str(customer_id), "item_count": propagated})
        return customer

    def add_memo(self, session: Session, customer_id: uuid.UUID, content: str, actor: ActorUser) -> Customer:
        text = content.strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="memo cannot be empty")
        customer = self.get_customer(session, customer_id)
        previous = customer.recent_memo
        customer.recent_memo = text
        customer.updated_at = self.clock()
        customer.row_version = customer.row_version + 1
        self._commit(session, "memo could not be committed; retry")
        self.audit.record(
            session,
            HistoryEntry(
                customer_id=customer_id,
                action_type="memo_added",
                description="메모 추가",
                changed_by=actor.user_id,
                changed_by_name=actor.name,
                old_value=previous,
                new_value=text,
            ),
        )
        return self.get_customer(session, customer_id)


@dataclass(slots=True)
class TransitionOutcome:
    customer: Customer
    status_log: StatusLog
    settlement_items: list[SettlementItem]
    clawback: ClawbackResult | None = None


_REQUIREMENT_FIELDS: dict[str, tuple[str, ...]] = {
    "contract_info": ("contract_date", "contract_amount", "commission_rate"),
    "execution_info": ("execution_date", "execution_amount"),
}


def missing_supplementary_fields(definition: StatusDefinition, dto: TransitionRequest) -> list[str]:
    requirements = definition.requirements
    missing: list[str] = []
    if requirements.requires_contract_info:
        missing.extend(name for name in _REQUIREMENT_FIELDS["contract_info"] if getattr(dto, name) is None)
    if requirements.requires_processing_org:
        has_org = (dto.processing_org is not None and dto.processing_org != UNREGISTERED_ORG) or bool(
            dto.processing_orgs
        )
        if not has_org:
            missing.append("processing_org")
    if requirements.requires_execution_info:
        approved_execution = any(
            item.status == ORG_APPROVED and item.execution_date is not None and item.execution_amount is not None
            for item in dto.processing_orgs or []
        )
        if not approved_execution:
            missing.extend(name for name in _REQUIREMENT_FIELDS["execution_info"] if getattr(dto, name) is None)
    if requirements.requires_clawback_date and dto.clawback_date is None:
        missing.append("clawback_date")
    return missing


@dataclass(slots=True)
class CustomerWorkflowService:
    """Status change together with everything it implies, committed once."""

    store: CustomerStateStore = field(default_factory=CustomerStateStore)
    reconciler: SettlementReconciler = field(default_factory=lambda: settlement_reconciler)
    clawbacks: ClawbackProcessor = field(default_factory=lambda: clawback_processor)

    def change_status(
        self,
        session: Session,
        customer_id: uuid.UUID,
        dto: TransitionRequest,
        actor: ActorUser,
    ) -> TransitionOutcome:
        with tracer.start_as_current_span("customer.transition") as span:
            span.set_attribute("customer_id", str(customer_id))
            span.set_attribute("customer.new_status", dto.new_status)

            try:
                definition = get_definition(dto.new_status)
            except UnknownStatusError as exc:
                observe_transition_rejection("unknown_status")
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

            if definition.is_execution_completed and not actor.has_any_role(get_settings().execution_role_set):
                observe_transition_rejection("forbidden")
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="only team leaders may record an execution",
                )

            missing = missing_supplementary_fields(definition, dto)
            if missing:
                observe_transition_rejection("missing_fields")
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{dto.new_status} requires: {', '.join(missing)}",
                )

            clawback_month = month_key(dto.clawback_date) if definition.is_final_rejection and dto.clawback_date else None

            try:
                status_log = self.store.transition(
                    session,
                    customer_id,
                    dto.previous_status,
                    dto.new_status,
                    actor,
                    expected_row_version=dto.expected_row_version,
                    commit=False,
                )
                info_entries = self.store.update_financial_fields(session, customer_id, dto, actor, commit=False)
                items: list[SettlementItem] = []
                if definition.is_financially_significant:
                    items = self.reconciler.sync_settlement(session, customer_id, commit=False)
                clawback: ClawbackResult | None = None
                if clawback_month is not None:
                    clawback = self.clawbacks.process_clawback(session, customer_id, clawback_month, commit=False)
                session.commit()
            except HTTPException:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_transition_rejection("commit_failed")
                logger.error(
                    "customer.transition_failed",
                    extra={
                        "customer_id": str(customer_id),
                        "status": dto.new_status,
                        "previous_status": dto.previous_status,
                        "error": str(exc),
                    },
                )
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="status change could not be committed; retry",
                ) from exc

            self.store.audit.record_many(session, [self.store.status_history_entry(status_log, actor), *info_entries])
            observe_status_transition(definition.category)
            customer = self.store.get_customer(session, customer_id)

            events.publish(
                events.build_envelope(
                    "customer.status_changed",
                    {
                        "customer_id": str(customer_id),
                        "previous_status": dto.previous_status,
                        "new_status": dto.new_status,
                        "row_version": customer.row_version,
                    },
                    actor_user_id=actor.user_id,
                )
            )
            if definition.is_financially_significant:
                publish_synced(customer_id, items, actor_user_id=actor.user_id)
            if clawback is not None and clawback.clawback_created and clawback_month is not None:
                publish_clawback(customer_id, clawback_month, clawback, actor_user_id=actor.user_id)

            logger.info(
                "customer.status_changed",
                extra={
                    "customer_id": str(customer_id),
                    "status": dto.new_status,
                    "previous_status": dto.previous_status,
                    "item_count": len(items),
                },
            )
            return TransitionOutcome(customer=customer, status_log=status_log, settlement_items=items, clawback=clawback)


customer_store = CustomerStateStore()
customer_workflow = CustomerWorkflowService(store=customer_store)
