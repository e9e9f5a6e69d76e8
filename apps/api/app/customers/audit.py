from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.customers.models import CustomerHistoryLog, StatusLog
from app.metrics import observe_audit_write_failure


logger = logging.getLogger("app.customers.audit")


@dataclass(slots=True)
class HistoryEntry:
    customer_id: uuid.UUID
    action_type: str
    description: str
    changed_by: str
    changed_by_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None


@dataclass(slots=True)
class CustomerAuditLogger:
    """Append-only customer history.

    ``record`` runs after the primary mutation has committed and commits on its own.
    A failed write is rolled back, logged and counted; it never reaches the caller.
    """

    def record(self, session: Session, entry: HistoryEntry) -> CustomerHistoryLog | None:
        rows = self.record_many(session, [entry])
        return rows[0] if rows else None

    def record_many(self, session: Session, entries: Sequence[HistoryEntry]) -> list[CustomerHistoryLog]:
        if not entries:
            return []
        try:
            rows = [self._persist(session, entry) for entry in entries]
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            for entry in entries:
                observe_audit_write_failure(entry.action_type)
            logger.error(
                "audit.write_failed",
                extra={
                    "customer_id": str(entries[0].customer_id),
                    "action_type": entries[0].action_type,
                    "item_count": len(entries),
                    "error": str(exc),
                },
            )
            return []
        return rows

    def _persist(self, session: Session, entry: HistoryEntry) -> CustomerHistoryLog:
        row = CustomerHistoryLog(
            customer_id=entry.customer_id,
            action_type=entry.action_type,
            old_value=entry.old_value,
            new_value=entry.new_value,
            description=entry.description,
            changed_by=entry.changed_by,
            changed_by_name=entry.changed_by_name,
        )
        session.add(row)
        session.flush()
        return row

    def list_history(self, session: Session, customer_id: uuid.UUID, *, limit: int = 100) -> list[CustomerHistoryLog]:
        stmt = (
            select(CustomerHistoryLog)
            .where(CustomerHistoryLog.customer_id == customer_id)
            .order_by(CustomerHistoryLog.changed_at.desc(), CustomerHistoryLog.id.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt))

    def list_status_logs(self, session: Session, customer_id: uuid.UUID, *, limit: int = 100) -> list[StatusLog]:
        stmt = (
            select(StatusLog)
            .where(StatusLog.customer_id == customer_id)
            .order_by(StatusLog.changed_at.desc(), StatusLog.id.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt))


audit_logger = CustomerAuditLogger()
