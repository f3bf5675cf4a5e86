"""
Audit Logger — append-only, tamper-evident record of every mutation.

- ``record()`` is the only write. It joins the caller's session, so the
  audit row commits or rolls back together with the data it describes.
- ``verify_records()`` recomputes every record hash and reports the first
  mismatch.
- Query helpers serve the verification CLI and tests.

There is no update and no delete.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from skillgrid.contracts.schema import AuditRecord, utc_now
from skillgrid.store.database import Database
from skillgrid.store.models import AuditRecordDB

logger = logging.getLogger(__name__)


def to_model(row: AuditRecordDB) -> AuditRecord:
    """Rebuild the pydantic record from a stored row (for hashing and display)."""
    return AuditRecord(
        id=row.id,
        actor=row.actor,
        operation=row.operation,
        target_table=row.target_table,
        target_keys=row.target_keys,
        before_value=row.before_value,
        after_value=row.after_value,
        correlation_id=row.correlation_id,
        timestamp=row.timestamp,
    )


class AuditLogger:
    """
    Writes and verifies AuditRecords.

    Usage:
        audit = AuditLogger(db)
        with db.session() as session:
            ...mutate...
            audit.record(
                session,
                actor="dashboard-client",
                operation="assignment.create",
                target_table="assignments",
                target_keys={"entityId": "E1", "nodeId": "N1"},
                after_value={...},
            )
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock

    def record(
        self,
        session: Session,
        actor: str,
        operation: str,
        target_table: str,
        target_keys: dict[str, Any],
        before_value: dict[str, Any] | None = None,
        after_value: dict[str, Any] | None = None,
        correlation_id: str = "",
    ) -> AuditRecordDB:
        """
        Append one audit record inside ``session``'s transaction.

        The caller owns the transaction; nothing is committed here.
        """
        record = AuditRecord(
            actor=actor,
            operation=operation,
            target_table=target_table,
            target_keys=target_keys,
            before_value=before_value,
            after_value=after_value,
            correlation_id=correlation_id,
            timestamp=self.clock(),
        )
        row = AuditRecordDB(
            id=record.id,
            actor=record.actor,
            operation=record.operation,
            target_table=record.target_table,
            target_keys=record.target_keys,
            before_value=record.before_value,
            after_value=record.after_value,
            correlation_id=record.correlation_id,
            timestamp=record.timestamp,
            record_hash=record.compute_hash(),
        )
        session.add(row)
        logger.debug(
            "Audit record staged: op=%s target=%s keys=%s correlation=%s",
            operation, target_table, target_keys, correlation_id,
        )
        return row

    def verify_records(self) -> tuple[bool, int, str]:
        """
        Recompute the hash of every stored record.

        Returns:
            Tuple of (is_valid, records_verified, message).
        """
        with self.db.session() as session:
            rows = session.execute(
                select(AuditRecordDB).order_by(AuditRecordDB.timestamp.asc(), AuditRecordDB.id)
            ).scalars().all()

            for i, row in enumerate(rows):
                expected = to_model(row).compute_hash()
                if row.record_hash != expected:
                    return (
                        False, i,
                        f"Hash mismatch on record {row.id}: "
                        f"stored={row.record_hash[:16]}... computed={expected[:16]}...",
                    )

            return True, len(rows), f"Audit trail verified: {len(rows)} records, integrity intact"

    def get_records(
        self,
        target_table: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditRecordDB]:
        """Most recent records first, optionally filtered."""
        with self.db.session() as session:
            stmt = select(AuditRecordDB)
            if target_table:
                stmt = stmt.where(AuditRecordDB.target_table == target_table)
            if correlation_id:
                stmt = stmt.where(AuditRecordDB.correlation_id == correlation_id)
            stmt = stmt.order_by(AuditRecordDB.timestamp.desc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    def get_record_count(self) -> int:
        with self.db.session() as session:
            return session.execute(select(func.count()).select_from(AuditRecordDB)).scalar() or 0
