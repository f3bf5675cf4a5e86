"""
Hierarchical Bulk Synchronization Engine — applies an entity's desired
assignment set as the minimal set of writes, atomically.

A sync runs in two steps:

1. ``plan()`` reads the entity's active assignments and splits the desired
   set into three disjoint groups, remembering the version it read for
   every existing row:
   - to_create    — node not currently assigned
   - to_update    — node assigned, proficiency level differs
   - to_supersede — node assigned but absent from the desired set
2. ``apply()`` performs every write in one transaction scoped to the entity.
   Existing rows are only deactivated when their version still matches what
   ``plan()`` read; any mismatch (or missing node) aborts the transaction
   and the report names every conflicting (node, reason) pair with
   ``applied == 0``. The engine never retries; callers re-read and resubmit.

Audit records (one per changed row) are written in the same transaction as
the data, so audit and data cannot diverge. Multi-entity batches are split
into independent per-entity transactions: one entity's conflict never
blocks another's progress.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from skillgrid.audit.logger import AuditLogger
from skillgrid.contracts.errors import ErrorKind, GatewayError, Malformed, NotFound
from skillgrid.contracts.schema import (
    AssignmentSpec,
    AuditOperation,
    ProficiencyLevel,
    SyncConflict,
    SyncReport,
    utc_now,
)
from skillgrid.store.database import Database
from skillgrid.store.models import AssignmentDB, EntityDB, HierarchyNodeDB

logger = logging.getLogger(__name__)

DesiredAssignments = Iterable[tuple[str, int] | AssignmentSpec]


class ChangeKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SUPERSEDE = "supersede"


@dataclass(frozen=True)
class PlannedChange:
    """One row-level write, with the version observed when the plan was made."""

    kind: ChangeKind
    node_id: str
    proficiency_level: int | None = None
    assignment_id: int | None = None
    read_version: int | None = None
    before: dict[str, Any] | None = None


@dataclass(frozen=True)
class SyncPlan:
    """Three disjoint change sets for one entity."""

    entity_id: str
    to_create: tuple[PlannedChange, ...] = ()
    to_update: tuple[PlannedChange, ...] = ()
    to_supersede: tuple[PlannedChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_supersede)

    @property
    def size(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_supersede)


@dataclass
class BatchOutcome:
    """Result of one entity inside a multi-entity batch."""

    entity_id: str
    report: SyncReport | None = None
    error: GatewayError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.report is not None and self.report.succeeded


class _SyncAborted(Exception):
    """Internal signal: roll back the entity transaction and report conflicts."""

    def __init__(self, conflicts: list[SyncConflict]) -> None:
        super().__init__(f"{len(conflicts)} conflicts")
        self.conflicts = conflicts


@dataclass
class _StagedWrite:
    change: PlannedChange
    row: AssignmentDB | None = None
    after: dict[str, Any] | None = field(default=None)


def normalize_desired(desired: DesiredAssignments) -> dict[str, int]:
    """
    Collapse the desired set into node_id → proficiency level.

    Raises:
        Malformed: A level outside ProficiencyLevel, or one node listed with
            two different levels.
    """
    normalized: dict[str, int] = {}
    for item in desired:
        if isinstance(item, AssignmentSpec):
            node_id, level = item.node_id, item.proficiency_level
        else:
            node_id, level = item
        if not node_id:
            raise Malformed("Assignment node id must not be empty")
        try:
            level = int(ProficiencyLevel(level))
        except (TypeError, ValueError) as exc:
            raise Malformed(
                f"Proficiency level {level!r} for node '{node_id}' is out of range "
                f"{int(min(ProficiencyLevel))}-{int(max(ProficiencyLevel))}",
                details={"nodeId": node_id},
            ) from exc
        if normalized.get(node_id, level) != level:
            raise Malformed(
                f"Node '{node_id}' is listed with two different proficiency levels",
                details={"nodeId": node_id},
            )
        normalized[node_id] = level
    return normalized


class SyncEngine:
    """
    Per-entity assignment synchronization with optimistic concurrency.

    Usage:
        engine = SyncEngine(db, AuditLogger(db))
        report = engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        if report.conflicts:
            ...re-read and retry...
    """

    def __init__(
        self,
        db: Database,
        audit: AuditLogger,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.audit = audit
        self.clock = clock

    def sync(
        self,
        entity_id: str,
        desired: DesiredAssignments,
        actor: str,
        correlation_id: str = "",
    ) -> SyncReport:
        """Plan and apply in one call."""
        plan = self.plan(entity_id, desired)
        return self.apply(plan, actor=actor, correlation_id=correlation_id)

    def plan(self, entity_id: str, desired: DesiredAssignments) -> SyncPlan:
        """
        Diff the desired set against the entity's active assignments.

        Raises:
            Malformed: Invalid desired set.
            NotFound: The entity does not exist.
        """
        wanted = normalize_desired(desired)

        with self.db.session() as session:
            if session.get(EntityDB, entity_id) is None:
                raise NotFound(f"Entity '{entity_id}' does not exist", details={"entityId": entity_id})
            current = {
                row.node_id: row
                for row in session.execute(
                    select(AssignmentDB).where(
                        AssignmentDB.entity_id == entity_id,
                        AssignmentDB.active.is_(True),
                    )
                ).scalars()
            }

        to_create, to_update, to_supersede = [], [], []
        for node_id in sorted(wanted):
            level = wanted[node_id]
            row = current.get(node_id)
            if row is None:
                to_create.append(
                    PlannedChange(ChangeKind.CREATE, node_id, proficiency_level=level)
                )
            elif row.proficiency_level != level:
                to_update.append(
                    PlannedChange(
                        ChangeKind.UPDATE, node_id,
                        proficiency_level=level,
                        assignment_id=row.id,
                        read_version=row.version,
                        before=row.snapshot(),
                    )
                )
        for node_id in sorted(set(current) - set(wanted)):
            row = current[node_id]
            to_supersede.append(
                PlannedChange(
                    ChangeKind.SUPERSEDE, node_id,
                    assignment_id=row.id,
                    read_version=row.version,
                    before=row.snapshot(),
                )
            )

        return SyncPlan(
            entity_id=entity_id,
            to_create=tuple(to_create),
            to_update=tuple(to_update),
            to_supersede=tuple(to_supersede),
        )

    def apply(self, plan: SyncPlan, actor: str, correlation_id: str = "") -> SyncReport:
        """
        Apply a plan in one transaction scoped to its entity.

        Returns a report with ``applied == 0`` and the full conflict list if
        any row fails its version check or references a missing node. The one
        exception is an insert rejected by the active-pair unique index: the
        transaction cannot continue after it, so the report lists the
        conflicts found up to and including that row.

        Raises:
            BackendUnavailable: Deadline exceeded or store failure (rolled back).
        """
        correlation_id = correlation_id or uuid4().hex
        if plan.is_empty:
            logger.info(
                "Sync no-op: entity=%s correlation=%s", plan.entity_id, correlation_id
            )
            return SyncReport(entity_id=plan.entity_id)

        deadline = self.db.deadline()
        try:
            with self.db.session() as session:
                staged = self._write(session, plan)
                for write in staged:
                    self._audit(session, plan.entity_id, write, actor, correlation_id)
                deadline.check(f"sync of entity '{plan.entity_id}'")
        except _SyncAborted as aborted:
            logger.warning(
                "Sync rolled back: entity=%s correlation=%s conflicts=%s",
                plan.entity_id, correlation_id,
                [(c.node_id, c.reason.value) for c in aborted.conflicts],
            )
            return SyncReport(entity_id=plan.entity_id, applied=0, conflicts=aborted.conflicts)

        report = SyncReport(
            entity_id=plan.entity_id,
            applied=plan.size,
            created=len(plan.to_create),
            updated=len(plan.to_update),
            superseded=len(plan.to_supersede),
        )
        logger.info(
            "Sync applied: entity=%s correlation=%s created=%d updated=%d superseded=%d "
            "elapsed_ms=%.3f",
            plan.entity_id, correlation_id, report.created, report.updated,
            report.superseded, deadline.elapsed_ms,
        )
        return report

    def sync_batch(
        self,
        items: Iterable[tuple[str, DesiredAssignments]],
        actor: str,
        correlation_id: str = "",
    ) -> list[BatchOutcome]:
        """
        Synchronize several entities, each in its own transaction.

        A failure for one entity is captured in its outcome and does not stop
        the others.
        """
        correlation_id = correlation_id or uuid4().hex
        outcomes = []
        for entity_id, desired in items:
            try:
                report = self.sync(entity_id, desired, actor=actor, correlation_id=correlation_id)
            except GatewayError as exc:
                logger.warning(
                    "Batch item failed: entity=%s kind=%s: %s",
                    entity_id, exc.kind.value, exc.message,
                )
                outcomes.append(BatchOutcome(entity_id=entity_id, error=exc))
            else:
                outcomes.append(BatchOutcome(entity_id=entity_id, report=report))
        return outcomes

    # ── Internal ────────────────────────────────────────────────

    def _write(self, session: Session, plan: SyncPlan) -> list[_StagedWrite]:
        now = self.clock()
        conflicts: list[SyncConflict] = []
        staged: list[_StagedWrite] = []

        wanted_nodes = [c.node_id for c in plan.to_create]
        nodes = {
            node.id: node
            for node in session.execute(
                select(HierarchyNodeDB).where(HierarchyNodeDB.id.in_(wanted_nodes))
            ).scalars()
        } if wanted_nodes else {}

        for change in plan.to_create:
            node = nodes.get(change.node_id)
            if node is None or node.disabled:
                conflicts.append(SyncConflict(
                    node_id=change.node_id,
                    reason=ErrorKind.NOT_FOUND,
                    message="node does not exist or is disabled",
                ))
                continue
            taken = session.execute(
                select(AssignmentDB.id).where(
                    AssignmentDB.entity_id == plan.entity_id,
                    AssignmentDB.node_id == change.node_id,
                    AssignmentDB.active.is_(True),
                )
            ).first()
            if taken is not None:
                conflicts.append(SyncConflict(
                    node_id=change.node_id,
                    reason=ErrorKind.CONFLICT,
                    message="node was assigned after the sync started",
                ))
                continue
            row = AssignmentDB(
                entity_id=plan.entity_id,
                node_id=change.node_id,
                proficiency_level=change.proficiency_level,
                version=1,
                active=True,
                updated_at=now,
            )
            staged.append(self._insert(session, change, row, conflicts))

        for change in plan.to_update + plan.to_supersede:
            if not self._deactivate(session, change, now):
                conflicts.append(SyncConflict(
                    node_id=change.node_id,
                    reason=ErrorKind.CONFLICT,
                    message=f"version {change.read_version} is no longer current",
                ))
                continue
            if change.kind is ChangeKind.SUPERSEDE:
                after = {**(change.before or {}), "active": False}
                staged.append(_StagedWrite(change=change, after=after))
                continue
            row = AssignmentDB(
                entity_id=plan.entity_id,
                node_id=change.node_id,
                proficiency_level=change.proficiency_level,
                version=change.read_version + 1,
                active=True,
                updated_at=now,
            )
            staged.append(self._insert(session, change, row, conflicts))

        if conflicts:
            raise _SyncAborted(conflicts)
        return staged

    @staticmethod
    def _insert(
        session: Session,
        change: PlannedChange,
        row: AssignmentDB,
        conflicts: list[SyncConflict],
    ) -> _StagedWrite:
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            # A concurrent transaction activated the same (entity, node) pair.
            # The flush failure poisons the transaction, so later changes go unchecked.
            conflicts.append(SyncConflict(
                node_id=change.node_id,
                reason=ErrorKind.CONFLICT,
                message="another active assignment exists for this node",
            ))
            raise _SyncAborted(conflicts) from exc
        return _StagedWrite(change=change, row=row, after=row.snapshot())

    @staticmethod
    def _deactivate(session: Session, change: PlannedChange, now: datetime) -> bool:
        """Conditional deactivation: succeeds only if the read version is still current."""
        result = session.execute(
            update(AssignmentDB)
            .where(
                AssignmentDB.id == change.assignment_id,
                AssignmentDB.version == change.read_version,
                AssignmentDB.active.is_(True),
            )
            .values(active=False, superseded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _audit(
        self,
        session: Session,
        entity_id: str,
        write: _StagedWrite,
        actor: str,
        correlation_id: str,
    ) -> None:
        operation = {
            ChangeKind.CREATE: AuditOperation.ASSIGNMENT_CREATE,
            ChangeKind.UPDATE: AuditOperation.ASSIGNMENT_UPDATE,
            ChangeKind.SUPERSEDE: AuditOperation.ASSIGNMENT_SUPERSEDE,
        }[write.change.kind]
        self.audit.record(
            session,
            actor=actor,
            operation=operation.value,
            target_table="assignments",
            target_keys={"entityId": entity_id, "nodeId": write.change.node_id},
            before_value=write.change.before,
            after_value=write.after,
            correlation_id=correlation_id,
        )
