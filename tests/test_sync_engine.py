"""
Tests for the Hierarchical Bulk Synchronization Engine.

Validates:
- The desired set becomes the active set, and re-syncing is a no-op
- Updates supersede the old row with version + 1
- Concurrent writers conflict instead of losing updates
- A conflicting sync rolls back every change for the entity
- Audit records are written once per changed row
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from conftest import FakeClock, seed
from skillgrid.audit.logger import AuditLogger
from skillgrid.contracts.errors import ErrorKind, Malformed, NotFound
from skillgrid.contracts.schema import AssignmentSpec, SyncConflict
from skillgrid.store.database import Database
from skillgrid.store.models import AssignmentDB, AuditRecordDB, HierarchyNodeDB
from skillgrid.sync.engine import (
    ChangeKind,
    PlannedChange,
    SyncEngine,
    _SyncAborted,
    normalize_desired,
)


class SyncTestBase:

    def setup_method(self):
        self.db = Database("sqlite://", query_timeout_seconds=0)
        self.db.initialize()
        seed(self.db)
        self.clock = FakeClock()
        self.audit = AuditLogger(self.db, clock=self.clock)
        self.engine = SyncEngine(self.db, self.audit, clock=self.clock)

    def teardown_method(self):
        self.db.engine.dispose()

    def active(self, entity_id="E1") -> set[tuple[str, int]]:
        with self.db.session() as session:
            rows = session.execute(
                select(AssignmentDB).where(
                    AssignmentDB.entity_id == entity_id, AssignmentDB.active.is_(True)
                )
            ).scalars()
            return {(r.node_id, r.proficiency_level) for r in rows}

    def rows(self, entity_id="E1", node_id=None) -> list[AssignmentDB]:
        with self.db.session() as session:
            stmt = select(AssignmentDB).where(AssignmentDB.entity_id == entity_id)
            if node_id:
                stmt = stmt.where(AssignmentDB.node_id == node_id)
            return list(session.execute(stmt.order_by(AssignmentDB.id)).scalars())


class TestSyncRoundTrip(SyncTestBase):
    """Desired set → active set."""

    def test_initial_sync_creates(self):
        report = self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        assert report.succeeded
        assert report.applied == 2
        assert report.created == 2
        assert self.active() == {("N1", 2), ("N2", 3)}

    def test_resync_is_noop(self):
        desired = {("N1", 2), ("N2", 3)}
        self.engine.sync("E1", desired, actor="admin-ui")
        audit_count = self.audit.get_record_count()

        report = self.engine.sync("E1", desired, actor="admin-ui")

        assert report.succeeded
        assert report.applied == 0
        assert self.audit.get_record_count() == audit_count
        assert len(self.rows()) == 2

    def test_update_supersedes_with_new_version(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        report = self.engine.sync("E1", {("N1", 4), ("N2", 3)}, actor="admin-ui")

        assert report.updated == 1
        assert report.applied == 1
        history = self.rows(node_id="N1")
        assert [(r.proficiency_level, r.version, r.active) for r in history] == [
            (2, 1, False),
            (4, 2, True),
        ]
        assert history[0].superseded_at is not None

    def test_absent_node_is_superseded_not_deleted(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        report = self.engine.sync("E1", {("N1", 2)}, actor="admin-ui")

        assert report.superseded == 1
        assert self.active() == {("N1", 2)}
        n2 = self.rows(node_id="N2")
        assert len(n2) == 1
        assert n2[0].active is False

    def test_supersession_writes_one_audit_record(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        self.engine.sync("E1", {("N1", 2)}, actor="admin-ui", correlation_id="drop-n2")

        records = self.audit.get_records(correlation_id="drop-n2")
        assert [(r.operation, r.target_keys["nodeId"]) for r in records] == [
            ("assignment.supersede", "N2"),
        ]
        assert self.active() == {("N1", 2)}
        assert [r.version for r in self.rows(node_id="N1")] == [1]

    def test_empty_desired_set_supersedes_everything(self):
        self.engine.sync("E1", {("N1", 2), ("N3", 0)}, actor="admin-ui")
        report = self.engine.sync("E1", [], actor="admin-ui")
        assert report.superseded == 2
        assert self.active() == set()

    def test_entities_are_independent(self):
        self.engine.sync("E1", {("N1", 2)}, actor="admin-ui")
        self.engine.sync("E2", {("N1", 5)}, actor="admin-ui")
        assert self.active("E1") == {("N1", 2)}
        assert self.active("E2") == {("N1", 5)}

    def test_accepts_assignment_specs(self):
        specs = [AssignmentSpec(nodeId="N1", proficiencyLevel=1)]
        report = self.engine.sync("E1", specs, actor="admin-ui")
        assert report.created == 1


class TestSyncPlan(SyncTestBase):
    """Diffing desired against current."""

    def test_plan_partitions_changes(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        plan = self.engine.plan("E1", {("N1", 5), ("N3", 1)})

        assert [c.node_id for c in plan.to_create] == ["N3"]
        assert [c.node_id for c in plan.to_update] == ["N1"]
        assert [c.node_id for c in plan.to_supersede] == ["N2"]
        assert plan.to_update[0].kind is ChangeKind.UPDATE
        assert plan.to_update[0].read_version == 1
        assert plan.size == 3

    def test_unknown_entity_is_not_found(self):
        with pytest.raises(NotFound):
            self.engine.plan("E404", {("N1", 1)})

    def test_out_of_range_level_is_malformed(self):
        with pytest.raises(Malformed):
            self.engine.sync("E1", {("N1", 6)}, actor="admin-ui")
        assert self.rows() == []

    def test_duplicate_node_with_different_levels_is_malformed(self):
        with pytest.raises(Malformed):
            normalize_desired([("N1", 1), ("N1", 2)])

    def test_duplicate_node_with_same_level_collapses(self):
        assert normalize_desired([("N1", 1), ("N1", 1)]) == {"N1": 1}


class TestSyncConflicts(SyncTestBase):
    """Optimistic concurrency."""

    def test_concurrent_update_conflicts_and_rolls_back(self):
        self.engine.sync("E1", {("N1", 2)}, actor="admin-ui")

        plan_a = self.engine.plan("E1", {("N1", 3)})
        plan_b = self.engine.plan("E1", {("N1", 4), ("N2", 1)})

        report_a = self.engine.apply(plan_a, actor="admin-ui")
        report_b = self.engine.apply(plan_b, actor="reporting")

        assert report_a.succeeded
        assert not report_b.succeeded
        assert report_b.applied == 0
        assert [(c.node_id, c.reason) for c in report_b.conflicts] == [
            ("N1", ErrorKind.CONFLICT)
        ]
        # B's create of N2 was rolled back along with the failed update
        assert self.active() == {("N1", 3)}

    def test_concurrent_create_conflicts(self):
        plan_a = self.engine.plan("E1", {("N2", 1)})
        plan_b = self.engine.plan("E1", {("N2", 5)})

        assert self.engine.apply(plan_a, actor="a").succeeded
        report_b = self.engine.apply(plan_b, actor="b")

        assert report_b.conflicts[0].node_id == "N2"
        assert report_b.conflicts[0].reason == ErrorKind.CONFLICT
        assert self.active() == {("N2", 1)}

    def test_unknown_node_is_reported_and_nothing_applies(self):
        report = self.engine.sync("E1", {("N1", 2), ("NOPE", 1)}, actor="admin-ui")

        assert report.applied == 0
        assert report.to_wire() == {
            "success": False,
            "applied": 0,
            "conflicts": [{"nodeId": "NOPE", "reason": "NotFound"}],
        }
        assert self.active() == set()
        assert self.audit.get_record_count() == 0

    def test_disabled_node_rejects_new_assignments(self):
        with self.db.session() as session:
            session.get(HierarchyNodeDB, "N3").disabled = True
        report = self.engine.sync("E1", {("N3", 2)}, actor="admin-ui")
        assert report.conflicts[0].reason == ErrorKind.NOT_FOUND

    def test_unique_index_race_keeps_earlier_conflicts(self):
        earlier = SyncConflict(node_id="NOPE", reason=ErrorKind.NOT_FOUND)
        conflicts = [earlier]
        change = PlannedChange(ChangeKind.CREATE, "N1", proficiency_level=3)

        with pytest.raises(_SyncAborted) as excinfo:
            with self.db.session() as session:
                session.add(AssignmentDB(entity_id="E1", node_id="N1", proficiency_level=2))
                session.flush()
                SyncEngine._insert(
                    session,
                    change,
                    AssignmentDB(entity_id="E1", node_id="N1", proficiency_level=3),
                    conflicts,
                )

        assert [(c.node_id, c.reason) for c in excinfo.value.conflicts] == [
            ("NOPE", ErrorKind.NOT_FOUND),
            ("N1", ErrorKind.CONFLICT),
        ]
        assert self.rows() == []

    def test_every_conflict_is_listed(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 2)}, actor="admin-ui")
        stale = self.engine.plan("E1", {("N1", 3), ("N2", 3)})
        self.engine.sync("E1", {("N1", 4), ("N2", 4)}, actor="admin-ui")

        report = self.engine.apply(stale, actor="admin-ui")
        assert sorted(c.node_id for c in report.conflicts) == ["N1", "N2"]


class TestSyncAudit(SyncTestBase):
    """Audit rows written with the data."""

    def test_one_record_per_changed_row(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui", correlation_id="c1")
        self.engine.sync("E1", {("N1", 4)}, actor="admin-ui", correlation_id="c2")

        with self.db.session() as session:
            records = session.execute(
                select(AuditRecordDB).where(AuditRecordDB.correlation_id == "c2")
            ).scalars().all()
            by_op = {r.operation: r for r in records}

        assert set(by_op) == {"assignment.update", "assignment.supersede"}
        update = by_op["assignment.update"]
        assert update.actor == "admin-ui"
        assert update.target_keys == {"entityId": "E1", "nodeId": "N1"}
        assert update.before_value["proficiencyLevel"] == 2
        assert update.after_value["proficiencyLevel"] == 4
        assert update.after_value["version"] == 2
        assert by_op["assignment.supersede"].after_value["active"] is False

    def test_audit_trail_verifies(self):
        self.engine.sync("E1", {("N1", 2), ("N2", 3)}, actor="admin-ui")
        self.engine.sync("E1", {("N1", 1)}, actor="admin-ui")
        is_valid, count, _ = self.audit.verify_records()
        assert is_valid
        assert count == 4


class TestSyncBatch(SyncTestBase):
    """Per-entity transactions inside one batch."""

    def test_one_failure_does_not_block_others(self):
        outcomes = self.engine.sync_batch(
            [
                ("E1", {("N1", 2)}),
                ("E404", {("N1", 2)}),
                ("E2", {("NOPE", 1)}),
                ("E2", {("N2", 3)}),
            ],
            actor="admin-ui",
        )

        assert [o.succeeded for o in outcomes] == [True, False, False, True]
        assert isinstance(outcomes[1].error, NotFound)
        assert outcomes[2].report.conflicts[0].reason == ErrorKind.NOT_FOUND
        assert self.active("E1") == {("N1", 2)}
        assert self.active("E2") == {("N2", 3)}
