"""
Tests for hierarchy administration.

Validates:
- Levels are computed from the parent chain
- The tree stops at level 5
- Moves cannot create cycles and recompute subtree levels
- Disabled nodes keep their assignments
- The admin tool applies commands and exits non-zero on gateway errors
"""

from __future__ import annotations

import pytest

from conftest import seed
from skillgrid.audit.logger import AuditLogger
from skillgrid.contracts.errors import Conflict, Malformed, NotFound
from skillgrid.store import admin
from skillgrid.store.database import Database
from skillgrid.store.hierarchy import HierarchyService
from skillgrid.store.models import AssignmentDB


class TestHierarchyService:

    def setup_method(self):
        self.db = Database("sqlite://", query_timeout_seconds=0)
        self.db.initialize()
        seed(self.db)
        self.audit = AuditLogger(self.db)
        self.service = HierarchyService(self.db, self.audit)

    def teardown_method(self):
        self.db.engine.dispose()

    def build_chain(self, parent: str, depth: int) -> str:
        """Append ``depth`` nodes below ``parent``; return the deepest id."""
        for i in range(depth):
            child = f"{parent}_{i}"
            self.service.create_node(child, parent_id=parent)
            parent = child
        return parent

    def test_root_is_level_zero(self):
        node = self.service.create_node("ORG2", name="Operations")
        assert node.level == 0

    def test_child_level_follows_parent(self):
        node = self.service.create_node("N1a_x", parent_id="N1a", name="Postgres")
        assert node.level == 3
        assert self.service.path_to_root("N1a_x") == ["ROOT", "N1", "N1a", "N1a_x"]

    def test_depth_limit(self):
        deepest = self.build_chain("N1a", 3)
        assert self.service.get_node(deepest).level == 5
        with pytest.raises(Malformed):
            self.service.create_node("too_deep", parent_id=deepest)

    def test_duplicate_id_conflicts(self):
        with pytest.raises(Conflict):
            self.service.create_node("N1", parent_id="ROOT")

    def test_missing_parent_is_not_found(self):
        with pytest.raises(NotFound):
            self.service.create_node("orphan", parent_id="NOPE")

    def test_move_recomputes_subtree_levels(self):
        self.service.move_node("N1", "N2")
        assert self.service.get_node("N1").level == 2
        assert self.service.get_node("N1a").level == 3
        assert self.service.path_to_root("N1a") == ["ROOT", "N2", "N1", "N1a"]

    def test_move_to_root(self):
        self.service.move_node("N1", None)
        assert self.service.get_node("N1").level == 0
        assert self.service.get_node("N1a").level == 1

    def test_move_under_own_descendant_is_cycle(self):
        with pytest.raises(Malformed):
            self.service.move_node("N1", "N1a")
        with pytest.raises(Malformed):
            self.service.move_node("N1", "N1")
        assert self.service.get_node("N1").parent_id == "ROOT"

    def test_move_past_depth_limit_is_rejected(self):
        deepest = self.build_chain("N2", 4)
        with pytest.raises(Malformed):
            self.service.move_node("N1", deepest)
        assert self.service.get_node("N1a").level == 2

    def test_disable_keeps_assignments(self):
        with self.db.session() as session:
            session.add(AssignmentDB(entity_id="E1", node_id="N3", proficiency_level=2))
        node = self.service.disable_node("N3")
        assert node.disabled
        with self.db.session() as session:
            row = session.query(AssignmentDB).filter_by(node_id="N3").one()
            assert row.active

    def test_cannot_create_under_disabled_parent(self):
        self.service.disable_node("N2")
        with pytest.raises(Malformed):
            self.service.create_node("N2x", parent_id="N2")

    def test_cannot_move_under_disabled_parent(self):
        self.service.disable_node("N2")
        with pytest.raises(Malformed) as excinfo:
            self.service.move_node("N1a", "N2")
        assert excinfo.value.details == {"parentId": "N2"}
        assert self.service.path_to_root("N1a") == ["ROOT", "N1", "N1a"]
        assert self.service.get_node("N1a").level == 2

    def test_mutations_are_audited(self):
        self.service.create_node("N4", parent_id="ROOT", correlation_id="h1")
        self.service.move_node("N4", "N1", correlation_id="h1")
        self.service.disable_node("N4", correlation_id="h1")

        ops = [r.operation for r in reversed(self.audit.get_records(correlation_id="h1"))]
        assert sorted(ops) == ["node.create", "node.disable", "node.move"]
        assert self.audit.verify_records()[0]


class TestAdminTool:
    """The command-line hierarchy tool against a file-backed store."""

    def setup_method(self):
        self.url = None

    def run(self, *argv) -> int:
        with pytest.raises(SystemExit) as excinfo:
            admin.main(["--database-url", self.url, "--actor", "ops", *argv])
        return excinfo.value.code

    def test_create_move_disable_show(self, tmp_path):
        self.url = f"sqlite:///{tmp_path / 'tree.db'}"
        db = Database(self.url, query_timeout_seconds=0)
        db.initialize()
        seed(db)

        assert self.run("create", "N4", "--parent", "ROOT", "--name", "Data") == 0
        assert self.run("move", "N4", "--parent", "N1") == 0
        assert self.run("--correlation-id", "cli-1", "disable", "N4") == 0
        assert self.run("show", "N4") == 0

        service = HierarchyService(db, AuditLogger(db))
        node = service.get_node("N4")
        assert (node.parent_id, node.level, node.disabled) == ("N1", 2, True)

        record = AuditLogger(db).get_records(correlation_id="cli-1")[0]
        assert (record.actor, record.operation) == ("ops", "node.disable")
        db.engine.dispose()

    def test_errors_exit_non_zero(self, tmp_path):
        self.url = f"sqlite:///{tmp_path / 'tree.db'}"
        db = Database(self.url, query_timeout_seconds=0)
        db.initialize()
        seed(db)
        db.engine.dispose()

        assert self.run("create", "N1", "--parent", "ROOT") == 1
        assert self.run("move", "N1", "--parent", "N1a") == 1
        assert self.run("show", "NOPE") == 1
        assert self.run("create", "N5", "--attributes", "{not json") == 1
