"""
Hierarchy administration — create, move and soft-disable HierarchyNodes.

The service owns the two tree invariants:

1. the parent chain is acyclic and at most six levels deep (levels 0-5)
2. ``level`` equals ``parent.level + 1`` (0 for roots)

``level`` is never accepted from callers; it is computed here on create and
recomputed for the whole subtree on move. Nodes are never deleted: disabling
keeps existing assignments intact and only blocks new ones. Every mutation
writes an audit record in the same transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillgrid.audit.logger import AuditLogger
from skillgrid.contracts.errors import Conflict, Malformed, NotFound
from skillgrid.contracts.schema import MAX_HIERARCHY_LEVEL, AuditOperation
from skillgrid.store.database import Database
from skillgrid.store.models import HierarchyNodeDB

logger = logging.getLogger(__name__)


def _node_snapshot(node: HierarchyNodeDB) -> dict[str, Any]:
    return {
        "parentId": node.parent_id,
        "level": node.level,
        "name": node.name,
        "disabled": node.disabled,
    }


class HierarchyService:
    """Administrative mutations on the hierarchy tree."""

    def __init__(self, db: Database, audit: AuditLogger) -> None:
        self.db = db
        self.audit = audit

    def create_node(
        self,
        node_id: str,
        parent_id: str | None = None,
        name: str = "",
        attributes: dict[str, Any] | None = None,
        actor: str = "system",
        correlation_id: str = "",
    ) -> HierarchyNodeDB:
        """
        Create a node under ``parent_id`` (or as a root).

        Raises:
            Malformed: Empty id, disabled parent, or the node would sit below level 5.
            NotFound: ``parent_id`` does not exist.
            Conflict: A node with ``node_id`` already exists.
        """
        if not node_id:
            raise Malformed("Node id must not be empty")

        with self.db.session() as session:
            if session.get(HierarchyNodeDB, node_id) is not None:
                raise Conflict(f"Node '{node_id}' already exists", details={"nodeId": node_id})

            level = 0
            if parent_id is not None:
                parent = self._require_enabled_parent(session, parent_id)
                level = parent.level + 1
                if level > MAX_HIERARCHY_LEVEL:
                    raise Malformed(
                        f"Node '{node_id}' would be at level {level}; "
                        f"the hierarchy stops at level {MAX_HIERARCHY_LEVEL}",
                        details={"parentId": parent_id, "level": level},
                    )

            node = HierarchyNodeDB(
                id=node_id,
                parent_id=parent_id,
                level=level,
                name=name,
                attributes=attributes or {},
                disabled=False,
            )
            session.add(node)
            session.flush()
            self.audit.record(
                session,
                actor=actor,
                operation=AuditOperation.NODE_CREATE.value,
                target_table="hierarchy_nodes",
                target_keys={"nodeId": node_id},
                after_value=_node_snapshot(node),
                correlation_id=correlation_id,
            )

        logger.info("Hierarchy node created: id=%s parent=%s level=%d", node_id, parent_id, level)
        return node

    def move_node(
        self,
        node_id: str,
        new_parent_id: str | None,
        actor: str = "system",
        correlation_id: str = "",
    ) -> HierarchyNodeDB:
        """
        Re-parent a node and recompute levels for its whole subtree.

        Raises:
            NotFound: The node or the new parent does not exist.
            Malformed: Disabled new parent, or the move would create a cycle
                or push the subtree past level 5.
        """
        with self.db.session() as session:
            node = self._require(session, node_id)
            before = _node_snapshot(node)

            new_level = 0
            if new_parent_id is not None:
                parent = self._require_enabled_parent(session, new_parent_id)
                ancestry = [n.id for n in self._ancestors(session, parent)]
                if node_id in ancestry:
                    raise Malformed(
                        f"Moving '{node_id}' under '{new_parent_id}' would create a cycle",
                        details={"nodeId": node_id, "parentId": new_parent_id},
                    )
                new_level = parent.level + 1

            subtree = self._subtree(session, node)
            shift = new_level - node.level
            deepest = max(n.level for n in subtree) + shift
            if deepest > MAX_HIERARCHY_LEVEL:
                raise Malformed(
                    f"Moving '{node_id}' would place descendants at level {deepest}",
                    details={"nodeId": node_id, "level": deepest},
                )

            node.parent_id = new_parent_id
            for member in subtree:
                member.level += shift

            self.audit.record(
                session,
                actor=actor,
                operation=AuditOperation.NODE_MOVE.value,
                target_table="hierarchy_nodes",
                target_keys={"nodeId": node_id},
                before_value=before,
                after_value=_node_snapshot(node),
                correlation_id=correlation_id,
            )

        logger.info(
            "Hierarchy node moved: id=%s parent=%s shift=%d subtree=%d",
            node_id, new_parent_id, shift, len(subtree),
        )
        return node

    def disable_node(
        self, node_id: str, actor: str = "system", correlation_id: str = ""
    ) -> HierarchyNodeDB:
        """Soft-disable a node. Existing assignments are left untouched."""
        with self.db.session() as session:
            node = self._require(session, node_id)
            if node.disabled:
                return node
            before = _node_snapshot(node)
            node.disabled = True
            self.audit.record(
                session,
                actor=actor,
                operation=AuditOperation.NODE_DISABLE.value,
                target_table="hierarchy_nodes",
                target_keys={"nodeId": node_id},
                before_value=before,
                after_value=_node_snapshot(node),
                correlation_id=correlation_id,
            )

        logger.info("Hierarchy node disabled: id=%s", node_id)
        return node

    def get_node(self, node_id: str) -> HierarchyNodeDB | None:
        with self.db.session() as session:
            return session.get(HierarchyNodeDB, node_id)

    def path_to_root(self, node_id: str) -> list[str]:
        """Node ids from the root down to ``node_id``."""
        with self.db.session() as session:
            node = self._require(session, node_id)
            return [n.id for n in reversed(self._ancestors(session, node))]

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _require(session: Session, node_id: str) -> HierarchyNodeDB:
        node = session.get(HierarchyNodeDB, node_id)
        if node is None:
            raise NotFound(f"Node '{node_id}' does not exist", details={"nodeId": node_id})
        return node

    @classmethod
    def _require_enabled_parent(cls, session: Session, parent_id: str) -> HierarchyNodeDB:
        """New children never attach below a disabled node."""
        parent = cls._require(session, parent_id)
        if parent.disabled:
            raise Malformed(
                f"Cannot place a node under disabled parent '{parent_id}'",
                details={"parentId": parent_id},
            )
        return parent

    @staticmethod
    def _ancestors(session: Session, node: HierarchyNodeDB) -> list[HierarchyNodeDB]:
        """``node`` followed by its ancestors, nearest first."""
        chain = [node]
        seen = {node.id}
        current = node
        while current.parent_id is not None:
            current = session.get(HierarchyNodeDB, current.parent_id)
            if current is None or current.id in seen or len(chain) > MAX_HIERARCHY_LEVEL:
                raise Malformed(f"Corrupt parent chain above node '{node.id}'")
            seen.add(current.id)
            chain.append(current)
        return chain

    @staticmethod
    def _subtree(session: Session, root: HierarchyNodeDB) -> list[HierarchyNodeDB]:
        """``root`` and every descendant, breadth first."""
        members = [root]
        frontier = [root.id]
        while frontier:
            children = session.execute(
                select(HierarchyNodeDB).where(HierarchyNodeDB.parent_id.in_(frontier))
            ).scalars().all()
            members.extend(children)
            frontier = [c.id for c in children]
        return members
