"""
Skill Hierarchy Store — SQLAlchemy models for nodes, entities, assignments and audit.

Four tables back the gateway:

1. hierarchy_nodes — fixed-depth (≤ 6 levels) classification tree
2. entities        — people/records owned by an external system of record
3. assignments     — entity ↔ node links with a proficiency level; never
                     deleted, only superseded by a newer version
4. audit_records   — append-only trail, one row per changed row

JSON columns map to JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all gateway models."""
    pass


class HierarchyNodeDB(Base):
    """
    One node of the skill/organization hierarchy.

    ``level`` is derived from the parent chain (0 for roots) and is only ever
    written by the hierarchy service. Nodes referenced by assignments are
    soft-disabled, never deleted.
    """

    __tablename__ = "hierarchy_nodes"

    id = Column(String(64), primary_key=True)
    parent_id = Column(
        String(64), ForeignKey("hierarchy_nodes.id"), nullable=True,
        comment="Parent node; NULL for roots",
    )
    level = Column(
        Integer, nullable=False, default=0,
        comment="Depth in the tree, 0-5, computed from the parent chain",
    )
    name = Column(String(200), nullable=False, default="")
    attributes = Column(JSONType, nullable=False, default=dict)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_hierarchy_parent", "parent_id"),
        Index("ix_hierarchy_level", "level"),
    )

    def __repr__(self) -> str:
        return f"<HierarchyNode id={self.id} level={self.level} parent={self.parent_id}>"


class EntityDB(Base):
    """
    A person (or other record) placed in the organization.

    Owned by an external system of record; the gateway only reads and joins it.
    """

    __tablename__ = "entities"

    id = Column(String(64), primary_key=True)
    org_path = Column(
        JSONType, nullable=False, default=list,
        comment="Ordered list of up to 6 hierarchy node ids",
    )
    attributes = Column(JSONType, nullable=False, default=dict)


class AssignmentDB(Base):
    """
    Entity ↔ node link with a proficiency level.

    Rows are never deleted. An update deactivates the current row and
    inserts a successor with ``version + 1``; a removal only deactivates.
    At most one active row exists per (entity, node).
    """

    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(64), ForeignKey("entities.id"), nullable=False)
    node_id = Column(String(64), ForeignKey("hierarchy_nodes.id"), nullable=False)
    proficiency_level = Column(Integer, nullable=False)
    version = Column(
        Integer, nullable=False, default=1,
        comment="Optimistic concurrency token, incremented per supersession",
    )
    active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    superseded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_assignment_entity", "entity_id"),
        Index("ix_assignment_node", "node_id"),
        Index(
            "uq_assignment_active_pair",
            "entity_id", "node_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    def snapshot(self) -> dict:
        """Audit snapshot of the mutable state of this row."""
        return {
            "id": self.id,
            "proficiencyLevel": self.proficiency_level,
            "version": self.version,
            "active": self.active,
        }

    def __repr__(self) -> str:
        return (
            f"<Assignment entity={self.entity_id} node={self.node_id} "
            f"level={self.proficiency_level} v{self.version} active={self.active}>"
        )


class AuditRecordDB(Base):
    """
    Append-only audit trail. No rows may be updated or deleted.

    ``record_hash`` is the SHA-256 of the canonical JSON of every other
    field (see ``AuditRecord.compute_hash``), so edits are detectable.
    """

    __tablename__ = "audit_records"

    id = Column(String(36), primary_key=True)
    actor = Column(String(100), nullable=False)
    operation = Column(String(50), nullable=False)
    target_table = Column(String(100), nullable=False)
    target_keys = Column(JSONType, nullable=False)
    before_value = Column(JSONType, nullable=True)
    after_value = Column(JSONType, nullable=True)
    correlation_id = Column(String(64), nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    record_hash = Column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_audit_target", "target_table"),
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_correlation", "correlation_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditRecord op={self.operation} target={self.target_table} hash={self.record_hash[:12]}...>"
