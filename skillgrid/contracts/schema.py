"""
Gateway Schema — Pydantic models for request envelopes, reports and audit records.

These models are the canonical data structures exchanged between the Access
Gateway and its callers, and between the Sync Engine and the Audit Logger.
Field aliases follow the camelCase wire format; Python code uses snake_case.
"""

from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from skillgrid.contracts.errors import ErrorKind


def utc_now() -> datetime:
    """Default clock source for every component."""
    return datetime.now(timezone.utc)


def canonical_timestamp(value: datetime) -> str:
    """Render a timestamp as naive UTC so it survives a round trip through any backend."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Operation(str, enum.Enum):
    """Operations a table rule can permit."""

    READ = "read"
    SYNC = "sync"


class ProficiencyLevel(enum.IntEnum):
    """Bounded proficiency ordinal carried by an Assignment."""

    AWARENESS = 0
    NOVICE = 1
    PRACTITIONER = 2
    PROFICIENT = 3
    ADVANCED = 4
    EXPERT = 5


class AuditOperation(str, enum.Enum):
    """Mutations recorded in the audit trail."""

    ASSIGNMENT_CREATE = "assignment.create"
    ASSIGNMENT_UPDATE = "assignment.update"
    ASSIGNMENT_SUPERSEDE = "assignment.supersede"
    NODE_CREATE = "node.create"
    NODE_MOVE = "node.move"
    NODE_DISABLE = "node.disable"


MAX_HIERARCHY_LEVEL = 5


# ════════════════════════════════════════════════════════════════
# Request Envelopes
# ════════════════════════════════════════════════════════════════


class ReadRequest(BaseModel):
    """Generic read envelope: ``{"operation": "read", "table": ..., ...}``."""

    model_config = ConfigDict(extra="forbid")

    operation: Literal["read"]
    table: str = Field(min_length=1)
    columns: list[str] | None = Field(
        default=None, description="Explicit column subset; omitted means all permitted columns"
    )
    filter: dict[str, Any] | None = Field(
        default=None, description="Equality predicates keyed by column name"
    )

    @field_validator("columns")
    @classmethod
    def _columns_not_empty(cls, value: list[str] | None) -> list[str] | None:
        if value is not None and not value:
            raise ValueError("columns must name at least one column when present")
        return value


class AssignmentSpec(BaseModel):
    """One desired (node, proficiency) pair in a sync envelope."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    node_id: str = Field(alias="nodeId", min_length=1)
    proficiency_level: ProficiencyLevel = Field(alias="proficiencyLevel")


class SyncRequest(BaseModel):
    """Bulk synchronization envelope for a single entity."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    operation: Literal["sync"]
    entity_id: str = Field(alias="entityId", min_length=1)
    assignments: list[AssignmentSpec]

    def desired(self) -> set[tuple[str, ProficiencyLevel]]:
        return {(a.node_id, a.proficiency_level) for a in self.assignments}


AccessRequest = Annotated[Union[ReadRequest, SyncRequest], Field(discriminator="operation")]

ACCESS_REQUEST_ADAPTER: TypeAdapter[ReadRequest | SyncRequest] = TypeAdapter(AccessRequest)


# ════════════════════════════════════════════════════════════════
# Results
# ════════════════════════════════════════════════════════════════


class SyncConflict(BaseModel):
    """A single (node, reason) pair that prevented a sync from applying."""

    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    reason: ErrorKind
    message: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "reason": self.reason.value}


class SyncReport(BaseModel):
    """Outcome of synchronizing one entity."""

    entity_id: str
    applied: int = 0
    created: int = 0
    updated: int = 0
    superseded: int = 0
    conflicts: list[SyncConflict] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.conflicts

    def to_wire(self) -> dict[str, Any]:
        return {
            "success": self.succeeded,
            "applied": self.applied,
            "conflicts": [c.to_wire() for c in self.conflicts],
        }


# ════════════════════════════════════════════════════════════════
# Audit Records
# ════════════════════════════════════════════════════════════════


class AuditRecord(BaseModel):
    """
    A single immutable audit record.

    The record hash covers every other field, so any after-the-fact edit of
    a stored row is detectable by recomputing it.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    actor: str
    operation: str
    target_table: str
    target_keys: dict[str, Any]
    before_value: dict[str, Any] | None = None
    after_value: dict[str, Any] | None = None
    correlation_id: str = ""
    timestamp: datetime = Field(default_factory=utc_now)

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON of the record fields."""
        hashable = {
            "id": self.id,
            "actor": self.actor,
            "operation": self.operation,
            "target_table": self.target_table,
            "target_keys": self.target_keys,
            "before_value": self.before_value,
            "after_value": self.after_value,
            "correlation_id": self.correlation_id,
            "timestamp": canonical_timestamp(self.timestamp),
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
