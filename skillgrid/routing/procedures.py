"""
Procedure Catalog — named server-side procedures for complex read shapes.

Hierarchy traversal and multi-table joins with business rules are not
built ad hoc by the router; they are dispatched by name to one of:

- SqlProcedure   — portable parameterized SQL (recursive CTEs, joins) that
                   runs on any backend the gateway supports
- StoredFunction — a function that lives in the database, invoked as
                   ``SELECT * FROM <function>(:arg, ...)``

Every procedure receives its parameters as bound values plus a
``row_limit`` bound to the router's ceiling (+1 to detect truncation).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy import Boolean, Integer, text
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import TextClause, TextualSelect
from sqlalchemy.types import TypeEngine

from skillgrid.access.allowlist import validate_identifier
from skillgrid.contracts.errors import Malformed, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SqlProcedure:
    """Named, parameterized SQL text executed verbatim with bound parameters."""

    name: str
    sql: str
    required: frozenset[str] = frozenset()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    result_types: Mapping[str, TypeEngine] = field(default_factory=dict)

    def statement(self) -> TextClause | TextualSelect:
        stmt = text(self.sql)
        if self.result_types:
            return stmt.columns(**self.result_types)
        return stmt

    def run(self, session: Session, params: Mapping[str, Any], row_limit: int) -> list[dict]:
        missing = sorted(self.required - set(params))
        if missing:
            raise Malformed(
                f"Procedure '{self.name}' requires parameters: {', '.join(missing)}",
                details={"procedure": self.name, "missing": missing},
            )
        bound = {**self.defaults, **params, "row_limit": row_limit}
        result = session.execute(self.statement(), bound)
        return [dict(row) for row in result.mappings().all()]


@dataclass(frozen=True)
class StoredFunction:
    """A set-returning function stored in the backing database."""

    name: str
    function: str
    arguments: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_identifier(self.function, "procedure")
        for arg in self.arguments:
            validate_identifier(arg, "parameter")

    def run(self, session: Session, params: Mapping[str, Any], row_limit: int) -> list[dict]:
        missing = [a for a in self.arguments if a not in params]
        if missing:
            raise Malformed(
                f"Procedure '{self.name}' requires parameters: {', '.join(missing)}",
                details={"procedure": self.name, "missing": missing},
            )
        placeholders = ", ".join(f":{a}" for a in self.arguments)
        stmt = text(f"SELECT * FROM {self.function}({placeholders}) LIMIT :row_limit")
        bound = {a: params[a] for a in self.arguments}
        bound["row_limit"] = row_limit
        result = session.execute(stmt, bound)
        return [dict(row) for row in result.mappings().all()]


Procedure = SqlProcedure | StoredFunction


HIERARCHY_SUBTREE = SqlProcedure(
    name="hierarchy_subtree",
    sql="""
        WITH RECURSIVE subtree (id, parent_id, level, name, disabled, depth) AS (
            SELECT id, parent_id, level, name, disabled, 0
            FROM hierarchy_nodes
            WHERE id = :root_id
            UNION ALL
            SELECT n.id, n.parent_id, n.level, n.name, n.disabled, s.depth + 1
            FROM hierarchy_nodes n
            JOIN subtree s ON n.parent_id = s.id
            WHERE s.depth < 5
        )
        SELECT id, parent_id, level, name, disabled, depth
        FROM subtree
        ORDER BY depth, id
        LIMIT :row_limit
    """,
    required=frozenset({"root_id"}),
    result_types={"level": Integer, "disabled": Boolean, "depth": Integer},
)

ENTITY_SKILL_MATRIX = SqlProcedure(
    name="entity_skill_matrix",
    sql="""
        SELECT a.entity_id, a.node_id, n.name AS node_name, n.level AS node_level,
               a.proficiency_level, a.version
        FROM assignments a
        JOIN hierarchy_nodes n ON n.id = a.node_id
        WHERE a.entity_id = :entity_id AND a.active = :active
        ORDER BY n.level, a.node_id
        LIMIT :row_limit
    """,
    required=frozenset({"entity_id"}),
    defaults={"active": True},
    result_types={"node_level": Integer, "proficiency_level": Integer, "version": Integer},
)


class ProcedureCatalog:
    """Name → procedure lookup used by the Query Router."""

    def __init__(self, procedures: list[Procedure] | None = None) -> None:
        self._procedures: dict[str, Procedure] = {}
        for procedure in procedures if procedures is not None else DEFAULT_PROCEDURES:
            self.register(procedure)

    def register(self, procedure: Procedure) -> None:
        validate_identifier(procedure.name, "procedure")
        self._procedures[procedure.name] = procedure
        logger.debug("Procedure registered: %s (%s)", procedure.name, type(procedure).__name__)

    def get(self, name: str) -> Procedure:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise NotFound(f"Procedure '{name}' is not registered", details={"procedure": name})
        return procedure

    def names(self) -> list[str]:
        return sorted(self._procedures)


DEFAULT_PROCEDURES: list[Procedure] = [HIERARCHY_SUBTREE, ENTITY_SKILL_MATRIX]
