"""
Query Router — decides how a generic read is served.

Dispatch is a strategy table keyed by ``RouteKind``:

- PROCEDURE — the table rule names a procedure (hierarchy traversal,
  multi-table joins with business rules); the call is forwarded to the
  ProcedureCatalog with the request filter as parameters
- DIRECT    — a parameterized SELECT is built with SQLAlchemy Core,
  restricted to the columns the Allowlist Registry permits

Every dispatch is logged with its correlation id and elapsed time. Results
are capped by a hard row ceiling: callers that need more rows must narrow
the payload with an explicit column subset, which earns the larger
``max_rows_with_columns`` ceiling; the ceiling itself is not negotiable.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import Table, column, inspect, select, table
from sqlalchemy.orm import Session

from skillgrid.access.allowlist import AllowlistRegistry, TableRule
from skillgrid.contracts.errors import GatewayError, Malformed, NotFound
from skillgrid.contracts.schema import Operation, ReadRequest
from skillgrid.routing.procedures import ProcedureCatalog
from skillgrid.store.database import Database
from skillgrid.store.models import Base

logger = logging.getLogger(__name__)


class RouteKind(str, enum.Enum):
    """How a read request is served."""

    DIRECT = "direct"
    PROCEDURE = "procedure"


@dataclass(frozen=True)
class QueryResult:
    """Rows returned by the router plus dispatch metadata."""

    table: str
    route: RouteKind
    rows: list[dict[str, Any]] = field(default_factory=list)
    procedure: str | None = None
    truncated: bool = False
    correlation_id: str = ""
    elapsed_ms: float = 0.0

    @property
    def total_records(self) -> int:
        return len(self.rows)


Strategy = Callable[[Session, TableRule, ReadRequest, int], list[dict[str, Any]]]


class QueryRouter:
    """
    Serves generic reads through a procedure or a direct select.

    Usage:
        router = QueryRouter(db, AllowlistRegistry.default())
        result = router.execute(ReadRequest(operation="read", table="assignments"))
    """

    def __init__(
        self,
        db: Database,
        allowlist: AllowlistRegistry,
        catalog: ProcedureCatalog | None = None,
        max_rows: int = 1000,
        max_rows_with_columns: int = 5000,
    ) -> None:
        self.db = db
        self.allowlist = allowlist
        self.catalog = catalog or ProcedureCatalog()
        self.max_rows = max_rows
        self.max_rows_with_columns = max(max_rows_with_columns, max_rows)
        self._strategies: dict[RouteKind, Strategy] = {
            RouteKind.DIRECT: self._run_direct,
            RouteKind.PROCEDURE: self._run_procedure,
        }
        self._reflected: dict[str, list[str]] = {}
        self._reflect_lock = threading.Lock()

    @staticmethod
    def classify(rule: TableRule) -> RouteKind:
        """Route for a table rule: procedure-backed views go to the catalog."""
        return RouteKind.PROCEDURE if rule.procedure else RouteKind.DIRECT

    def row_ceiling(self, request: ReadRequest) -> int:
        return self.max_rows_with_columns if request.columns else self.max_rows

    def execute(self, request: ReadRequest, correlation_id: str = "") -> QueryResult:
        """
        Check the request against the allowlist and run it.

        Raises:
            PermissionDenied: Table, operation or columns not allowlisted
                (raised before anything reaches the backing store).
            Malformed: Invalid identifiers or filter values.
            NotFound: Unknown procedure or missing table/column in the store.
            BackendUnavailable: Timeout or connection failure.
        """
        correlation_id = correlation_id or uuid4().hex
        filters = request.filter or {}
        rule = self.allowlist.check(request.table, request.columns, Operation.READ, filters.keys())
        route = self.classify(rule)
        if route is RouteKind.PROCEDURE:
            self._check_parameters(rule, filters)
        ceiling = self.row_ceiling(request)
        deadline = self.db.deadline()

        try:
            with self.db.session() as session:
                rows = self._strategies[route](session, rule, request, ceiling + 1)
                deadline.check(f"read of '{request.table}'")
        except GatewayError as exc:
            logger.warning(
                "Query failed: correlation=%s route=%s table=%s kind=%s elapsed_ms=%.3f: %s",
                correlation_id, route.value, request.table, exc.kind.value,
                deadline.elapsed_ms, exc.message,
            )
            raise

        truncated = len(rows) > ceiling
        if truncated:
            rows = rows[:ceiling]

        logger.info(
            "Query dispatched: correlation=%s route=%s table=%s procedure=%s "
            "rows=%d truncated=%s elapsed_ms=%.3f",
            correlation_id, route.value, request.table, rule.procedure,
            len(rows), truncated, deadline.elapsed_ms,
        )
        return QueryResult(
            table=request.table,
            route=route,
            rows=rows,
            procedure=rule.procedure,
            truncated=truncated,
            correlation_id=correlation_id,
            elapsed_ms=deadline.elapsed_ms,
        )

    # ── Strategies ──────────────────────────────────────────────

    def _run_procedure(
        self, session: Session, rule: TableRule, request: ReadRequest, limit: int
    ) -> list[dict[str, Any]]:
        procedure = self.catalog.get(rule.procedure)
        missing = sorted(rule.required_parameters - set(request.filter or {}))
        if missing:
            raise Malformed(
                f"Table '{rule.table}' requires filter keys: {', '.join(missing)}",
                details={"table": rule.table, "missing": missing},
            )
        rows = procedure.run(session, dict(request.filter or {}), limit)
        if request.columns:
            rows = [{c: row.get(c) for c in request.columns} for row in rows]
        return rows

    def _run_direct(
        self, session: Session, rule: TableRule, request: ReadRequest, limit: int
    ) -> list[dict[str, Any]]:
        filters = request.filter or {}
        projection = list(request.columns or self._permitted_columns(session, rule))
        source = self._source(rule.table, projection + list(filters))

        stmt = select(*(source.c[name] for name in projection))
        for name, value in filters.items():
            col = source.c[name]
            if value is None:
                stmt = stmt.where(col.is_(None))
            elif isinstance(value, list):
                if any(isinstance(v, (dict, list)) for v in value):
                    raise Malformed(f"Filter '{name}' must list scalar values")
                stmt = stmt.where(col.in_(value))
            elif isinstance(value, dict):
                raise Malformed(
                    f"Filter '{name}' must be a scalar or a list of scalars",
                    details={"column": name},
                )
            else:
                stmt = stmt.where(col == value)

        if "id" in source.c:
            stmt = stmt.order_by(source.c["id"])
        stmt = stmt.limit(limit)

        return [dict(row) for row in session.execute(stmt).mappings().all()]

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _check_parameters(rule: TableRule, params: dict[str, Any]) -> None:
        """Procedure parameters bind one value each; lists and objects are rejected."""
        for name, value in params.items():
            if isinstance(value, (dict, list)):
                raise Malformed(
                    f"Parameter '{name}' of '{rule.table}' must be a scalar value",
                    details={"table": rule.table, "parameter": name},
                )

    def _source(self, table_name: str, names: list[str]):
        """Typed ORM table when the gateway owns it, a lightweight table otherwise."""
        owned: Table | None = Base.metadata.tables.get(table_name)
        if owned is not None:
            unknown = sorted({n for n in names if n not in owned.c})
            if unknown:
                raise NotFound(
                    f"Columns do not exist on '{table_name}': {', '.join(unknown)}",
                    details={"table": table_name, "columns": unknown},
                )
            return owned
        return table(table_name, *(column(n) for n in dict.fromkeys(names)))

    def _permitted_columns(self, session: Session, rule: TableRule) -> list[str]:
        if not rule.allows_all_columns:
            return sorted(rule.columns)

        owned = Base.metadata.tables.get(rule.table)
        if owned is not None:
            return [c.name for c in owned.columns]

        with self._reflect_lock:
            cached = self._reflected.get(rule.table)
            if cached is None:
                inspector = inspect(session.connection())
                if not inspector.has_table(rule.table):
                    raise NotFound(
                        f"Table '{rule.table}' does not exist in the backing store",
                        details={"table": rule.table},
                    )
                cached = [c["name"] for c in inspector.get_columns(rule.table)]
                self._reflected[rule.table] = cached
        return list(cached)
