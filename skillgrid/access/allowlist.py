"""
Allowlist Registry — static declaration of what the generic access path may touch.

Every read passes through this registry before any query text is built.
A request is checked in a fixed order:

- identifier shape: table and column names must match ``IDENTIFIER_PATTERN``
  (anything else is Malformed and never reaches query text)
- table: unknown tables are PermissionDenied
- operation: must be listed on the table rule
- columns: requested columns outside the permitted set are PermissionDenied,
  and the error names every offending column

The registry is built once at startup and is read-only afterwards.
"""

from __future__ import annotations

import json
import logging
import re
from types import MappingProxyType
from typing import Any, Iterable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from skillgrid.contracts.errors import Malformed, PermissionDenied
from skillgrid.contracts.schema import Operation

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ALL_COLUMNS = "all"


def validate_identifier(name: str, what: str = "column") -> str:
    """Reject any table/column name that could carry SQL syntax."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise Malformed(
            f"Invalid {what} name {name!r}: only letters, digits and underscore are allowed",
            details={what: name},
        )
    return name


class TableRule(BaseModel):
    """What the generic path may do with one table (or procedure-backed view)."""

    model_config = ConfigDict(frozen=True)

    table: str
    operations: frozenset[Operation] = Field(default=frozenset({Operation.READ}))
    columns: frozenset[str] | Literal["all"] = Field(
        default=ALL_COLUMNS, description="Permitted columns, or 'all'"
    )
    procedure: str | None = Field(
        default=None, description="Named procedure serving this view; None means direct select"
    )
    parameters: frozenset[str] = Field(
        default=frozenset(), description="Filter keys accepted as procedure parameters"
    )
    required_parameters: frozenset[str] = Field(default=frozenset())

    @property
    def allows_all_columns(self) -> bool:
        return self.columns == ALL_COLUMNS

    def disallowed(self, columns: Iterable[str]) -> list[str]:
        """Columns from ``columns`` this rule does not permit, sorted."""
        if self.allows_all_columns:
            return []
        return sorted({c for c in columns if c not in self.columns})


def _rule(table: str, columns: Iterable[str] | str = ALL_COLUMNS, **kwargs: Any) -> TableRule:
    cols = ALL_COLUMNS if columns == ALL_COLUMNS else frozenset(columns)
    return TableRule(table=table, columns=cols, **kwargs)


DEFAULT_ALLOWLIST: dict[str, TableRule] = {
    rule.table: rule
    for rule in (
        _rule(
            "hierarchy_nodes",
            ["id", "parent_id", "level", "name", "attributes", "disabled", "created_at"],
        ),
        _rule("entities", ["id", "org_path", "attributes"]),
        _rule(
            "assignments",
            [
                "id", "entity_id", "node_id", "proficiency_level",
                "version", "active", "updated_at", "superseded_at",
            ],
            operations=frozenset({Operation.READ, Operation.SYNC}),
        ),
        _rule(
            "hierarchy_subtree",
            ["id", "parent_id", "level", "name", "disabled", "depth"],
            procedure="hierarchy_subtree",
            parameters=frozenset({"root_id"}),
            required_parameters=frozenset({"root_id"}),
        ),
        _rule(
            "entity_skill_matrix",
            ["entity_id", "node_id", "node_name", "node_level", "proficiency_level", "version"],
            procedure="entity_skill_matrix",
            parameters=frozenset({"entity_id"}),
            required_parameters=frozenset({"entity_id"}),
        ),
    )
}


class AllowlistRegistry:
    """
    Immutable table → rule mapping consulted by the gateway and the router.

    Usage:
        registry = AllowlistRegistry.default()
        rule = registry.check("assignments", ["entity_id", "node_id"], Operation.READ)
    """

    def __init__(self, rules: Mapping[str, TableRule]) -> None:
        for table in rules:
            validate_identifier(table, "table")
        self._rules: Mapping[str, TableRule] = MappingProxyType(dict(rules))

    @classmethod
    def default(cls) -> AllowlistRegistry:
        return cls(DEFAULT_ALLOWLIST)

    @classmethod
    def from_json(cls, raw: str) -> AllowlistRegistry:
        """
        Build a registry from a JSON document of the form
        ``{"tables": {"<name>": {"operations": [...], "columns": [...] | "all", ...}}}``.
        """
        document = json.loads(raw)
        rules = {
            name: TableRule.model_validate({"table": name, **spec})
            for name, spec in document.get("tables", {}).items()
        }
        logger.info("Allowlist loaded: %d tables", len(rules))
        return cls(rules)

    @property
    def tables(self) -> list[str]:
        return sorted(self._rules)

    def get_rule(self, table: str) -> TableRule | None:
        return self._rules.get(table)

    def check(
        self,
        table: str,
        columns: Iterable[str] | None,
        operation: Operation,
        filter_keys: Iterable[str] = (),
    ) -> TableRule:
        """
        Verify a request against the registry and return the matching rule.

        Raises:
            Malformed: A table, column or filter name fails the identifier pattern.
            PermissionDenied: Unknown table, operation not permitted, or
                columns outside the permitted set (enumerated in ``details``).
        """
        validate_identifier(table, "table")
        requested = list(columns or [])
        keys = list(filter_keys)
        for name in requested + keys:
            validate_identifier(name)

        rule = self._rules.get(table)
        if rule is None:
            raise PermissionDenied(
                f"Table '{table}' is not reachable through the generic access path",
                details={"table": table},
            )

        if operation not in rule.operations:
            raise PermissionDenied(
                f"Operation '{operation.value}' is not permitted on table '{table}'",
                details={"table": table, "operation": operation.value},
            )

        offending = rule.disallowed(requested)
        if offending:
            raise PermissionDenied(
                f"Columns not permitted on table '{table}': {', '.join(offending)}",
                details={"table": table, "columns": offending},
            )

        if rule.procedure is not None:
            unknown = sorted(set(keys) - rule.parameters)
            if unknown:
                raise PermissionDenied(
                    f"Filter keys not accepted by '{table}': {', '.join(unknown)}",
                    details={"table": table, "columns": unknown},
                )
        else:
            offending_filters = rule.disallowed(keys)
            if offending_filters:
                raise PermissionDenied(
                    f"Filter columns not permitted on table '{table}': "
                    f"{', '.join(offending_filters)}",
                    details={"table": table, "columns": offending_filters},
                )

        return rule

    def is_permitted(
        self, table: str, columns: Iterable[str] | None, operation: Operation
    ) -> bool:
        """Boolean form of :meth:`check`."""
        try:
            self.check(table, columns, operation)
        except (Malformed, PermissionDenied):
            return False
        return True
