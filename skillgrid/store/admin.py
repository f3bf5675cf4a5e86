"""
Hierarchy administration tool — create, move, disable and inspect nodes.

Runs HierarchyService directly against the backing store; every mutation
is audited under the ``--actor`` identity.

Usage:
    skillgrid-hierarchy create N4 --parent ROOT --name "Data"
    skillgrid-hierarchy move N4 --parent N1
    skillgrid-hierarchy move N4 --root
    skillgrid-hierarchy disable N4
    skillgrid-hierarchy show N4
"""

from __future__ import annotations

import argparse
import json
import sys
from uuid import uuid4

from rich.console import Console
from rich.table import Table

from skillgrid.audit.logger import AuditLogger
from skillgrid.config import settings
from skillgrid.contracts.errors import GatewayError
from skillgrid.store.database import Database
from skillgrid.store.hierarchy import HierarchyService
from skillgrid.store.models import HierarchyNodeDB

console = Console()


def _show(node: HierarchyNodeDB, path: list[str]) -> None:
    table = Table(title=f"Node {node.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("name", node.name or "-")
    table.add_row("parent", node.parent_id or "(root)")
    table.add_row("level", str(node.level))
    table.add_row("disabled", "[red]yes[/red]" if node.disabled else "no")
    table.add_row("path", " / ".join(path))
    if node.attributes:
        table.add_row("attributes", json.dumps(node.attributes, sort_keys=True))
    console.print(table)


def run_command(service: HierarchyService, args: argparse.Namespace) -> int:
    """Apply one parsed command; returns the process exit code."""
    correlation_id = args.correlation_id or uuid4().hex
    try:
        if args.command == "create":
            node = service.create_node(
                args.node_id,
                parent_id=args.parent,
                name=args.name,
                attributes=json.loads(args.attributes) if args.attributes else None,
                actor=args.actor,
                correlation_id=correlation_id,
            )
            console.print(f"[green]created[/green] {node.id} at level {node.level}")
        elif args.command == "move":
            node = service.move_node(
                args.node_id,
                None if args.root else args.parent,
                actor=args.actor,
                correlation_id=correlation_id,
            )
            console.print(f"[green]moved[/green] {node.id} to level {node.level}")
        elif args.command == "disable":
            node = service.disable_node(
                args.node_id, actor=args.actor, correlation_id=correlation_id
            )
            console.print(f"[green]disabled[/green] {node.id}")
        else:
            node = service.get_node(args.node_id)
            if node is None:
                console.print(f"[red]NotFound[/red] node '{args.node_id}' does not exist")
                return 1
            _show(node, service.path_to_root(args.node_id))
    except GatewayError as exc:
        console.print(f"[red]{exc.kind.value}[/red] {exc.message}")
        return 1
    except json.JSONDecodeError as exc:
        console.print(f"[red]Malformed[/red] --attributes is not JSON: {exc}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SkillGrid hierarchy administration")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument("--actor", default="hierarchy-cli", help="Identity recorded in audit rows")
    parser.add_argument("--correlation-id", default="", help="Correlation id for the audit rows")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a node")
    create.add_argument("node_id")
    create.add_argument("--parent", default=None, help="Parent node id (omit for a root)")
    create.add_argument("--name", default="")
    create.add_argument("--attributes", default=None, help="JSON object of node attributes")

    move = commands.add_parser("move", help="Re-parent a node and its subtree")
    move.add_argument("node_id")
    target = move.add_mutually_exclusive_group(required=True)
    target.add_argument("--parent", help="New parent node id")
    target.add_argument("--root", action="store_true", help="Make the node a root")

    disable = commands.add_parser("disable", help="Soft-disable a node")
    disable.add_argument("node_id")

    show = commands.add_parser("show", help="Print a node and its path to the root")
    show.add_argument("node_id")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    db = Database(args.database_url or settings.database_url_sync)
    db.initialize()
    service = HierarchyService(db, AuditLogger(db))
    sys.exit(run_command(service, args))


if __name__ == "__main__":
    main()
