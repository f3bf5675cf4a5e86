"""
Audit Trail Verification Tool — independent integrity check of the audit records.

Connects directly to the backing store and recomputes every record hash,
confirming that no audit row has been edited after it was written.

Usage:
    python -m skillgrid.audit.verify
    python -m skillgrid.audit.verify --database-url postgresql://...
    python -m skillgrid.audit.verify --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from skillgrid.audit.logger import AuditLogger
from skillgrid.config import settings
from skillgrid.store.database import Database

console = Console()


def run_verification(database_url: str, verbose: bool = False) -> bool:
    """
    Run a full audit trail verification.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print the most recent records if True.

    Returns:
        True if every record hash matches, False otherwise.
    """
    db = Database(database_url, query_timeout_seconds=0)
    audit = AuditLogger(db)
    console.rule(f"[bold]SkillGrid audit check[/bold] ({db.dialect})")

    count = audit.get_record_count()
    if count == 0:
        console.print("[yellow]No audit records yet; nothing to check.[/yellow]")
        return True

    started = time.perf_counter()
    is_valid, verified, message = audit.verify_records()
    elapsed = time.perf_counter() - started

    if is_valid:
        console.print(
            f"[green]OK[/green] {verified}/{count} record hashes match "
            f"[dim]({elapsed:.3f}s)[/dim]"
        )
    else:
        console.print(f"[bold red]TAMPERED[/bold red] after {verified} good records: {message}")

    if verbose:
        table = Table(title="Latest audit records", show_lines=False)
        table.add_column("When", no_wrap=True)
        table.add_column("Actor", style="yellow")
        table.add_column("Operation", style="green")
        table.add_column("Target", style="cyan")
        table.add_column("Hash", style="dim", no_wrap=True)

        for row in reversed(audit.get_records(limit=min(count, 200))):
            keys = ", ".join(f"{k}={v}" for k, v in sorted(row.target_keys.items()))
            table.add_row(
                row.timestamp.isoformat(timespec="seconds"),
                row.actor,
                row.operation,
                f"{row.target_table}[{keys}]",
                row.record_hash[:12],
            )
        console.print(table)

    console.rule("[green]passed[/green]" if is_valid else "[red]failed[/red]")
    return is_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="SkillGrid audit trail integrity verifier"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the most recent audit records",
    )
    args = parser.parse_args(argv)

    db_url = args.database_url or settings.database_url_sync
    is_valid = run_verification(db_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
