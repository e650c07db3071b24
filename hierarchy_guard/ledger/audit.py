"""
Audit Ledger Tool — recompute the authorization audit hash chain.

Exit status is 0 when every entry still hashes to its stored value, 1 otherwise.

Usage:
    hierarchy-guard-audit
    hierarchy-guard-audit --database-url postgresql://...
    hierarchy-guard-audit --verbose --actor user-42 --limit 50
"""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.table import Table

from hierarchy_guard.config import settings
from hierarchy_guard.identity.schema import AuditEntry, AuditOutcome
from hierarchy_guard.ledger.recorder import AuditRecorder
from hierarchy_guard.ledger.service import AuditLedgerService

console = Console()


def entries_table(entries: list[AuditEntry]) -> Table:
    table = Table(title="Recent authorization decisions", show_lines=False)
    table.add_column("Seq", style="cyan", justify="right")
    table.add_column("When")
    table.add_column("Actor", style="yellow")
    table.add_column("Decision", style="green")
    table.add_column("Target")
    table.add_column("Denial")
    table.add_column("Hash", style="dim")

    for entry in entries:
        denied = entry.outcome == AuditOutcome.DENIED
        table.add_row(
            str(entry.sequence_number),
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.actor_id,
            f"[red]{entry.action.value}[/red]" if denied else entry.action.value,
            entry.target_id or "-",
            entry.denial_code.value if entry.denial_code else "",
            entry.entry_hash[:12],
        )
    return table


def run_audit(
    database_url: str,
    verbose: bool = False,
    actor_id: str | None = None,
    limit: int = 200,
) -> bool:
    """Verify the chain at ``database_url``; True if it is intact."""
    service = AuditLedgerService(database_url)
    try:
        stats = AuditRecorder(sink=service).statistics(actor_id=actor_id)
        scope = f" by {actor_id}" if actor_id else ""
        console.print(
            f"Authorization entries{scope}: [bold]{stats.total_entries}[/bold] "
            f"([red]{stats.denied_entries} denied[/red])"
        )

        is_valid, verified, message = service.verify_chain()
        if is_valid:
            console.print(f"[bold green]{message}[/bold green]")
        else:
            console.print(f"[bold red]{message}[/bold red] (row {verified})")

        if verbose:
            console.print(entries_table(service.entries(actor_id=actor_id, limit=limit)))
    finally:
        service.close()
    return is_valid


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Verify the Hierarchy Guard authorization audit ledger"
    )
    parser.add_argument(
        "--database-url",
        default=settings.audit_database_url,
        help="SQLAlchemy connection string (default: GUARD_AUDIT_DATABASE_URL)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="List recent entries")
    parser.add_argument("--actor", default=None, help="Restrict counts and listing to one actor")
    parser.add_argument("--limit", type=int, default=200, help="Entries to list with --verbose")
    args = parser.parse_args()

    is_valid = run_audit(
        args.database_url, verbose=args.verbose, actor_id=args.actor, limit=args.limit
    )
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
