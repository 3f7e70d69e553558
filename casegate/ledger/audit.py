"""
Ledger Audit Tool — independent chain integrity verification.

Connects directly to the database and recomputes every hash of every
tenant's chain, so an operator or external auditor can confirm that no
record was altered, removed or reordered after the fact.

Usage:
    python -m casegate.ledger.audit
    python -m casegate.ledger.audit --database-url postgresql+psycopg2://...
    python -m casegate.ledger.audit --tenant firm-a --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from casegate.config import settings
from casegate.ledger.database import Database
from casegate.ledger.replay import find_discrepancies
from casegate.ledger.service import AuditFilter, AuditLedger

console = Console()


def run_audit(
    database_url: str,
    tenant: str | None = None,
    verbose: bool = False,
    reconcile: bool = False,
) -> bool:
    """
    Run a full hash chain integrity audit.

    Args:
        database_url: SQLAlchemy connection string.
        tenant: Limit the audit to one tenant; all tenants otherwise.
        verbose: Print the latest records of each tenant.
        reconcile: Also compare replayed ledger state with the operational tables.

    Returns:
        True if every audited chain is valid (and consistent, with ``reconcile``).
    """
    console.print("\n[bold blue]═══ Audit Ledger Integrity Check ═══[/bold blue]\n")

    database = Database(database_url)
    ledger = AuditLedger(database)
    tenants = [tenant] if tenant else ledger.tenants()

    if not tenants:
        console.print("[yellow]⚠ Ledger is empty — no records to verify[/yellow]")
        database.dispose()
        return True

    all_valid = True
    summary = Table(title="Chains")
    summary.add_column("Tenant", style="cyan")
    summary.add_column("Records", justify="right")
    summary.add_column("Result")
    summary.add_column("Detail", style="dim")

    start_time = time.time()
    for tenant_id in tenants:
        is_valid, verified, message = ledger.verify_chain(tenant_id)
        total = ledger.count(AuditFilter(tenant_id=tenant_id))
        if reconcile and is_valid:
            problems = find_discrepancies(ledger, database, tenant_id)
            if problems:
                is_valid = False
                message = "; ".join(problems)
        all_valid = all_valid and is_valid
        summary.add_row(
            tenant_id,
            f"{verified}/{total}",
            "[bold green]✓ VALID[/bold green]" if is_valid else "[bold red]✗ INVALID[/bold red]",
            message,
        )
    elapsed = time.time() - start_time

    console.print(summary)
    console.print(f"  Verification time: {elapsed:.3f}s")

    if verbose:
        for tenant_id in tenants:
            table = Table(title=f"Latest records — {tenant_id}", show_lines=True)
            table.add_column("Seq", style="cyan", width=6)
            table.add_column("Action", style="green")
            table.add_column("Outcome")
            table.add_column("Actor", style="yellow")
            table.add_column("Hash (first 16)", style="dim", width=18)
            table.add_column("Timestamp", width=22)
            for record in reversed(ledger.latest(tenant_id, limit=50)):
                table.add_row(
                    str(record.sequence),
                    record.action.value,
                    record.outcome.value,
                    record.actor_id or "system",
                    record.record_hash[:16] + "...",
                    str(record.timestamp)[:19],
                )
            console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    database.dispose()
    return all_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="CaseGate audit ledger integrity auditor")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument("--tenant", default=None, help="Audit a single tenant")
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Compare replayed ledger state with drafts and send records",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the latest records of each tenant",
    )
    args = parser.parse_args(argv)

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, tenant=args.tenant, verbose=args.verbose, reconcile=args.reconcile)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
