"""
Audit Trail Report — operator view of a guild's audit log.

Prints the most recent audit entries of a guild as a table, followed by a
per-action count summary. Guild owner bypasses are highlighted; with
``--bypasses-only`` nothing else is listed.

Usage:
    anarchy-audit --guild 123456789012345678
    anarchy-audit --guild 123456789012345678 --bypasses-only
    python -m anarchy_associates.store.audit --guild G1 --database-url sqlite:///firm.db
"""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.table import Table

from anarchy_associates.config import settings
from anarchy_associates.firm.schema import AuditEntry, AuditSeverity
from anarchy_associates.store.database import Database
from anarchy_associates.store.repositories import AuditLogRepository

console = Console()

SEVERITY_STYLES = {
    AuditSeverity.LOW: "dim",
    AuditSeverity.MEDIUM: "cyan",
    AuditSeverity.HIGH: "yellow",
    AuditSeverity.CRITICAL: "bold red",
}


def _describe(entry: AuditEntry) -> str:
    details = entry.details
    if details.bypass_info is not None:
        info = details.bypass_info
        return (
            f"{info.business_rule_violated} {info.current_count}/{info.max_count}: "
            f"{info.bypass_reason or '—'}"
        )
    parts = []
    if details.before is not None and details.after is not None:
        parts.append(f"{details.before.role.value if details.before.role else '—'} → "
                     f"{details.after.role.value if details.after.role else '—'}")
    elif details.after is not None and details.after.role is not None:
        parts.append(details.after.role.value)
    if details.reason:
        parts.append(details.reason)
    return " | ".join(parts) or "—"


def render_entries(entries: list[AuditEntry]) -> Table:
    table = Table(show_lines=False)
    table.add_column("Timestamp", width=20)
    table.add_column("Action", style="green", width=26)
    table.add_column("Severity", width=9)
    table.add_column("Actor", style="yellow", width=20)
    table.add_column("Target", width=20)
    table.add_column("Details")
    table.add_column("Bypass", width=8)

    for entry in entries:
        style = SEVERITY_STYLES[entry.severity]
        table.add_row(
            str(entry.timestamp)[:19],
            entry.action.value,
            f"[{style}]{entry.severity.value}[/{style}]",
            entry.actor_id,
            entry.target_id or "—",
            _describe(entry),
            "🚨 YES" if entry.is_guild_owner_bypass else "—",
        )
    return table


def run_report(
    database_url: str, guild_id: str, limit: int = 50, bypasses_only: bool = False
) -> int:
    """
    Print the audit report of one guild.

    Returns:
        Number of entries listed.
    """
    console.print(f"\n[bold blue]═══ Audit Trail — guild {guild_id} ═══[/bold blue]\n")

    database = Database(database_url)
    try:
        audit = AuditLogRepository(database)
        if bypasses_only:
            entries = audit.find_guild_owner_bypasses(guild_id, limit=limit)
        else:
            entries = audit.find_by_guild(guild_id, limit=limit)

        if not entries:
            console.print("[yellow]⚠ No audit entries found[/yellow]")
        else:
            console.print(render_entries(entries))

        if not bypasses_only:
            counts = {a: n for a, n in audit.action_counts(guild_id).items() if n}
            if counts:
                summary = Table(title="Entries per action")
                summary.add_column("Action", style="green")
                summary.add_column("Count", justify="right")
                for action, count in sorted(counts.items(), key=lambda kv: -kv[1]):
                    summary.add_row(action.value, str(count))
                console.print(summary)
    finally:
        database.dispose()

    console.print(f"\n[bold blue]═══ {len(entries)} entries listed ═══[/bold blue]\n")
    return len(entries)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Anarchy & Associates audit trail report"
    )
    parser.add_argument("--guild", required=True, help="Guild (Discord server) ID")
    parser.add_argument(
        "--bypasses-only",
        action="store_true",
        help="List guild owner bypasses only",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.audit_default_limit,
        help="Maximum number of entries to list",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    args = parser.parse_args(argv)

    db_url = args.database_url or settings.database_url_sync
    run_report(db_url, args.guild, limit=args.limit, bypasses_only=args.bypasses_only)
    sys.exit(0)


if __name__ == "__main__":
    main()
