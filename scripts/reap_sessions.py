#!/usr/bin/env python3
"""
Delete video sessions whose appointment is gone, cancelled or completed,
or that are older than VIDEO_SESSION_TTL_HOURS.

Usage:
    python scripts/reap_sessions.py              # Interactive (asks confirmation)
    python scripts/reap_sessions.py --force      # Delete without asking
    python scripts/reap_sessions.py --list       # Only list, don't delete
    python scripts/reap_sessions.py --ttl-hours 6
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

load_dotenv()

from videoconsult.appointments import create_appointment_directory
from videoconsult.config import get_settings
from videoconsult.logging_config import setup_logging
from videoconsult.storage import create_session_store
from videoconsult.video.service import VideoSessionService
from videoconsult.video.status import derive_state

console = Console()


async def reap(list_only: bool, force: bool, ttl_hours: float) -> int:
    settings = get_settings()
    store = create_session_store(settings)
    service = VideoSessionService(
        store=store,
        appointments=create_appointment_directory(settings),
        provider=None,
        session_ttl_hours=ttl_hours or settings.session_ttl_hours,
    )

    try:
        due = await service.find_reapable()
        if not due:
            console.print("No sessions to reap.")
            return 0

        table = Table(title=f"Sessions to reap: {len(due)}")
        table.add_column("Appointment", style="cyan")
        table.add_column("Session")
        table.add_column("State")
        table.add_column("Created")
        table.add_column("Reason", style="yellow")
        for session, reason in due:
            table.add_row(
                session.appointment_id,
                session.session_id,
                derive_state(session).value,
                session.created_at.isoformat(timespec="seconds"),
                reason,
            )
        console.print(table)

        if list_only:
            return 0

        if not force and not click.confirm(f"\nDelete {len(due)} session(s)?", default=False):
            console.print("Cancelled.")
            return 0

        deleted = 0
        for session, _ in due:
            if await store.delete(session.appointment_id):
                deleted += 1
                console.print(f"  Deleted: {session.appointment_id}")
            else:
                console.print(f"  [dim]Already gone: {session.appointment_id}[/dim]")
        console.print(f"\n[green]Done. Deleted {deleted} session(s).[/green]")
        return 0
    finally:
        await store.close()


@click.command()
@click.option("--list", "-l", "list_only", is_flag=True, help="Only list sessions due for reaping")
@click.option("--force", "-f", is_flag=True, help="Delete without confirmation")
@click.option("--ttl-hours", type=float, default=None, help="Override VIDEO_SESSION_TTL_HOURS")
def main(list_only: bool, force: bool, ttl_hours: float):
    """Reap orphaned and expired video sessions."""
    setup_logging("scripts")
    try:
        sys.exit(asyncio.run(reap(list_only, force, ttl_hours)))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
