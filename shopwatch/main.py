"""Entry point for the shop health monitor."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shopwatch.config import settings
from shopwatch.monitor.engine import ReconciliationEngine, create_engine
from shopwatch.monitor.store import open_store

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STATUS_STYLE = {"ok": "bold green", "empty": "bold red", "unknown": "dim"}


def run_server() -> None:
    """Start the FastAPI server (scheduler runs inside it)."""
    console.print(Panel("Starting Shopwatch API Server", style="bold green"))
    uvicorn.run(
        "shopwatch.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def print_status(engine: ReconciliationEngine) -> None:
    snap = engine.snapshot(limit=3)
    status = snap["status"]
    console.print(f"[bold]Status:[/bold] [{_STATUS_STYLE.get(status, '')}]{status}[/]")
    console.print(f"[bold]Last Check:[/bold] {snap['last_check'] or 'Never'}")
    if snap["last_failure"]:
        console.print(f"[bold]Last Failure:[/bold] {snap['last_failure']}")

    if snap["incidents"]:
        table = Table(title="Recent incidents")
        table.add_column("Time")
        table.add_column("Type")
        table.add_column("Message")
        for e in snap["incidents"]:
            table.add_row(e["time"], e["kind"], e["message"])
        console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(description="Shopwatch — shop health monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server and scheduler")
    sub.add_parser("check", help="Run one reconciliation cycle now")
    sub.add_parser("test-alert", help="Send a test alert and force a cache flush")
    sub.add_parser("status", help="Show current status and recent incidents")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
        return
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    store = open_store(settings)
    engine = create_engine(store, settings)
    try:
        if args.command == "check":
            with console.status("[bold green]Checking shop..."):
                engine.reconcile()
            console.print("Manual check completed.")
            print_status(engine)
        elif args.command == "test-alert":
            outcome = engine.trigger_test_alert()
            console.print(f"Test alert sent. Flushed: {', '.join(outcome.backends_invoked)}")
        elif args.command == "status":
            print_status(engine)
    finally:
        store.close()


if __name__ == "__main__":
    main()
