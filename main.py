"""
Belief Market — Settlement Cron Entry Point

Each cycle settles every eligible belief, pushes queued settlement
instructions to the external ledger, then applies confirmed ledger events
back onto the mirror.

Run: python main.py
     python main.py --once               (single cycle, no loop)
     python main.py --status BELIEF_ID   (show rebase status and pool only)
     python main.py --agent AGENT_ID     (show stake and open positions)
     python main.py --dry-run            (never submit to the ledger)
"""
import asyncio
import logging
import sys

from config import CRON_INTERVAL_SECONDS, DRY_RUN, JSON_LOGGING, LEDGER_API_KEY
from external.ledger_client import LedgerClient
from external.reconciler import LedgerReconciler
from models.errors import ExternalLedgerError, ProtocolError
from ops.logging_setup import setup_logging
from ops.run_context import RunContext
from protocol.service import ProtocolService
from storage.ledger_store import CURRENT_SCHEMA_VERSION
import report

logger = logging.getLogger(__name__)


async def run_cycle(service: ProtocolService, reconciler: LedgerReconciler, client: LedgerClient, ctx: RunContext):
    """Run a single settlement cycle."""
    cycle_id = ctx.next_cycle()
    results = service.scheduler.process_due()
    report.print_cycle_header(cycle_id, ctx.run_id, len(results), ctx.dry_run)
    for result in results:
        report.print_settlement(result)

    try:
        submitted = await reconciler.dispatch_pending(client)
        applied = await reconciler.sync(client)
    except ExternalLedgerError as e:
        report.console.print(f"[yellow]Ledger unavailable ({e.reason}); retrying next cycle.[/yellow]")
        return
    stuck = reconciler.unresolved_failures()
    if stuck:
        report.console.print(f"[red]{len(stuck)} ledger event(s) refused by the mirror; see failed_events.[/red]")
    logger.info("Cycle %d: settled=%d submitted=%d applied=%d", cycle_id, len(results), submitted, applied)


def show_status(service: ProtocolService, belief_id: str):
    try:
        status = service.get_rebase_status(belief_id)
    except ProtocolError as e:
        report.console.print(f"[red]{e}[/red]")
        return
    report.print_rebase_status(status)
    belief = service.beliefs.get_belief(belief_id)
    if belief.pool_id:
        report.print_pool(service.amm.snapshot(belief.pool_id))


def show_agent(service: ProtocolService, agent_id: str):
    try:
        agent = service.ledger.get_agent(agent_id)
    except ProtocolError as e:
        report.console.print(f"[red]{e}[/red]")
        return
    report.print_agent(agent, service.ledger.get_positions(agent_id))


async def main():
    args = sys.argv[1:]
    dry_run = DRY_RUN or "--dry-run" in args

    ctx = RunContext(dry_run=dry_run, schema_version=CURRENT_SCHEMA_VERSION)
    setup_logging(run_id=ctx.run_id, json_mode=JSON_LOGGING)
    service = ProtocolService.from_config()

    if "--status" in args:
        idx = args.index("--status")
        if idx + 1 >= len(args):
            report.console.print("[red]Usage: python main.py --status BELIEF_ID[/red]")
            return
        show_status(service, args[idx + 1])
        return

    if "--agent" in args:
        idx = args.index("--agent")
        if idx + 1 >= len(args):
            report.console.print("[red]Usage: python main.py --agent AGENT_ID[/red]")
            return
        show_agent(service, args[idx + 1])
        return

    snapshot = service.store.backup()
    if snapshot is not None:
        logger.info("Startup snapshot written to %s", snapshot)

    once = "--once" in args
    client = LedgerClient()
    reconciler = LedgerReconciler(service.store, service.amm, service.ledger, service.recorder, dry_run=dry_run)

    report.console.print()
    report.console.print("[bold cyan]Belief Market[/bold cyan] settlement cron starting up...")
    if not dry_run and not LEDGER_API_KEY:
        report.console.print("[yellow]Warning: LEDGER_API_KEY not set. Ledger calls are unauthenticated.[/yellow]")
    report.console.print(f"Cycle interval: [white]{CRON_INTERVAL_SECONDS}s[/white]")
    logger.info("Run manifest: %s", ctx.to_manifest_dict())
    report.console.print()

    while True:
        try:
            await run_cycle(service, reconciler, client, ctx)
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logger.exception("Cycle %d failed", ctx.cycle_id)
            report.console.print(f"[red]Cycle error: {e}[/red]")

        if once:
            break

        report.console.print(f"[dim]Next cycle in {CRON_INTERVAL_SECONDS}s. Ctrl+C to stop.[/dim]\n")

        try:
            await asyncio.sleep(CRON_INTERVAL_SECONDS)
        except asyncio.CancelledError:
            break


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        report.console.print("\n[dim]Stopped.[/dim]")
