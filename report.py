"""
Belief Market — Terminal Reporting
Displays rebase status, pool state, settlement results and agent collateral.
"""
from datetime import datetime, timezone
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from config import MICRO_UNITS
from models.types import Agent, Position, RebaseStatus, SettlementResult

console = Console()


def _money(micro: int) -> str:
    return f"{micro / MICRO_UNITS:,.6f}"


def print_cycle_header(cycle_id: int, run_id: str, due: int, dry_run: bool):
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    mode = "[yellow]DRY RUN[/yellow]" if dry_run else "[green]LIVE[/green]"
    console.print(Panel(
        f"[bold cyan]Belief Market[/bold cyan] — Cycle #{cycle_id}\n"
        f"[dim]{now}[/dim]  |  {mode}  |  run [white]{run_id}[/white]  |  [white]{due}[/white] belief(s) due",
        border_style="dim cyan",
    ))


def print_rebase_status(status: RebaseStatus):
    color = "green" if status.can_settle else "yellow"
    table = Table(title=f"Rebase status — {status.belief_id}", box=box.SIMPLE)
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Can settle", f"[{color}]{status.can_settle}[/{color}]")
    table.add_row("Current epoch", str(status.current_epoch))
    table.add_row("New submissions", f"{status.unaccounted_submissions}/{status.min_required}")
    table.add_row("Cooldown (s)", str(status.cooldown_remaining_seconds))
    table.add_row("Reason", status.reason)
    console.print(table)


def print_pool(snapshot: dict):
    table = Table(title=f"Pool {snapshot['pool_id']}", box=box.SIMPLE)
    table.add_column("Side")
    table.add_column("Reserve", justify="right")
    table.add_column("Supply", justify="right")
    table.add_column("Price", justify="right")
    table.add_row("LONG", _money(snapshot["r_long"]), _money(snapshot["supply_long"]), f"{snapshot['price_long']:.6f}")
    table.add_row("SHORT", _money(snapshot["r_short"]), _money(snapshot["supply_short"]), f"{snapshot['price_short']:.6f}")
    console.print(table)
    console.print(
        f"[dim]Implied relevance:[/dim] [white]{snapshot['implied_relevance']:.4f}[/white]  "
        f"[dim]Vault:[/dim] [white]{_money(snapshot['vault_balance'])}[/white]  "
        f"[dim]Last settled epoch:[/dim] [white]{snapshot['last_settlement_epoch']}[/white]"
    )


def print_settlement(result: SettlementResult):
    tag = " [dim](cached)[/dim]" if result.cached else ""
    learn = "[green]yes[/green]" if result.learning_occurred else "[dim]no[/dim]"
    console.print(
        f"[bold]{result.belief_id}[/bold] epoch {result.epoch} → {result.next_epoch}{tag}  "
        f"aggregate=[white]{result.new_aggregate:.4f}[/white] [dim]({result.aggregation_method.value})[/dim] "
        f"certainty=[white]{result.certainty:.3f}[/white] "
        f"x=[white]{result.bd_score_ppm}[/white]ppm learning={learn}"
    )
    if not result.stake_deltas:
        return

    table = Table(box=box.ROUNDED, border_style="dim")
    table.add_column("Agent")
    table.add_column("Score", justify="right")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Δ", justify="right")
    for d in sorted(result.stake_deltas, key=lambda d: d.delta):
        color = "green" if d.delta > 0 else "red" if d.delta < 0 else "dim"
        table.add_row(
            d.agent_id,
            f"{d.information_score:+.4f}",
            _money(d.stake_before),
            _money(d.stake_after),
            f"[{color}]{d.delta / MICRO_UNITS:+,.6f}[/{color}]",
        )
    console.print(table)
    if result.rollover_after:
        console.print(f"[dim]Rollover pot carried forward: {_money(result.rollover_after)}[/dim]")


def print_agent(agent: Agent, positions: list[Position]):
    locks = sum(p.belief_lock for p in positions)
    color = "red" if locks > agent.total_stake else "green"
    console.print(
        f"[bold]{agent.agent_id}[/bold]  stake=[white]{_money(agent.total_stake)}[/white]  "
        f"locks=[{color}]{_money(locks)}[/{color}]  open positions=[white]{len(positions)}[/white]"
    )
    if not positions:
        return
    table = Table(box=box.SIMPLE)
    table.add_column("Pool")
    table.add_column("Side")
    table.add_column("Balance", justify="right")
    table.add_column("Lock", justify="right")
    table.add_column("Cost basis", justify="right")
    for p in positions:
        table.add_row(p.pool_id, p.side.value, _money(p.token_balance), _money(p.belief_lock), _money(p.cost_basis))
    console.print(table)
