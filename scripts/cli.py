import asyncio
import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from copyrelay.breaker import BreakerRegistry
from copyrelay.config import CopyRelayConfig
from copyrelay.errors import CopyRelayError
from copyrelay.gateway import ClobOrderGateway
from copyrelay.health import HealthChecker, all_critical_passed
from copyrelay.pipeline import create_pipeline
from copyrelay.pnl import CopyPnlService
from copyrelay.storage import CopyRelayStore
from copyrelay.venue import PositionsClient

app = typer.Typer()
console = Console()


def load_config() -> CopyRelayConfig:
    try:
        config = CopyRelayConfig.from_env()
    except CopyRelayError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(code=1)
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return config


@app.command()
def run(preview: bool = False, max_iterations: int = 0) -> None:
    """
    Run the copy executor until interrupted.
    """
    config = load_config()
    if preview:
        config = config.model_copy(update={"preview_mode": True})

    async def _run():
        pipeline = create_pipeline(config)
        try:
            await pipeline.run(max_iterations=max_iterations or None)
        finally:
            await pipeline.close()
        return pipeline.stats.to_dict()

    try:
        stats = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("Interrupted")
        return
    console.print(stats)


@app.command()
def copy_pnl(save: bool = False) -> None:
    """
    Show PnL for every follower wallet (optionally store a snapshot)
    """
    config = load_config()
    store = CopyRelayStore(config.db_path) if save else None

    async def _fetch():
        async with PositionsClient(
            config.data_api_url, config.request_timeout_seconds
        ) as positions:
            service = CopyPnlService(positions, BreakerRegistry(), store)
            return await service.log_all([f.address for f in config.followers], save=save)

    summaries = asyncio.run(_fetch())

    table = Table(title="Copy PnL")
    table.add_column("Follower")
    table.add_column("Value", justify="right")
    table.add_column("Initial", justify="right")
    table.add_column("Unrealized", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Positions", justify="right")
    for s in summaries:
        color = "green" if s.unrealized_pnl_usd >= 0 else "red"
        table.add_row(
            s.follower_address,
            f"${s.total_value_usd:.2f}",
            f"${s.total_initial_usd:.2f}",
            f"[{color}]${s.unrealized_pnl_usd:.2f} ({s.unrealized_pnl_pct:.1f}%)[/{color}]",
            f"${s.realized_pnl_usd:.2f}",
            str(s.position_count),
        )
    console.print(table)
    if save:
        console.print(f"Saved {len(summaries)} snapshot(s) to {config.db_path}")


@app.command()
def health(check_balances: bool = True) -> None:
    """
    Run startup health checks
    """
    config = load_config()
    gateway = ClobOrderGateway(config.clob_http_url, config.chain_id) if check_balances else None
    checker = HealthChecker(config, CopyRelayStore(config.db_path), gateway)
    results = asyncio.run(checker.run_all_checks())

    table = Table(title="Copy Relay Health Check")
    table.add_column("Status")
    table.add_column("Check")
    table.add_column("Detail")
    for r in results:
        if r.passed:
            status = "[green]✓ PASS[/green]"
        elif r.critical:
            status = "[red]✗ FAIL[/red]"
        else:
            status = "[yellow]⚠ WARN[/yellow]"
        table.add_row(status, r.name, r.message)
    console.print(table)

    if not all_critical_passed(results):
        console.print("[red]Some critical checks failed - please fix before starting[/red]")
        raise typer.Exit(code=1)
    console.print("[green]All critical checks passed - ready to copy![/green]")


@app.command()
def ledger(trade_id: str) -> None:
    """
    Show a trade's status and its per-follower execution records
    """
    config = load_config()
    store = CopyRelayStore(config.db_path)

    trade = store.get_trade(trade_id)
    if trade is None:
        console.print(f"[red]Unknown trade:[/red] {trade_id}")
        raise typer.Exit(code=1)

    console.print(
        f"Trade {trade.id}: {trade.side.value} ${trade.usdc_size:.2f} @ {trade.price:.4f} "
        f"on {trade.market_label} | status {trade.status.value}"
    )
    detail = store.get_status_detail(trade_id)
    if detail:
        console.print(f"Detail: {detail}")

    table = Table(title=f"Executions ({len(config.followers)} follower(s) configured)")
    table.add_column("Follower")
    table.add_column("Status")
    table.add_column("Filled", justify="right")
    table.add_column("Preview")
    table.add_column("Executed at")
    table.add_column("Detail")
    for record in store.get_executions(activity_id=trade_id):
        table.add_row(
            record.follower_address,
            "[green]success[/green]" if record.succeeded else "[red]failed[/red]",
            f"{record.filled_size:.4f}" if record.filled_size is not None else "-",
            "yes" if record.preview else "",
            record.executed_at.isoformat(),
            record.detail or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
