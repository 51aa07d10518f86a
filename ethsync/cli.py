"""Command-line interface for ethsync."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ethsync import __version__
from ethsync.blocksource import BlockSource, BlockSourceConfig
from ethsync.chain.backend import Web3Backend
from ethsync.chain.nonce import track_nonces
from ethsync.config import settings
from ethsync.gas import GasPriceEstimator
from ethsync.log import setup_logging

app = typer.Typer(help="ethsync: confirmed block streams, cached gas prices and nonce tracking")
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Configure logging for all commands."""
    setup_logging(log_level.upper() if log_level else None, console=console)


@app.command()
def blocks(
    rpc_url: Optional[str] = typer.Option(None, "--rpc", help="Node RPC URL (default: ETH_RPC_URL)"),
    start: Optional[int] = typer.Option(None, "--start", "-s", help="First block to emit"),
    confirmations: int = typer.Option(settings.confirmations, "--confirmations", "-c", help="Required confirmations"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Stop after this many blocks"),
):
    """Stream confirmed blocks."""
    try:
        config = BlockSourceConfig(start_block=start, confirmations=confirmations)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    async def _stream():
        async with BlockSource.connect(rpc_url, config) as source:
            count = 0
            async for block in source:
                timestamp = datetime.fromtimestamp(block.timestamp, tz=timezone.utc)
                console.print(
                    f"[bold]{block.number}[/bold] {block.hash} "
                    f"txs={len(block.transactions)} {timestamp:%Y-%m-%d %H:%M:%S}"
                )
                count += 1
                if limit is not None and count >= limit:
                    break

    try:
        asyncio.run(_stream())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


@app.command("gas-price")
def gas_price(
    rpc_url: Optional[str] = typer.Option(None, "--rpc", help="Node RPC URL (default: ETH_RPC_URL)"),
    interval: float = typer.Option(settings.gas_price_interval, "--interval", "-i", help="Refresh interval in seconds"),
    samples: int = typer.Option(5, "--samples", "-n", help="Number of readings to print"),
):
    """Print the cached gas price every interval."""
    async def _watch():
        async with await GasPriceEstimator.connect(rpc_url, interval) as estimator:
            for i in range(samples):
                if i:
                    await asyncio.sleep(interval)
                price = estimator.suggest_gas_price()
                console.print(f"{price} wei ({price / 1e9:.3f} gwei)")

    asyncio.run(_watch())


@app.command()
def nonce(
    address: str = typer.Argument(..., help="Account address"),
    rpc_url: Optional[str] = typer.Option(None, "--rpc", help="Node RPC URL (default: ETH_RPC_URL)"),
):
    """Print the next nonce of an account."""
    async def _lookup():
        backend = track_nonces(Web3Backend(rpc_url), [address])
        return await backend.pending_nonce_at(address)

    next_nonce = asyncio.run(_lookup())

    table = Table(title="Pending Nonce")
    table.add_column("Account")
    table.add_column("Nonce", justify="right")
    table.add_row(address, str(next_nonce))
    console.print(table)


@app.command()
def version():
    """Show version."""
    console.print(f"ethsync version {__version__}")


if __name__ == "__main__":
    app()
