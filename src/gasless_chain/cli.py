"""
gasless-chain CLI.

Usage:
    gasless-chain [OPTIONS] COMMAND [ARGS]...

Commands that touch the chain use the local-key wallet configured through
GASLESS_PRIVATE_KEY.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import GaslessSettings, get_settings
from .connection import ConnectionStateMachine
from .exceptions import ExecutionError, GaslessChainError
from .gas import GasEstimator
from .logging_utils import mask_address, setup_logging
from .models import CallRequest
from .networks import get_registry
from .orchestrator import TransactionOrchestrator
from .quotes import AggregatorQuoteClient
from .smart_account import SmartAccountManager
from .wallet import LocalAccountWallet

console = Console()


def _format_native(wei: Optional[int], symbol: str) -> str:
    if wei is None:
        return "unknown"
    return f"{wei / 10**18:.6f} {symbol}"


@dataclass
class _Stack:
    connection: ConnectionStateMachine
    accounts: SmartAccountManager
    orchestrator: TransactionOrchestrator
    estimator: GasEstimator


@asynccontextmanager
async def _connected(settings: GaslessSettings, chain_id: int) -> AsyncIterator[_Stack]:
    if not settings.private_key:
        raise click.UsageError("GASLESS_PRIVATE_KEY is not set")

    registry = get_registry()
    connection = ConnectionStateMachine(
        {"local": lambda: LocalAccountWallet(settings.private_key, chain_id, registry)},
        registry=registry,
        settings=settings,
    )
    accounts = SmartAccountManager(connection, settings=settings)
    orchestrator = TransactionOrchestrator(connection, accounts, settings=settings)
    estimator = GasEstimator(connection, accounts, orchestrator, settings=settings)
    try:
        await connection.connect("local")
        yield _Stack(connection, accounts, orchestrator, estimator)
    finally:
        await accounts.close()
        await connection.close()


def _call_from_options(to: str, value: int, data: str) -> CallRequest:
    try:
        return CallRequest(to=to, value=value, data=data)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.version_option(message="%(prog)s %(version)s")
@click.option("--log-level", envvar="GASLESS_LOG_LEVEL", default=None, help="Logging level")
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """gasless-chain - sponsored transactions with direct fallback."""
    ctx.ensure_object(dict)
    settings = get_settings()
    setup_logging(level=log_level)
    ctx.obj["settings"] = settings


@cli.command()
def networks():
    """List supported networks."""
    table = Table(title="Supported Networks")
    table.add_column("Chain ID", style="cyan", justify="right")
    table.add_column("Name", style="green")
    table.add_column("Symbol")
    table.add_column("Gasless")
    table.add_column("Testnet")

    for network in get_registry():
        table.add_row(
            str(network.chain_id),
            network.display_name,
            network.native_symbol,
            "[green]yes[/green]" if network.supports_gasless else "[dim]no[/dim]",
            "yes" if network.is_testnet else "",
        )

    console.print(table)


@cli.command()
@click.option("--chain", "chain_id", type=int, default=137, show_default=True, help="Chain ID")
@click.option("--to", required=True, help="Target address")
@click.option("--value", type=int, default=0, help="Native value in wei")
@click.option("--data", default="0x", help="Calldata (hex)")
@click.pass_context
def estimate(ctx, chain_id: int, to: str, value: int, data: str):
    """Estimate the gas the user would pay for a call."""
    settings: GaslessSettings = ctx.obj["settings"]
    call = _call_from_options(to, value, data)

    async def run():
        async with _connected(settings, chain_id) as stack:
            await stack.accounts.ensure_session()
            return await stack.estimator.estimate(call), stack.connection.state.network

    try:
        result, network = asyncio.run(run())
    except GaslessChainError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    symbol = network.native_symbol if network else "ETH"
    if result.is_gasless:
        console.print("[green]Gasless: this call is sponsored (0 cost)[/green]")
    elif result.is_unknown:
        console.print("[yellow]Gas estimate unavailable[/yellow]")
    else:
        console.print(f"Gas limit: [cyan]{result.gas_limit}[/cyan]")
        console.print(f"Gas price: [cyan]{result.gas_price_wei}[/cyan] wei")
        console.print(f"Cost: [yellow]{_format_native(result.gas_cost_wei, symbol)}[/yellow]")


@cli.command()
@click.option("--chain", "chain_id", type=int, default=137, show_default=True, help="Chain ID")
@click.option("--to", required=True, help="Target address")
@click.option("--value", type=int, default=0, help="Native value in wei")
@click.option("--data", default="0x", help="Calldata (hex)")
@click.option("--direct", is_flag=True, help="Skip sponsorship and send from the wallet")
@click.pass_context
def send(ctx, chain_id: int, to: str, value: int, data: str, direct: bool):
    """Send a call, sponsored when possible."""
    settings: GaslessSettings = ctx.obj["settings"]
    call = _call_from_options(to, value, data)

    async def run():
        async with _connected(settings, chain_id) as stack:
            state = stack.connection.state
            console.print(
                f"From [cyan]{mask_address(state.address)}[/cyan] on "
                f"[cyan]{state.network.display_name}[/cyan]"
            )
            result = await stack.orchestrator.execute([call], force_direct=direct)
            return result, stack.orchestrator.last_fallback_reason

    try:
        result, fallback_reason = asyncio.run(run())
    except ExecutionError as e:
        console.print(f"[red]{e.kind.value}: {e.message}[/red]")
        raise SystemExit(1)
    except GaslessChainError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    if result.sponsored:
        console.print("\n[green]✓ Sponsored transaction confirmed[/green]")
        console.print(f"User operation: [cyan]{result.user_op_hash}[/cyan]")
    else:
        console.print("\n[green]✓ Transaction confirmed[/green]")
        if fallback_reason:
            console.print(f"[dim]Sent directly: {fallback_reason}[/dim]")
    console.print(f"Transaction: [cyan]{result.transaction_hash}[/cyan]")
    console.print(f"Block: {result.block_number}  Gas used: {result.gas_used}")


@cli.command()
@click.option("--chain", "chain_id", type=int, default=137, show_default=True, help="Chain ID")
@click.option("--from-token", required=True, help="Token to sell")
@click.option("--to-token", required=True, help="Token to buy")
@click.option("--amount", type=int, required=True, help="Amount in base units")
@click.option("--slippage", type=float, default=1.0, show_default=True, help="Slippage percent")
def quote(chain_id: int, from_token: str, to_token: str, amount: int, slippage: float):
    """Get a swap quote from the aggregator."""

    async def run():
        client = AggregatorQuoteClient()
        try:
            return await client.get_quote(chain_id, from_token, to_token, amount, slippage=slippage)
        finally:
            await client.close()

    try:
        result = asyncio.run(run())
    except GaslessChainError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    console.print("\n[bold blue]Swap Quote[/bold blue]\n")
    console.print(f"You receive: [green]{result.to_token_amount}[/green]")
    console.print(f"Price impact: [yellow]{result.price_impact:.2f}%[/yellow]")
    if result.estimated_gas is not None:
        console.print(f"Estimated gas: {result.estimated_gas}")


if __name__ == "__main__":
    cli()
