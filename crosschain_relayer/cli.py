"""
CLI entry point for the cross-chain relayer.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import structlog
import typer

from .auction import CHAIN_DECIMALS, quote as auction_quote
from .config import RelayerConfig
from .db import SwapOrderStore
from .errors import RelayerError
from .models import Chain
from .relayer import CrossChainRelayer


def configure_logging(json_logs: bool = False, level: str = "info") -> None:
    """Configure structlog processors once per process."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


configure_logging()

app = typer.Typer(
    name="crosschain-relayer",
    help="NEAR <-> EVM atomic swap relayer",
    add_completion=False,
)


def _load_config(config_path: Optional[Path]) -> RelayerConfig:
    try:
        config = RelayerConfig.from_env(config_path)
    except RelayerError as e:
        typer.echo(f"Configuration error: {e.message}", err=True)
        raise typer.Exit(code=1)
    configure_logging(config.settings.log_json, config.settings.log_level)
    return config


async def _run_once(relayer: CrossChainRelayer) -> dict:
    await relayer.check_connectivity()
    return await relayer.run_once()


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run one poll cycle and exit (useful for testing)",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Use in-memory mock chains instead of RPC endpoints",
    ),
) -> None:
    """
    Start the relayer: watch both chains and drive swaps to completion.
    """
    config = _load_config(config_path)

    if dry_run:
        from .mock import MockChain

        relayer = CrossChainRelayer(
            config,
            evm_gateway=MockChain(Chain.ETH),
            near_gateway=MockChain(Chain.NEAR),
        )
    else:
        try:
            config.validate_required()
        except RelayerError as e:
            typer.echo(f"Configuration error: {e.message}", err=True)
            raise typer.Exit(code=1)
        relayer = CrossChainRelayer(config)

    try:
        if once:
            typer.echo("Running in single-shot mode...")
            status = asyncio.run(_run_once(relayer))
            typer.echo(json.dumps(status, indent=2))
        else:
            typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
            try:
                asyncio.run(relayer.run())
            except KeyboardInterrupt:
                typer.echo("\nStopping relayer...")
                relayer.stop()
    except RelayerError as e:
        typer.echo(f"Fatal: {e.message}", err=True)
        raise typer.Exit(code=1)
    finally:
        relayer.close()


@app.command()
def quote(
    amount: int = typer.Option(..., "--amount", help="Source amount in smallest units"),
    from_chain: Chain = typer.Option(Chain.ETH, "--from-chain", help="Source chain"),
    to_chain: Chain = typer.Option(Chain.NEAR, "--to-chain", help="Destination chain"),
    elapsed: int = typer.Option(0, "--elapsed", help="Seconds since auction start"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env configuration file"),
) -> None:
    """
    Price a counterpart escrow on the configured auction curve.
    """
    config = _load_config(config_path)
    try:
        result = auction_quote(
            from_chain,
            to_chain,
            amount,
            auction_start=0,
            now=elapsed,
            curve=config.curve,
            safety_deposit_bps=config.settings.safety_deposit_bps,
        )
    except RelayerError as e:
        typer.echo(f"Cannot quote: {e.message}", err=True)
        raise typer.Exit(code=1)

    decimals = CHAIN_DECIMALS[to_chain]
    typer.echo(f"Rate bump: {result.rate_bump_bps} bps ({result.rate_bump_bps / 10_000:.2f}%)")
    typer.echo(f"Output: {result.output_amount} ({result.output_amount / 10**decimals:.6f} {to_chain.value})")
    typer.echo(f"Safety deposit: {result.safety_deposit}")
    typer.echo(f"Total cost: {result.total_cost}")
    typer.echo(f"Gas cost estimate: {result.gas_cost_wei} wei")
    typer.echo(f"Time remaining: {result.time_remaining}s{' (expired)' if result.is_expired else ''}")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env configuration file"),
) -> None:
    """
    Show stored swap orders.
    """
    config = _load_config(config_path)
    store = SwapOrderStore(config.settings.database_url)
    orders = store.list()

    if not orders:
        typer.echo("No swap orders stored.")
        store.close()
        return

    typer.echo(f"Found {len(orders)} swap orders:\n")
    for order in orders:
        typer.echo(f"  Order: {order.order_id}")
        typer.echo(f"  State: {order.state.value}")
        typer.echo(f"  {order.from_chain.value} -> {order.to_chain.value}: {order.from_amount} -> {order.computed_to_amount}")
        if order.dest_escrow_ref:
            typer.echo(f"  Destination escrow: {order.dest_escrow_ref}")
        if order.last_error:
            typer.echo(f"  Last error: {order.last_error}")
        typer.echo("")

    store.close()


@app.command()
def version() -> None:
    """Show the relayer version."""
    from crosschain_relayer import __version__
    typer.echo(f"crosschain-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
