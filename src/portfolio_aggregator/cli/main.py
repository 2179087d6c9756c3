"""CLI for the DeFi portfolio aggregator."""

import asyncio
import json
import logging
from enum import StrEnum
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.traceback import install

from portfolio_aggregator.cache.tiered import TieredCache
from portfolio_aggregator.core.models import DiscoveryFilter, PortfolioSummary
from portfolio_aggregator.core.service import PortfolioService
from portfolio_aggregator.data.loader import get_all_supported_networks, get_network_config
from portfolio_aggregator.integrations.errors import (
    AuthenticationError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitExceededError,
)
from portfolio_aggregator.integrations.zerion import ZerionClient
from portfolio_aggregator.logging_setup import setup_logging
from portfolio_aggregator.pricing.defillama import DeFiLlamaMetadataProvider
from portfolio_aggregator.pricing.enrichment import MetadataEnrichmentPipeline
from portfolio_aggregator.settings import API_KEY_ENV_VAR, Settings, load_settings
from portfolio_aggregator.transport.rate_limit import RateLimiter
from portfolio_aggregator.transport.retry import RetryPolicy

# Install rich traceback handler
install(show_locals=False)

app = typer.Typer(
    name="defi-portfolio",
    help="Aggregate, categorize and price DeFi positions of a wallet",
    add_completion=False,
)

console = Console()

EXIT_AUTH = 1
EXIT_UNAVAILABLE = 2


class OutputFormat(StrEnum):
    """Output format options."""

    TABLE = "table"
    JSON = "json"


async def fetch_portfolio(
    settings: Settings,
    address: str,
    networks: list[str] | None = None,
) -> PortfolioSummary:
    """
    Wire providers from settings and build one portfolio summary.

    Parameters
    ----------
    settings : Settings
        Application settings
    address : str
        Wallet address
    networks : list[str] | None
        Networks to cover (None = configured networks)

    Returns
    -------
    PortfolioSummary
        Priced portfolio

    """
    rate_limiter = RateLimiter(
        requests_per_minute=settings.rate_limit.requests_per_minute,
        requests_per_day=settings.rate_limit.requests_per_day,
        policy=settings.rate_limit.policy,
        enabled=settings.rate_limit.enabled,
    )
    retry = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay,
        max_delay=settings.retry.max_delay,
        strategy=settings.retry.strategy,
        provider=ZerionClient.NAME,
    )

    async with (
        ZerionClient(
            api_key=settings.zerion.api_key,
            base_url=settings.zerion.base_url,
            timeout=settings.zerion.timeout,
            page_size=settings.zerion.page_size,
            max_pages=settings.zerion.max_pages,
            rate_limiter=rate_limiter,
            retry=retry,
        ) as zerion,
        DeFiLlamaMetadataProvider(
            base_url=settings.pricing.base_url,
            timeout=settings.pricing.timeout,
            retry=RetryPolicy(max_attempts=settings.pricing.max_attempts, base_delay=0.5, provider="defillama"),
        ) as defillama,
    ):
        service = PortfolioService(
            discovery=zerion,
            enrichment=MetadataEnrichmentPipeline(
                defillama,
                width=settings.enrichment.width,
                timeout=settings.enrichment.timeout,
            ),
            cache=TieredCache(
                structure_ttl=settings.cache.structure_ttl,
                price_ttl=settings.cache.price_ttl,
                enabled=settings.cache.enabled,
            ),
            default_networks=settings.networks,
            position_filter=settings.position_filter,
        )
        return await service.get_portfolio(address, networks)


@app.command()
def portfolio(
    address: str = typer.Argument(..., help="Wallet address to query"),
    network: list[str] | None = typer.Option(None, "--network", "-n", help="Network to query (repeatable)"),
    position_filter: DiscoveryFilter | None = typer.Option(None, "--filter", help="Discovery position filter"),
    format: OutputFormat = typer.Option(
        OutputFormat.TABLE,
        "--format",
        "-f",
        help="Output format",
    ),
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML settings file"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug output"),
) -> None:
    """
    Get the aggregated, categorized and priced portfolio of a wallet.

    Examples:

        # All configured networks
        defi-portfolio portfolio 0xABC...

        # Specific networks
        defi-portfolio portfolio 0xABC... -n ethereum -n base

        # Output as JSON
        defi-portfolio portfolio 0xABC... --format json
    """
    setup_logging(logging.DEBUG if debug else logging.WARNING)

    settings = load_settings(config)
    if position_filter is not None:
        settings.position_filter = position_filter
    if not settings.zerion.api_key:
        console.print(f"[bold red]No Zerion API key:[/bold red] set {API_KEY_ENV_VAR} or zerion.api_key")
        raise typer.Exit(code=EXIT_AUTH)

    if format == OutputFormat.TABLE:
        console.print(f"\n[bold cyan]Fetching portfolio for:[/bold cyan] {address}")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
            disable=format == OutputFormat.JSON,
        ) as progress:
            progress.add_task("Discovering and pricing positions...", total=None)
            summary = asyncio.run(fetch_portfolio(settings, address, network))
    except AuthenticationError as e:
        console.print(f"[bold red]Authentication failed:[/bold red] {e}")
        raise typer.Exit(code=EXIT_AUTH) from e
    except RateLimitExceededError as e:
        retry_hint = f" Retry after {e.retry_after:.0f}s." if e.retry_after else ""
        console.print(f"[bold red]Rate limit exceeded:[/bold red] {e}.{retry_hint}")
        raise typer.Exit(code=EXIT_UNAVAILABLE) from e
    except ProviderUnavailableError as e:
        console.print(f"[bold red]Provider unavailable:[/bold red] {e}")
        raise typer.Exit(code=EXIT_UNAVAILABLE) from e
    except ProviderError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        if debug:
            raise
        raise typer.Exit(code=1) from e

    if format == OutputFormat.JSON:
        _output_json(summary)
    else:
        _output_table(summary)


@app.command()
def networks() -> None:
    """List all supported networks."""
    table = Table(title="Supported Networks", show_header=True, header_style="bold magenta")
    table.add_column("Network", style="cyan")
    table.add_column("Zerion Chain", style="green")
    table.add_column("Native", style="yellow")

    for name in get_all_supported_networks():
        config = get_network_config(name)
        table.add_row(name, config["zerion_chain_id"], config["native_symbol"])

    console.print(table)


def _output_table(summary: PortfolioSummary) -> None:
    """Output portfolio as rich table."""
    if not summary.positions:
        console.print("\n[yellow]No positions found[/yellow]")
        return

    table = Table(
        title=f"Portfolio for {summary.wallet[:10]}...{summary.wallet[-8:]}",
        show_header=True,
        header_style="bold magenta",
    )

    table.add_column("Protocol", style="cyan")
    table.add_column("Network", style="blue")
    table.add_column("Category", style="yellow")
    table.add_column("Position", style="green")
    table.add_column("Tokens", style="white")
    table.add_column("USD Value", style="bold green", justify="right")
    table.add_column("Price", style="dim")

    for position in summary.positions:
        table.add_row(
            position.protocol_name or position.protocol_id,
            position.network,
            position.category.value,
            position.label,
            ", ".join(token.symbol for token in position.tokens),
            f"${position.value_usd:,.2f}",
            position.price_source.value,
        )

    console.print("\n")
    console.print(table)

    summary_table = Table(show_header=False, box=None)
    summary_table.add_column("Label", style="bold")
    summary_table.add_column("Value", style="bold green")

    summary_table.add_row("Total Value:", f"${summary.total_value_usd:,.2f}")
    summary_table.add_row("Total Positions:", str(len(summary.positions)))
    summary_table.add_row("Structure:", "cached" if summary.structure_from_cache else "fresh")
    summary_table.add_row("Prices:", "cached" if summary.prices_from_cache else "fresh")
    if summary.skipped_count:
        summary_table.add_row("Skipped:", str(summary.skipped_count))
    if summary.fallback_token_count:
        summary_table.add_row("Unpriced tokens:", str(summary.fallback_token_count))

    for title, breakdown in (
        ("By Category", summary.by_category),
        ("By Network", summary.by_network),
        ("By Protocol", summary.by_protocol),
    ):
        if breakdown:
            summary_table.add_row("", "")
            summary_table.add_row(f"[bold]{title}:[/bold]", "")
            for name, value in breakdown.items():
                summary_table.add_row(f"  {name}", f"${value:,.2f}")

    console.print("\n")
    console.print(summary_table)
    console.print("\n")


def _output_json(summary: PortfolioSummary) -> None:
    """Output portfolio as JSON."""
    data = summary.model_dump(mode="json")
    console.print_json(json.dumps(data))


if __name__ == "__main__":
    app()
