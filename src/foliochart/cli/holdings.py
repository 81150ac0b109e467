#!/usr/bin/env python3
"""Holdings subcommand - Per-holding price, position and cost basis."""

from rich.console import Console
from rich.table import Table

from ..aggregator import holding_summaries
from ..pricingdata import ChartBatcher, ChartRequest, YFinancePricingDataManager
from .common import add_common_arguments, format_percent, load_inputs

SPARK_CHARS = "▁▂▃▄▅▆▇█"


def sparkline(values: list[float]) -> str:
    """Render a list of numbers as a unicode sparkline."""
    if not values:
        return ""
    low, high = min(values), max(values)
    if high == low:
        return SPARK_CHARS[0] * len(values)
    scale = (len(SPARK_CHARS) - 1) / (high - low)
    return "".join(SPARK_CHARS[int((v - low) * scale)] for v in values)


def register_subcommand(subparsers):
    """Register the holdings subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "holdings",
        help="Display per-holding table",
        description="Show price, quantity, value, cost basis and change for every holding.",
    )
    add_common_arguments(parser)
    parser.set_defaults(func=run)


def run(args):
    """Print the holdings table.

    Args:
        args: Parsed argparse namespace with filename, currency, no_cache
            and quiet attributes.

    Returns:
        int: Exit code (0 for success, 1 for errors).
    """
    try:
        settings, display_currency, holdings, price_data, fx_data, now = load_inputs(args)

        # Holdings without transactions were not part of the chart fetch
        missing = [h for h in holdings if h.symbol not in price_data]
        if missing:
            start = now - 31 * 24 * 3600
            manager = YFinancePricingDataManager(force_cache_refresh=args.no_cache)
            with ChartBatcher(manager, settings.batch_window_ms, settings.max_batch_size) as batcher:
                fetched = batcher.fetch_all([ChartRequest(h.symbol, start, now) for h in missing])
            for request, bars in fetched.items():
                price_data[request.symbol] = bars

        summaries = holding_summaries(
            holdings,
            price_data,
            fx_data,
            display_currency,
            thumbnail_points=settings.thumbnail_points,
            now=now,
            error_out_negative_quantity=settings.error_out_negative_quantity,
        )
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1

    cur = display_currency.value
    table = Table(title=f"Holdings ({cur})")
    table.add_column("Symbol", style="cyan", justify="left")
    table.add_column("Price", justify="right")
    table.add_column("Quantity", style="magenta", justify="right")
    table.add_column(f"Value ({cur})", style="green", justify="right")
    table.add_column(f"Cost Basis ({cur})", style="yellow", justify="right")
    table.add_column("Change", justify="right")
    table.add_column(f"Last {settings.thumbnail_points}", justify="left")

    for summary in summaries:
        closes = [p.values["close"] for p in summary.thumbnail if "close" in p.values]
        label = summary.symbol if not summary.name else f"{summary.symbol}\n[dim]{summary.name}[/dim]"
        table.add_row(
            label,
            f"{summary.price:,.2f}" if summary.price is not None else "N/A",
            f"{summary.quantity:,.4g}",
            f"{summary.value:,.2f}",
            f"{summary.cost_basis:,.2f}",
            f"{summary.change_value:+,.2f} ({format_percent(summary.change_percent)})",
            sparkline(closes),
        )

    Console().print(table)
    return 0
