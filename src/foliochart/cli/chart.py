#!/usr/bin/env python3
"""Chart subcommand - Portfolio value and cost basis over time."""

import json

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from ..aggregator import aggregate_portfolio, last_bar_summary
from .common import add_common_arguments, format_percent, format_time, load_inputs


def register_subcommand(subparsers):
    """Register the chart subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "chart",
        help="Display portfolio value and cost basis over time",
        description="Fetch prices for every holding and show the portfolio's value and cost basis over time.",
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--points",
        "-n",
        type=int,
        default=20,
        help="Number of most recent bars to display (default: 20)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full chart series as JSON instead of a table",
    )
    parser.set_defaults(func=run)


def run(args):
    """Aggregate the portfolio and print its chart series.

    Args:
        args: Parsed argparse namespace with filename, currency, points,
            json, no_cache and quiet attributes.

    Returns:
        int: Exit code (0 for success, 1 for errors).
    """
    try:
        settings, display_currency, holdings, price_data, fx_data, _ = load_inputs(args)
        chart_data = aggregate_portfolio(
            holdings,
            price_data,
            fx_data,
            display_currency,
            error_out_negative_quantity=settings.error_out_negative_quantity,
        )
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1

    if args.json:
        print(json.dumps(chart_data.to_records(), indent=2))
        return 0

    console = Console()

    if chart_data.is_empty():
        console.print("[yellow]No chart data: the portfolio has no transactions or its price histories do not overlap.[/yellow]")
        return 0

    table = Table(title=f"Portfolio Value ({display_currency.value})")
    table.add_column("Time (UTC)", style="cyan", justify="left")
    table.add_column("Open", justify="right")
    table.add_column("High", justify="right")
    table.add_column("Low", justify="right")
    table.add_column("Close", style="green", justify="right")
    table.add_column("Cost Basis", style="yellow", justify="right")

    for point in chart_data.value_series.last(args.points):
        cost = chart_data.cost_basis_series[point.time].values.get("value", 0.0)
        table.add_row(
            format_time(point.time),
            *(f"{point.values.get(key, 0.0):,.2f}" for key in ("open", "high", "low", "close")),
            f"{cost:,.2f}",
        )

    console.print(table)

    summary = last_bar_summary(chart_data)
    assert summary is not None
    console.print(
        Panel(
            f"[bold green]Portfolio Value: {summary.value:,.2f} {display_currency.value}[/bold green]\n"
            f"Cost Basis: {summary.cost_basis:,.2f} {display_currency.value}\n"
            f"Change: {format_percent(summary.percent_change)}",
            title=f"Summary as of {format_time(summary.time)}",
        )
    )

    return 0
