"""Argument and input handling shared by the chart and holdings subcommands."""

import warnings
from datetime import datetime, timezone

from .. import pricingdata
from ..config import Settings, load_settings
from ..currency import Currency
from ..portfolio import Holding, load_holdings
from ..pricingdata import Bar, ChartBatcher, YFinancePricingDataManager, fetch_portfolio_data


def add_common_arguments(parser):
    """Add the portfolio file, currency and fetch flags to a subcommand parser.

    Args:
        parser: The subcommand's argparse parser.
    """
    parser.add_argument("filename", help="Path to the JSON or Excel portfolio file")
    parser.add_argument(
        "--currency",
        "-c",
        default=None,
        help="Display currency (default: FOLIOCHART_DISPLAY_CURRENCY or USD)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Bypass cache and fetch fresh pricing data",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Hide fetch progress and data warnings",
    )


def resolve_currency(args, settings: Settings) -> Currency:
    """Return the display currency from ``--currency`` or the settings.

    Raises:
        ValueError: If ``--currency`` is not a supported currency code.
    """
    if args.currency is None:
        return settings.display_currency
    try:
        return Currency(args.currency.upper())
    except ValueError:
        raise ValueError(f"Unknown currency '{args.currency}'")


def load_inputs(args) -> tuple[Settings, Currency, list[Holding], dict[str, list[Bar]], dict[Currency, list[Bar]], int]:
    """
    Load settings and holdings, then fetch all the bars they need.

    Returns:
        A tuple of (settings, display currency, holdings, price bars by symbol,
        FX bars by currency, evaluation time in Unix seconds).

    Raises:
        ValueError: On invalid settings, an unknown currency or a failed fetch.
        FileNotFoundError: If the portfolio file does not exist.
    """
    if args.quiet:
        warnings.filterwarnings("ignore", category=UserWarning)
    pricingdata.verbose = not args.quiet

    settings = load_settings()
    display_currency = resolve_currency(args, settings)
    holdings = load_holdings(args.filename)
    now = int(datetime.now(timezone.utc).timestamp())

    manager = YFinancePricingDataManager(force_cache_refresh=args.no_cache)
    with ChartBatcher(manager, settings.batch_window_ms, settings.max_batch_size) as batcher:
        price_data, fx_data = fetch_portfolio_data(holdings, display_currency, batcher, now)

    return settings, display_currency, holdings, price_data, fx_data, now


def format_time(time: int) -> str:
    return datetime.fromtimestamp(time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def format_percent(value: float) -> str:
    """Colored rich markup for a percent change."""
    if value == float("inf"):
        return "N/A"
    if value >= 0:
        return f"[green]+{value:.2f}%[/green]"
    return f"[red]{value:.2f}%[/red]"
