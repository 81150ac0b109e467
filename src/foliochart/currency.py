"""
Currency normalization for holding series.

Value series are converted point by point: a holding's OHLC series is
intersected with the FX series for its currency pair and multiplied.

Cost basis is converted differently, with the LATEST FX close applied to
the native-currency amount rather than the rate at each transaction time.
This is a known approximation kept on purpose; changing it to historical
rates must be done together with every consumer of the cost-basis series.
"""

from enum import Enum
from typing import TYPE_CHECKING, Iterable

from .timeseries import EmptyHook, TimeSeries, is_number

if TYPE_CHECKING:
    from .portfolio import Holding


class Currency(Enum):
    """Supported display and holding currencies."""

    USD = "USD"
    EUR = "EUR"
    JPY = "JPY"
    GBP = "GBP"
    CHF = "CHF"
    CAD = "CAD"
    AUD = "AUD"
    CNY = "CNY"
    MXN = "MXN"
    INR = "INR"
    ZAR = "ZAR"
    RUB = "RUB"
    TRY = "TRY"
    SGD = "SGD"
    HKD = "HKD"
    MYR = "MYR"
    THB = "THB"
    PHP = "PHP"
    IDR = "IDR"
    HUF = "HUF"
    SEK = "SEK"
    NZD = "NZD"


def fx_symbol(from_currency: Currency, to_currency: Currency) -> str:
    """Return the Yahoo Finance ticker of an FX pair, e.g. ``EURUSD=X``."""
    return f"{from_currency.value}{to_currency.value}=X"


def get_currencies_to_fetch(holdings: Iterable["Holding"], display_currency: Currency) -> set[Currency]:
    """
    Currencies whose FX series must be fetched to display a portfolio.

    Args:
        holdings: Portfolio holdings.
        display_currency: The currency charts are shown in.

    Returns:
        Distinct currencies of holdings that have at least one transaction
        and are not already in the display currency.
    """
    return {
        holding.currency
        for holding in holdings
        if holding.transactions and holding.currency != display_currency
    }


def normalize_value_series(
    series: TimeSeries,
    holding_currency: Currency,
    display_currency: Currency,
    fx_series: TimeSeries | None = None,
    on_empty: EmptyHook | None = None
) -> TimeSeries:
    """
    Convert a holding's series into the display currency.

    Args:
        series: Series in the holding's native currency.
        holding_currency: The holding's native currency.
        display_currency: Target currency.
        fx_series: Native->display FX series with the same value keys.
            Not used (and may be None) when the currencies match.
        on_empty: Forwarded to ``TimeSeries.intersect_series``.

    Returns:
        ``series`` itself when the currencies match, otherwise the
        point-by-point product of ``series`` and ``fx_series`` on their
        shared timestamps.

    Raises:
        ValueError: If conversion is needed and no FX series was given.
    """
    if holding_currency == display_currency:
        return series

    if fx_series is None:
        raise ValueError(
            f"No exchange rate series available from {holding_currency.value} to {display_currency.value}"
        )

    return TimeSeries.intersect_series([series, fx_series], TimeSeries.multiply, on_empty)


def latest_fx_close(fx_series: TimeSeries) -> float:
    """
    Return the most recent close rate of an FX series.

    Raises:
        ValueError: If the series has no point with a numeric close.
    """
    for point in reversed(fx_series.get_value_axis()):
        close = point.get("close")
        if is_number(close):
            return float(close)
    raise ValueError("Exchange rate series has no close values")


def convert_cost_basis(
    amount: float,
    holding_currency: Currency,
    display_currency: Currency,
    fx_series: TimeSeries | None = None
) -> float:
    """
    Convert a native-currency cost basis into the display currency.

    Uses the latest FX close, not the rate at the time of each transaction
    (see the module docstring).

    Args:
        amount: Cost basis in the holding's currency.
        holding_currency: The holding's native currency.
        display_currency: Target currency.
        fx_series: Native->display FX series. Ignored when currencies match.

    Returns:
        The cost basis in the display currency.

    Raises:
        ValueError: If conversion is needed and no usable FX series was given.
    """
    if holding_currency == display_currency:
        return amount

    if fx_series is None:
        raise ValueError(
            f"No exchange rate series available from {holding_currency.value} to {display_currency.value}"
        )

    return amount * latest_fx_close(fx_series)
