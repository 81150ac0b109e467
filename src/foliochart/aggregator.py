"""
Portfolio-level chart data built from per-holding price and FX bars.

``aggregate_portfolio`` produces the two series the portfolio chart draws:
market value (OHLC) and cost basis (single ``value`` field), both in the
display currency and on the same time axis. The axis only keeps timestamps
present in every holding's series, so a holding with a shorter price
history truncates the chart.

Inputs are bars that were already fetched successfully. A holding whose
price or FX bars are missing is rejected with a ValueError rather than
being counted as zero.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import math
import warnings

from .currency import Currency, convert_cost_basis, latest_fx_close, normalize_value_series
from .portfolio import Holding, cost_basis_at_time, holdings_with_transactions, shares_held_at_time
from .timeseries import OHLC_KEYS, VALUE_KEYS, EmptyHook, Point, TimeSeries, is_number

Bar = Mapping[str, Any]


@dataclass
class PortfolioChartData:
    """Market value and cost basis of a portfolio over a shared time axis."""

    value_series: TimeSeries
    cost_basis_series: TimeSeries

    def is_empty(self) -> bool:
        return self.value_series.is_empty()

    def to_records(self) -> dict[str, list[dict[str, Any]]]:
        """Chart payload: ``{"value": [{time, open, ...}], "cost_basis": [{time, value}]}``."""
        return {
            "value": self.value_series.to_records(),
            "cost_basis": self.cost_basis_series.to_records(),
        }


@dataclass
class LastBarSummary:
    """Latest portfolio value with its change against cost basis."""

    time: int
    value: float
    cost_basis: float
    percent_change: float


@dataclass
class HoldingSummary:
    """One row of the holdings table."""

    symbol: str
    name: str | None
    price: float | None
    quantity: float
    value: float
    cost_basis: float
    change_value: float
    change_percent: float
    thumbnail: list[Point] = field(default_factory=list)


def percent_change(old_value: float, new_value: float) -> float:
    """
    Percent change from ``old_value`` to ``new_value``.

    Returns 0 when both are zero and ``math.inf`` when only the old value is.
    """
    if old_value == 0:
        return 0.0 if new_value == 0 else math.inf
    return (new_value - old_value) / old_value * 100


def _empty_chart_data() -> PortfolioChartData:
    return PortfolioChartData(
        value_series=TimeSeries([], OHLC_KEYS),
        cost_basis_series=TimeSeries([], VALUE_KEYS),
    )


def _require_bars(holding: Holding, price_data: Mapping[str, Sequence[Bar] | None]) -> Sequence[Bar]:
    bars = price_data.get(holding.symbol)
    if bars is None:
        raise ValueError(f"No price data available for {holding.symbol}")
    return bars


def _fx_series_for(
    holding: Holding,
    fx_data: Mapping[Currency, Sequence[Bar] | None],
    display_currency: Currency
) -> TimeSeries | None:
    """Build the FX series a holding needs, or None if it needs none."""
    if holding.currency == display_currency:
        return None
    bars = fx_data.get(holding.currency)
    if bars is None:
        raise ValueError(
            f"No exchange rate data available from {holding.currency.value} to {display_currency.value} "
            f"(needed by {holding.symbol})"
        )
    return TimeSeries(bars, OHLC_KEYS)


def position_value_series(holding: Holding, bars: Sequence[Bar]) -> TimeSeries:
    """
    Market value of a holding's position over time, in its own currency.

    Every bar is scaled by the net quantity held at the bar's (raw) time;
    the scaled series is then tick-normalized.

    Args:
        holding: The holding whose ledger gives the quantity held.
        bars: Price bars for the holding's symbol.

    Returns:
        OHLC series of position values.
    """
    raw = TimeSeries(bars, OHLC_KEYS, normalize=False)

    def scale(point: Point) -> dict[str, float]:
        shares = shares_held_at_time(holding, point.time)
        return {key: value * shares for key, value in point.values.items() if is_number(value)}

    return TimeSeries(raw.map_values(scale), OHLC_KEYS)


def aggregate_portfolio(
    holdings: Sequence[Holding],
    price_data: Mapping[str, Sequence[Bar] | None],
    fx_data: Mapping[Currency, Sequence[Bar] | None],
    display_currency: Currency,
    on_empty: EmptyHook | None = None,
    error_out_negative_quantity: bool = True
) -> PortfolioChartData:
    """
    Build the portfolio value and cost-basis series for charting.

    Args:
        holdings: Portfolio holdings. Holdings without transactions are ignored.
        price_data: Price bars per symbol, in each holding's own currency.
        fx_data: FX bars per holding currency, converting into the display
            currency. Only currencies that differ from it are needed.
        display_currency: The currency to express all values in.
        on_empty: Called when two non-empty series share no timestamp.
        error_out_negative_quantity: Passed to ``cost_basis_at_time``.

    Returns:
        PortfolioChartData whose two series share the same time axis.

    Raises:
        ValueError: If a holding's price or FX bars are missing, or a SELL
            exceeds the quantity held while error_out_negative_quantity is True.
    """
    active = holdings_with_transactions(holdings)
    if not active:
        return _empty_chart_data()

    fx_series = {holding.symbol: _fx_series_for(holding, fx_data, display_currency) for holding in active}

    holding_series = [
        normalize_value_series(
            position_value_series(holding, _require_bars(holding, price_data)),
            holding.currency,
            display_currency,
            fx_series[holding.symbol],
            on_empty,
        )
        for holding in active
    ]
    value_series = TimeSeries.intersect_series(holding_series, TimeSeries.add, on_empty)

    if value_series.is_empty():
        warnings.warn(
            f"Portfolio value series is empty: the price histories of "
            f"{', '.join(h.symbol for h in active)} do not overlap.",
            UserWarning
        )

    time_axis = value_series.get_time_axis()
    cost_series: list[TimeSeries] = []
    for holding in active:
        # Latest FX rate, not the historical one; see foliochart.currency.
        rate = 1.0 if fx_series[holding.symbol] is None else latest_fx_close(fx_series[holding.symbol])
        points = [
            Point(time=t, values={"value": cost_basis_at_time(holding, t, error_out_negative_quantity) * rate})
            for t in time_axis
        ]
        cost_series.append(TimeSeries(points, VALUE_KEYS, fill_gaps=False, normalize=False))

    cost_basis_series = TimeSeries.intersect_series(cost_series, TimeSeries.add, on_empty)

    return PortfolioChartData(value_series=value_series, cost_basis_series=cost_basis_series)


def last_bar_summary(chart_data: PortfolioChartData) -> LastBarSummary | None:
    """
    Summarize the latest bar of a portfolio chart.

    Returns:
        The last value close, cost basis and percent change between them,
        or None when the chart is empty.
    """
    if chart_data.is_empty():
        return None

    last_value = chart_data.value_series.last(1)[0]
    last_cost = chart_data.cost_basis_series[last_value.time]
    value = float(last_value.values.get("close", 0.0))
    cost_basis = float(last_cost.values.get("value", 0.0))

    return LastBarSummary(
        time=last_value.time,
        value=value,
        cost_basis=cost_basis,
        percent_change=percent_change(cost_basis, value),
    )


def holding_summaries(
    holdings: Sequence[Holding],
    price_data: Mapping[str, Sequence[Bar] | None],
    fx_data: Mapping[Currency, Sequence[Bar] | None],
    display_currency: Currency,
    thumbnail_points: int = 30,
    now: int | None = None,
    error_out_negative_quantity: bool = True
) -> list[HoldingSummary]:
    """
    Build the holdings table: price, position, cost basis and change per holding.

    Prices and thumbnails come from the holding's price series converted to
    the display currency (per unit, not scaled by position). Cost basis is
    converted with the latest FX close.

    Args:
        holdings: Portfolio holdings, including those without transactions.
        price_data: Price bars per symbol.
        fx_data: FX bars per holding currency.
        display_currency: The currency to express all values in.
        thumbnail_points: Number of trailing points kept for the thumbnail.
        now: Unix seconds to evaluate positions at. Defaults to the current time.
        error_out_negative_quantity: Passed to ``cost_basis_at_time``.

    Returns:
        One HoldingSummary per holding, in input order.

    Raises:
        ValueError: If price bars are missing for a holding, or FX bars are
            missing for a holding with transactions.
    """
    if now is None:
        now = int(datetime.now(timezone.utc).timestamp())

    summaries: list[HoldingSummary] = []
    for holding in holdings:
        price_series = TimeSeries(_require_bars(holding, price_data), OHLC_KEYS)

        if holding.transactions:
            fx = _fx_series_for(holding, fx_data, display_currency)
        else:
            # Nothing to value; convert only if the rate happens to be available.
            fx_bars = fx_data.get(holding.currency)
            fx = TimeSeries(fx_bars, OHLC_KEYS) if fx_bars is not None else None

        if fx is not None:
            price_series = normalize_value_series(price_series, holding.currency, display_currency, fx)

        thumbnail = price_series.last(thumbnail_points)
        price = None
        if thumbnail and is_number(thumbnail[-1].get("close")):
            price = float(thumbnail[-1].values["close"])

        if not holding.transactions:
            summaries.append(HoldingSummary(
                symbol=holding.symbol,
                name=holding.short_name,
                price=price,
                quantity=0.0,
                value=0.0,
                cost_basis=0.0,
                change_value=0.0,
                change_percent=0.0,
                thumbnail=thumbnail,
            ))
            continue

        quantity = shares_held_at_time(holding, now)
        value = (price or 0.0) * quantity
        cost_basis = convert_cost_basis(
            cost_basis_at_time(holding, now, error_out_negative_quantity),
            holding.currency,
            display_currency,
            fx,
        )

        summaries.append(HoldingSummary(
            symbol=holding.symbol,
            name=holding.short_name,
            price=price,
            quantity=quantity,
            value=value,
            cost_basis=cost_basis,
            change_value=value - cost_basis,
            change_percent=percent_change(cost_basis, value),
            thumbnail=thumbnail,
        ))

    return summaries
