"""Tests for bar providers, request batching and portfolio fetch planning."""

import threading
from datetime import datetime, timezone

import pandas as pd
import pytest
import yfinance as yf

from foliochart.aggregator import aggregate_portfolio
from foliochart.currency import Currency
from foliochart.portfolio import Holding, Transaction, TransactionType
from foliochart.pricingdata import (
    ChartBatcher,
    ChartRequest,
    FixedPricingDataManager,
    YFinancePricingDataManager,
    bar_times,
    chart_requests_for_portfolio,
    dataframe_to_bars,
    fetch_portfolio_data,
)

DAY = 24 * 3600


def _bars(symbol_closes, start=0, step=DAY):
    return [
        {"time": start + i * step, "open": c, "high": c, "low": c, "close": c}
        for i, c in enumerate(symbol_closes)
    ]


class RecordingPricingDataManager(FixedPricingDataManager):
    """Fixed manager that records every batch it is asked to serve."""

    def __init__(self, bars_by_symbol):
        super().__init__(bars_by_symbol)
        self.batches = []
        self._lock = threading.Lock()

    def get_bars_batch(self, requests):
        with self._lock:
            self.batches.append(list(requests))
        return super().get_bars_batch(requests)


class FailingPricingDataManager(FixedPricingDataManager):
    """Manager whose batches always fail."""

    def __init__(self):
        super().__init__({})

    def get_bars_batch(self, requests):
        raise ValueError("provider unavailable")


class EmptyPricingDataManager(FixedPricingDataManager):
    """Manager that answers batches without any results."""

    def __init__(self):
        super().__init__({})

    def get_bars_batch(self, requests):
        return {}


def test_fixed_manager_filters_window():
    """Verify only bars inside the request window are returned."""
    manager = FixedPricingDataManager({"AAPL": _bars([1, 2, 3, 4])})

    bars = manager.get_bars(ChartRequest("AAPL", DAY, 2 * DAY))

    assert [b["close"] for b in bars] == [2, 3]


def test_fixed_manager_unknown_symbol():
    """Verify an unknown symbol raises ValueError."""
    manager = FixedPricingDataManager({})

    with pytest.raises(ValueError, match="No price data available for MSFT"):
        manager.get_bars(ChartRequest("MSFT", 0, DAY))


def test_dataframe_to_bars_turns_nan_into_none():
    """Verify missing prices are passed on as None for gap filling."""
    df = pd.DataFrame({
        "time": [0, DAY],
        "open": [1.0, float("nan")],
        "high": [1.0, 2.0],
        "low": [1.0, 2.0],
        "close": [1.0, 2.0],
    })

    bars = dataframe_to_bars(df)

    assert bars[0] == {"time": 0, "open": 1.0, "high": 1.0, "low": 1.0, "close": 1.0}
    assert bars[1]["open"] is None
    assert bars[1]["time"] == DAY


class TestChartBatcher:
    """Tests for request coalescing."""

    def test_identical_requests_share_one_fetch(self):
        """Verify duplicate pending requests resolve from one fetch."""
        manager = RecordingPricingDataManager({"AAPL": _bars([1, 2])})
        request = ChartRequest("AAPL", 0, DAY)

        with ChartBatcher(manager, window_ms=60_000) as batcher:
            first = batcher.fetch(request)
            second = batcher.fetch(request)
            batcher.flush()

            assert first is second
            assert len(first.result(timeout=5)) == 2

        assert manager.batches == [[request]]

    def test_requests_in_window_are_batched(self):
        """Verify requests made before the window closes go out together."""
        manager = RecordingPricingDataManager({"A": _bars([1]), "B": _bars([2])})

        with ChartBatcher(manager, window_ms=60_000) as batcher:
            results = batcher.fetch_all([ChartRequest("A", 0, DAY), ChartRequest("B", 0, DAY)])

        assert len(manager.batches) == 1
        assert {r.symbol for r in manager.batches[0]} == {"A", "B"}
        assert results[ChartRequest("A", 0, DAY)][0]["close"] == 1

    def test_window_timer_sends_batch(self):
        """Verify a pending batch is sent once the window elapses."""
        manager = RecordingPricingDataManager({"A": _bars([1])})

        with ChartBatcher(manager, window_ms=10) as batcher:
            future = batcher.fetch(ChartRequest("A", 0, DAY))
            assert future.result(timeout=5)[0]["close"] == 1

    def test_full_batch_is_sent_early(self):
        """Verify a batch reaching max_batch_size is sent without waiting."""
        manager = RecordingPricingDataManager({s: _bars([1]) for s in "ABC"})

        with ChartBatcher(manager, window_ms=60_000, max_batch_size=2) as batcher:
            a = batcher.fetch(ChartRequest("A", 0, DAY))
            b = batcher.fetch(ChartRequest("B", 0, DAY))
            a.result(timeout=5)
            b.result(timeout=5)
            c = batcher.fetch(ChartRequest("C", 0, DAY))
            batcher.flush()
            c.result(timeout=5)

        assert sorted(len(batch) for batch in manager.batches) == [1, 2]

    def test_failure_reaches_every_caller(self):
        """Verify a failed batch rejects each request in it."""
        with ChartBatcher(FailingPricingDataManager(), window_ms=60_000) as batcher:
            first = batcher.fetch(ChartRequest("A", 0, DAY))
            second = batcher.fetch(ChartRequest("B", 0, DAY))
            batcher.flush()

            with pytest.raises(ValueError, match="provider unavailable"):
                first.result(timeout=5)
            with pytest.raises(ValueError, match="provider unavailable"):
                second.result(timeout=5)

    def test_fetch_all_raises_on_failure(self):
        """Verify fetch_all surfaces a provider failure instead of partial data."""
        with ChartBatcher(FailingPricingDataManager()) as batcher:
            with pytest.raises(ValueError):
                batcher.fetch_all([ChartRequest("A", 0, DAY)])

    def test_missing_result_rejects_request(self):
        """Verify a request the provider did not answer fails explicitly."""
        with ChartBatcher(EmptyPricingDataManager()) as batcher:
            with pytest.raises(ValueError, match="No price data returned for A"):
                batcher.fetch_all([ChartRequest("A", 0, DAY)])

    def test_closed_batcher_rejects_requests(self):
        """Verify fetching after close raises RuntimeError."""
        batcher = ChartBatcher(FixedPricingDataManager({}))
        batcher.close()

        with pytest.raises(RuntimeError):
            batcher.fetch(ChartRequest("A", 0, DAY))

    @pytest.mark.parametrize("kwargs", [{"window_ms": -1}, {"max_batch_size": 0}])
    def test_invalid_limits(self, kwargs):
        """Verify invalid batching limits are rejected."""
        with pytest.raises(ValueError):
            ChartBatcher(FixedPricingDataManager({}), **kwargs)


def _txn(time, quantity=1, price=1):
    return Transaction(f"t{time}", time, TransactionType.BUY, quantity, price)


def test_chart_requests_for_portfolio():
    """Verify fetch windows start at the earliest relevant transaction."""
    holdings = [
        Holding("A", Currency.USD, [_txn(100), _txn(50)]),
        Holding("B", Currency.EUR, [_txn(200)]),
        Holding("C", Currency.EUR, [_txn(150)]),
        Holding("W", Currency.JPY),
    ]

    symbols, fx = chart_requests_for_portfolio(holdings, Currency.USD, now=1000)

    assert symbols == {
        "A": ChartRequest("A", 50, 1000),
        "B": ChartRequest("B", 200, 1000),
        "C": ChartRequest("C", 150, 1000),
    }
    assert fx == {Currency.EUR: ChartRequest("EURUSD=X", 150, 1000)}


def test_fetch_portfolio_data_feeds_aggregation():
    """Verify fetched bars are keyed for the aggregator and produce a chart."""
    holdings = [
        Holding("A", Currency.USD, [_txn(0, quantity=2, price=10)]),
        Holding("B", Currency.EUR, [_txn(0, quantity=1, price=100)]),
    ]
    manager = FixedPricingDataManager({
        "A": _bars([10, 12]),
        "B": _bars([100, 110]),
        "EURUSD=X": _bars([1.1, 1.05]),
    })

    with ChartBatcher(manager) as batcher:
        price_data, fx_data = fetch_portfolio_data(holdings, Currency.USD, batcher, now=DAY)

    assert set(price_data) == {"A", "B"}
    assert set(fx_data) == {Currency.EUR}

    chart = aggregate_portfolio(holdings, price_data, fx_data, Currency.USD)
    assert chart.value_series[DAY].values["close"] == pytest.approx(139.5)


class TestYFinanceCache:
    """Tests for the disk cache of the Yahoo Finance manager, without network access."""

    @pytest.fixture
    def downloads(self, monkeypatch):
        calls = []

        def fake_download(self, symbol, start, end, interval):
            calls.append((symbol, start, end))
            times = list(range(start, end + 1, DAY))
            return pd.DataFrame({
                "time": times,
                "open": [1.0] * len(times),
                "high": [2.0] * len(times),
                "low": [0.5] * len(times),
                "close": [1.5] * len(times),
            })

        monkeypatch.setattr(YFinancePricingDataManager, "_download", fake_download)
        return calls

    def test_second_request_served_from_cache(self, tmp_path, downloads):
        """Verify a window covered by the cache does not download again."""
        manager = YFinancePricingDataManager(cache_dir=tmp_path)
        request = ChartRequest("AAPL", 0, 2 * DAY)

        first = manager.get_bars(request)
        second = manager.get_bars(request)

        assert len(downloads) == 1
        assert first == second
        assert [b["time"] for b in second] == [0, DAY, 2 * DAY]
        assert (tmp_path / "AAPL_1d.csv").exists()

    def test_wider_window_extends_cache(self, tmp_path, downloads):
        """Verify a window beyond the cache fetches the union of both ranges."""
        manager = YFinancePricingDataManager(cache_dir=tmp_path)
        manager.get_bars(ChartRequest("AAPL", DAY, 2 * DAY))

        bars = manager.get_bars(ChartRequest("AAPL", 0, 3 * DAY))

        assert downloads[-1] == ("AAPL", 0, 3 * DAY)
        assert len(bars) == 4

    def test_force_refresh_downloads_once(self, tmp_path, downloads):
        """Verify a forced refresh bypasses the cache once per symbol."""
        request = ChartRequest("AAPL", 0, DAY)
        YFinancePricingDataManager(cache_dir=tmp_path).get_bars(request)

        manager = YFinancePricingDataManager(force_cache_refresh=True, cache_dir=tmp_path)
        manager.get_bars(request)
        manager.get_bars(request)

        assert len(downloads) == 2

    def test_failure_without_cache_raises(self, tmp_path, monkeypatch, capsys):
        """Verify a failed download with nothing cached raises ValueError."""
        def broken_download(self, symbol, start, end, interval):
            raise ConnectionError("rate limited")

        monkeypatch.setattr(YFinancePricingDataManager, "_download", broken_download)
        manager = YFinancePricingDataManager(cache_dir=tmp_path)

        with pytest.raises(ValueError, match="Error fetching price data for AAPL"):
            manager.get_bars(ChartRequest("AAPL", 0, DAY))

        assert "Warning: yfinance request failed for AAPL" in capsys.readouterr().err

    def test_failure_falls_back_to_cache(self, tmp_path, downloads, monkeypatch):
        """Verify a failed refresh serves the cached bars instead."""
        YFinancePricingDataManager(cache_dir=tmp_path).get_bars(ChartRequest("AAPL", 0, DAY))

        def broken_download(self, symbol, start, end, interval):
            raise ConnectionError("rate limited")

        monkeypatch.setattr(YFinancePricingDataManager, "_download", broken_download)
        manager = YFinancePricingDataManager(cache_dir=tmp_path)

        bars = manager.get_bars(ChartRequest("AAPL", 0, 5 * DAY))

        assert [b["time"] for b in bars] == [0, DAY]


    def test_batch_downloads_symbols_concurrently(self, tmp_path, monkeypatch):
        """Verify the symbols of one batch are downloaded in parallel."""
        barrier = threading.Barrier(3, timeout=5)

        def waiting_download(self, symbol, start, end, interval):
            # Only returns once all three downloads are in flight together
            barrier.wait()
            return pd.DataFrame({"time": [0], "open": [1.0], "high": [1.0], "low": [1.0], "close": [1.0]})

        monkeypatch.setattr(YFinancePricingDataManager, "_download", waiting_download)
        manager = YFinancePricingDataManager(cache_dir=tmp_path)
        requests = [ChartRequest(symbol, 0, 0) for symbol in ("A", "B", "C")]

        results = manager.get_bars_batch(requests)

        assert [results[r][0]["close"] for r in requests] == [1.0, 1.0, 1.0]


JUN_1 = int(datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp())
JUN_3 = int(datetime(2024, 6, 3, tzinfo=timezone.utc).timestamp())
JUN_7 = int(datetime(2024, 6, 7, tzinfo=timezone.utc).timestamp())


class FakeTicker:
    """Serves Mon 3 to Fri 7 June 2024 daily bars stamped in the exchange's timezone."""

    timezones = {"AAPL": "America/New_York", "SAP.DE": "Europe/Berlin", "EURUSD=X": "Europe/London"}
    closes = {
        "AAPL": [1.0, 2.0, 3.0, 4.0, 5.0],
        "SAP.DE": [10.0, 11.0, 12.0, 13.0, 14.0],
        "EURUSD=X": [1.0, 1.0, 1.0, 1.0, 1.0],
    }

    def __init__(self, symbol):
        self.symbol = symbol

    def history(self, start, end, interval, auto_adjust):
        index = pd.date_range("2024-06-03", periods=5, freq="B", tz=self.timezones[self.symbol], name="Date")
        closes = self.closes[self.symbol]
        return pd.DataFrame(
            {"Open": closes, "High": closes, "Low": closes, "Close": closes, "Volume": [0] * 5},
            index=index,
        )


class TestYFinanceBarDates:
    """Tests for how Yahoo Finance bar dates become timestamps."""

    @pytest.mark.parametrize("symbol", ["AAPL", "SAP.DE", "EURUSD=X"])
    def test_daily_bars_keep_exchange_date(self, tmp_path, monkeypatch, symbol):
        """Verify a daily bar lands on its trading day at UTC midnight, whatever the exchange timezone."""
        monkeypatch.setattr(yf, "Ticker", FakeTicker)
        manager = YFinancePricingDataManager(cache_dir=tmp_path)

        bars = manager.get_bars(ChartRequest(symbol, JUN_1, JUN_7))

        assert [b["time"] for b in bars] == [JUN_3 + i * DAY for i in range(5)]

    def test_european_and_us_holdings_align(self, tmp_path, monkeypatch):
        """Verify a Frankfurt and a New York listing combine on the same five trading days."""
        monkeypatch.setattr(yf, "Ticker", FakeTicker)
        holdings = [
            Holding("AAPL", Currency.USD, [_txn(JUN_1)]),
            Holding("SAP.DE", Currency.EUR, [_txn(JUN_1)]),
        ]

        with ChartBatcher(YFinancePricingDataManager(cache_dir=tmp_path)) as batcher:
            price_data, fx_data = fetch_portfolio_data(holdings, Currency.USD, batcher, now=JUN_7)
        chart = aggregate_portfolio(holdings, price_data, fx_data, Currency.USD)

        assert chart.value_series.get_time_axis() == [JUN_3 + i * DAY for i in range(5)]
        assert [p.values["close"] for p in chart.value_series] == [11.0, 13.0, 15.0, 17.0, 19.0]

    def test_intraday_bars_keep_their_instant(self):
        """Verify hourly bars are converted to the UTC instant, not truncated to a date."""
        dates = pd.Series(pd.to_datetime(["2024-06-03 09:30"]).tz_localize("America/New_York"))

        assert list(bar_times(dates, "1h")) == [JUN_3 + 13 * 3600 + 1800]
