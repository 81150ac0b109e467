from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence
import sys
import threading

import yfinance as yf  # type: ignore[import-untyped]
import pandas as pd

from .currency import Currency, fx_symbol, get_currencies_to_fetch
from .portfolio import Holding, holdings_with_transactions

Bar = dict[str, Any]

BAR_COLUMNS = ["time", "open", "high", "low", "close"]

# yfinance intervals whose bars are stamped with the exchange's calendar date
DAILY_INTERVALS = {"1d", "5d", "1wk", "1mo", "3mo"}

# When True, print status messages during data fetching (e.g. "Fetching AAPL …").
# Defaults to False so library callers aren't polluted; the CLI sets this to True.
verbose: bool = False


@dataclass(frozen=True)
class ChartRequest:
    """A request for the bars of one symbol over a time window.

    Attributes:
        symbol: Ticker symbol, or an FX ticker such as ``EURUSD=X``.
        start: Window start, Unix seconds (inclusive).
        end: Window end, Unix seconds (inclusive).
        interval: Bar interval understood by the provider.
    """

    symbol: str
    start: int
    end: int
    interval: str = "1d"


def dataframe_to_bars(df: pd.DataFrame) -> list[Bar]:
    """Convert a ``time/open/high/low/close`` DataFrame into bar dicts.

    NaN values become None so they are gap-filled downstream.
    """
    bars: list[Bar] = []
    for row in df.itertuples(index=False):
        bar: Bar = {"time": int(getattr(row, "time"))}
        for column in BAR_COLUMNS[1:]:
            value = getattr(row, column)
            bar[column] = None if pd.isna(value) else float(value)
        bars.append(bar)
    return bars



def bar_times(dates: pd.Series, interval: str) -> pd.Series:
    """Convert yfinance bar timestamps to Unix seconds.

    Daily and longer bars keep the exchange's calendar date and are stamped
    at UTC midnight of that date, so a Frankfurt and a New York bar for the
    same trading day share a timestamp. Intraday bars keep their instant.
    """
    stamps = pd.to_datetime(dates)
    if interval in DAILY_INTERVALS:
        if stamps.dt.tz is not None:
            stamps = stamps.dt.tz_localize(None)
        stamps = stamps.dt.normalize().dt.tz_localize("UTC")
    elif stamps.dt.tz is None:
        stamps = stamps.dt.tz_localize("UTC")
    else:
        stamps = stamps.dt.tz_convert("UTC")
    return stamps.map(lambda ts: int(ts.timestamp()))


class PricingDataManager(ABC):
    """Abstract base class for all bar data providers."""

    @abstractmethod
    def get_bars(self, request: ChartRequest) -> list[Bar]:
        raise NotImplementedError("This method should be overridden by subclasses.")

    def get_bars_batch(self, requests: Sequence[ChartRequest]) -> dict[ChartRequest, list[Bar]]:
        """Fetch several requests at once.

        Providers with a multi-symbol endpoint should override this. The
        default fetches one request after another; any failure fails the
        whole batch.
        """
        return {request: self.get_bars(request) for request in requests}


class FixedPricingDataManager(PricingDataManager):
    """Pricing manager serving bars from memory."""

    def __init__(self, bars_by_symbol: dict[str, list[Bar]]):
        """Initialize with pre-built bars.

        Args:
            bars_by_symbol: Bars per symbol, in any order.
        """
        self.bars_by_symbol = bars_by_symbol

    def get_bars(self, request: ChartRequest) -> list[Bar]:
        """Return the stored bars of a symbol that fall inside the request window.

        Raises:
            ValueError: If the symbol is unknown.
        """
        if request.symbol not in self.bars_by_symbol:
            raise ValueError(f"No price data available for {request.symbol}")
        return [
            dict(bar)
            for bar in self.bars_by_symbol[request.symbol]
            if request.start <= bar["time"] <= request.end
        ]


class YFinancePricingDataManager(PricingDataManager):
    """Bars from Yahoo Finance, cached on disk per symbol and interval."""

    def __init__(self, force_cache_refresh: bool = False, cache_dir: Path | None = None, max_workers: int = 8):
        """Initialize the YFinance pricing manager.

        Args:
            force_cache_refresh: If True, bypass the disk cache and fetch
                fresh data from Yahoo Finance (once per symbol per session).
            cache_dir: Where CSV caches live. Defaults to ``.cache/yfinance_bars``
                under the working directory.
            max_workers: Number of symbols of one batch downloaded at once.
        """
        self.force_cache_refresh = force_cache_refresh
        self.cache_dir = cache_dir or Path.cwd() / ".cache" / "yfinance_bars"
        self.max_workers = max_workers
        # Track which symbols have been force-refreshed by this manager
        self._refreshed: set[tuple[str, str]] = set()
        # One lock per cache file; different symbols download in parallel
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, cache_key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(cache_key)
            if lock is None:
                lock = self._locks[cache_key] = threading.Lock()
            return lock

    def _cache_path(self, symbol: str, interval: str) -> Path:
        return self.cache_dir / f"{symbol}_{interval}.csv"

    def _read_cache(self, path: Path) -> pd.DataFrame | None:
        if not path.exists():
            return None
        try:
            df = pd.read_csv(path)
        except (OSError, ValueError, pd.errors.ParserError):
            # Corrupted cache, will refetch
            return None
        if df.empty or set(BAR_COLUMNS) - set(df.columns):
            return None
        return df

    def _download(self, symbol: str, start: int, end: int, interval: str) -> pd.DataFrame:
        """Download bars from Yahoo Finance as a ``time/open/high/low/close`` frame."""
        start_date = datetime.fromtimestamp(start, tz=timezone.utc).date()
        # yfinance end date is exclusive, so add 1 day
        end_date = datetime.fromtimestamp(end, tz=timezone.utc).date() + timedelta(days=1)

        if verbose:
            print(f"  Fetching {symbol} ({start_date} to {end_date}) …", flush=True)

        history: pd.DataFrame = yf.Ticker(symbol).history(  # type: ignore[call-arg]
            start=start_date.isoformat(),
            end=end_date.isoformat(),
            interval=interval,
            auto_adjust=False,
        )
        if history.empty:
            return pd.DataFrame(columns=BAR_COLUMNS)

        history = history.reset_index()
        date_column = "Date" if "Date" in history.columns else "Datetime"
        df = pd.DataFrame({
            "time": bar_times(history[date_column], interval),
            "open": history["Open"],
            "high": history["High"],
            "low": history["Low"],
            "close": history["Close"],
        })
        return df

    def get_bars(self, request: ChartRequest) -> list[Bar]:
        """
        Get the bars of a symbol over the request window.

        Serves from the disk cache when it covers the window, otherwise
        fetches the union of the cached and requested ranges and rewrites
        the cache.

        Raises:
            ValueError: If Yahoo Finance fails and there is no cached data.
        """
        path = self._cache_path(request.symbol, request.interval)
        cache_key = (request.symbol, request.interval)

        with self._lock_for(cache_key):
            cached = self._read_cache(path)
            should_force_refresh = self.force_cache_refresh and cache_key not in self._refreshed

            fetch_start, fetch_end = request.start, request.end
            if cached is not None:
                cached_min = int(cached["time"].min())
                cached_max = int(cached["time"].max())
                covered = cached_min <= request.start and request.end <= cached_max
                if covered and not should_force_refresh:
                    return self._slice(cached, request)
                fetch_start = min(fetch_start, cached_min)
                fetch_end = max(fetch_end, cached_max)

            self._refreshed.add(cache_key)

            try:
                fresh = self._download(request.symbol, fetch_start, fetch_end, request.interval)
            except Exception as e:
                # yfinance can fail on rate limiting, unknown symbols or network issues
                print(f"Warning: yfinance request failed for {request.symbol}: {e}", file=sys.stderr)
                if cached is not None:
                    return self._slice(cached, request)
                raise ValueError(f"Error fetching price data for {request.symbol}: {e}") from e

            if fresh.empty:
                print(f"Warning: yfinance returned no data for {request.symbol} (possible rate limiting)", file=sys.stderr)
                if cached is not None:
                    return self._slice(cached, request)
                raise ValueError(f"No price data available for {request.symbol}")

            if cached is not None:
                combined = pd.concat([cached, fresh], ignore_index=True)
                combined = combined.drop_duplicates(subset=["time"], keep="last")
            else:
                combined = fresh
            combined = combined.sort_values("time").reset_index(drop=True)

            path.parent.mkdir(parents=True, exist_ok=True)
            combined.to_csv(path, index=False)

            return self._slice(combined, request)

    def get_bars_batch(self, requests: Sequence[ChartRequest]) -> dict[ChartRequest, list[Bar]]:
        """Fetch a batch with one download per symbol running concurrently.

        Raises:
            ValueError: If any request of the batch fails; the whole batch fails.
        """
        if len(requests) <= 1:
            return super().get_bars_batch(requests)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(requests))) as pool:
            futures = {request: pool.submit(self.get_bars, request) for request in requests}
            return {request: future.result() for request, future in futures.items()}

    @staticmethod
    def _slice(df: pd.DataFrame, request: ChartRequest) -> list[Bar]:
        window = df[(df["time"] >= request.start) & (df["time"] <= request.end)]
        return dataframe_to_bars(window)


class ChartBatcher:
    """Coalesces chart requests into batches sent to a pricing manager.

    Requests submitted within ``window_ms`` of the first pending one are sent
    together; a batch is sent early once it holds ``max_batch_size`` requests.
    Identical pending requests share one fetch. Batches run on a thread pool,
    so the caller fans out with ``fetch`` and fans in on the returned futures.

    Construct one per application (or per command) and pass it to whatever
    orchestrates fetching.
    """

    def __init__(
        self,
        manager: PricingDataManager,
        window_ms: int = 50,
        max_batch_size: int = 20,
        max_workers: int = 4,
    ):
        """Initialize the batcher.

        Args:
            manager: Provider that serves the batches.
            window_ms: How long to collect requests before sending a batch.
            max_batch_size: Maximum number of distinct requests per batch.
            max_workers: Number of batches that may be in flight at once.
        """
        if window_ms < 0:
            raise ValueError("window_ms must be non-negative")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")

        self._manager = manager
        self._window = window_ms / 1000
        self._max_batch_size = max_batch_size
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chart-batch")
        self._lock = threading.Lock()
        self._pending: dict[ChartRequest, Future] = {}
        self._timer: threading.Timer | None = None
        self._closed = False

    def fetch(self, request: ChartRequest) -> "Future[list[Bar]]":
        """Queue a request and return a future resolving to its bars."""
        batch = None
        with self._lock:
            if self._closed:
                raise RuntimeError("ChartBatcher is closed")

            future = self._pending.get(request)
            if future is not None:
                return future

            future = Future()
            self._pending[request] = future

            if len(self._pending) >= self._max_batch_size:
                batch = self._take_pending()
            elif self._timer is None:
                self._timer = threading.Timer(self._window, self.flush)
                self._timer.daemon = True
                self._timer.start()

        if batch:
            self._executor.submit(self._run_batch, batch)
        return future

    def flush(self) -> None:
        """Send the pending requests now instead of waiting for the window."""
        with self._lock:
            batch = self._take_pending()
        if batch:
            self._executor.submit(self._run_batch, batch)

    def fetch_all(self, requests: Iterable[ChartRequest]) -> dict[ChartRequest, list[Bar]]:
        """
        Fetch many requests concurrently and wait for all of them.

        Raises:
            Exception: Whatever the pricing manager raised for a failed batch.
        """
        futures = {request: self.fetch(request) for request in requests}
        self.flush()
        return {request: future.result() for request, future in futures.items()}

    def close(self) -> None:
        """Send anything pending and wait for in-flight batches."""
        self.flush()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "ChartBatcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _take_pending(self) -> dict[ChartRequest, Future]:
        """Detach the pending batch. Caller must hold the lock."""
        batch = self._pending
        self._pending = {}
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return batch

    def _run_batch(self, batch: dict[ChartRequest, Future]) -> None:
        try:
            results = self._manager.get_bars_batch(list(batch))
        except Exception as e:
            for future in batch.values():
                future.set_exception(e)
            return

        for request, future in batch.items():
            bars = results.get(request)
            if bars is None:
                future.set_exception(ValueError(f"No price data returned for {request.symbol}"))
            else:
                future.set_result(bars)


def chart_requests_for_portfolio(
    holdings: Sequence[Holding],
    display_currency: Currency,
    now: int | None = None,
    interval: str = "1d"
) -> tuple[dict[str, ChartRequest], dict[Currency, ChartRequest]]:
    """
    Work out which bars a portfolio chart needs.

    Args:
        holdings: Portfolio holdings; those without transactions are skipped.
        display_currency: The currency the chart is shown in.
        now: End of every window, Unix seconds. Defaults to the current time.
        interval: Bar interval to request.

    Returns:
        A tuple of (price requests by symbol, FX requests by holding currency).
        Each price window starts at the holding's first transaction; each FX
        window starts at the first transaction of any holding in that currency.
    """
    if now is None:
        now = int(datetime.now(timezone.utc).timestamp())

    active = holdings_with_transactions(holdings)

    symbol_requests: dict[str, ChartRequest] = {}
    for holding in active:
        start = holding.first_transaction_time()
        assert start is not None
        existing = symbol_requests.get(holding.symbol)
        if existing is not None:
            start = min(start, existing.start)
        symbol_requests[holding.symbol] = ChartRequest(holding.symbol, start, now, interval)

    fx_requests: dict[Currency, ChartRequest] = {}
    for currency in get_currencies_to_fetch(active, display_currency):
        start = min(
            t.time
            for holding in active
            if holding.currency == currency
            for t in holding.transactions
        )
        fx_requests[currency] = ChartRequest(fx_symbol(currency, display_currency), start, now, interval)

    return symbol_requests, fx_requests


def fetch_portfolio_data(
    holdings: Sequence[Holding],
    display_currency: Currency,
    batcher: ChartBatcher,
    now: int | None = None
) -> tuple[dict[str, list[Bar]], dict[Currency, list[Bar]]]:
    """
    Fetch every price and FX series a portfolio chart needs.

    Returns:
        A tuple of (price bars by symbol, FX bars by holding currency), ready
        for ``foliochart.aggregator.aggregate_portfolio``.
    """
    symbol_requests, fx_requests = chart_requests_for_portfolio(holdings, display_currency, now)
    results = batcher.fetch_all([*symbol_requests.values(), *fx_requests.values()])

    price_data = {symbol: results[request] for symbol, request in symbol_requests.items()}
    fx_data = {currency: results[request] for currency, request in fx_requests.items()}
    return price_data, fx_data
