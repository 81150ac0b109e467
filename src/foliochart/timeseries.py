"""
Sparse, time-indexed series of numeric points used to build portfolio charts.

A TimeSeries maps Unix-second timestamps to points carrying a fixed set of
named numeric fields (its value keys). Construction forward-fills points
with missing fields and snaps timestamps to the start of the series'
inferred granularity, so series fetched with slightly different windows
still share ticks. Combining series keeps only the timestamps present in
every operand.

Malformed input never raises here: missing values are filled from the last
complete point and non-overlapping series combine into an empty series.
Callers that need to know about the latter can pass an ``on_empty`` hook.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, Union

import math

import numpy as np
import pandas as pd

OHLC_KEYS: tuple[str, ...] = ("open", "high", "low", "close")
VALUE_KEYS: tuple[str, ...] = ("value",)

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 3600 * 24


@dataclass
class Point:
    """A single observation: a Unix-second timestamp and its named values."""

    time: int
    values: dict[str, float] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        return self.values.get(key)

    def to_record(self) -> dict[str, Any]:
        return {"time": self.time, **self.values}


class Granularity(Enum):
    """Bucket sizes a series' tick spacing is rounded to."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @classmethod
    def from_seconds(cls, gap: float) -> "Granularity":
        """Map a minimum tick gap in seconds to its granularity bucket."""
        if gap >= SECONDS_PER_DAY * 365:
            return cls.YEAR
        elif gap >= SECONDS_PER_DAY * 28:
            return cls.MONTH
        elif gap >= SECONDS_PER_DAY * 5:
            return cls.WEEK
        elif gap >= SECONDS_PER_DAY:
            return cls.DAY
        elif gap >= SECONDS_PER_HOUR:
            return cls.HOUR
        elif gap >= SECONDS_PER_MINUTE:
            return cls.MINUTE
        return cls.SECOND


def start_of(time: int, unit: Granularity) -> int:
    """
    Snap a Unix timestamp to the start of its UTC granularity bucket.

    Weeks start on Sunday.

    Args:
        time: Unix timestamp in seconds.
        unit: The bucket to snap to.

    Returns:
        The Unix timestamp of the start of the bucket containing ``time``.
    """
    if unit == Granularity.SECOND:
        return int(time)
    if unit == Granularity.MINUTE:
        return int(time) - int(time) % SECONDS_PER_MINUTE
    if unit == Granularity.HOUR:
        return int(time) - int(time) % SECONDS_PER_HOUR

    dt = datetime.fromtimestamp(int(time), tz=timezone.utc)
    day_start = datetime(dt.year, dt.month, dt.day, tzinfo=timezone.utc)

    if unit == Granularity.DAY:
        snapped = day_start
    elif unit == Granularity.WEEK:
        # isoweekday(): Monday=1 ... Sunday=7
        snapped = day_start - timedelta(days=dt.isoweekday() % 7)
    elif unit == Granularity.MONTH:
        snapped = datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)
    else:
        snapped = datetime(dt.year, 1, 1, tzinfo=timezone.utc)

    return int(snapped.timestamp())


def is_number(value: Any) -> bool:
    """Return True for real numeric values (bools and NaN excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        return False
    return not (isinstance(value, (float, np.floating)) and math.isnan(value))


PointOperation = Callable[[Point, Point, Sequence[str]], Point]
EmptyHook = Callable[[str, "TimeSeries", "TimeSeries"], None]


def _to_point(item: Union[Point, Mapping[str, Any]], value_keys: Sequence[str]) -> Point | None:
    """Coerce a Point or a bar-like mapping into a Point."""
    if isinstance(item, Point):
        return Point(time=int(item.time), values=dict(item.values))

    time = item.get("time")
    if not is_number(time):
        return None
    values = {key: item.get(key) for key in value_keys if key in item}
    return Point(time=int(time), values=values)  # type: ignore[arg-type]


class TimeSeries:
    """A time-indexed collection of points sharing the same value keys.

    Treat instances as immutable once built: all combining operations return
    new series.
    """

    def __init__(
        self,
        data: Iterable[Union[Point, Mapping[str, Any]]],
        value_keys: Sequence[str],
        fill_gaps: bool = True,
        normalize: bool = True,
    ):
        """Build a series from points or bar dictionaries.

        Args:
            data: Points, or mappings with a ``time`` entry plus value fields.
                Entries without a numeric time are dropped. Duplicate
                timestamps keep the last entry.
            value_keys: The field names every point of this series carries.
            fill_gaps: Forward-fill points with missing values.
            normalize: Snap timestamps to the start of the series' granularity.
        """
        self.value_keys: tuple[str, ...] = tuple(value_keys)
        self._points: dict[int, Point] = {}

        for item in data:
            point = _to_point(item, self.value_keys)
            if point is not None:
                self._points[point.time] = point

        self._sort()

        if fill_gaps:
            self.fill_gaps()
        if normalize:
            self.normalize_ticks()

    @classmethod
    def _from_points(cls, points: Iterable[Point], value_keys: Sequence[str]) -> "TimeSeries":
        """Wrap already aligned points without gap filling or normalization."""
        return cls(points, value_keys, fill_gaps=False, normalize=False)

    def _sort(self) -> None:
        self._points = dict(sorted(self._points.items()))

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self._points.values())

    def __contains__(self, time: object) -> bool:
        return time in self._points

    def __getitem__(self, time: int) -> Point:
        return self._points[time]

    def __repr__(self):
        return f"TimeSeries(keys={list(self.value_keys)}, points={len(self)})"

    def is_empty(self) -> bool:
        return not self._points

    def get_time_axis(self) -> list[int]:
        """Return the timestamps of the series in ascending order."""
        return list(self._points.keys())

    def get_value_axis(self) -> list[Point]:
        """Return the points of the series, ordered like ``get_time_axis``."""
        return list(self._points.values())

    def last(self, n: int) -> list[Point]:
        """Return the last ``n`` points (fewer if the series is shorter)."""
        if n <= 0:
            return []
        return self.get_value_axis()[-n:]

    def is_complete(self, point: Point) -> bool:
        """True when every value key of the series is numeric in ``point``."""
        return all(is_number(point.values.get(key)) for key in self.value_keys)

    def fill_gaps(self) -> "TimeSeries":
        """
        Forward-fill incomplete points with the last complete point's values.

        Points seen before any complete point get an empty value set. Running
        this on an already filled series changes nothing.

        Returns:
            This series, for chaining.
        """
        last_known: dict[str, float] = {}
        for point in self._points.values():
            if self.is_complete(point):
                last_known = point.values
            else:
                point.values = dict(last_known)
        return self

    def granularity(self) -> float:
        """Return the smallest gap in seconds between consecutive ticks.

        Series with fewer than two points return ``math.inf``.
        """
        times = self.get_time_axis()
        lowest = math.inf
        for earlier, later in zip(times, times[1:]):
            gap = abs(later - earlier)
            if gap < lowest:
                lowest = gap
        return lowest

    def granularity_unit(self) -> Granularity:
        return Granularity.from_seconds(self.granularity())

    def normalize_ticks(self, unit: Granularity | None = None) -> "TimeSeries":
        """
        Snap every timestamp to the start of its granularity bucket.

        When two timestamps fall in the same bucket the later point wins.

        Args:
            unit: Bucket to snap to. Defaults to the series' own granularity.

        Returns:
            This series, for chaining.
        """
        if unit is None:
            unit = self.granularity_unit()

        snapped: dict[int, Point] = {}
        for time, point in self._points.items():
            bucket = start_of(time, unit)
            snapped[bucket] = Point(time=bucket, values=point.values)
        self._points = snapped
        self._sort()
        return self

    def map_values(self, fn: Callable[[Point], dict[str, float]]) -> "TimeSeries":
        """Return a new series on the same axis with values produced by ``fn``."""
        return TimeSeries._from_points(
            (Point(time=p.time, values=fn(p)) for p in self),
            self.value_keys,
        )

    def to_records(self) -> list[dict[str, Any]]:
        """Return ``[{"time": t, <key>: value, ...}, ...]`` in time order."""
        return [point.to_record() for point in self]

    def to_dataframe(self) -> pd.DataFrame:
        """Return the series as a DataFrame indexed by Unix time."""
        df = pd.DataFrame(
            [point.values for point in self],
            index=pd.Index(self.get_time_axis(), name="time"),
            columns=list(self.value_keys),
        )
        return df

    @staticmethod
    def add(a: Point, b: Point, keys: Sequence[str]) -> Point:
        """Sum two points key by key, skipping keys not numeric in both."""
        values = {
            key: a.values[key] + b.values[key]
            for key in keys
            if is_number(a.values.get(key)) and is_number(b.values.get(key))
        }
        return Point(time=a.time, values=values)

    @staticmethod
    def multiply(a: Point, b: Point, keys: Sequence[str]) -> Point:
        """Multiply two points key by key, skipping keys not numeric in both."""
        values = {
            key: a.values[key] * b.values[key]
            for key in keys
            if is_number(a.values.get(key)) and is_number(b.values.get(key))
        }
        return Point(time=a.time, values=values)

    @staticmethod
    def intersection(
        series_a: "TimeSeries",
        series_b: "TimeSeries",
        operation: PointOperation,
        on_empty: EmptyHook | None = None,
    ) -> "TimeSeries":
        """
        Combine two series on the timestamps they have in common.

        Timestamps present in only one operand are dropped. The operation is
        applied with the value keys shared by both series; the result carries
        ``series_a``'s value keys.

        Args:
            series_a: Left operand.
            series_b: Right operand.
            operation: Point combiner, e.g. ``TimeSeries.add``.
            on_empty: Called as ``on_empty(reason, series_a, series_b)`` when
                two non-empty series share no timestamp.

        Returns:
            A new TimeSeries over the intersected time axis.
        """
        keys = [key for key in series_a.value_keys if key in series_b.value_keys]
        points = [
            operation(point, series_b[point.time], keys)
            for point in series_a
            if point.time in series_b
        ]
        result = TimeSeries._from_points(points, series_a.value_keys)

        if on_empty is not None and result.is_empty() and not series_a.is_empty() and not series_b.is_empty():
            on_empty("non-overlapping time axes", series_a, series_b)

        return result

    @staticmethod
    def intersect_series(
        series_list: Sequence["TimeSeries"],
        operation: PointOperation,
        on_empty: EmptyHook | None = None,
    ) -> "TimeSeries":
        """
        Left-fold ``intersection`` over a list of series.

        Args:
            series_list: Series to combine. A single series is returned as is.
            operation: Point combiner applied at every shared timestamp.
            on_empty: Forwarded to ``intersection``.

        Returns:
            The combined series.

        Raises:
            ValueError: If ``series_list`` is empty.
        """
        if len(series_list) == 0:
            raise ValueError("Cannot intersect an empty list of time series")

        result = series_list[0]
        for series in series_list[1:]:
            result = TimeSeries.intersection(result, series, operation, on_empty)
        return result
