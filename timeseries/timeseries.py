"""Time Series Reconciliation Engine for Weather and Air-Quality Data

This module contains the algorithmic core of the measurement service. It turns
raw OpenMeteo responses and stored measurements into a single, gap-aware,
de-duplicated series for one location and one request window.

Core Components:

Window Planning:
- plan_chunks(): Splits a request window into archive and forecast chunks
  around a moving cutoff date (today - recent_days)

Parsing:
- FieldSpec: Maps an output field to its OpenMeteo variable and fallbacks
- parse_series(): Converts a parallel-array block ("time" + one array per
  variable) into a Series
- parse_current(): Converts a "current" block into a single-row Series

Reconciliation:
- merge_series(): Replace-on-collision merge, later sources win
- fill_gaps(): Contiguous hourly series with explicit all-null gaps

Aggregation:
- aggregate(): Re-buckets a series into 1h/3h/6h/12h/1d intervals
- compute_averages(): One rounded, null-safe average per field

Series Representation:
    A Series is a pandas DataFrame indexed by a UTC DatetimeIndex named
    "time" with one float column per field. NaN means "no data" and is never
    treated as zero, except for the precipitation bucket sum.

Usage:
    chunks = plan_chunks(start, end)
    fetched = parse_series(document, WEATHER_FIELDS, start, end)
    merged = merge_series(stored, fetched)
    hourly = fill_gaps(merged, start, end, field_names(WEATHER_FIELDS))
    three_hourly = aggregate(merged, "3h")
    averages = compute_averages(hourly, field_names(WEATHER_FIELDS))
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(name="timeseries")

TIME_INDEX = "time"

RECENT_DAYS = 7

DEFAULT_INTERVAL = "1h"

INTERVALS: Dict[str, pd.Timedelta] = {
    "1h": pd.Timedelta(hours=1),
    "3h": pd.Timedelta(hours=3),
    "6h": pd.Timedelta(hours=6),
    "12h": pd.Timedelta(hours=12),
    "1d": pd.Timedelta(days=1),
    "24h": pd.Timedelta(days=1),
}

SUM_FIELDS: Tuple[str, ...] = ("precipitation",)


class ParseError(ValueError):
    """Raised when a provider document does not have the expected structure."""


class ProviderMode(Enum):
    ARCHIVE = "archive"
    FORECAST = "forecast"


@dataclass(frozen=True)
class Chunk:
    """Calendar-date sub-range of a request window bound to one provider mode.

    Attributes:
        start (date): First date of the chunk (inclusive).
        end (date): Last date of the chunk (inclusive).
        mode (ProviderMode): Provider endpoint the chunk must be fetched from.
    """

    start: date
    end: date
    mode: ProviderMode


@dataclass(frozen=True)
class FieldSpec:
    """Mapping between an output field and the OpenMeteo variable(s) it comes from.

    Attributes:
        name (str): Output field name used in series, store and API.
        variable (str): Primary OpenMeteo variable.
        fallback (Tuple[str, ...]): Variables summed (null as zero) when the
            primary value is null. When every fallback value is null too, the
            field stays null.
    """

    name: str
    variable: str
    fallback: Tuple[str, ...] = field(default_factory=tuple)


WEATHER_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("temperature", "temperature_2m"),
    FieldSpec("humidity", "relative_humidity_2m"),
    FieldSpec("pressure", "pressure_msl"),
    FieldSpec("wind_speed", "wind_speed_10m"),
    FieldSpec("wind_direction", "wind_direction_10m"),
    FieldSpec("precipitation", "precipitation", fallback=("rain", "showers")),
    FieldSpec("cloud_cover", "cloud_cover"),
)

AIR_QUALITY_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("pm10", "pm10"),
    FieldSpec("pm2_5", "pm2_5"),
    FieldSpec("co", "carbon_monoxide"),
    FieldSpec("co2", "carbon_dioxide"),
    FieldSpec("no2", "nitrogen_dioxide"),
    FieldSpec("so2", "sulphur_dioxide"),
    FieldSpec("o3", "ozone"),
    FieldSpec("ch4", "methane"),
    FieldSpec("uv", "uv_index"),
)

DAILY_FORECAST_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("temperature_max", "temperature_2m_max"),
    FieldSpec("precipitation_probability_max", "precipitation_probability_max"),
)


def field_names(fields: Iterable[FieldSpec]) -> List[str]:
    return [spec.name for spec in fields]


def request_variables(fields: Iterable[FieldSpec]) -> List[str]:
    """List every OpenMeteo variable needed to build the given fields, without duplicates."""
    variables: List[str] = []
    for spec in fields:
        for variable in (spec.variable, *spec.fallback):
            if variable not in variables:
                variables.append(variable)
    return variables


def to_utc(value: datetime | pd.Timestamp | str) -> pd.Timestamp:
    """Convert an instant to a tz-aware UTC Timestamp. Naive values are taken as UTC."""
    timestamp = pd.Timestamp(value)
    if timestamp.tzinfo is None:
        return timestamp.tz_localize("UTC")
    return timestamp.tz_convert("UTC")


def empty_series(columns: Sequence[str]) -> pd.DataFrame:
    """Create an empty Series frame with the given field columns."""
    index = pd.DatetimeIndex([], tz="UTC", name=TIME_INDEX)
    return pd.DataFrame(
        {column: pd.Series(dtype="float64") for column in columns}, index=index
    )


# ---------------------------------------------------------------------------
# Window planning
# ---------------------------------------------------------------------------


def recent_cutoff_date(today: Optional[date] = None, recent_days: int = RECENT_DAYS) -> date:
    """Compute the first date served by the forecast endpoint.

    Args:
        today (Optional[date]): Current UTC date. Defaults to the system clock.
        recent_days (int): Number of days the forecast endpoint reaches back.

    Returns:
        date: today - recent_days.
    """
    if today is None:
        today = datetime.now(timezone.utc).date()
    return today - timedelta(days=recent_days)


def plan_chunks(
    start: datetime | pd.Timestamp,
    end: datetime | pd.Timestamp,
    today: Optional[date] = None,
    recent_days: int = RECENT_DAYS,
) -> List[Chunk]:
    """Split a request window into provider chunks around the recent cutoff.

    The archive endpoint serves everything before the cutoff date, the forecast
    endpoint everything on or after it. Windows that straddle the cutoff are
    split into two contiguous, non-overlapping chunks.

    Args:
        start (datetime | pd.Timestamp): Window start instant.
        end (datetime | pd.Timestamp): Window end instant.
        today (Optional[date]): Current UTC date. Defaults to the system clock.
        recent_days (int): Days before today that still belong to the forecast endpoint.

    Returns:
        List[Chunk]: Ordered chunks covering the calendar-date span of the window.
            No chunk ever has start > end.
    """
    start_date = to_utc(start).date()
    end_date = to_utc(end).date()
    if end_date < start_date:
        start_date, end_date = end_date, start_date

    cutoff = recent_cutoff_date(today, recent_days)

    if end_date < cutoff:
        return [Chunk(start_date, end_date, ProviderMode.ARCHIVE)]
    if start_date >= cutoff:
        return [Chunk(start_date, end_date, ProviderMode.FORECAST)]

    chunks = []
    archive_end = cutoff - timedelta(days=1)
    if start_date <= archive_end:
        chunks.append(Chunk(start_date, archive_end, ProviderMode.ARCHIVE))
    chunks.append(Chunk(cutoff, end_date, ProviderMode.FORECAST))

    return chunks


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any, tz: str = "UTC", dst: bool = True) -> pd.Timestamp:
    """Parse an OpenMeteo timestamp into a UTC Timestamp.

    Accepts "YYYY-MM-DDTHH:MM", "YYYY-MM-DDTHH:MM:SS" and both forms with a
    trailing "Z" or "+HH:MM" offset. Timestamps without an offset are wall
    clock time in the provider zone tz. A wall clock time repeated by a
    daylight saving change resolves to its summer time instant when dst is
    True and to its standard time instant otherwise. A wall clock time skipped
    by the change moves forward to the first valid instant.

    Raises:
        ParseError: When the value is not a timestamp string in one of the formats above.
    """
    if not isinstance(value, str):
        raise ParseError(f"Expected timestamp string. Got {type(value)} instead.")
    try:
        timestamp = pd.Timestamp(datetime.fromisoformat(value))
    except ValueError as e:
        raise ParseError(f"Cannot parse timestamp {value!r}") from e

    if timestamp.tzinfo is None:
        timestamp = timestamp.tz_localize(tz, ambiguous=dst, nonexistent="shift_forward")
    return timestamp.tz_convert("UTC")


def to_float(value: Any) -> Optional[float]:
    """Normalise a raw sample. None, booleans, non-numeric text, NaN and infinities become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _sample(block: Mapping[str, Any], variable: str, idx: int) -> Optional[float]:
    values = block.get(variable)
    if not isinstance(values, (list, tuple, np.ndarray)) or idx >= len(values):
        return None
    return to_float(values[idx])


def _field_value(block: Mapping[str, Any], spec: FieldSpec, idx: int) -> Optional[float]:
    value = _sample(block, spec.variable, idx)
    if value is None and spec.fallback:
        parts = [_sample(block, variable, idx) for variable in spec.fallback]
        if any(part is not None for part in parts):
            value = sum(part for part in parts if part is not None)
    return value


def _get_block(document: Any, block: str) -> Mapping[str, Any]:
    if not isinstance(document, Mapping):
        raise ParseError(
            f"Expected provider document of type {Mapping}. Got {type(document)} instead."
        )
    section = document.get(block)
    if not isinstance(section, Mapping):
        raise ParseError(f"Provider document has no '{block}' section.")
    return section


def parse_series(
    document: Any,
    fields: Sequence[FieldSpec],
    valid_from: datetime | pd.Timestamp,
    valid_to: datetime | pd.Timestamp,
    block: str = "hourly",
    tz: str = "UTC",
) -> pd.DataFrame:
    """Convert a parallel-array provider block into a Series.

    Point i takes its timestamp from block["time"][i] and each field from the
    same index of its variable array. Missing arrays, short arrays and null
    entries produce null values. Points outside [valid_from, valid_to] are
    dropped. When a response repeats a timestamp the last sample wins.

    Args:
        document (Any): Decoded provider response.
        fields (Sequence[FieldSpec]): Fields to extract.
        valid_from (datetime | pd.Timestamp): Earliest accepted timestamp (inclusive).
        valid_to (datetime | pd.Timestamp): Latest accepted timestamp (inclusive).
        block (str, optional): Name of the parallel-array section. Defaults to "hourly".
        tz (str, optional): Zone of timestamps without an offset. Defaults to "UTC".

    Raises:
        ParseError: When the document or its block is missing or not a mapping,
            or when a timestamp cannot be parsed.

    Returns:
        pd.DataFrame: Series indexed by UTC time, ascending.
    """
    section = _get_block(document, block)
    columns = field_names(fields)

    times = section.get("time")
    if not isinstance(times, (list, tuple)):
        return empty_series(columns)

    lower = to_utc(valid_from)
    upper = to_utc(valid_to)

    index = []
    rows = []
    # A repeated wall clock time is the standard time hour after a DST fall back
    seen = set()
    for idx, raw_time in enumerate(times):
        repeated = isinstance(raw_time, str) and raw_time in seen
        timestamp = parse_timestamp(raw_time, tz, dst=not repeated)
        seen.add(raw_time)
        if timestamp < lower or timestamp > upper:
            continue
        index.append(timestamp)
        rows.append([_field_value(section, spec, idx) for spec in fields])

    if not rows:
        return empty_series(columns)

    data = pd.DataFrame(
        rows,
        columns=columns,
        index=pd.DatetimeIndex(index, name=TIME_INDEX),
        dtype="float64",
    )
    data = data[~data.index.duplicated(keep="last")].sort_index()

    logger.debug(f"Parsed {len(data)} of {len(times)} samples from the '{block}' section.")

    return data


def parse_current(
    document: Any,
    fields: Sequence[FieldSpec],
    hourly_fallback: Iterable[str] = ("precipitation", "cloud_cover"),
    tz: str = "UTC",
) -> pd.DataFrame:
    """Convert a "current" block into a single-row Series.

    Fields listed in hourly_fallback that are null in the current block are
    looked up in the "hourly" block at the hour the current reading falls in.

    Raises:
        ParseError: When the "current" section or its time is missing.

    Returns:
        pd.DataFrame: One-row Series.
    """
    current = _get_block(document, "current")
    if "time" not in current:
        raise ParseError("Current section has no time.")
    timestamp = parse_timestamp(current["time"], tz)

    values: Dict[str, Optional[float]] = {}
    for spec in fields:
        value = to_float(current.get(spec.variable))
        if value is None and spec.fallback:
            parts = [to_float(current.get(variable)) for variable in spec.fallback]
            if any(part is not None for part in parts):
                value = sum(part for part in parts if part is not None)
        values[spec.name] = value

    missing = [spec for spec in fields if spec.name in hourly_fallback and values[spec.name] is None]
    hourly = document.get("hourly") if isinstance(document, Mapping) else None
    if missing and isinstance(hourly, Mapping):
        hour = timestamp.floor("h")
        hourly_series = parse_series(
            document, missing, hour, hour + pd.Timedelta(minutes=59), tz=tz
        )
        hourly_series = hourly_series[hourly_series.index.floor("h") == hour]
        if not hourly_series.empty:
            for spec in missing:
                value = hourly_series[spec.name].iloc[0]
                values[spec.name] = None if pd.isna(value) else float(value)

    return pd.DataFrame(
        [values],
        columns=field_names(fields),
        index=pd.DatetimeIndex([timestamp], name=TIME_INDEX),
        dtype="float64",
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def merge_series(store: pd.DataFrame, *fetched: pd.DataFrame) -> pd.DataFrame:
    """Merge stored and fetched series into one timeline.

    Points are inserted store first, then each fetched series in the given
    order. Every insertion replaces the whole point at its timestamp, so
    fetched data wins over stored data and later fetched series win over
    earlier ones. Points are never combined field by field.

    Args:
        store (pd.DataFrame): Series read from the store.
        *fetched (pd.DataFrame): Freshly parsed series in precedence order.

    Returns:
        pd.DataFrame: Merged Series, ascending by time, unique timestamps.
    """
    frames = [frame for frame in (store, *fetched) if frame is not None]
    columns: List[str] = []
    for frame in frames:
        columns.extend(column for column in frame.columns if column not in columns)

    non_empty = [frame for frame in frames if not frame.empty]
    if not non_empty:
        return empty_series(columns)

    combined = pd.concat(non_empty, axis=0).reindex(columns=columns)
    combined = combined[~combined.index.duplicated(keep="last")].sort_index()
    combined.index.name = TIME_INDEX

    return combined.astype("float64")


def fill_gaps(
    series: pd.DataFrame,
    start: datetime | pd.Timestamp,
    end: datetime | pd.Timestamp,
    columns: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Build a contiguous hourly series between two bounds.

    Covers every whole hour from floor_hour(start) to floor_hour(end)
    inclusive. Hours without a point at exactly that timestamp become all-null
    points.

    Args:
        series (pd.DataFrame): Merged series.
        start (datetime | pd.Timestamp): Lower bound.
        end (datetime | pd.Timestamp): Upper bound.
        columns (Optional[Sequence[str]]): Field columns of the output. Defaults
            to the columns of series.

    Returns:
        pd.DataFrame: Hourly series with len == whole hours between bounds + 1.
    """
    if columns is None:
        columns = list(series.columns)

    hours = pd.date_range(
        start=to_utc(start).floor("h"),
        end=to_utc(end).floor("h"),
        freq="h",
        name=TIME_INDEX,
    )

    filled = series.reindex(index=hours, columns=list(columns))
    filled.index.name = TIME_INDEX

    return filled.astype("float64")


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def parse_interval(interval: Optional[str]) -> pd.Timedelta:
    """Map an interval label to its bucket size. Unknown labels fall back to 1h."""
    return INTERVALS.get(interval or DEFAULT_INTERVAL, INTERVALS[DEFAULT_INTERVAL])


def aggregate(
    series: pd.DataFrame,
    interval: Optional[str],
    sum_fields: Iterable[str] = SUM_FIELDS,
) -> pd.DataFrame:
    """Re-bucket a series into fixed-size intervals.

    Each point is assigned to floor(epoch / bucket) * bucket. Within a bucket
    every field is the arithmetic mean of its non-null samples (null when there
    are none). Fields in sum_fields are cumulative quantities and report the
    bucket sum instead (0.0 when every sample is null). Means are not rounded.

    Wind direction is averaged linearly like every other field.

    Args:
        series (pd.DataFrame): Series to aggregate.
        interval (Optional[str]): One of 1h, 3h, 6h, 12h, 1d (24h). Anything else means 1h.
        sum_fields (Iterable[str], optional): Fields summed per bucket. Defaults to ("precipitation",).

    Returns:
        pd.DataFrame: One point per non-empty bucket, ascending by bucket start.
    """
    step = parse_interval(interval)
    columns = list(series.columns)

    if series.empty:
        return empty_series(columns)

    data = series.astype("float64")
    buckets = data.index.floor(step)

    sum_fields = set(sum_fields)
    aggregation = {column: ("sum" if column in sum_fields else "mean") for column in columns}

    aggregated = data.groupby(buckets).agg(aggregation)
    aggregated.index = pd.DatetimeIndex(aggregated.index, name=TIME_INDEX)

    return aggregated.sort_index()


def round_half_up(value: float, digits: int = 1) -> float:
    """Round to the given number of decimals, ties away from zero."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def compute_averages(
    series: pd.DataFrame, columns: Optional[Sequence[str]] = None
) -> Dict[str, Optional[float]]:
    """Compute one null-safe average per field across a whole series.

    Only finite, non-null samples count. A field without any such sample
    averages to None. Results are rounded half-up to one decimal.

    Args:
        series (pd.DataFrame): Series to summarise.
        columns (Optional[Sequence[str]]): Fields to average. Defaults to all columns.

    Returns:
        Dict[str, Optional[float]]: Average per field.
    """
    if columns is None:
        columns = list(series.columns)

    averages: Dict[str, Optional[float]] = {}
    for column in columns:
        if column not in series.columns:
            averages[column] = None
            continue

        values = pd.to_numeric(series[column], errors="coerce").astype("float64")
        values = values[np.isfinite(values)]

        averages[column] = round_half_up(float(values.mean())) if len(values) else None

    return averages


def series_to_records(series: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a Series to a list of point dicts with a "time" key and None for gaps."""
    records = []
    for timestamp, row in series.iterrows():
        record: Dict[str, Any] = {TIME_INDEX: timestamp.to_pydatetime()}
        for column, value in row.items():
            record[str(column)] = None if pd.isna(value) else float(value)
        records.append(record)
    return records
