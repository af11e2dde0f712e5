"""Measurement Services for Weather and Air-Quality Time Series

This module composes the provider clients, the durable store and the time
series engine into the operations the front ends call.

Operations:
- WeatherService.fetch_current(): Latest weather reading for a location, persisted
- WeatherService.fetch_history(): Weather series for a window, merged with the
  store and aggregated to an interval
- AirQualityService.fetch_live_window(): Last N hours of air quality with
  explicit gaps and per-field averages
- AirQualityService.history_window(): Stored air quality for a window with averages
- LocationDirectory.search(): Location lookup by name, store first
- ForecastService.daily(): Daily maximum temperature and precipitation
  probability for a coordinate
- ForecastService.poland_snapshot(): One forecast value pair per major Polish city

Request Flow (history):
    plan_chunks -> provider fetch per chunk -> parse_series -> upsert
    -> store read -> merge_series -> aggregate

Error Handling:
- InvalidWindowError: start is not strictly before end (rejected before any fetch)
- LocationNotFoundError: unknown location key (rejected before any fetch)
- Provider failures degrade to an empty ChunkOutcome and are logged
- ParseError surfaces only when the request consisted of a single chunk
- StoreError: store reads abort the request, store writes are best effort
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import requests
from openmeteo_requests.Client import OpenMeteoRequestsError
from sqlalchemy.exc import SQLAlchemyError

from openmeteo_client import (
    OpenMeteoAirQualityClient,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
    OpenMeteoForecastClient,
    OpenMeteoGeocodingClient,
)
from timeseries import (
    AIR_QUALITY_FIELDS,
    DAILY_FORECAST_FIELDS,
    WEATHER_FIELDS,
    Chunk,
    ParseError,
    ProviderMode,
    aggregate,
    compute_averages,
    empty_series,
    field_names,
    fill_gaps,
    merge_series,
    parse_current,
    parse_series,
    plan_chunks,
    request_variables,
    to_utc,
)
from weather_models import (
    AirQualityMeasurement,
    Location,
    MeasurementBase,
    WeatherDatabase,
    WeatherMeasurement,
)

SOURCE = "OPEN_METEO"

PROVIDER_ERRORS = (requests.RequestException, OpenMeteoRequestsError, ParseError)

MAX_FORECAST_DAYS = 16

SNAPSHOT_DAYS = 7


class InvalidWindowError(ValueError):
    """Raised when a request window does not satisfy start < end."""


class LocationNotFoundError(LookupError):
    """Raised when a location key has no directory entry."""


class ProviderFetchError(RuntimeError):
    """Raised when a single-reading provider call fails."""


class StoreError(RuntimeError):
    """Raised when reading from the store fails."""


@dataclass(frozen=True)
class ChunkOutcome:
    """Result of fetching one chunk: either a series or the error that emptied it.

    Attributes:
        chunk (Chunk): The chunk that was fetched.
        series (Optional[pd.DataFrame]): Parsed series when the fetch succeeded.
        error (Optional[Exception]): Failure that degraded the chunk to zero points.
    """

    chunk: Chunk
    series: Optional[pd.DataFrame] = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class CurrentResult:
    location: Location
    series: pd.DataFrame
    source: str = SOURCE


@dataclass(frozen=True)
class HistoryResult:
    location: Location
    interval: str
    series: pd.DataFrame
    source: str = SOURCE
    outcomes: Tuple[ChunkOutcome, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class LiveWindowResult:
    averages: Dict[str, Optional[float]]
    series: pd.DataFrame
    outcomes: Tuple[ChunkOutcome, ...] = field(default_factory=tuple)


def validate_window(
    start: datetime | pd.Timestamp, end: datetime | pd.Timestamp
) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Normalise a request window to UTC and check start < end.

    Raises:
        InvalidWindowError: When start or end is missing or start >= end.

    Returns:
        Tuple[pd.Timestamp, pd.Timestamp]: (start, end) in UTC.
    """
    if start is None or end is None:
        raise InvalidWindowError("Invalid time window: start and end are required.")

    start, end = to_utc(start), to_utc(end)

    if not start < end:
        raise InvalidWindowError(
            f"Invalid time window: start {start.isoformat()} is not before end {end.isoformat()}."
        )

    return start, end


def utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


class MeasurementService:
    """Shared plumbing of the measurement services.

    Attributes:
        config: OpenMeteoClientConfig instance
        database: WeatherDatabase used as location directory and measurement store
        clock: Callable returning the current UTC time
        logger: Configured logger
    """

    def __init__(
        self,
        config: OpenMeteoClientConfig,
        database: WeatherDatabase,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> None:
        self.config = config
        self.database = database
        self.clock = clock

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

    def now(self) -> pd.Timestamp:
        return to_utc(self.clock())

    def today(self) -> date:
        return self.now().date()

    def require_location(self, location_id: str) -> Location:
        """Look up a location or fail.

        Raises:
            LocationNotFoundError: When the key has no directory entry.
            StoreError: When the directory cannot be read.
        """
        try:
            location = self.database.get_location(location_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Cannot read location {location_id}") from e

        if location is None:
            raise LocationNotFoundError(f"Location not found: {location_id}")

        return location

    def read_store(
        self,
        table: type[MeasurementBase],
        location_id: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> pd.DataFrame:
        try:
            return self.database.read_series(table, location_id, start, end)
        except SQLAlchemyError as e:
            raise StoreError(
                f"Cannot read {table.__tablename__} for location {location_id}"
            ) from e

    def write_store(
        self,
        table: type[MeasurementBase],
        location_id: str,
        series: pd.DataFrame,
        source: Optional[str] = None,
    ) -> int:
        """Persist a series as best-effort cache. Failures are logged and reported as 0 points."""
        if series.empty:
            return 0

        try:
            return self.database.upsert_series(table, location_id, series, source=source)
        except SQLAlchemyError as e:
            self.logger.warning(
                f"Could not persist {len(series)} points to {table.__tablename__} for location {location_id}: {e}"
            )
            return 0

    def raise_single_chunk_parse_failure(self, outcomes: Sequence[ChunkOutcome]) -> None:
        """Surface a parse failure when the request had exactly one chunk."""
        if len(outcomes) == 1 and isinstance(outcomes[0].error, ParseError):
            raise outcomes[0].error


class WeatherService(MeasurementService):
    """Weather readings and histories from the archive and forecast endpoints.

    Example:
        service = WeatherService(config, database, archive_client, forecast_client)
        result = service.fetch_history("waw", start, end, "3h")
    """

    CURRENT_HOURLY_FALLBACK = ("precipitation", "cloud_cover")

    def __init__(
        self,
        config: OpenMeteoClientConfig,
        database: WeatherDatabase,
        archive_client: OpenMeteoArchiveClient,
        forecast_client: OpenMeteoForecastClient,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> None:
        super().__init__(config, database, clock)

        self.clients = {
            ProviderMode.ARCHIVE: archive_client,
            ProviderMode.FORECAST: forecast_client,
        }

    def fetch_current(self, location_id: str) -> CurrentResult:
        """Fetch, persist and return the latest weather reading.

        Raises:
            LocationNotFoundError: When the location is unknown.
            ProviderFetchError: When the provider call fails.
            ParseError: When the response has no usable current section.

        Returns:
            CurrentResult: One-row series with the reading.
        """
        location = self.require_location(location_id)
        latitude, longitude = location.coordinates

        current_fields = [
            spec for spec in WEATHER_FIELDS if spec.name in self.CURRENT_HOURLY_FALLBACK
        ]

        try:
            document = self.clients[ProviderMode.FORECAST].current(
                latitude,
                longitude,
                request_variables(WEATHER_FIELDS),
                [spec.variable for spec in current_fields],
            )
        except (requests.RequestException, OpenMeteoRequestsError) as e:
            raise ProviderFetchError(
                f"Cannot fetch current weather for location {location_id}"
            ) from e

        series = parse_current(
            document,
            WEATHER_FIELDS,
            hourly_fallback=self.CURRENT_HOURLY_FALLBACK,
            tz=self.config.timezone,
        )

        self.write_store(WeatherMeasurement, location.id, series, source=SOURCE)

        return CurrentResult(location=location, series=series)

    def fetch_chunk(
        self,
        location: Location,
        chunk: Chunk,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> ChunkOutcome:
        """Fetch and parse one chunk. Provider and parse failures degrade to an empty outcome."""
        latitude, longitude = location.coordinates

        try:
            document = self.clients[chunk.mode].fetch(
                latitude,
                longitude,
                request_variables(WEATHER_FIELDS),
                chunk.start,
                chunk.end,
            )
            series = parse_series(
                document, WEATHER_FIELDS, start, end, tz=self.config.timezone
            )
        except PROVIDER_ERRORS as e:
            self.logger.warning(
                f"{chunk.mode.value} chunk {chunk.start} - {chunk.end} for location {location.id} produced no points: {e}"
            )
            return ChunkOutcome(chunk=chunk, error=e)

        return ChunkOutcome(chunk=chunk, series=series)

    def fetch_history(
        self,
        location_id: str,
        start: datetime | pd.Timestamp,
        end: datetime | pd.Timestamp,
        interval: str = "1h",
    ) -> HistoryResult:
        """Build the weather series of a window from the providers and the store.

        Args:
            location_id (str): Location key.
            start (datetime | pd.Timestamp): Window start.
            end (datetime | pd.Timestamp): Window end.
            interval (str, optional): Aggregation interval label. Defaults to "1h".

        Raises:
            InvalidWindowError: When start >= end.
            LocationNotFoundError: When the location is unknown.
            ParseError: When the only chunk of the request could not be parsed.
            StoreError: When the store cannot be read.

        Returns:
            HistoryResult: Aggregated series with the chunk outcomes.
        """
        start, end = validate_window(start, end)
        location = self.require_location(location_id)

        chunks = plan_chunks(
            start, end, today=self.today(), recent_days=self.config.recent_days
        )

        outcomes = [self.fetch_chunk(location, chunk, start, end) for chunk in chunks]
        self.raise_single_chunk_parse_failure(outcomes)

        columns = field_names(WEATHER_FIELDS)
        fetched = [outcome.series for outcome in outcomes if not outcome.failed]

        self.write_store(
            WeatherMeasurement,
            location.id,
            merge_series(empty_series(columns), *fetched),
            source=SOURCE,
        )

        stored = self.read_store(WeatherMeasurement, location.id, start, end)
        merged = merge_series(stored.reindex(columns=columns), *fetched)

        self.logger.info(
            f"History for location {location.id}: {len(stored)} stored, {sum(len(series) for series in fetched)} fetched, {len(merged)} merged points"
        )

        return HistoryResult(
            location=location,
            interval=interval,
            series=aggregate(merged, interval),
            outcomes=tuple(outcomes),
        )


class AirQualityService(MeasurementService):
    """Air-quality live windows and stored histories."""

    def __init__(
        self,
        config: OpenMeteoClientConfig,
        database: WeatherDatabase,
        air_quality_client: OpenMeteoAirQualityClient,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> None:
        super().__init__(config, database, clock)

        self.client = air_quality_client

    def fetch_window(
        self, location: Location, start: pd.Timestamp, end: pd.Timestamp
    ) -> ChunkOutcome:
        """Fetch and parse the air-quality samples between start and end.

        Samples later than the current time are dropped.
        """
        latitude, longitude = location.coordinates
        chunk = Chunk(start.date(), end.date(), ProviderMode.FORECAST)

        lower = start.floor("min")
        upper = min(end.floor("min"), self.now())

        try:
            document = self.client.fetch(
                latitude,
                longitude,
                request_variables(AIR_QUALITY_FIELDS),
                lower,
                upper,
            )
            series = parse_series(
                document, AIR_QUALITY_FIELDS, lower, upper, tz=self.config.timezone
            )
        except PROVIDER_ERRORS as e:
            self.logger.warning(
                f"Air quality fetch for location {location.id} produced no points: {e}"
            )
            return ChunkOutcome(chunk=chunk, error=e)

        return ChunkOutcome(chunk=chunk, series=series)

    def fetch_live_window(
        self,
        location_id: str,
        start: datetime | pd.Timestamp,
        end: datetime | pd.Timestamp,
    ) -> LiveWindowResult:
        """Fetch, persist and summarise the recent air-quality window.

        The returned series spans live_window_hours hours ending at the latest
        observed hour, with all-null points for missing hours. When neither
        the provider nor the store has any data the series is empty and every
        average is None.

        Raises:
            InvalidWindowError: When start >= end.
            LocationNotFoundError: When the location is unknown.
            ParseError: When the provider response could not be parsed.
            StoreError: When the store cannot be read.

        Returns:
            LiveWindowResult: Averages and hourly series.
        """
        start, end = validate_window(start, end)
        location = self.require_location(location_id)
        columns = field_names(AIR_QUALITY_FIELDS)

        outcome = self.fetch_window(location, start, end)
        self.raise_single_chunk_parse_failure([outcome])

        fetched = [outcome.series] if not outcome.failed else []
        for series in fetched:
            self.write_store(AirQualityMeasurement, location.id, series)

        stored = self.read_store(AirQualityMeasurement, location.id, start, end)
        merged = merge_series(stored.reindex(columns=columns), *fetched)

        if merged.empty:
            return LiveWindowResult(
                averages={column: None for column in columns},
                series=empty_series(columns),
                outcomes=(outcome,),
            )

        latest = merged.index.max().floor("h")
        first = latest - pd.Timedelta(hours=self.config.live_window_hours - 1)

        series = fill_gaps(merged, first, latest, columns)

        return LiveWindowResult(
            averages=compute_averages(series, columns),
            series=series,
            outcomes=(outcome,),
        )

    def history_window(
        self,
        location_id: str,
        start: datetime | pd.Timestamp,
        end: datetime | pd.Timestamp,
    ) -> LiveWindowResult:
        """Return stored air-quality points of a window with their averages, without fetching.

        Raises:
            InvalidWindowError: When start >= end.
            LocationNotFoundError: When the location is unknown.
            StoreError: When the store cannot be read.
        """
        start, end = validate_window(start, end)
        location = self.require_location(location_id)
        columns = field_names(AIR_QUALITY_FIELDS)

        stored = self.read_store(AirQualityMeasurement, location.id, start, end)
        stored = stored.reindex(columns=columns)

        return LiveWindowResult(averages=compute_averages(stored, columns), series=stored)


@dataclass(frozen=True)
class City:
    id: str
    name: str
    latitude: float
    longitude: float


SNAPSHOT_CITIES: Tuple[City, ...] = (
    City("waw", "Warsaw", 52.2297, 21.0122),
    City("krk", "Kraków", 50.0647, 19.9450),
    City("ldz", "Łódź", 51.7592, 19.4550),
    City("wro", "Wrocław", 51.1079, 17.0385),
    City("poz", "Poznań", 52.4064, 16.9252),
    City("gda", "Gdańsk", 54.3520, 18.6466),
    City("szc", "Szczecin", 53.4285, 14.5528),
    City("lub", "Lublin", 51.2465, 22.5684),
    City("bia", "Białystok", 53.1325, 23.1688),
    City("rze", "Rzeszów", 50.0412, 21.9991),
    City("opl", "Opole", 50.6751, 17.9213),
    City("ols", "Olsztyn", 53.7784, 20.4801),
    City("tor", "Toruń", 53.0138, 18.5984),
    City("zgo", "Zielona Góra", 51.9356, 15.5062),
    City("kos", "Koszalin", 54.1940, 16.1720),
    City("kie", "Kielce", 50.8661, 20.6286),
)

# Day offset per snapshot range, None summarises the whole week
SNAPSHOT_RANGES: Dict[str, Optional[int]] = {
    "today": 0,
    "tomorrow": 1,
    "plus2": 2,
    "week": None,
}

SNAPSHOT_RANGE_ALIASES = {"+2": "plus2", "day2": "plus2", "7d": "week"}


@dataclass(frozen=True)
class CitySnapshot:
    city: City
    temperature_max: Optional[float] = None
    precipitation_probability_max: Optional[int] = None


@dataclass(frozen=True)
class SnapshotResult:
    range: str
    generated_at: pd.Timestamp
    cities: Tuple[CitySnapshot, ...] = field(default_factory=tuple)


def clamp_forecast_days(days: int) -> int:
    return max(1, min(days, MAX_FORECAST_DAYS))


def resolve_snapshot_range(value: Optional[str]) -> str:
    """Normalise a snapshot range label. Unknown or missing labels mean "today"."""
    if value is None:
        return "today"

    key = value.lower()
    key = SNAPSHOT_RANGE_ALIASES.get(key, key)

    return key if key in SNAPSHOT_RANGES else "today"


def summarise_days(
    daily: pd.DataFrame, offset: Optional[int]
) -> Tuple[Optional[float], Optional[int]]:
    """Pick the maximum temperature and precipitation probability of one forecast day.

    An offset past the last forecast day picks the last day. Without an offset
    the result is the mean maximum temperature and the highest precipitation
    probability over all days. Missing values are skipped.

    Returns:
        Tuple[Optional[float], Optional[int]]: (temperature_max, precipitation_probability_max)
    """
    if daily.empty:
        return None, None

    temperatures = daily["temperature_max"]
    probabilities = daily["precipitation_probability_max"]

    if offset is None:
        temperature = temperatures.mean()
        probability = probabilities.max()
    else:
        idx = min(offset, len(daily) - 1)
        temperature = temperatures.iloc[idx]
        probability = probabilities.iloc[idx]

    return (
        None if pd.isna(temperature) else float(temperature),
        None if pd.isna(probability) else int(probability),
    )


class ForecastService:
    """Daily forecasts for a coordinate and the country-wide city snapshot.

    Example:
        service = ForecastService(forecast_client)
        daily = service.daily(52.23, 21.01, days=10)
        snapshot = service.poland_snapshot("week")
    """

    def __init__(
        self,
        forecast_client: OpenMeteoForecastClient,
        clock: Callable[[], pd.Timestamp] = utc_now,
        cities: Sequence[City] = SNAPSHOT_CITIES,
    ) -> None:
        self.client = forecast_client
        self.clock = clock
        self.cities = tuple(cities)

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

    def now(self) -> pd.Timestamp:
        return to_utc(self.clock())

    def daily(
        self, latitude: float, longitude: float, days: int = SNAPSHOT_DAYS
    ) -> pd.DataFrame:
        """Fetch the daily forecast of a coordinate, starting today (UTC).

        Args:
            latitude (float): Latitude in decimal degrees.
            longitude (float): Longitude in decimal degrees.
            days (int, optional): Forecast days, clamped to 1..16. Defaults to 7.

        Raises:
            ProviderFetchError: When the provider call fails.
            ParseError: When the response has no daily section.

        Returns:
            pd.DataFrame: One row per day indexed by midnight UTC, with the
                temperature_max and precipitation_probability_max columns.
        """
        days = clamp_forecast_days(days)

        try:
            document = self.client.daily(
                latitude, longitude, request_variables(DAILY_FORECAST_FIELDS), days
            )
        except (requests.RequestException, OpenMeteoRequestsError) as e:
            raise ProviderFetchError(
                f"Cannot fetch daily forecast for {latitude}, {longitude}"
            ) from e

        today = self.now().normalize()

        return parse_series(
            document,
            DAILY_FORECAST_FIELDS,
            today - pd.Timedelta(days=1),
            today + pd.Timedelta(days=days),
            block="daily",
        )

    def poland_snapshot(self, range_key: Optional[str] = None) -> SnapshotResult:
        """Summarise the forecast of every snapshot city for one range.

        A city whose forecast cannot be fetched or parsed is reported without
        values. The other cities are not affected.

        Args:
            range_key (Optional[str]): today, tomorrow, plus2 or week.

        Returns:
            SnapshotResult: Resolved range, generation time and one entry per city.
        """
        key = resolve_snapshot_range(range_key)
        offset = SNAPSHOT_RANGES[key]

        snapshots = []
        for city in self.cities:
            try:
                daily = self.daily(city.latitude, city.longitude, SNAPSHOT_DAYS)
            except (ProviderFetchError, ParseError) as e:
                self.logger.warning(f"Forecast for {city.name} produced no values: {e}")
                daily = empty_series(field_names(DAILY_FORECAST_FIELDS))

            temperature, probability = summarise_days(daily, offset)
            snapshots.append(
                CitySnapshot(
                    city=city,
                    temperature_max=temperature,
                    precipitation_probability_max=probability,
                )
            )

        self.logger.info(f"Built {key} snapshot for {len(snapshots)} cities")

        return SnapshotResult(range=key, generated_at=self.now(), cities=tuple(snapshots))


class LocationDirectory:
    """Location search backed by the store, with geocoding for unknown names."""

    def __init__(
        self, database: WeatherDatabase, geocoding_client: OpenMeteoGeocodingClient
    ) -> None:
        self.database = database
        self.geocoding_client = geocoding_client

        self.logger = logging.getLogger(name=self.__class__.__name__)

    def search(self, query: str, count: int = 5) -> List[Location]:
        """Find locations by name.

        Stored entries matching the name are returned as they are. Otherwise
        the geocoding endpoint is queried and its results are saved.

        Args:
            query (str): Place name.
            count (int, optional): Maximum number of geocoding results. Defaults to 5.

        Returns:
            List[Location]: Matching locations.
        """
        cached = list(self.database.find_locations_by_name(query))
        if cached:
            return cached

        results: List[Dict[str, Any]] = self.geocoding_client.search(query, count)
        if not results:
            self.logger.info(f"No locations found for '{query}'")
            return []

        return self.database.save_locations(results)
