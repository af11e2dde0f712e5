"""
Measurement Service Frontend API

A RESTful FastAPI application that serves weather and air-quality time series.
Requests are answered from the OpenMeteo providers and the PostgreSQL store:
fresh provider data is persisted, merged with what is already stored and
returned as one series per request window.

Features:
    - Health check endpoint for monitoring database connectivity
    - Location search (stored directory first, OpenMeteo geocoding otherwise)
    - Current weather reading per location
    - Weather history for arbitrary windows, aggregated to 1h/3h/6h/12h/1d
    - Live 24 hour air-quality window with gap filling and averages
    - Stored 24 hour air-quality history with averages
    - Daily forecast (maximum temperature, precipitation probability) per coordinate
    - Country-wide forecast snapshot for the major Polish cities

Concurrency:
    Handlers are plain functions and run in the FastAPI threadpool, so slow
    provider calls do not block other requests. Each request works on the
    database session of its worker thread and releases it when done.

Endpoints:
    GET  /health - Service and database health status
    GET  /api/locations/search - Locations matching a name
    GET  /api/weather/current - Latest weather reading of a location
    GET  /api/weather/history - Weather series of a window
    POST /api/air-quality/live/{location_id}/last24h - Live air-quality window
    GET  /api/air-quality/history/{location_id}/last24h - Stored air-quality window
    GET  /api/forecast/daily - Daily forecast of a coordinate
    GET  /api/forecast/pl-snapshot - Forecast snapshot of the major Polish cities

Error Mapping:
    - 400: Invalid time window (from is not before to)
    - 404: Unknown location
    - 502: Provider request or response parsing failed
    - 503: Store unavailable or services not initialized

Dependencies:
    - FastAPI: Web framework for building APIs
    - Pydantic: Data validation and serialization
    - measurement_service: Weather, air-quality and location services
    - weather_models: Database models and connection management
"""

from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime
from typing import Annotated, Any, Dict, Iterator, List, Optional

import pandas as pd
import requests
from fastapi import FastAPI, HTTPException, Query
from openmeteo_requests.Client import OpenMeteoRequestsError
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from measurement_service import (
    SNAPSHOT_DAYS,
    AirQualityService,
    ForecastService,
    InvalidWindowError,
    LiveWindowResult,
    LocationDirectory,
    LocationNotFoundError,
    ProviderFetchError,
    SnapshotResult,
    StoreError,
    WeatherService,
    clamp_forecast_days,
)
from openmeteo_client import (
    OpenMeteoAirQualityClient,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
    OpenMeteoForecastClient,
    OpenMeteoGeocodingClient,
)
from timeseries import ParseError, series_to_records
from weather_models import Location, WeatherDatabase

SERVICE_NOT_INITIALIZED_MESSAGE = "Service not initialized"

SERVICE_ERRORS = (
    InvalidWindowError,
    LocationNotFoundError,
    ProviderFetchError,
    ParseError,
    StoreError,
    SQLAlchemyError,
    requests.RequestException,
    OpenMeteoRequestsError,
)


class LocationResponse(BaseModel):
    id: str
    name: Optional[str]
    admin: Optional[str] = None
    country: Optional[str] = None
    latitude: float
    longitude: float


class WeatherPointResponse(BaseModel):
    time: datetime
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    precipitation: Optional[float] = None
    cloud_cover: Optional[float] = None


class CurrentWeatherResponse(WeatherPointResponse):
    location_id: str
    source: str


class WeatherHistoryResponse(BaseModel):
    location_id: str
    interval: str
    source: str
    series: List[WeatherPointResponse]


class AirQualityValues(BaseModel):
    pm10: Optional[float] = None
    pm2_5: Optional[float] = None
    co: Optional[float] = None
    co2: Optional[float] = None
    no2: Optional[float] = None
    so2: Optional[float] = None
    o3: Optional[float] = None
    ch4: Optional[float] = None
    uv: Optional[float] = None


class AirQualityPointResponse(AirQualityValues):
    time: datetime


class AirQualityWindowResponse(BaseModel):
    averages: AirQualityValues
    series: List[AirQualityPointResponse]


class DailyForecastResponse(BaseModel):
    latitude: float
    longitude: float
    days: int
    dates: List[date]
    temperature_max: List[Optional[float]]
    precipitation_probability_max: List[Optional[int]]


class CitySnapshotResponse(BaseModel):
    id: str
    name: str
    latitude: float
    longitude: float
    temperature_max: Optional[float] = None
    precipitation_probability_max: Optional[int] = None


class PolandSnapshotResponse(BaseModel):
    range: str
    generated_at: datetime
    cities: List[CitySnapshotResponse]


class HealthResponse(BaseModel):
    status: str
    database: str
    message: Optional[str] = None


config: Optional[OpenMeteoClientConfig] = None
database: Optional[WeatherDatabase] = None
weather_service: Optional[WeatherService] = None
air_quality_service: Optional[AirQualityService] = None
location_directory: Optional[LocationDirectory] = None
forecast_service: Optional[ForecastService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan definition of FastAPI app.

    - Loads the provider configuration and establishes the database connection on startup.
    - Builds the measurement and forecast services.
    - Closes database connection on shutdown.

    Args:
        app (FastAPI): FastAPI instance.
    """
    global config, database, weather_service, air_quality_service, location_directory, forecast_service
    try:
        config = OpenMeteoClientConfig(create_from_file=True)
        database = WeatherDatabase()
        database.create_tables()

        forecast_client = OpenMeteoForecastClient(config)

        weather_service = WeatherService(
            config,
            database,
            OpenMeteoArchiveClient(config),
            forecast_client,
        )
        air_quality_service = AirQualityService(
            config, database, OpenMeteoAirQualityClient(config)
        )
        location_directory = LocationDirectory(
            database, OpenMeteoGeocodingClient(config)
        )
        forecast_service = ForecastService(forecast_client)
        yield
    finally:
        if database:
            database.close()


app = FastAPI(
    title="Measurement Service API",
    description="RESTful API for weather and air-quality time series",
    version="1.0.0",
    lifespan=lifespan,
)


@contextmanager
def request_session() -> Iterator[None]:
    """Release the worker thread's database session once the wrapped store work is done."""
    try:
        yield
    finally:
        if database is not None:
            database.release_session()


def to_http_exception(error: Exception) -> HTTPException:
    """Map a service error onto its HTTP status."""
    if isinstance(error, InvalidWindowError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, LocationNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (StoreError, SQLAlchemyError)):
        return HTTPException(status_code=503, detail=f"Store unavailable: {error}")
    return HTTPException(status_code=502, detail=f"Provider request failed: {error}")


def live_window(hours: int) -> tuple[pd.Timestamp, pd.Timestamp]:
    end = pd.Timestamp.now(tz="UTC")
    return end - pd.Timedelta(hours=hours), end


def location_response(location: Location) -> LocationResponse:
    latitude, longitude = location.coordinates
    return LocationResponse(
        id=location.id,
        name=location.name,
        admin=location.admin,
        country=location.country,
        latitude=latitude,
        longitude=longitude,
    )


def air_quality_response(result: LiveWindowResult) -> AirQualityWindowResponse:
    return AirQualityWindowResponse(
        averages=AirQualityValues(**result.averages),
        series=[
            AirQualityPointResponse(**record)
            for record in series_to_records(result.series)
        ],
    )


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Health check endpoint that verifies database connectivity

    Raises:
        HTTPException: Status 503 when the database is not initialized or not reachable.

    Returns:
        HealthResponse: HealthResponse object.
    """
    try:
        if database is None:
            raise RuntimeError("Database not initialized")

        with request_session():
            connected = database.connectivity_test()

        if connected:
            return HealthResponse(
                status="healthy",
                database="connected",
                message="Measurement database is accessible",
            )
    except (RuntimeError, SQLAlchemyError) as e:
        raise HTTPException(
            status_code=503,
            detail={"status": "unhealthy", "database": "disconnected", "error": str(e)},
        )

    raise HTTPException(
        status_code=503,
        detail={"status": "unhealthy", "database": "disconnected"},
    )


@app.get("/api/locations/search", response_model=List[LocationResponse])
def search_locations(
    query: Annotated[str, Query(min_length=1)],
    count: Annotated[int, Query(ge=1, le=100)] = 5,
) -> List[LocationResponse]:
    """Search locations by name.

    Args:
        query (str): Place name.
        count (int, optional): Maximum number of geocoding results. Defaults to 5.

    Raises:
        HTTPException: Status 502 when geocoding fails, 503 when the store fails.

    Returns:
        List[LocationResponse]: Matching locations.
    """
    if location_directory is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    try:
        with request_session():
            locations = location_directory.search(query, count)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    return [location_response(location) for location in locations]


@app.get("/api/weather/current", response_model=CurrentWeatherResponse)
def get_current_weather(
    location_id: Annotated[str, Query(alias="locationId")],
) -> CurrentWeatherResponse:
    """Fetch and persist the latest weather reading of a location.

    Raises:
        HTTPException: 404 for unknown locations, 502 for provider failures.

    Returns:
        CurrentWeatherResponse: The reading with its source.
    """
    if weather_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    try:
        with request_session():
            result = weather_service.fetch_current(location_id)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    record: Dict[str, Any] = series_to_records(result.series)[0]

    return CurrentWeatherResponse(
        location_id=result.location.id, source=result.source, **record
    )


@app.get("/api/weather/history", response_model=WeatherHistoryResponse)
def get_weather_history(
    location_id: Annotated[str, Query(alias="locationId")],
    start: Annotated[datetime, Query(alias="from")],
    end: Annotated[datetime, Query(alias="to")],
    interval: str = "1h",
) -> WeatherHistoryResponse:
    """Weather series of a window, aggregated to the requested interval.

    Args:
        location_id (str): Location key (query parameter locationId).
        start (datetime): Window start (query parameter from).
        end (datetime): Window end (query parameter to).
        interval (str, optional): 1h, 3h, 6h, 12h or 1d. Unknown values mean 1h.

    Raises:
        HTTPException: 400 for invalid windows, 404 for unknown locations,
            502 when the only chunk cannot be parsed, 503 for store failures.

    Returns:
        WeatherHistoryResponse: Aggregated series.
    """
    if weather_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    try:
        with request_session():
            result = weather_service.fetch_history(location_id, start, end, interval)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    return WeatherHistoryResponse(
        location_id=result.location.id,
        interval=result.interval,
        source=result.source,
        series=[
            WeatherPointResponse(**record)
            for record in series_to_records(result.series)
        ],
    )


@app.post(
    "/api/air-quality/live/{location_id}/last24h",
    response_model=AirQualityWindowResponse,
)
def refresh_air_quality(
    location_id: str,
    start: Annotated[Optional[datetime], Query(alias="from")] = None,
    end: Annotated[Optional[datetime], Query(alias="to")] = None,
) -> AirQualityWindowResponse:
    """Fetch, persist and return the live air-quality window of a location.

    Without from/to the window covers the last live_window_hours hours.

    Raises:
        HTTPException: 400 for invalid windows, 404 for unknown locations,
            502 for unparseable responses, 503 for store failures.

    Returns:
        AirQualityWindowResponse: Hourly series with averages.
    """
    if air_quality_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    default_start, default_end = live_window(air_quality_service.config.live_window_hours)

    try:
        with request_session():
            result = air_quality_service.fetch_live_window(
                location_id,
                start if start is not None else default_start,
                end if end is not None else default_end,
            )
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    return air_quality_response(result)


@app.get(
    "/api/air-quality/history/{location_id}/last24h",
    response_model=AirQualityWindowResponse,
)
def get_air_quality_history(location_id: str) -> AirQualityWindowResponse:
    """Stored air-quality points of the last live_window_hours hours with averages.

    Raises:
        HTTPException: 404 for unknown locations, 503 for store failures.

    Returns:
        AirQualityWindowResponse: Stored series with averages.
    """
    if air_quality_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    start, end = live_window(air_quality_service.config.live_window_hours)

    try:
        with request_session():
            result = air_quality_service.history_window(location_id, start, end)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    return air_quality_response(result)


def snapshot_response(snapshot: SnapshotResult) -> PolandSnapshotResponse:
    return PolandSnapshotResponse(
        range=snapshot.range,
        generated_at=snapshot.generated_at.to_pydatetime(),
        cities=[
            CitySnapshotResponse(
                id=entry.city.id,
                name=entry.city.name,
                latitude=entry.city.latitude,
                longitude=entry.city.longitude,
                temperature_max=entry.temperature_max,
                precipitation_probability_max=entry.precipitation_probability_max,
            )
            for entry in snapshot.cities
        ],
    )


@app.get("/api/forecast/daily", response_model=DailyForecastResponse)
def get_daily_forecast(
    lat: Annotated[float, Query(ge=-90, le=90)],
    lon: Annotated[float, Query(ge=-180, le=180)],
    days: int = SNAPSHOT_DAYS,
) -> DailyForecastResponse:
    """Daily maximum temperature and precipitation probability of a coordinate.

    Args:
        lat (float): Latitude in decimal degrees.
        lon (float): Longitude in decimal degrees.
        days (int, optional): Forecast days, clamped to 1..16. Defaults to 7.

    Raises:
        HTTPException: 502 when the provider request or its response fails.

    Returns:
        DailyForecastResponse: One entry per forecast day.
    """
    if forecast_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    try:
        daily = forecast_service.daily(lat, lon, days)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e

    return DailyForecastResponse(
        latitude=lat,
        longitude=lon,
        days=clamp_forecast_days(days),
        dates=[timestamp.date() for timestamp in daily.index],
        temperature_max=[
            None if pd.isna(value) else float(value)
            for value in daily["temperature_max"]
        ],
        precipitation_probability_max=[
            None if pd.isna(value) else int(value)
            for value in daily["precipitation_probability_max"]
        ],
    )


@app.get("/api/forecast/pl-snapshot", response_model=PolandSnapshotResponse)
def get_poland_snapshot(
    range_key: Annotated[str, Query(alias="range")] = "today",
) -> PolandSnapshotResponse:
    """Forecast snapshot of the major Polish cities for one range.

    Unknown range labels are answered as "today".

    Args:
        range_key (str, optional): today, tomorrow, plus2 or week (query parameter range).

    Returns:
        PolandSnapshotResponse: One entry per city.
    """
    if forecast_service is None:
        raise HTTPException(status_code=503, detail=SERVICE_NOT_INITIALIZED_MESSAGE)

    return snapshot_response(forecast_service.poland_snapshot(range_key))
