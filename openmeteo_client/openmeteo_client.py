"""OpenMeteo API Client Library for Weather and Air-Quality Data Retrieval

This module provides the provider layer of the measurement service. It wraps the
OpenMeteo archive, forecast, air-quality and geocoding endpoints and turns their
responses into plain, JSON-like documents that the time series engine parses.

Core Components:

Configuration Management:
- OpenMeteoClientConfig: Configuration system supporting JSON files and kwargs
- Parameter validation and type conversion
- Cache, retry and provider timezone settings

API Client Architecture:
- OpenMeteoClient: Abstract base class over openmeteo_requests.Client
- OpenMeteoArchiveClient: Historical hourly data (archive endpoint)
- OpenMeteoForecastClient: Recent and forecast hourly data, current readings
  and daily forecasts
- OpenMeteoAirQualityClient: Hourly air-quality data
- OpenMeteoGeocodingClient: Location search by name

Response Documents:
    Every fetch returns a document shaped like the OpenMeteo JSON format:

        {
            "latitude": float,
            "longitude": float,
            "hourly": {
                "time": ["YYYY-MM-DDTHH:MMZ", ...],
                "<variable>": [float, ...],
                ...
            }
        }

    Timestamps are rendered in UTC with an explicit "Z" suffix. Missing values
    are NaN as delivered by the flatbuffer SDK. A response without the requested
    section yields a document without it, so structural failures are detected
    by the parser rather than here.

API Endpoints Supported:
- Archive:     https://archive-api.open-meteo.com/v1/archive
- Forecast:    https://api.open-meteo.com/v1/forecast
- Air quality: https://air-quality-api.open-meteo.com/v1/air-quality
- Geocoding:   https://geocoding-api.open-meteo.com/v1/search

Usage Patterns:

Historical Data Retrieval:\n
    config = OpenMeteoClientConfig(create_from_file=True)
    archive_client = OpenMeteoArchiveClient(config)
    document = archive_client.fetch(52.23, 21.01, ["temperature_2m"], start_date, end_date)

Configuration Management:
    From file with overrides:\n
        config = OpenMeteoClientConfig(
            create_from_file=True,
            config_file="/path/to/config.json",
            kwargs={"recent_days": 5}
        )

Dependencies:
- openmeteo_requests: Official OpenMeteo SDK for API communication
- openmeteo_sdk: Flatbuffer response types
- pandas: Timestamp construction
- requests_cache: HTTP caching
- retry_requests: Transport level retry configuration
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import InitVar, dataclass, field
from datetime import date
from typing import Any, Dict, List, Sequence

import openmeteo_requests
import pandas as pd
import requests
import requests_cache
from openmeteo_sdk.WeatherApiResponse import WeatherApiResponse
from retry_requests import retry

TIME_FORMAT = "%Y-%m-%dT%H:%MZ"
HOUR_FORMAT = "%Y-%m-%dT%H:%M"
DATE_FORMAT = "%Y-%m-%d"


@dataclass
class OpenMeteoClientConfig:
    """Configuration class for the OpenMeteo provider layer.

    Supports initialization from a JSON configuration file, from kwargs, or from
    a file with kwargs overrides.

    Attributes:
        recent_days (int): Days before today still served by the forecast endpoint.
        live_window_hours (int): Length of the live air-quality window in hours.
        timezone (str): Provider timezone used for requests and naive timestamps.
        cache_name (str): Name or path of the HTTP cache.
        cache_backend (str): requests_cache backend ("sqlite", "memory", ...).
        cache_expire_after (int): Cache lifetime in seconds.
        retries (int): Transport level retries per HTTP request.
        backoff_factor (float): Backoff factor between transport retries.
        geocoding_language (str): Language of geocoding results.

    Configuration File Schema:
        {
            "recent_days": int,
            "live_window_hours": int,
            "timezone": str,
            "cache_name": str,
            "cache_backend": str,
            "cache_expire_after": int,
            "retries": int,
            "backoff_factor": float,
            "geocoding_language": str
        }
    """

    recent_days: int = field(init=False)
    live_window_hours: int = field(init=False)
    timezone: str = field(init=False)
    cache_name: str = field(init=False)
    cache_backend: str = field(init=False)
    cache_expire_after: int = field(init=False)
    retries: int = field(init=False)
    backoff_factor: float = field(init=False)
    geocoding_language: str = field(init=False)
    create_from_file: InitVar[bool] = field(default=False)
    config_file: InitVar[str | None] = field(default=None)
    kwargs: InitVar[Dict[str, Any] | None] = field(default=None)

    KEYS = (
        "recent_days",
        "live_window_hours",
        "timezone",
        "cache_name",
        "cache_backend",
        "cache_expire_after",
        "retries",
        "backoff_factor",
        "geocoding_language",
    )

    def __post_init__(
        self,
        create_from_file: bool,
        config_file: str | None,
        kwargs: Dict[str, Any] | None,
    ):
        """Initialize OpenMeteoClientConfig from file or kwargs with validation.

        Args:
            create_from_file (bool): Whether to load base configuration from file.
                When True, loads config_file or the default location.
            config_file (str | None): Path to JSON configuration file. If None and
                create_from_file=True, uses {cwd}/config/{CONFIG_FILE env var or config.json}
            kwargs (Dict[str, Any] | None): Direct parameter values or overrides.
                Required when create_from_file=False.

        Raises:
            ValueError: When create_from_file=False but kwargs is None
            ValueError: When parameter validation fails
        """
        if create_from_file:
            if not config_file:
                config_file = os.path.join(
                    os.getcwd(),
                    "config",
                    os.getenv("CONFIG_FILE", "config.json"),
                )

            config = self.__get_config(config_file)

            for key in OpenMeteoClientConfig.KEYS:
                self.__set(key, config.get(key))

            if kwargs:
                self.__overwrite_kwargs(kwargs)

        else:
            if kwargs:
                for key in OpenMeteoClientConfig.KEYS:
                    self.__set(key, kwargs.get(key))
            else:
                raise ValueError("Kwargs are required when create_from_file=False.")

    def __get_config(self, config_file: str) -> Dict[str, Any]:
        with open(file=config_file, mode="r") as file:
            config = json.load(fp=file)

        return config

    def __set(self, key: str, value: Any) -> None:
        """Validate and set a single configuration attribute.

        Raises:
            ValueError: When the value has the wrong type or is out of range.
        """
        if key in ("recent_days", "live_window_hours"):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(
                    f"Kwarg {key} is required when create_from_file=False. Expected {int} Received {type(value)} instead."
                )
            if value <= 0:
                raise ValueError(f"Parameter {key} must be >0. Got {value}")
        elif key in ("cache_expire_after", "retries"):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(
                    f"Kwarg {key} is required when create_from_file=False. Expected {int} Received {type(value)} instead."
                )
            if value < 0:
                raise ValueError(f"Parameter {key} must be >=0. Got {value}")
        elif key == "backoff_factor":
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValueError(
                    f"Kwarg {key} is required when create_from_file=False. Expected {float} Received {type(value)} instead."
                )
            if value < 0:
                raise ValueError(f"Parameter {key} must be >=0. Got {value}")
            value = float(value)
        elif not isinstance(value, str) or not value:
            raise ValueError(
                f"Kwarg {key} is required when create_from_file=False. Expected non-empty {str} Received {type(value)} instead."
            )

        setattr(self, key, value)

    def __overwrite_kwargs(self, kwargs: Dict[str, Any]) -> None:
        """Override configuration file parameters with the kwargs present."""
        for key in OpenMeteoClientConfig.KEYS:
            if key in kwargs:
                self.__set(key, kwargs[key])


def build_session(config: OpenMeteoClientConfig) -> requests.Session:
    """Create a cached HTTP session with retry configuration.

    Args:
        config (OpenMeteoClientConfig): Cache and retry settings.

    Returns:
        requests.Session: Cached session wrapped with retry_requests.
    """
    return retry(
        requests_cache.CachedSession(
            config.cache_name,
            backend=config.cache_backend,
            expire_after=config.cache_expire_after,
        ),
        retries=config.retries,
        backoff_factor=config.backoff_factor,
    )


class OpenMeteoClient(ABC, openmeteo_requests.Client):
    """Abstract base class for OpenMeteo time series clients.

    Subclasses define the endpoint URL and the request parameters for one
    provider mode. The base class performs the request through the flatbuffer
    SDK and converts the first response into a parallel-array document.

    Attributes:
        URL (str): Endpoint URL, defined by subclasses.
        config: OpenMeteoClientConfig instance
        logger: Configured logger for operation monitoring
    """

    URL: str = ""

    def __init__(self, config: OpenMeteoClientConfig):
        super().__init__(build_session(config))  # type: ignore

        self.config = config

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

        self.logger.info(f"Setting up {self.__class__.__name__}")

    @abstractmethod
    def fetch(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        start: Any,
        end: Any,
    ) -> Dict[str, Any]:
        """Retrieve hourly data for one location and range (abstract method).

        Returns:
            Dict[str, Any]: Document with an "hourly" parallel-array section.
        """
        pass

    def hourly_section(
        self, response: WeatherApiResponse, variables: Sequence[str]
    ) -> Dict[str, Any] | None:
        """Convert the hourly part of an SDK response into parallel arrays.

        Args:
            response (WeatherApiResponse): Single API response.
            variables (Sequence[str]): Requested variables, in request order.

        Returns:
            Dict[str, Any] | None: {"time": [...], variable: [...]} or None when
                the response has no hourly section.
        """
        return self._parallel_arrays(response.Hourly(), variables, TIME_FORMAT)

    def daily_section(
        self, response: WeatherApiResponse, variables: Sequence[str]
    ) -> Dict[str, Any] | None:
        """Convert the daily part of an SDK response into parallel arrays keyed by "YYYY-MM-DD"."""
        return self._parallel_arrays(response.Daily(), variables, DATE_FORMAT)

    @staticmethod
    def _parallel_arrays(
        block: Any, variables: Sequence[str], time_format: str
    ) -> Dict[str, Any] | None:
        if block is None:
            return None

        times = pd.date_range(
            start=pd.to_datetime(block.Time(), unit="s", utc=True),
            end=pd.to_datetime(block.TimeEnd(), unit="s", utc=True),
            freq=pd.Timedelta(seconds=block.Interval()),
            inclusive="left",
        )

        section: Dict[str, Any] = {"time": times.strftime(time_format).tolist()}

        for idx, variable in enumerate(variables):
            section[variable] = block.Variables(idx).ValuesAsNumpy().tolist()

        return section

    def current_section(
        self, response: WeatherApiResponse, variables: Sequence[str]
    ) -> Dict[str, Any] | None:
        """Convert the current part of an SDK response into a flat mapping."""
        current = response.Current()

        if current is None:
            return None

        section: Dict[str, Any] = {
            "time": pd.to_datetime(current.Time(), unit="s", utc=True).strftime(
                TIME_FORMAT
            )
        }

        for idx, variable in enumerate(variables):
            section[variable] = current.Variables(idx).Value()

        return section

    def request(self, params: Dict[str, Any]) -> WeatherApiResponse:
        """Send one request to the client's endpoint and return the first response."""
        responses = self.weather_api(self.URL, params=params)

        return responses[0]

    def _fetch_hourly(
        self, params: Dict[str, Any], variables: Sequence[str]
    ) -> Dict[str, Any]:
        response = self.request(params)

        document: Dict[str, Any] = {
            "latitude": response.Latitude(),
            "longitude": response.Longitude(),
        }

        hourly = self.hourly_section(response, variables)
        if hourly is not None:
            document["hourly"] = hourly

        return document


class OpenMeteoArchiveClient(OpenMeteoClient):
    """OpenMeteo Archive API client for historical hourly data.

    Serves every date before the recent cutoff. Data is quality controlled and
    typically lags a few days behind the present.
    """

    URL = "https://archive-api.open-meteo.com/v1/archive"

    def fetch(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        start: date,
        end: date,
    ) -> Dict[str, Any]:
        """Retrieve historical hourly data.

        Args:
            latitude (float): Latitude of the location.
            longitude (float): Longitude of the location.
            variables (Sequence[str]): OpenMeteo hourly variables.
            start (date): First date (inclusive).
            end (date): Last date (inclusive).

        Returns:
            Dict[str, Any]: Parallel-array document.
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": list(variables),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "timezone": self.config.timezone,
        }

        self.logger.info(
            f"Retrieving historic data for Lat.: {latitude}° (N), Lon.: {longitude}° (E) from {start} to {end}"
        )

        return self._fetch_hourly(params, variables)


class OpenMeteoForecastClient(OpenMeteoClient):
    """OpenMeteo Forecast API client for recent, forecast and current data."""

    URL = "https://api.open-meteo.com/v1/forecast"

    def fetch(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        start: date,
        end: date,
    ) -> Dict[str, Any]:
        """Retrieve recent or forecast hourly data for a date range.

        Args:
            latitude (float): Latitude of the location.
            longitude (float): Longitude of the location.
            variables (Sequence[str]): OpenMeteo hourly variables.
            start (date): First date (inclusive).
            end (date): Last date (inclusive).

        Returns:
            Dict[str, Any]: Parallel-array document.
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": list(variables),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "timezone": self.config.timezone,
        }

        self.logger.info(
            f"Retrieving forecast data for Lat.: {latitude}° (N), Lon.: {longitude}° (E) from {start} to {end}"
        )

        return self._fetch_hourly(params, variables)

    def current(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        hourly_variables: Sequence[str],
    ) -> Dict[str, Any]:
        """Retrieve the current reading plus the surrounding hourly values.

        The hourly values are used to fill current variables the model does not
        report at sub-hourly resolution.

        Returns:
            Dict[str, Any]: Document with a "current" and an "hourly" section.
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": list(variables),
            "hourly": list(hourly_variables),
            "past_hours": 1,
            "forecast_hours": 1,
            "timezone": self.config.timezone,
        }

        self.logger.info(
            f"Retrieving current data for Lat.: {latitude}° (N), Lon.: {longitude}° (E)"
        )

        response = self.request(params)

        document: Dict[str, Any] = {
            "latitude": response.Latitude(),
            "longitude": response.Longitude(),
        }

        current = self.current_section(response, variables)
        if current is not None:
            document["current"] = current

        hourly = self.hourly_section(response, hourly_variables)
        if hourly is not None:
            document["hourly"] = hourly

        return document


    def daily(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        days: int,
    ) -> Dict[str, Any]:
        """Retrieve daily forecast values starting today (UTC).

        Args:
            latitude (float): Latitude of the location.
            longitude (float): Longitude of the location.
            variables (Sequence[str]): OpenMeteo daily variables.
            days (int): Number of forecast days, today included.

        Returns:
            Dict[str, Any]: Document with a "daily" parallel-array section.
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "daily": list(variables),
            "forecast_days": days,
            "timezone": "UTC",
        }

        self.logger.info(
            f"Retrieving {days} day forecast for Lat.: {latitude}° (N), Lon.: {longitude}° (E)"
        )

        response = self.request(params)

        document: Dict[str, Any] = {
            "latitude": response.Latitude(),
            "longitude": response.Longitude(),
        }

        daily = self.daily_section(response, variables)
        if daily is not None:
            document["daily"] = daily

        return document


class OpenMeteoAirQualityClient(OpenMeteoClient):
    """OpenMeteo Air Quality API client for hourly pollutant data."""

    URL = "https://air-quality-api.open-meteo.com/v1/air-quality"

    def fetch(
        self,
        latitude: float,
        longitude: float,
        variables: Sequence[str],
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> Dict[str, Any]:
        """Retrieve hourly air-quality data between two instants.

        Args:
            latitude (float): Latitude of the location.
            longitude (float): Longitude of the location.
            variables (Sequence[str]): OpenMeteo air-quality variables.
            start (pd.Timestamp): Window start (UTC).
            end (pd.Timestamp): Window end (UTC).

        Returns:
            Dict[str, Any]: Parallel-array document.
        """
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "hourly": list(variables),
            "start_hour": start.floor("h").strftime(HOUR_FORMAT),
            "end_hour": end.floor("h").strftime(HOUR_FORMAT),
            "timezone": self.config.timezone,
        }

        self.logger.info(
            f"Retrieving air quality data for Lat.: {latitude}° (N), Lon.: {longitude}° (E) from {start} to {end}"
        )

        return self._fetch_hourly(params, variables)


class OpenMeteoGeocodingClient:
    """OpenMeteo Geocoding API client for location search by name.

    The geocoding endpoint only speaks JSON, so this client uses the cached
    session directly instead of the flatbuffer SDK.
    """

    URL = "https://geocoding-api.open-meteo.com/v1/search"

    def __init__(self, config: OpenMeteoClientConfig):
        self.config = config
        self.session = build_session(config)

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

    def search(self, name: str, count: int = 5) -> List[Dict[str, Any]]:
        """Search locations by name.

        Args:
            name (str): Place name to search for.
            count (int, optional): Maximum number of results. Defaults to 5.

        Raises:
            requests.HTTPError: When the endpoint answers with an error status.

        Returns:
            List[Dict[str, Any]]: Locations with keys id, name, admin, country,
                latitude and longitude.
        """
        self.logger.info(f"Searching locations matching '{name}'")

        response = self.session.get(
            OpenMeteoGeocodingClient.URL,
            params={
                "name": name,
                "count": count,
                "language": self.config.geocoding_language,
                "format": "json",
            },
        )
        response.raise_for_status()

        results = response.json().get("results") or []

        return [
            {
                "id": str(result["id"]),
                "name": result.get("name"),
                "admin": result.get("admin1"),
                "country": result.get("country_code"),
                "latitude": float(result["latitude"]),
                "longitude": float(result["longitude"]),
            }
            for result in results
        ]
