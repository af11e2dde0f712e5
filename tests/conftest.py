"""Shared fixtures and provider fakes for the measurement service tests."""

from typing import Any, Callable, Dict, List, Optional

import pandas as pd
import pytest

from measurement_service import AirQualityService, LocationDirectory, WeatherService
from openmeteo_client import OpenMeteoClientConfig
from weather_models import WeatherDatabase

CONFIG_KWARGS = {
    "recent_days": 7,
    "live_window_hours": 24,
    "timezone": "UTC",
    "cache_name": "test-cache",
    "cache_backend": "memory",
    "cache_expire_after": 0,
    "retries": 0,
    "backoff_factor": 0,
    "geocoding_language": "en",
}

WARSAW = {
    "id": "756135",
    "name": "Warsaw",
    "admin": "Masovia",
    "country": "PL",
    "latitude": 52.22977,
    "longitude": 21.01178,
}


def hourly_document(times: List[str], **variables: List[Any]) -> Dict[str, Any]:
    """Build a provider document with an hourly parallel-array section."""
    return {
        "latitude": WARSAW["latitude"],
        "longitude": WARSAW["longitude"],
        "hourly": {"time": list(times), **variables},
    }


class FakeProvider:
    """Provider client double returning canned documents and recording calls.

    responder is called with the fetch arguments and returns a document or
    raises an exception.
    """

    def __init__(self, responder: Callable[..., Dict[str, Any]]):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def fetch(self, latitude, longitude, variables, start, end) -> Dict[str, Any]:
        self.calls.append(
            {
                "latitude": latitude,
                "longitude": longitude,
                "variables": list(variables),
                "start": start,
                "end": end,
            }
        )
        return self.responder(start=start, end=end)


class FakeForecastProvider(FakeProvider):
    def __init__(
        self,
        responder: Callable[..., Dict[str, Any]],
        current_responder: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        super().__init__(responder)
        self.current_responder = current_responder
        self.current_calls: List[Dict[str, Any]] = []

    def current(self, latitude, longitude, variables, hourly_variables) -> Dict[str, Any]:
        self.current_calls.append(
            {"variables": list(variables), "hourly_variables": list(hourly_variables)}
        )
        assert self.current_responder is not None
        return self.current_responder()


class FakeDailyProvider:
    """Daily forecast double. responder receives the coordinates and day count."""

    def __init__(self, responder: Callable[..., Dict[str, Any]]):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def daily(self, latitude, longitude, variables, days) -> Dict[str, Any]:
        self.calls.append(
            {
                "latitude": latitude,
                "longitude": longitude,
                "variables": list(variables),
                "days": days,
            }
        )
        return self.responder(latitude=latitude, longitude=longitude, days=days)


def daily_document(
    dates: List[str], temperature_max: List[Any], precipitation_probability_max: List[Any]
) -> Dict[str, Any]:
    return {
        "daily": {
            "time": list(dates),
            "temperature_2m_max": list(temperature_max),
            "precipitation_probability_max": list(precipitation_probability_max),
        }
    }


class FakeGeocoder:
    def __init__(self, results: List[Dict[str, Any]]):
        self.results = results
        self.queries: List[str] = []

    def search(self, name: str, count: int = 5) -> List[Dict[str, Any]]:
        self.queries.append(name)
        return self.results[:count]


def empty_document(**_: Any) -> Dict[str, Any]:
    return hourly_document([])


def failing(error: Exception) -> Callable[..., Dict[str, Any]]:
    def respond(**_: Any) -> Dict[str, Any]:
        raise error

    return respond


@pytest.fixture
def config() -> OpenMeteoClientConfig:
    return OpenMeteoClientConfig(kwargs=dict(CONFIG_KWARGS))


@pytest.fixture
def database():
    database = WeatherDatabase("sqlite://")
    database.create_tables()
    database.save_locations([WARSAW])
    yield database
    database.close()


@pytest.fixture
def fixed_clock() -> Callable[[], pd.Timestamp]:
    return lambda: pd.Timestamp("2024-06-15T12:30:00Z")


@pytest.fixture
def make_weather_service(config, database, fixed_clock):
    def make(archive=None, forecast=None, clock=None) -> WeatherService:
        return WeatherService(
            config,
            database,
            archive or FakeProvider(empty_document),
            forecast or FakeForecastProvider(empty_document),
            clock=clock or fixed_clock,
        )

    return make


@pytest.fixture
def make_air_quality_service(config, database, fixed_clock):
    def make(provider=None, clock=None) -> AirQualityService:
        return AirQualityService(
            config,
            database,
            provider or FakeProvider(empty_document),
            clock=clock or fixed_clock,
        )

    return make


@pytest.fixture
def location_directory(database) -> LocationDirectory:
    return LocationDirectory(database, FakeGeocoder([]))
