"""Tests for the FastAPI front end with stubbed services."""

import inspect

import numpy as np
import pandas as pd
import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from conftest import CONFIG_KWARGS, WARSAW
from frontend_api import frontend_api as api
from measurement_service import (
    SNAPSHOT_CITIES,
    CitySnapshot,
    CurrentResult,
    HistoryResult,
    InvalidWindowError,
    LiveWindowResult,
    LocationNotFoundError,
    ProviderFetchError,
    SnapshotResult,
    StoreError,
)
from openmeteo_client import OpenMeteoClientConfig
from timeseries import ParseError, empty_series
from weather_models import Location


def frame(points, columns):
    return pd.DataFrame(
        list(points.values()),
        columns=list(columns),
        index=pd.DatetimeIndex(pd.to_datetime(list(points.keys()), utc=True), name="time"),
        dtype="float64",
    )


class Stub:
    """Service double: returns result or raises error, and records calls."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []
        self.released = 0
        self.config = OpenMeteoClientConfig(kwargs=dict(CONFIG_KWARGS))

    def __call__(self, *args):
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        return self.result

    fetch_current = fetch_history = fetch_live_window = history_window = search = __call__
    daily = poland_snapshot = __call__

    def connectivity_test(self):
        return self.result

    def release_session(self):
        self.released += 1


@pytest.fixture
def client():
    return TestClient(api.app)


@pytest.fixture
def location():
    return Location(**WARSAW)


class TestRequestHandling:
    """Test cases for threadpool handlers and per-request sessions."""

    def test_handlers_run_in_the_threadpool(self):
        endpoints = [route.endpoint for route in api.app.routes if isinstance(route, APIRoute)]

        assert len(endpoints) == 8
        assert not any(inspect.iscoroutinefunction(endpoint) for endpoint in endpoints)

    def test_session_is_released_after_a_request(self, client, monkeypatch, location):
        database = Stub(result=True)
        monkeypatch.setattr(api, "database", database)
        monkeypatch.setattr(api, "location_directory", Stub(result=[location]))

        client.get("/api/locations/search", params={"query": "Warsaw"})
        client.get("/health")

        assert database.released == 2

    def test_session_is_released_after_a_failed_request(self, client, monkeypatch):
        database = Stub(result=True)
        monkeypatch.setattr(api, "database", database)
        monkeypatch.setattr(api, "weather_service", Stub(error=StoreError("store down")))

        response = client.get("/api/weather/current", params={"locationId": "x"})

        assert response.status_code == 503
        assert database.released == 1


class TestHealth:
    """Test cases for the health endpoint."""

    def test_uninitialized_database(self, client, monkeypatch):
        monkeypatch.setattr(api, "database", None)

        assert client.get("/health").status_code == 503

    def test_connected_database(self, client, monkeypatch):
        monkeypatch.setattr(api, "database", Stub(result=True))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestLocations:
    """Test cases for location search."""

    def test_search(self, client, monkeypatch, location):
        directory = Stub(result=[location])
        monkeypatch.setattr(api, "location_directory", directory)

        response = client.get("/api/locations/search", params={"query": "Warsaw", "count": 2})

        assert response.status_code == 200
        assert response.json() == [WARSAW]
        assert directory.calls == [("Warsaw", 2)]

    def test_uninitialized_service(self, client, monkeypatch):
        monkeypatch.setattr(api, "location_directory", None)

        assert client.get("/api/locations/search", params={"query": "x"}).status_code == 503


class TestWeatherEndpoints:
    """Test cases for current weather and weather history."""

    def test_current(self, client, monkeypatch, location):
        series = frame({"2024-06-15T12:15Z": [21.5, np.nan]}, ["temperature", "precipitation"])
        monkeypatch.setattr(
            api, "weather_service", Stub(result=CurrentResult(location=location, series=series))
        )

        response = client.get("/api/weather/current", params={"locationId": WARSAW["id"]})

        body = response.json()
        assert response.status_code == 200
        assert body["location_id"] == WARSAW["id"]
        assert body["source"] == "OPEN_METEO"
        assert body["time"].startswith("2024-06-15T12:15:00")
        assert body["temperature"] == 21.5
        assert body["precipitation"] is None

    def test_history(self, client, monkeypatch, location):
        series = frame(
            {"2024-01-01T00:00Z": [15.0, 3.0], "2024-01-01T03:00Z": [np.nan, 0.0]},
            ["temperature", "precipitation"],
        )
        service = Stub(result=HistoryResult(location=location, interval="3h", series=series))
        monkeypatch.setattr(api, "weather_service", service)

        response = client.get(
            "/api/weather/history",
            params={
                "locationId": WARSAW["id"],
                "from": "2024-01-01T00:00:00Z",
                "to": "2024-01-01T05:00:00Z",
                "interval": "3h",
            },
        )

        body = response.json()
        assert response.status_code == 200
        assert body["interval"] == "3h"
        assert [point["temperature"] for point in body["series"]] == [15.0, None]
        assert [point["precipitation"] for point in body["series"]] == [3.0, 0.0]

        location_id, start, end, interval = service.calls[0]
        assert location_id == WARSAW["id"]
        assert pd.Timestamp(start) == pd.Timestamp("2024-01-01T00:00Z")
        assert interval == "3h"

    @pytest.mark.parametrize(
        "error, status",
        [
            (InvalidWindowError("from after to"), 400),
            (LocationNotFoundError("missing"), 404),
            (ParseError("bad document"), 502),
            (StoreError("store down"), 503),
        ],
    )
    def test_history_errors(self, client, monkeypatch, error, status):
        monkeypatch.setattr(api, "weather_service", Stub(error=error))

        response = client.get(
            "/api/weather/history",
            params={"locationId": "x", "from": "2024-01-01T00:00:00Z", "to": "2024-01-01T05:00:00Z"},
        )

        assert response.status_code == status

    def test_current_provider_failure(self, client, monkeypatch):
        monkeypatch.setattr(api, "weather_service", Stub(error=ProviderFetchError("down")))

        response = client.get("/api/weather/current", params={"locationId": "x"})

        assert response.status_code == 502

    def test_missing_query_parameters(self, client, monkeypatch):
        monkeypatch.setattr(api, "weather_service", Stub())

        assert client.get("/api/weather/history", params={"locationId": "x"}).status_code == 422


class TestAirQualityEndpoints:
    """Test cases for the live and stored air-quality windows."""

    @staticmethod
    def result():
        series = frame({"2024-06-15T10:00Z": [10.0, np.nan], "2024-06-15T11:00Z": [20.0, np.nan]}, ["pm10", "uv"])
        return LiveWindowResult(averages={"pm10": 15.0, "uv": None}, series=series)

    def test_live_window_defaults_to_last_24_hours(self, client, monkeypatch):
        service = Stub(result=self.result())
        monkeypatch.setattr(api, "air_quality_service", service)

        response = client.post(f"/api/air-quality/live/{WARSAW['id']}/last24h")

        body = response.json()
        assert response.status_code == 200
        assert body["averages"]["pm10"] == 15.0
        assert body["averages"]["co"] is None
        assert [point["pm10"] for point in body["series"]] == [10.0, 20.0]

        location_id, start, end = service.calls[0]
        assert location_id == WARSAW["id"]
        assert end - start == pd.Timedelta(hours=24)

    def test_live_window_with_explicit_bounds(self, client, monkeypatch):
        service = Stub(result=LiveWindowResult(averages={}, series=empty_series(["pm10"])))
        monkeypatch.setattr(api, "air_quality_service", service)

        response = client.post(
            f"/api/air-quality/live/{WARSAW['id']}/last24h",
            params={"from": "2024-06-14T12:00:00Z", "to": "2024-06-15T12:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["series"] == []
        assert pd.Timestamp(service.calls[0][2]) == pd.Timestamp("2024-06-15T12:00Z")

    def test_stored_history(self, client, monkeypatch):
        monkeypatch.setattr(api, "air_quality_service", Stub(result=self.result()))

        response = client.get(f"/api/air-quality/history/{WARSAW['id']}/last24h")

        assert response.status_code == 200
        assert len(response.json()["series"]) == 2

    def test_unknown_location(self, client, monkeypatch):
        monkeypatch.setattr(api, "air_quality_service", Stub(error=LocationNotFoundError("missing")))

        assert client.get("/api/air-quality/history/missing/last24h").status_code == 404


class TestForecastEndpoints:
    """Test cases for the daily forecast and the city snapshot."""

    @staticmethod
    def daily():
        return frame(
            {"2024-06-15T00:00Z": [21.5, 40.0], "2024-06-16T00:00Z": [np.nan, 75.0]},
            ["temperature_max", "precipitation_probability_max"],
        )

    def test_daily(self, client, monkeypatch):
        service = Stub(result=self.daily())
        monkeypatch.setattr(api, "forecast_service", service)

        response = client.get("/api/forecast/daily", params={"lat": 52.23, "lon": 21.01, "days": 2})

        assert response.status_code == 200
        assert response.json() == {
            "latitude": 52.23,
            "longitude": 21.01,
            "days": 2,
            "dates": ["2024-06-15", "2024-06-16"],
            "temperature_max": [21.5, None],
            "precipitation_probability_max": [40, 75],
        }
        assert service.calls == [(52.23, 21.01, 2)]

    def test_daily_days_default_and_clamp(self, client, monkeypatch):
        service = Stub(result=self.daily())
        monkeypatch.setattr(api, "forecast_service", service)

        default = client.get("/api/forecast/daily", params={"lat": 52.23, "lon": 21.01})
        clamped = client.get("/api/forecast/daily", params={"lat": 52.23, "lon": 21.01, "days": 30})

        assert service.calls[0] == (52.23, 21.01, 7)
        assert default.json()["days"] == 7
        assert clamped.json()["days"] == 16

    def test_daily_provider_failure(self, client, monkeypatch):
        monkeypatch.setattr(api, "forecast_service", Stub(error=ProviderFetchError("down")))

        response = client.get("/api/forecast/daily", params={"lat": 52.23, "lon": 21.01})

        assert response.status_code == 502

    def test_daily_requires_coordinates(self, client, monkeypatch):
        monkeypatch.setattr(api, "forecast_service", Stub(result=self.daily()))

        assert client.get("/api/forecast/daily", params={"lat": 52.23}).status_code == 422
        assert client.get("/api/forecast/daily", params={"lat": 91, "lon": 0}).status_code == 422

    def test_snapshot(self, client, monkeypatch):
        warsaw, krakow = SNAPSHOT_CITIES[:2]
        snapshot = SnapshotResult(
            range="week",
            generated_at=pd.Timestamp("2024-06-15T12:30Z"),
            cities=(
                CitySnapshot(city=warsaw, temperature_max=19.5, precipitation_probability_max=80),
                CitySnapshot(city=krakow),
            ),
        )
        service = Stub(result=snapshot)
        monkeypatch.setattr(api, "forecast_service", service)

        response = client.get("/api/forecast/pl-snapshot", params={"range": "week"})

        body = response.json()
        assert response.status_code == 200
        assert body["range"] == "week"
        assert body["generated_at"].startswith("2024-06-15T12:30:00")
        assert body["cities"][0] == {
            "id": "waw",
            "name": "Warsaw",
            "latitude": 52.2297,
            "longitude": 21.0122,
            "temperature_max": 19.5,
            "precipitation_probability_max": 80,
        }
        assert body["cities"][1]["temperature_max"] is None
        assert service.calls == [("week",)]

    def test_snapshot_range_defaults_to_today(self, client, monkeypatch):
        service = Stub(result=SnapshotResult(range="today", generated_at=pd.Timestamp("2024-06-15T12:30Z")))
        monkeypatch.setattr(api, "forecast_service", service)

        assert client.get("/api/forecast/pl-snapshot").json()["cities"] == []
        assert service.calls == [("today",)]

    def test_uninitialized_service(self, client, monkeypatch):
        monkeypatch.setattr(api, "forecast_service", None)

        assert client.get("/api/forecast/pl-snapshot").status_code == 503
