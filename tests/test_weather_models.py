"""Tests for the location directory and measurement store (in-memory SQLite)."""

import math
import os
import threading

import numpy as np
import pandas as pd
import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import WARSAW
from weather_models import (
    AirQualityMeasurement,
    WeatherDatabase,
    WeatherMeasurement,
)


def weather_series(points):
    return pd.DataFrame(
        list(points.values()),
        columns=["temperature", "precipitation"],
        index=pd.DatetimeIndex(pd.to_datetime(list(points.keys()), utc=True), name="time"),
        dtype="float64",
    )


def row_count(database, table):
    return database.DB_SESSION.scalar(select(func.count()).select_from(table))


class TestLocationDirectory:
    """Test cases for location lookups."""

    def test_get_location(self, database):
        location = database.get_location(WARSAW["id"])

        assert location.name == "Warsaw"
        assert location.coordinates == (WARSAW["latitude"], WARSAW["longitude"])

    def test_unknown_location(self, database):
        assert database.get_location("missing") is None

    def test_find_by_name_is_case_insensitive(self, database):
        assert [location.id for location in database.find_locations_by_name("wArSaW")] == [
            WARSAW["id"]
        ]
        assert database.find_locations_by_name("Krakow") == []

    def test_save_locations_updates_existing_entries(self, database):
        database.save_locations([dict(WARSAW, admin="Mazowieckie")])

        assert database.get_location(WARSAW["id"]).admin == "Mazowieckie"
        assert len(database.get_all_locations()) == 1

    def test_connectivity(self, database):
        assert database.connectivity_test()


class TestMeasurementStore:
    """Test cases for series reads and upserts."""

    def test_read_without_rows(self, database):
        stored = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-02T00:00Z"
        )

        assert stored.empty
        assert list(stored.columns) == list(WeatherMeasurement.FIELDS)

    def test_upsert_and_read_range(self, database):
        written = database.upsert_series(
            WeatherMeasurement,
            WARSAW["id"],
            weather_series(
                {
                    "2024-01-01T00:00Z": [1.0, 0.0],
                    "2024-01-01T01:00Z": [2.0, np.nan],
                    "2024-01-01T02:00Z": [3.0, 0.5],
                }
            ),
            source="OPEN_METEO",
        )

        stored = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T01:00Z", "2024-01-01T02:00Z"
        )

        assert written == 3
        assert list(stored.index) == [
            pd.Timestamp("2024-01-01T01:00Z"),
            pd.Timestamp("2024-01-01T02:00Z"),
        ]
        assert stored["temperature"].tolist() == [2.0, 3.0]
        assert math.isnan(stored["precipitation"].iloc[0])
        assert stored["humidity"].isna().all()

        row = database.DB_SESSION.scalars(select(WeatherMeasurement)).first()
        assert row.source == "OPEN_METEO"

    def test_upsert_is_idempotent_and_last_write_wins(self, database):
        first = weather_series({"2024-01-01T00:00Z": [1.0, 0.2]})
        second = weather_series({"2024-01-01T00:00Z": [5.0, np.nan]})

        database.upsert_series(WeatherMeasurement, WARSAW["id"], first)
        database.upsert_series(WeatherMeasurement, WARSAW["id"], first)
        database.upsert_series(WeatherMeasurement, WARSAW["id"], second)

        stored = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-01T00:00Z"
        )

        assert row_count(database, WeatherMeasurement) == 1
        assert stored["temperature"].tolist() == [5.0]
        assert math.isnan(stored["precipitation"].iloc[0])

    def test_read_after_rewrite_sees_new_values(self, database):
        database.upsert_series(
            WeatherMeasurement, WARSAW["id"], weather_series({"2024-01-01T00:00Z": [1.0, 0.0]})
        )
        first = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-01T00:00Z"
        )
        database.upsert_series(
            WeatherMeasurement, WARSAW["id"], weather_series({"2024-01-01T00:00Z": [7.0, 0.0]})
        )
        second = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-01T00:00Z"
        )

        assert first["temperature"].tolist() == [1.0]
        assert second["temperature"].tolist() == [7.0]

    def test_locations_are_kept_apart(self, database):
        database.upsert_series(
            WeatherMeasurement, "other", weather_series({"2024-01-01T00:00Z": [9.0, 0.0]})
        )

        stored = database.read_series(
            WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-01T01:00Z"
        )

        assert stored.empty

    def test_air_quality_table(self, database):
        data = pd.DataFrame(
            {"pm10": [12.0], "uv": [np.nan]},
            index=pd.DatetimeIndex([pd.Timestamp("2024-01-01T00:00Z")], name="time"),
        )

        assert database.upsert_series(AirQualityMeasurement, WARSAW["id"], data) == 1

        stored = database.read_series(
            AirQualityMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-01T00:00Z"
        )
        assert list(stored.columns) == list(AirQualityMeasurement.FIELDS)
        assert stored["pm10"].tolist() == [12.0]

    def test_empty_upsert_writes_nothing(self, database):
        empty = weather_series({})

        assert database.upsert_series(WeatherMeasurement, WARSAW["id"], empty) == 0
        assert row_count(database, WeatherMeasurement) == 0


class TestSessionHandling:
    """Test cases for rollback on failure and thread-local sessions."""

    def test_failed_location_write_leaves_the_session_usable(self, database):
        with pytest.raises(IntegrityError):
            database.save_locations([dict(WARSAW, id="broken", name=None)])

        assert database.get_location(WARSAW["id"]).name == "Warsaw"
        assert database.get_location("broken") is None

    def test_failed_read_rolls_back_before_the_next_read(self, database, monkeypatch):
        session = database.DB_SESSION()
        real_scalars = session.scalars

        def broken_scalars(*args, **kwargs):
            session.execute(text("SELECT 1"))
            raise OperationalError("SELECT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(session, "scalars", broken_scalars)
        with pytest.raises(OperationalError):
            database.read_series(
                WeatherMeasurement, WARSAW["id"], "2024-01-01T00:00Z", "2024-01-02T00:00Z"
            )

        assert not session.in_transaction()

        monkeypatch.setattr(session, "scalars", real_scalars)
        assert [location.id for location in database.find_locations_by_name("Warsaw")] == [
            WARSAW["id"]
        ]

    def test_each_thread_gets_its_own_session(self, database):
        sessions = []
        worker = threading.Thread(target=lambda: sessions.append(database.DB_SESSION()))
        worker.start()
        worker.join()

        assert sessions[0] is not database.DB_SESSION()

    def test_released_session_is_replaced(self, database):
        first = database.DB_SESSION()
        database.release_session()

        assert database.DB_SESSION() is not first
        assert database.get_location(WARSAW["id"]).name == "Warsaw"


@pytest.mark.integration
@pytest.mark.skipif(not os.getenv("POSTGRES_HOST"), reason="PostgreSQL not configured")
def test_database_connection():
    """Integration test for PostgreSQL connectivity."""
    database = WeatherDatabase()
    try:
        assert database.connectivity_test()
    finally:
        database.close()
