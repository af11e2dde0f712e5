"""Measurement Service Maintenance Module

This module implements the scheduled refresh routine of the measurement service.
For every location in the directory it records the current weather reading and
refreshes the live air-quality window, so the store keeps an hourly record even
for locations nobody queried recently.

Maintenance Operations:
- Reads all locations from the location directory
- Fetches and persists the current weather reading per location
- Fetches and persists the last live_window_hours hours of air quality per location

Error Handling:
    The weather and air-quality refreshes of a location fail independently.
    A failure is logged with its traceback and the run continues. A location
    counts as refreshed only when both succeeded; the run summary reports how
    many locations were refreshed and how many failed.

Dependencies:
- OpenMeteo API clients (Forecast and Air Quality) for data retrieval
- WeatherService and AirQualityService for fetching and persisting
- WeatherDatabase for the location directory

Usage:
    This module is designed to run as a scheduled hourly job.

Example:
    python maintenance.py

Environment:
    LOGLEVEL: Log level of the job (default INFO)
    CONFIG_FILE: Configuration file name below ./config (default config.json)
    POSTGRES_*: Database connection settings
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd
import requests
from openmeteo_requests.Client import OpenMeteoRequestsError
from sqlalchemy.exc import SQLAlchemyError

from measurement_service import (
    AirQualityService,
    LocationNotFoundError,
    ProviderFetchError,
    StoreError,
    WeatherService,
)
from openmeteo_client import (
    OpenMeteoAirQualityClient,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
    OpenMeteoForecastClient,
)
from timeseries import ParseError
from weather_models import WeatherDatabase

LOGLEVEL = os.getenv("LOGLEVEL", "INFO")

REFRESH_ERRORS = (
    LocationNotFoundError,
    ProviderFetchError,
    ParseError,
    StoreError,
    SQLAlchemyError,
    requests.RequestException,
    OpenMeteoRequestsError,
)


@dataclass
class MaintenanceReport:
    refreshed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def run_maintenance(
    database: WeatherDatabase,
    weather_service: WeatherService,
    air_quality_service: AirQualityService,
    now: Optional[pd.Timestamp] = None,
    logger: Optional[logging.Logger] = None,
) -> MaintenanceReport:
    """Refresh current weather and the live air-quality window of every location.

    Args:
        database (WeatherDatabase): Location directory.
        weather_service (WeatherService): Service recording current readings.
        air_quality_service (AirQualityService): Service refreshing live windows.
        now (Optional[pd.Timestamp]): End of the air-quality window. Defaults to the service clock.
        logger (Optional[logging.Logger]): Logger for progress and failures.

    Returns:
        MaintenanceReport: Ids of refreshed and failed locations.
    """
    if logger is None:
        logger = logging.getLogger(name="Maintenance Service")

    if now is None:
        now = air_quality_service.now()

    start = now - pd.Timedelta(hours=air_quality_service.config.live_window_hours)

    report = MaintenanceReport()

    locations = database.get_all_locations()
    logger.info(f"Refreshing {len(locations)} locations")

    for location in locations:
        complete = True

        try:
            weather_service.fetch_current(location.id)
        except REFRESH_ERRORS:
            logger.exception(f"Weather refresh failed for location {location.id}: ")
            complete = False

        try:
            air_quality_service.fetch_live_window(location.id, start, now)
        except REFRESH_ERRORS:
            logger.exception(f"Air-quality refresh failed for location {location.id}: ")
            complete = False

        if complete:
            report.refreshed.append(location.id)
        else:
            report.failed.append(location.id)

    logger.info(
        f"Refreshed {len(report.refreshed)} locations, {len(report.failed)} failed"
    )

    return report


if __name__ == "__main__":
    logging.basicConfig(
        level=LOGLEVEL,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(name="Maintenance Service")

    database = WeatherDatabase()

    try:
        logger.info("Starting maintenance job...")

        config = OpenMeteoClientConfig(create_from_file=True)

        weather_service = WeatherService(
            config,
            database,
            OpenMeteoArchiveClient(config),
            OpenMeteoForecastClient(config),
        )
        air_quality_service = AirQualityService(
            config, database, OpenMeteoAirQualityClient(config)
        )

        run_maintenance(database, weather_service, air_quality_service, logger=logger)

        logger.info("Maintenance routine completed successfully!")
    except Exception:
        logger.exception("An error occurred during the maintenance routine: ")
    finally:
        database.close()
