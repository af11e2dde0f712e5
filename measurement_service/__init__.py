from measurement_service.measurement_service import (
    MAX_FORECAST_DAYS,
    PROVIDER_ERRORS,
    SNAPSHOT_CITIES,
    SNAPSHOT_DAYS,
    SOURCE,
    AirQualityService,
    ChunkOutcome,
    City,
    CitySnapshot,
    CurrentResult,
    ForecastService,
    HistoryResult,
    InvalidWindowError,
    LiveWindowResult,
    LocationDirectory,
    LocationNotFoundError,
    MeasurementService,
    ProviderFetchError,
    SnapshotResult,
    StoreError,
    WeatherService,
    clamp_forecast_days,
    resolve_snapshot_range,
    summarise_days,
    validate_window,
)
