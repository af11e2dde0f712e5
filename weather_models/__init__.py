from weather_models.weather_models import (
    AirQualityMeasurement,
    Base,
    DatabaseEngine,
    Location,
    MeasurementBase,
    WeatherDatabase,
    WeatherMeasurement,
)
