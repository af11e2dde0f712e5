from openmeteo_client.openmeteo_client import (
    OpenMeteoAirQualityClient,
    OpenMeteoArchiveClient,
    OpenMeteoClient,
    OpenMeteoClientConfig,
    OpenMeteoForecastClient,
    OpenMeteoGeocodingClient,
    build_session,
)
