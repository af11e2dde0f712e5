from timeseries.timeseries import (
    AIR_QUALITY_FIELDS,
    DAILY_FORECAST_FIELDS,
    INTERVALS,
    RECENT_DAYS,
    SUM_FIELDS,
    TIME_INDEX,
    WEATHER_FIELDS,
    Chunk,
    FieldSpec,
    ParseError,
    ProviderMode,
    aggregate,
    compute_averages,
    empty_series,
    field_names,
    fill_gaps,
    merge_series,
    parse_current,
    parse_interval,
    parse_series,
    parse_timestamp,
    plan_chunks,
    recent_cutoff_date,
    request_variables,
    round_half_up,
    series_to_records,
    to_float,
    to_utc,
)
