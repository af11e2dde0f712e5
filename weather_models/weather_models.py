"""Measurement Service Data Models and Database Management

This module defines the durable store of the measurement service: SQLAlchemy
ORM models for the location directory and the hourly measurement tables, and a
database interface that reads and writes time series in the shape the time
series engine works with.

Core Components:

Database Models:
- Location: Location directory entry (id, name, admin region, country, coordinates)
- MeasurementBase: Abstract base defining location key and timestamp
- WeatherMeasurement: Hourly weather observations
- AirQualityMeasurement: Hourly air-quality observations

Database Management:
- DatabaseEngine: PostgreSQL connection configuration (or explicit URL)
- WeatherDatabase: High-level interface for all store operations

Key Features:
- One row per (location_id, recorded_at), enforced by a unique constraint
- Idempotent upserts (INSERT ... ON CONFLICT DO UPDATE) for PostgreSQL and SQLite
- Inclusive range reads returned as timestamp-indexed pandas DataFrames
- Case-insensitive location lookup by name
- Thread-local sessions; a failed statement is rolled back before the error propagates

Database Configuration:
The system uses PostgreSQL with the psycopg2 adapter and requires the following
environment variables unless an explicit URL is given:
- POSTGRES_USER: Database username
- POSTGRES_PASSWORD: Database password
- POSTGRES_HOST: Database server hostname
- POSTGRES_PORT: Database server port
- POSTGRES_DB: Target database name

Usage Patterns:
    database = WeatherDatabase()
    database.create_tables()

    stored = database.read_series(WeatherMeasurement, "waw", start, end)
    database.upsert_series(WeatherMeasurement, "waw", fetched, source="OPEN_METEO")

Session Management:
    try:
        database = WeatherDatabase()
        # Perform operations
    finally:
        database.close()
"""

import logging
import os
from abc import ABC, ABCMeta
from contextlib import contextmanager
from datetime import datetime
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

import pandas as pd
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import (
    DeclarativeMeta,
    Session,
    declarative_base,
    scoped_session,
    sessionmaker,
)

from timeseries import TIME_INDEX, empty_series, to_utc


class CombinedMeta(DeclarativeMeta, ABCMeta):
    """Combined metaclass for SQLAlchemy declarative base with abstract base class support."""

    pass


Base = declarative_base(metaclass=CombinedMeta)


class Location(Base):
    """Location directory entry.

    Coordinates are read through the coordinates property only.
    """

    __tablename__ = "locations"

    id = Column(String(length=64), primary_key=True)
    name = Column(String(length=128), index=True, nullable=False)
    admin = Column(String(length=128))
    country = Column(String(length=8), index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    @property
    def coordinates(self) -> Tuple[float, float]:
        """(latitude, longitude) of the location in decimal degrees."""
        return (float(self.latitude), float(self.longitude))


class MeasurementBase(Base, ABC):
    """Abstract base class for all hourly measurement tables.

    Concrete tables add their measurement columns and list them in FIELDS, in
    the order they appear in series frames.
    """

    __abstract__ = True

    FIELDS = ()

    idx = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(String(length=64), index=True, nullable=False)
    recorded_at = Column(DateTime(timezone=True), index=True, nullable=False)


class WeatherMeasurement(MeasurementBase):
    """Hourly weather observations table."""

    __tablename__ = "weather_measurements"

    FIELDS = (
        "temperature",
        "humidity",
        "pressure",
        "wind_speed",
        "wind_direction",
        "precipitation",
        "cloud_cover",
        "pm10",
        "pm2_5",
    )

    temperature = Column(Float)
    humidity = Column(Float)
    pressure = Column(Float)
    wind_speed = Column(Float)
    wind_direction = Column(Float)
    precipitation = Column(Float)
    cloud_cover = Column(Float)
    pm10 = Column(Float)
    pm2_5 = Column(Float)
    source = Column(String(length=32))

    __table_args__ = (
        UniqueConstraint(
            "location_id",
            "recorded_at",
            name="WeatherMeasurement-entry-unique-constraint",
        ),
    )


class AirQualityMeasurement(MeasurementBase):
    """Hourly air-quality observations table."""

    __tablename__ = "air_quality_measurements"

    FIELDS = ("pm10", "pm2_5", "co", "co2", "no2", "so2", "o3", "ch4", "uv")

    pm10 = Column(Float)
    pm2_5 = Column(Float)
    co = Column(Float)
    co2 = Column(Float)
    no2 = Column(Float)
    so2 = Column(Float)
    o3 = Column(Float)
    ch4 = Column(Float)
    uv = Column(Float)

    __table_args__ = (
        UniqueConstraint(
            "location_id",
            "recorded_at",
            name="AirQualityMeasurement-entry-unique-constraint",
        ),
    )


MeasurementTable = TypeVar("MeasurementTable", bound=MeasurementBase)


class DatabaseEngine:
    """PostgreSQL Database Engine Configuration and Connection Management

    Builds the PostgreSQL (psycopg2) URL from environment variables. An explicit
    SQLAlchemy URL takes precedence, which is how tests run against SQLite.

    Attributes:
        __DIALECT (str): Database dialect identifier ("postgresql")
        __DRIVER (str): Database driver identifier ("psycopg2")
    """

    __DIALECT = "postgresql"
    __DRIVER = "psycopg2"

    def __init__(self, url: Optional[str] = None) -> None:
        if url is None:
            url = f"{DatabaseEngine.__DIALECT}+{DatabaseEngine.__DRIVER}://{os.getenv('POSTGRES_USER')}:{os.getenv('POSTGRES_PASSWORD')}@{os.getenv('POSTGRES_HOST')}:{os.getenv('POSTGRES_PORT')}/{os.getenv('POSTGRES_DB')}"

        self.__engine = create_engine(url, echo=False)

    @property
    def get_engine(self):
        """SQLAlchemy database engine."""
        return self.__engine


class WeatherDatabase:
    """Interface for the location directory and measurement store.

    Sessions are thread-local. Every thread that touches the store gets its own
    session from DB_SESSION, and release_session() hands it back once a unit of
    work (one HTTP request, one maintenance pass) is over.

    Attributes:
        DB_SESSION: Thread-local SQLAlchemy session registry bound to the engine
        logger: Configured logger instance for database operations
    """

    def __init__(self, url: Optional[str] = None) -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

        self.__engine = DatabaseEngine(url).get_engine

        self.DB_SESSION = scoped_session(
            sessionmaker(bind=self.__engine, expire_on_commit=False)
        )

    @contextmanager
    def __transaction(self) -> Iterator[Session]:
        """Yield the current session and roll it back if a statement fails."""
        try:
            yield self.DB_SESSION()
        except Exception:
            self.logger.info("Rolling back transaction...")
            self.DB_SESSION.rollback()
            raise

    def create_tables(self) -> None:
        """Creates all tables from base."""
        Base.metadata.create_all(self.__engine)

    def connectivity_test(self) -> bool:
        """Run a trivial query against the database.

        Returns:
            bool: True when the query succeeds.
        """
        with self.__transaction() as session:
            return session.execute(text("SELECT 1")).scalar() == 1

    def get_location(self, location_id: str) -> Optional[Location]:
        """Look up a location directory entry by id.

        Returns:
            Optional[Location]: The entry, or None when the id is unknown.
        """
        with self.__transaction() as session:
            return session.get(Location, location_id)

    def get_all_locations(self) -> Sequence[Location]:
        with self.__transaction() as session:
            return session.scalars(select(Location).order_by(Location.id)).all()

    def find_locations_by_name(self, name: str) -> Sequence[Location]:
        """Find locations whose name matches case-insensitively."""
        with self.__transaction() as session:
            return session.scalars(
                select(Location)
                .where(func.lower(Location.name) == name.lower())
                .order_by(Location.id)
            ).all()

    def save_locations(self, locations: Iterable[Dict[str, Any]]) -> List[Location]:
        """Insert or update location directory entries.

        Args:
            locations (Iterable[Dict[str, Any]]): Entries with keys id, name,
                admin, country, latitude and longitude.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: When the write fails. The
                transaction is rolled back before re-raising.

        Returns:
            List[Location]: The stored ORM objects.
        """
        with self.__transaction() as session:
            saved = [session.merge(Location(**entry)) for entry in locations]
            session.commit()

        self.logger.info(f"Saved {len(saved)} locations")

        return saved

    def read_series(
        self,
        table: Type[MeasurementTable],
        location_id: str,
        start: datetime | pd.Timestamp,
        end: datetime | pd.Timestamp,
    ) -> pd.DataFrame:
        """Read the stored series for one location within an inclusive time range.

        Args:
            table (Type[MeasurementTable]): Measurement table to read.
            location_id (str): Location key.
            start (datetime | pd.Timestamp): Range start (inclusive).
            end (datetime | pd.Timestamp): Range end (inclusive).

        Raises:
            sqlalchemy.exc.SQLAlchemyError: When the query fails. The
                transaction is rolled back before re-raising.

        Returns:
            pd.DataFrame: Series indexed by UTC time, ascending, with one
                column per table field.
        """
        with self.__transaction() as session:
            rows = session.scalars(
                select(table)
                .where(
                    (table.location_id == location_id)
                    & (table.recorded_at >= to_utc(start).to_pydatetime())
                    & (table.recorded_at <= to_utc(end).to_pydatetime())
                )
                .order_by(table.recorded_at)
                .execution_options(populate_existing=True)
            ).all()

        if not rows:
            return empty_series(table.FIELDS)

        data = pd.DataFrame(
            [[getattr(row, column) for column in table.FIELDS] for row in rows],
            columns=list(table.FIELDS),
            index=pd.DatetimeIndex(
                pd.to_datetime([row.recorded_at for row in rows], utc=True),
                name=TIME_INDEX,
            ),
            dtype="float64",
        )

        return data[~data.index.duplicated(keep="last")]

    def upsert_series(
        self,
        table: Type[MeasurementTable],
        location_id: str,
        series: pd.DataFrame,
        source: Optional[str] = None,
    ) -> int:
        """Insert or replace the measurements of a series, keyed by (location_id, recorded_at).

        Every table field present in the series is overwritten, nulls included.
        Fields the series does not carry keep their stored values.

        Args:
            table (Type[MeasurementTable]): Measurement table to write.
            location_id (str): Location key.
            series (pd.DataFrame): Series to persist.
            source (Optional[str]): Source label for tables with a source column.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: When the statement fails. The
                transaction is rolled back before re-raising.

        Returns:
            int: Number of points written.
        """
        if series.empty:
            return 0

        columns = [column for column in table.FIELDS if column in series.columns]
        records = []
        for timestamp, row in series.iterrows():
            record: Dict[str, Any] = {
                "location_id": location_id,
                "recorded_at": to_utc(timestamp).to_pydatetime(),
            }
            for column in columns:
                value = row[column]
                record[column] = None if pd.isna(value) else float(value)
            if source is not None and hasattr(table, "source"):
                record["source"] = source
            records.append(record)

        if self.__engine.dialect.name == "postgresql":
            statement = postgresql_insert(table).values(records)
        else:
            statement = sqlite_insert(table).values(records)

        update_columns = columns + (["source"] if "source" in records[0] else [])
        statement = statement.on_conflict_do_update(
            index_elements=["location_id", "recorded_at"],
            set_={column: statement.excluded[column] for column in update_columns},
        )

        with self.__transaction() as session:
            session.execute(statement)
            session.commit()

        self.logger.info(
            f"Upserted {len(records)} rows into {table.__tablename__} for location {location_id}"
        )

        return len(records)

    def release_session(self) -> None:
        """Discard the calling thread's session. The next store call opens a fresh one."""
        self.DB_SESSION.remove()

    def close(self) -> None:
        """Closes the session to the database. All operations should be completed before calling this method."""
        self.logger.info("Closing Database Session...")
        self.DB_SESSION.remove()
