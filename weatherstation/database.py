"""
Storage engine of the weather station.

`WeatherStationDatabase` owns the database holding the raw samples, the
per-hour and per-day aggregates and the event log. Every write runs as a
single transaction spanning the three data tables, so readers observe
either the state before a write or the state after it.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from sqlalchemy import create_engine, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from weatherstation import aggregates
from weatherstation.bucketing import RAW, HOUR, DAY, GRANULARITIES
from weatherstation.config import StoreSettings
from weatherstation.exceptions import WeatherStationError, StorageError, InvalidInput, NotFound
from weatherstation.models import (
    Base, RawSample, HourlyAggregate, DailyAggregate, LogEntry, Severity, TABLES_BY_GRANULARITY,
)
from weatherstation.validation import parse_sample, parse_timestamp, parse_time_range

CompletionCallback = Callable[[Optional[Exception]], None]


class QueryResult(NamedTuple):
    """Outcome of a range query. ``data`` is None whenever ``error`` is set."""
    error: Optional[WeatherStationError]
    data: Optional[Dict[str, Any]]


def _complete(on_complete: Optional[CompletionCallback], error: Optional[Exception]) -> None:
    if on_complete is not None:
        on_complete(error)


class WeatherStationDatabase:
    """Saves and retrieves weather data.

    The instance is created once and handed to every component needing
    storage (server, poller, command-line tools). Call `initialize` before
    use and `close` when done, or use the instance as a context manager.

    Attributes:
        settings (StoreSettings): Database URL, granularity thresholds and
            debug flag.
        engine: The SQLAlchemy engine instance.
        Session: The SQLAlchemy session factory.
        logger: The logger instance for this class.
    """

    def __init__(self, settings: Optional[StoreSettings] = None):
        """Initializes the WeatherStationDatabase.

        Args:
            settings: Storage settings. Defaults to a local SQLite database
                named 'data.db' with 7/31 day granularity thresholds.
        """
        self.settings = settings or StoreSettings()
        self.engine = None
        self.Session = None
        self.logger = logging.getLogger(__name__)

    @property
    def database_url(self) -> str:
        return self.settings.database_url

    def initialize(self) -> 'WeatherStationDatabase':
        """Creates the engine, the missing tables and the session factory.

        Raises:
            StorageError: If the database cannot be opened or created.
        """
        try:
            connect_args = {}
            engine_options = {}
            if self.database_url.startswith("sqlite"):
                # Queries are served from other threads than the poller's
                connect_args = {"check_same_thread": False}
                engine_options = {"isolation_level": "SERIALIZABLE"}

            self.engine = create_engine(
                self.database_url,
                echo=self.settings.debug,
                connect_args=connect_args,
                **engine_options
            )
            Base.metadata.create_all(self.engine)
            self.Session = sessionmaker(bind=self.engine)

            self.logger.info(f"Database initialized: {self.database_url}")
            return self

        except SQLAlchemyError as e:
            self.logger.error(f"Failed to initialize database: {e}")
            raise StorageError(f"Failed to initialize database {self.database_url}: {e}") from e

    def get_session(self) -> Session:
        """Provides a new database session.

        Raises:
            RuntimeError: If the database has not been initialized.
        """
        if not self.Session:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self.Session()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yields a session whose work is committed on success, rolled back on error."""
        with self.get_session() as session:
            with session.begin():
                yield session

    def close(self):
        """Disposes of the database engine's connection pool."""
        if self.engine:
            self.engine.dispose()

    def __enter__(self) -> 'WeatherStationDatabase':
        if not self.Session:
            self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Writes

    def save_weather_data(self, timestamp: Optional[Any], temperature: Any, humidity: Any,
                          on_complete: Optional[CompletionCallback] = None) -> int:
        """Saves a sample and updates the per-hour and per-day aggregates.

        The raw insert and both aggregate updates form one transaction:
        either all three are stored or none is.

        Args:
            timestamp: Timestamp of the measure in seconds, or None for now.
            temperature: Temperature to record.
            humidity: Humidity to record.
            on_complete: Optional callable receiving None on success or the
                raised error on failure.

        Returns:
            The timestamp the sample was stored under.

        Raises:
            InvalidInput: If a value cannot be parsed. Nothing is written.
            StorageError: If the database rejected any step (including a
                duplicate timestamp). Nothing is written.
        """
        try:
            timestamp, temperature, humidity = parse_sample(timestamp, temperature, humidity)
        except InvalidInput as e:
            self.logger.warning(f"Rejected weather data: {e}")
            _complete(on_complete, e)
            raise

        try:
            with self.transaction() as session:
                session.add(RawSample(timestamp=timestamp, temperature=temperature, humidity=humidity))
                session.flush()
                aggregates.add_sample(session, HourlyAggregate, timestamp, temperature, humidity)
                aggregates.add_sample(session, DailyAggregate, timestamp, temperature, humidity)
        except SQLAlchemyError as e:
            error = StorageError(f"Error while saving weather data ({timestamp}, {temperature}, {humidity}): {e}")
            self.logger.error(str(error))
            self.log(Severity.ERROR, str(error))
            _complete(on_complete, error)
            raise error from e

        self.logger.debug(f"Saved weather data: ts={timestamp}, temp={temperature}, humidity={humidity}")
        _complete(on_complete, None)
        return timestamp

    def delete_weather_data(self, timestamp: Any, on_complete: Optional[CompletionCallback] = None,
                            strict: bool = False) -> bool:
        """Removes a sample and recomputes the aggregates of its buckets.

        Deleting a timestamp without raw sample is a no-op success unless
        ``strict`` is set.

        Args:
            timestamp: Timestamp of the measure to delete, in seconds.
            on_complete: Optional callable receiving None on success or the
                raised error on failure.
            strict: Raise NotFound when there is nothing to delete.

        Returns:
            True if a raw sample was deleted, False otherwise.

        Raises:
            InvalidInput: If the timestamp cannot be parsed.
            NotFound: In strict mode, if no sample exists at ``timestamp``.
            StorageError: If the database rejected any step. Nothing changes.
        """
        try:
            timestamp = parse_timestamp(timestamp)
        except InvalidInput as e:
            _complete(on_complete, e)
            raise

        try:
            with self.transaction() as session:
                deleted = session.query(RawSample)\
                    .filter(RawSample.timestamp == timestamp)\
                    .delete(synchronize_session=False)
                if strict and not deleted:
                    raise NotFound(f"No weather data at timestamp {timestamp}")
                aggregates.remove_sample(session, HourlyAggregate, timestamp)
                aggregates.remove_sample(session, DailyAggregate, timestamp)
        except NotFound as e:
            _complete(on_complete, e)
            raise
        except SQLAlchemyError as e:
            error = StorageError(f"Error while deleting weather data at {timestamp}: {e}")
            self.logger.error(str(error))
            self.log(Severity.ERROR, str(error))
            _complete(on_complete, error)
            raise error from e

        self.logger.debug(f"Deleted weather data at {timestamp} (rows: {deleted})")
        _complete(on_complete, None)
        return bool(deleted)

    def import_raw_samples(self, samples: Iterable[Tuple[int, float, float]]) -> int:
        """Bulk inserts raw samples and rebuilds every aggregate, atomically.

        Args:
            samples: (timestamp, temperature, humidity) tuples, already parsed.

        Returns:
            The number of raw samples inserted.

        Raises:
            StorageError: If the import failed. Nothing is written.
        """
        try:
            with self.transaction() as session:
                count = 0
                for timestamp, temperature, humidity in samples:
                    session.add(RawSample(timestamp=timestamp, temperature=temperature, humidity=humidity))
                    count += 1
                    if count % 1000 == 0:
                        session.flush()
                session.flush()
                aggregates.rebuild_aggregates(session)
        except SQLAlchemyError as e:
            error = StorageError(f"Error while importing raw samples: {e}")
            self.logger.error(str(error))
            self.log(Severity.ERROR, str(error))
            raise error from e

        self.logger.info(f"Imported {count} raw samples")
        return count

    def rebuild_aggregates(self) -> Dict[str, int]:
        """Recomputes the per-hour and per-day tables from the raw samples.

        Raises:
            StorageError: If the rebuild failed. The previous aggregates stay.
        """
        try:
            with self.transaction() as session:
                return aggregates.rebuild_aggregates(session)
        except SQLAlchemyError as e:
            error = StorageError(f"Error while rebuilding aggregates: {e}")
            self.logger.error(str(error))
            self.log(Severity.ERROR, str(error))
            raise error from e

    # Reads

    def select_granularity(self, timestamp_start: int, timestamp_end: int,
                           granularity: Optional[str] = None) -> str:
        """Decides which table answers a query.

        An explicit ``'raw'``, ``'hour'`` or ``'day'`` is honoured. Anything
        else picks the coarsest granularity whose threshold the timeframe
        strictly exceeds.
        """
        if granularity in GRANULARITIES:
            return granularity

        timeframe = timestamp_end - timestamp_start
        if timeframe > self.settings.day_granularity_threshold:
            return DAY
        if timeframe > self.settings.hour_granularity_threshold:
            return HOUR
        return RAW

    def get_weather_data(self, timestamp_start: Any, timestamp_end: Any,
                         granularity: Optional[str] = None) -> QueryResult:
        """Retrieves temperature & humidity data for a timeframe.

        Args:
            timestamp_start: Beginning of the timeframe, included.
            timestamp_end: End of the timeframe, excluded.
            granularity: ``'raw'``, ``'hour'``, ``'day'``, or None (any other
                value counts as None) to choose from the timeframe length.

        Returns:
            A QueryResult. On success ``data`` holds ``timestamp_start``,
            ``timestamp_end``, the applied ``granularity`` and ``data``, the
            rows ordered by timestamp. Only per-hour and per-day rows carry
            min/max values and ``number_values``.
        """
        try:
            timestamp_start, timestamp_end = parse_time_range(timestamp_start, timestamp_end)
        except InvalidInput as e:
            self.logger.warning(f"Rejected weather data query: {e}")
            return QueryResult(e, None)

        self.logger.debug(f"get_weather_data(): given granularity {granularity!r}, "
                          f"timeframe {timestamp_end - timestamp_start}s")
        granularity = self.select_granularity(timestamp_start, timestamp_end, granularity)
        self.logger.debug(f"get_weather_data(): granularity {granularity!r} selected")

        model = TABLES_BY_GRANULARITY[granularity]
        try:
            with self.get_session() as session:
                rows = session.query(model)\
                    .filter(model.timestamp >= timestamp_start, model.timestamp < timestamp_end)\
                    .order_by(model.timestamp.asc())\
                    .all()
                data = [row.to_dict() for row in rows]
        except SQLAlchemyError as e:
            error = StorageError(f"Error while querying {model.__tablename__} "
                                 f"[{timestamp_start}, {timestamp_end}): {e}")
            self.logger.error(str(error))
            self.log(Severity.ERROR, str(error))
            return QueryResult(error, None)

        self.logger.debug(f"get_weather_data(): returned {len(data)} items")
        return QueryResult(None, {
            'timestamp_start': timestamp_start,
            'timestamp_end': timestamp_end,
            'granularity': granularity,
            'data': data,
        })

    def get_latest_sample(self) -> Optional[Dict[str, Any]]:
        """Returns the most recent raw sample, or None if there is none."""
        try:
            with self.get_session() as session:
                sample = session.query(RawSample).order_by(RawSample.timestamp.desc()).first()
                return sample.to_dict() if sample else None
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting latest sample: {e}")
            return None

    def count_samples(self) -> int:
        try:
            with self.get_session() as session:
                return session.query(func.count(RawSample.timestamp)).scalar() or 0
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting samples: {e}")
            return 0

    # Event log

    def log(self, severity: int, message: Any, on_error: Optional[CompletionCallback] = None) -> Optional[Exception]:
        """Records a message in the event log.

        This never raises, logging must not be the reason an operation
        fails. A failed insert is passed to ``on_error`` when given,
        otherwise it is reported through the Python logger.

        Args:
            severity: One of the `Severity` values.
            message: The message. Non-string values are stored as their repr.
            on_error: Optional callable receiving the insert error.

        Returns:
            The error that prevented the insert, or None.
        """
        if not isinstance(message, str):
            message = repr(message)

        if self.settings.debug:
            self.logger.debug(f"Event log ({severity}): {message}")

        try:
            with self.transaction() as session:
                session.add(LogEntry(severity=int(severity), message=message))
        except Exception as e:
            if on_error is not None:
                on_error(e)
            else:
                self.logger.error(f"Failed at writing event log entry {message!r}: {e}")
            return e
        return None

    def get_logs(self, limit: int = 100, max_severity: Optional[int] = None) -> List[Dict[str, Any]]:
        """Retrieves the most recent event log entries, newest first.

        Args:
            limit: The maximum number of entries to return.
            max_severity: Only return entries at least this severe.
        """
        try:
            with self.get_session() as session:
                query = session.query(LogEntry)
                if max_severity is not None:
                    query = query.filter(LogEntry.severity <= int(max_severity))
                entries = query.order_by(LogEntry.id.desc()).limit(limit).all()
                return [entry.to_dict() for entry in entries]
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting log entries: {e}")
            return []
