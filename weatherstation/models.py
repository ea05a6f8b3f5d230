"""
SQLAlchemy models for the weather station.

Three data tables share the timestamp as primary key: ``data_raw`` holds one
row per probe reading, ``data_per_hour`` and ``data_per_day`` hold running
averages and min/max values of the raw samples falling in each bucket. The
``logs`` table is the append-only event log.
"""

import enum
import time
from typing import Dict, Any

from sqlalchemy import Column, Integer, Float, Text, Index
from sqlalchemy.orm import declarative_base

from weatherstation.bucketing import HOUR, DAY

Base = declarative_base()


class Severity(enum.IntEnum):
    """Event log severities, lower is more severe (syslog ordering)."""
    EMERGENCY = 0  # system is unusable
    ALERT = 1      # action must be taken immediately
    CRITICAL = 2
    ERROR = 3
    WARNING = 4
    NOTICE = 5     # normal but significant
    INFO = 6
    DEBUG = 7


class RawSample(Base):
    """One temperature/humidity reading as returned by a probe.

    Attributes:
        timestamp (int): Seconds since the epoch (UTC), primary key.
        temperature (float): Temperature in degrees Celsius.
        humidity (float): Relative humidity in percent.
    """

    __tablename__ = 'data_raw'

    timestamp = Column(Integer, primary_key=True, autoincrement=False)
    temperature = Column(Float)
    humidity = Column(Float)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'temperature': self.temperature,
            'humidity': self.humidity,
        }

    def __repr__(self) -> str:
        return f"<RawSample(ts={self.timestamp}, temp={self.temperature}°C, humidity={self.humidity}%)>"


class AggregateMixin:
    """Columns shared by the per-hour and per-day tables.

    ``temperature`` and ``humidity`` hold the mean of every raw sample of the
    bucket starting at ``timestamp``; ``number_values`` is how many samples
    contributed.
    """

    granularity: str = ''

    timestamp = Column(Integer, primary_key=True, autoincrement=False)
    temperature = Column(Float)
    humidity = Column(Float)
    min_temperature = Column(Float)
    max_temperature = Column(Float)
    min_humidity = Column(Float)
    max_humidity = Column(Float)
    number_values = Column(Integer, nullable=False, default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'temperature': self.temperature,
            'humidity': self.humidity,
            'min_temperature': self.min_temperature,
            'max_temperature': self.max_temperature,
            'min_humidity': self.min_humidity,
            'max_humidity': self.max_humidity,
            'number_values': self.number_values,
        }

    def __repr__(self) -> str:
        return (f"<{type(self).__name__}(ts={self.timestamp}, temp={self.temperature}°C "
                f"[{self.min_temperature}..{self.max_temperature}], humidity={self.humidity}% "
                f"[{self.min_humidity}..{self.max_humidity}], n={self.number_values})>")


class HourlyAggregate(AggregateMixin, Base):
    """Averages and extremes per UTC hour."""

    __tablename__ = 'data_per_hour'
    granularity = HOUR


class DailyAggregate(AggregateMixin, Base):
    """Averages and extremes per UTC day."""

    __tablename__ = 'data_per_day'
    granularity = DAY


class LogEntry(Base):
    """A persisted event log message.

    The severity is stored in the ``type`` column. Timestamps are not unique,
    several entries can be written within the same second.

    Attributes:
        id (int): Surrogate primary key.
        timestamp (int): Seconds since the epoch when the entry was written.
        severity (int): One of the `Severity` values.
        message (str): Free text message.
    """

    __tablename__ = 'logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(Integer, nullable=False, default=lambda: int(time.time()))
    severity = Column('type', Integer, nullable=False)
    message = Column(Text)

    __table_args__ = (
        Index('idx_logs_timestamp', 'timestamp'),
    )

    def to_dict(self) -> Dict[str, Any]:
        try:
            severity_name = Severity(self.severity).name
        except ValueError:
            severity_name = str(self.severity)
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'severity': self.severity,
            'severity_name': severity_name,
            'message': self.message,
        }

    def __repr__(self) -> str:
        return f"<LogEntry(id={self.id}, ts={self.timestamp}, severity={self.severity}, message={self.message!r})>"


AGGREGATE_MODELS = (HourlyAggregate, DailyAggregate)

TABLES_BY_GRANULARITY = {
    'raw': RawSample,
    HOUR: HourlyAggregate,
    DAY: DailyAggregate,
}
