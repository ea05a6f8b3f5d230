"""
Maintenance of the per-hour and per-day aggregate tables.

Adding a sample updates the enclosing bucket incrementally: the mean is
moved towards the new value by ``(value - mean) / n`` and the extremes are
compared, so nothing has to be re-read. Min and max cannot be "un-applied",
so removing a sample recomputes the whole bucket from the raw samples left
in it.

All functions work on a caller-provided session and never commit; the
caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Type, Dict

from sqlalchemy.orm import Session

from weatherstation.bucketing import bucket_key, bucket_range
from weatherstation.models import RawSample, AggregateMixin, AGGREGATE_MODELS

logger = logging.getLogger(__name__)


@dataclass
class AggregateStats:
    """Running mean and extremes of a set of temperature/humidity samples."""
    temperature: float
    humidity: float
    min_temperature: float
    max_temperature: float
    min_humidity: float
    max_humidity: float
    number_values: int = 1

    @classmethod
    def first(cls, temperature: float, humidity: float) -> 'AggregateStats':
        """Statistics of a bucket holding a single sample."""
        return cls(
            temperature=temperature,
            humidity=humidity,
            min_temperature=temperature,
            max_temperature=temperature,
            min_humidity=humidity,
            max_humidity=humidity,
            number_values=1,
        )

    @classmethod
    def from_row(cls, row: AggregateMixin) -> 'AggregateStats':
        return cls(
            temperature=row.temperature,
            humidity=row.humidity,
            min_temperature=row.min_temperature,
            max_temperature=row.max_temperature,
            min_humidity=row.min_humidity,
            max_humidity=row.max_humidity,
            number_values=row.number_values,
        )

    def add(self, temperature: float, humidity: float) -> None:
        """Folds one more sample into the statistics."""
        self.number_values += 1
        self.temperature += (temperature - self.temperature) / self.number_values
        self.humidity += (humidity - self.humidity) / self.number_values

        if temperature < self.min_temperature:
            self.min_temperature = temperature
        if temperature > self.max_temperature:
            self.max_temperature = temperature
        if humidity < self.min_humidity:
            self.min_humidity = humidity
        if humidity > self.max_humidity:
            self.max_humidity = humidity

    def apply_to(self, row: AggregateMixin) -> None:
        row.temperature = self.temperature
        row.humidity = self.humidity
        row.min_temperature = self.min_temperature
        row.max_temperature = self.max_temperature
        row.min_humidity = self.min_humidity
        row.max_humidity = self.max_humidity
        row.number_values = self.number_values

    def to_model(self, model: Type[AggregateMixin], timestamp: int) -> AggregateMixin:
        row = model(timestamp=timestamp)
        self.apply_to(row)
        return row


def fold_samples(samples: Iterable[Tuple[float, float]]) -> Optional[AggregateStats]:
    """Computes the statistics of (temperature, humidity) pairs in one pass.

    Args:
        samples: The pairs to fold, in the order they should be applied.

    Returns:
        The resulting AggregateStats, or None if there was no sample.
    """
    stats = None
    for temperature, humidity in samples:
        if stats is None:
            stats = AggregateStats.first(temperature, humidity)
        else:
            stats.add(temperature, humidity)
    return stats


def add_sample(session: Session, model: Type[AggregateMixin], timestamp: int,
               temperature: float, humidity: float) -> AggregateMixin:
    """Accounts for a new raw sample in the aggregate table ``model``.

    The bucket row is created on the first contribution and updated in place
    afterwards.

    Args:
        session: Session of the running transaction.
        model: `HourlyAggregate` or `DailyAggregate`.
        timestamp: Timestamp of the raw sample.
        temperature: Temperature of the raw sample.
        humidity: Humidity of the raw sample.

    Returns:
        The inserted or updated aggregate row.
    """
    key = bucket_key(timestamp, model.granularity)
    row = session.get(model, key)

    if row is None:
        row = AggregateStats.first(temperature, humidity).to_model(model, key)
        session.add(row)
    else:
        stats = AggregateStats.from_row(row)
        stats.add(temperature, humidity)
        stats.apply_to(row)

    session.flush()
    logger.debug(f"Updated {model.__tablename__} bucket {key}: {row}")
    return row


def remove_sample(session: Session, model: Type[AggregateMixin], timestamp: int) -> Optional[AggregateMixin]:
    """Recomputes the bucket of ``timestamp`` after a raw sample was removed.

    The raw sample must already be deleted within the same session. The
    existing bucket row is dropped and rebuilt from the raw samples still
    inside ``[bucket_start, bucket_start + span)``; a bucket with no sample
    left is not recreated.

    Args:
        session: Session of the running transaction.
        model: `HourlyAggregate` or `DailyAggregate`.
        timestamp: Timestamp of the removed raw sample.

    Returns:
        The rebuilt aggregate row, or None if the bucket is now empty.
    """
    start, end = bucket_range(timestamp, model.granularity)

    existing = session.get(model, start)
    if existing is not None:
        session.delete(existing)
        session.flush()

    remaining = session.query(RawSample.temperature, RawSample.humidity)\
        .filter(RawSample.timestamp >= start, RawSample.timestamp < end)\
        .order_by(RawSample.timestamp.asc())\
        .all()
    logger.debug(f"Recomputing {model.__tablename__} bucket {start} from {len(remaining)} samples")

    stats = fold_samples((r.temperature, r.humidity) for r in remaining)
    if stats is None:
        return None

    row = stats.to_model(model, start)
    session.add(row)
    session.flush()
    return row


def rebuild_aggregates(session: Session) -> Dict[str, int]:
    """Recomputes both aggregate tables from scratch out of ``data_raw``.

    Used after bulk imports, where maintaining the aggregates one sample at
    a time would be needlessly slow.

    Returns:
        The number of rows written per aggregate table name.
    """
    buckets = {model: {} for model in AGGREGATE_MODELS}

    for sample in session.query(RawSample).order_by(RawSample.timestamp.asc()).yield_per(1000):
        for model, model_buckets in buckets.items():
            key = bucket_key(sample.timestamp, model.granularity)
            stats = model_buckets.get(key)
            if stats is None:
                model_buckets[key] = AggregateStats.first(sample.temperature, sample.humidity)
            else:
                stats.add(sample.temperature, sample.humidity)

    written = {}
    for model, model_buckets in buckets.items():
        session.query(model).delete()
        session.add_all(stats.to_model(model, key) for key, stats in sorted(model_buckets.items()))
        written[model.__tablename__] = len(model_buckets)

    session.flush()
    logger.info(f"Rebuilt aggregates: {written}")
    return written
