#!/usr/bin/env python3
"""
Imports weather data from the legacy per-day CSV files.

Files are expected at ``<data-dir>/<YYYY>/<YYYY>-<M>-<D>.csv`` (month and
day not zero-padded), one ``timestamp;temperature;humidity`` line per
sample. Samples whose timestamp does not increase over the previously
imported one are skipped, as are samples with a ``null`` measurement.
Aggregates are rebuilt once every raw sample is in.
"""

import argparse
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Tuple

from weatherstation.config import load_config, store_settings
from weatherstation.database import WeatherStationDatabase
from weatherstation.exceptions import InvalidInput, StorageError
from weatherstation.validation import parse_timestamp, parse_measurement

# 2014-01-01T00:00:00Z, first day recorded by the file based station
DEFAULT_START = 1388534400

Row = Tuple[int, Optional[float], Optional[float]]


def weather_data_path(data_dir: str, day: datetime) -> str:
    """Path of the file holding the samples of the given UTC day."""
    return os.path.join(data_dir, str(day.year), f"{day.year}-{day.month}-{day.day}.csv")


def read_weather_file(path: str, start_ts: int, end_ts: int) -> List[Row]:
    """Reads the samples of one file that fall within ``[start_ts, end_ts)``.

    Malformed lines are ignored; ``null`` measurements are returned as None.
    A missing file yields no sample.
    """
    rows = []
    if not os.path.exists(path):
        return rows

    with open(path, 'r') as f:
        for line in f:
            bits = line.strip().split(';')
            if len(bits) < 3:
                continue
            try:
                timestamp = parse_timestamp(bits[0])
                if not start_ts <= timestamp < end_ts:
                    continue
                temperature = None if bits[1] == 'null' else parse_measurement(bits[1], 'temperature')
                humidity = None if bits[2] == 'null' else parse_measurement(bits[2], 'humidity')
            except InvalidInput:
                continue
            rows.append((timestamp, temperature, humidity))
    return rows


def iter_weather_files(data_dir: str, start_ts: int, end_ts: int) -> Iterator[Row]:
    """Yields the samples of every daily file covering ``[start_ts, end_ts)``."""
    day = datetime.fromtimestamp(start_ts, tz=timezone.utc).replace(hour=0, minute=0, second=0)
    while day.timestamp() < end_ts:
        yield from read_weather_file(weather_data_path(data_dir, day), start_ts, end_ts)
        day += timedelta(days=1)


def select_importable(rows: Iterator[Row], logger: Optional[logging.Logger] = None):
    """Splits rows into the samples to import and the number skipped.

    Returns:
        A tuple (samples, skipped) where samples only holds complete rows
        with strictly increasing timestamps.
    """
    logger = logger or logging.getLogger(__name__)
    samples = []
    skipped = 0
    previous_timestamp = None

    for index, (timestamp, temperature, humidity) in enumerate(rows):
        if previous_timestamp is not None and timestamp <= previous_timestamp:
            logger.info(f"Skipping entry {index} with timestamp {timestamp} "
                        f"older than previous one: {previous_timestamp}")
            skipped += 1
            continue
        if temperature is None or humidity is None:
            logger.info(f"Skipping entry {index} with timestamp {timestamp}: missing measurement")
            skipped += 1
            continue
        samples.append((timestamp, temperature, humidity))
        previous_timestamp = timestamp

    return samples, skipped


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Imports legacy CSV weather data into the database')
    parser.add_argument('--data-dir', default='./data', help='Folder holding the yearly folders (default: ./data)')
    parser.add_argument('--start', default=DEFAULT_START, help='First timestamp to import (default: 2014-01-01)')
    parser.add_argument('--end', default=None, help='Timestamp to stop at, excluded (default: now)')
    parser.add_argument('--config', default=None, help='Configuration file (default: ./config.json)')
    args = parser.parse_args(argv)

    try:
        start_ts = parse_timestamp(args.start, 'start')
        end_ts = parse_timestamp(args.end, 'end') if args.end is not None else int(time.time())
    except InvalidInput as e:
        print(f"❌ {e}")
        return 2

    logging.basicConfig(level=logging.WARNING,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    print("Loading items from files...")
    rows = list(iter_weather_files(args.data_dir, start_ts, end_ts))
    print(f"{len(rows)} items were loaded in memory.")

    samples, skipped = select_importable(rows)

    config = load_config(args.config)
    try:
        with WeatherStationDatabase(store_settings(config)) as store:
            print("Inserting raw data and computing averages...")
            imported = store.import_raw_samples(samples)
    except StorageError as e:
        print(f"❌ Import failed, nothing was written: {e}")
        return 1

    print('----')
    print(f"{imported} items were imported.")
    print(f"{skipped} items were skipped.")
    print('')
    print('Operation complete.')
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
