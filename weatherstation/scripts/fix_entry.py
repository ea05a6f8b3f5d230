#!/usr/bin/env python3
"""
Fixes an invalid entry of the weather station database.

The sample at the given timestamp is deleted (if any) and replaced by the
given values; the per-hour and per-day aggregates of its buckets are
recomputed along the way.

Usage example:
    fix_entry --timestamp=1413773794 --temperature=18.0 --humidity=78.1
"""

import argparse
import logging
from typing import List, Optional

from weatherstation.config import load_config, store_settings
from weatherstation.database import WeatherStationDatabase
from weatherstation.exceptions import InvalidInput, StorageError
from weatherstation.validation import parse_timestamp, parse_measurement


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Adds a weather data entry, or replaces it if one exists at that timestamp.',
        epilog='Example: fix_entry --timestamp=1413773794 --temperature=18.0 --humidity=78.1',
    )
    parser.add_argument('--timestamp', help='Timestamp of the entry, in seconds')
    parser.add_argument('--temperature', help='Corrected temperature')
    parser.add_argument('--humidity', help='Corrected humidity')
    parser.add_argument('--config', default=None, help='Configuration file (default: ./config.json)')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.timestamp is None or args.temperature is None or args.humidity is None:
        parser.print_help()
        return 2

    try:
        timestamp = parse_timestamp(args.timestamp)
        temperature = parse_measurement(args.temperature, 'temperature')
        humidity = parse_measurement(args.humidity, 'humidity')
    except InvalidInput as e:
        print(f"❌ {e}")
        parser.print_help()
        return 2

    config = load_config(args.config)
    logging.basicConfig(level=logging.WARNING,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        with WeatherStationDatabase(store_settings(config)) as store:
            print("Deleting previous value...")
            store.delete_weather_data(timestamp)

            print("Inserting new value and computing new averages...")
            store.save_weather_data(timestamp, temperature, humidity)
    except StorageError as e:
        print(f"❌ Error while fixing entry {timestamp}: {e}")
        return 1

    print("✅ Done.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
