#!/usr/bin/env python3
"""
One-time reshape of a weather station database to the current schema.

Every table is renamed to ``tmp_<name>``, recreated with the current
columns, refilled from the renamed copy, and the copies are dropped. The
whole reshape is a single transaction; the file is vacuumed afterwards.
This is a maintenance operation, never run by the station itself.
"""

import argparse
import logging
from typing import Dict, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from weatherstation.config import load_config, store_settings
from weatherstation.models import Base

logger = logging.getLogger(__name__)

AGGREGATE_COLUMNS = ("timestamp, temperature, humidity, min_temperature, max_temperature, "
                     "min_humidity, max_humidity, number_values")

# Columns copied over for each table; logs get fresh surrogate ids
COPIED_COLUMNS = {
    'logs': 'timestamp, type, message',
    'data_raw': 'timestamp, temperature, humidity',
    'data_per_hour': AGGREGATE_COLUMNS,
    'data_per_day': AGGREGATE_COLUMNS,
}


def _reshape(conn: Connection) -> Dict[str, int]:
    existing = set(inspect(conn).get_table_names())
    tables = [name for name in COPIED_COLUMNS if name in existing]

    for name in tables:
        conn.exec_driver_sql(f"ALTER TABLE {name} RENAME TO tmp_{name}")

    # Renamed tables keep their index names, which the new tables reuse
    inspector = inspect(conn)
    for name in tables:
        for index in inspector.get_indexes(f"tmp_{name}"):
            conn.exec_driver_sql(f'DROP INDEX "{index["name"]}"')

    Base.metadata.create_all(conn)

    copied = {}
    for name in tables:
        columns = COPIED_COLUMNS[name]
        conn.exec_driver_sql(f"INSERT INTO {name}({columns}) SELECT {columns} FROM tmp_{name}")
        copied[name] = conn.execute(text(f"SELECT COUNT(*) FROM {name}")).scalar()
        logger.info(f"Copied {copied[name]} rows into {name}")

    for name in tables:
        conn.exec_driver_sql(f"DROP TABLE tmp_{name}")

    return copied


def reshape_schema(database_url: str) -> Dict[str, int]:
    """Reshapes the database at ``database_url`` to the current schema.

    Returns:
        The number of rows copied per table.

    Raises:
        SQLAlchemyError: If any step failed; the database is left untouched.
    """
    # Transaction boundaries are emitted by hand, the driver must not open its own
    engine = create_engine(database_url, isolation_level="AUTOCOMMIT")
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("BEGIN")
            try:
                copied = _reshape(conn)
            except Exception:
                conn.exec_driver_sql("ROLLBACK")
                raise
            conn.exec_driver_sql("COMMIT")
            conn.exec_driver_sql("VACUUM")
    finally:
        engine.dispose()
    return copied


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Reshapes a weather station database to the current schema')
    parser.add_argument('--config', default=None, help='Configuration file (default: ./config.json)')
    parser.add_argument('--database-url', default=None, help='SQLAlchemy URL, overrides the configuration')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    database_url = args.database_url or store_settings(load_config(args.config)).database_url
    try:
        copied = reshape_schema(database_url)
    except SQLAlchemyError as e:
        print(f"❌ Migration failed, database left unchanged: {e}")
        return 1

    for name, count in copied.items():
        print(f"✅ {name}: {count} rows")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
