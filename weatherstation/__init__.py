"""Weather station: probe polling, time-series storage with hourly/daily rollups, and a GraphQL query API."""

from weatherstation.database import WeatherStationDatabase, QueryResult
from weatherstation.exceptions import WeatherStationError, StorageError, InvalidInput, NotFound
from weatherstation.models import Severity

__version__ = '0.3.0'

__all__ = [
    'WeatherStationDatabase',
    'QueryResult',
    'WeatherStationError',
    'StorageError',
    'InvalidInput',
    'NotFound',
    'Severity',
]
