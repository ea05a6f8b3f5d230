"""Exceptions raised by the weather station storage engine."""


class WeatherStationError(Exception):
    """Base class for all weather station errors."""


class StorageError(WeatherStationError):
    """The underlying database failed (I/O error, constraint violation...)."""


class InvalidInput(WeatherStationError, ValueError):
    """A timestamp, measurement or time range could not be parsed."""


class NotFound(WeatherStationError):
    """No raw sample exists at the requested timestamp."""
