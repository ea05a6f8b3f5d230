"""Shared fixtures: a file-backed SQLite store per test."""

import copy
import json

import pytest

from weatherstation.config import DEFAULT_CONFIG, StoreSettings
from weatherstation.database import WeatherStationDatabase

# 2014-10-20T02:56:34Z
BASE_TS = 1413773794
# 2014-10-20T02:00:00Z and 2014-10-20T00:00:00Z
HOUR_START = 1413770400
DAY_START = 1413763200


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'weather.db'}"


@pytest.fixture
def store(database_url):
    db = WeatherStationDatabase(StoreSettings(database_url=database_url))
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def config_file(tmp_path, database_url):
    """A configuration file pointing at the test database."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config['database']['url'] = database_url
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(config))
    return str(path)
