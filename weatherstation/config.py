"""
Configuration handling for the weather station.

Settings live in a JSON file. Missing keys are filled in from
``DEFAULT_CONFIG`` so older files keep working when new options appear.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Any, Optional

CONFIG_FILE = 'config.json'

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {
        "file": "data.db",
        "url": None
    },
    "query": {
        # Spans longer than these (seconds) switch to per-hour / per-day data
        "hour_granularity_threshold": 604800,
        "day_granularity_threshold": 2678400
    },
    "probes": [
        {"id": "probe1", "type": "mock"}
    ],
    "polling": {
        "interval_seconds": 10,
        # max_tries * retry_delay_seconds should stay below interval_seconds
        "max_tries": 2,
        "retry_delay_seconds": 4
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080
    },
    "app": {
        "debug": False,
        "log_level": "INFO"
    }
}


@dataclass
class StoreSettings:
    """Settings the storage engine needs, extracted from the configuration.

    Attributes:
        database_url: SQLAlchemy URL of the database.
        hour_granularity_threshold: Timeframe (seconds) above which queries
            are answered from the per-hour table.
        day_granularity_threshold: Timeframe (seconds) above which queries
            are answered from the per-day table.
        debug: Echo SQL statements and trace granularity decisions.
    """
    database_url: str = "sqlite:///data.db"
    hour_granularity_threshold: int = 604800
    day_granularity_threshold: int = 2678400
    debug: bool = False


def _merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    for key in DEFAULT_CONFIG:
        if key not in config:
            config[key] = copy.deepcopy(DEFAULT_CONFIG[key])
        elif isinstance(DEFAULT_CONFIG[key], dict) and isinstance(config[key], dict):
            for sub_key in DEFAULT_CONFIG[key]:
                if sub_key not in config[key]:
                    config[key][sub_key] = copy.deepcopy(DEFAULT_CONFIG[key][sub_key])
    return config


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Loads the configuration from a JSON file.

    If the file does not exist, it is created with default values. If it is
    corrupted, a warning is logged and the defaults are returned. A loaded
    file is merged with the defaults so every expected key is present.

    Args:
        path: Path of the configuration file. Defaults to ``CONFIG_FILE``.

    Returns:
        A dictionary containing the configuration.
    """
    path = path or CONFIG_FILE
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                config = json.load(f)
            if not isinstance(config, dict):
                raise ValueError("configuration root must be an object")
            return _merge_defaults(config)
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning(f"Could not load config file {path}, using defaults: {e}")
            return copy.deepcopy(DEFAULT_CONFIG)

    save_config(DEFAULT_CONFIG, path)
    return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config: Dict[str, Any], path: Optional[str] = None) -> bool:
    """Saves the given configuration dictionary to a JSON file.

    Args:
        config: The configuration dictionary to save.
        path: Destination file. Defaults to ``CONFIG_FILE``.

    Returns:
        True if the configuration was saved successfully, False otherwise.
    """
    path = path or CONFIG_FILE
    try:
        with open(path, 'w') as f:
            json.dump(config, f, indent=2)
        return True
    except IOError as e:
        logger.error(f"Could not save config file {path}: {e}")
        return False


def get_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Convenience alias for `load_config`."""
    return load_config(path)


def update_config(updates: Dict[str, Any], path: Optional[str] = None) -> bool:
    """Applies updates to the configuration file.

    Nested sections are updated key by key, anything else is replaced.

    Args:
        updates: The configuration keys and values to update.
        path: Configuration file to update.

    Returns:
        True if the updated configuration was saved, False otherwise.
    """
    config = load_config(path)
    for key, value in updates.items():
        if key in config and isinstance(config[key], dict) and isinstance(value, dict):
            config[key].update(value)
        else:
            config[key] = value
    return save_config(config, path)


def store_settings(config: Dict[str, Any]) -> StoreSettings:
    """Builds the storage settings out of a loaded configuration.

    Args:
        config: A configuration dictionary as returned by `load_config`.

    Returns:
        The matching StoreSettings.
    """
    database = config.get('database', {})
    query = config.get('query', {})
    database_url = database.get('url') or f"sqlite:///{database.get('file', 'data.db')}"
    return StoreSettings(
        database_url=database_url,
        hour_granularity_threshold=int(query.get('hour_granularity_threshold', 604800)),
        day_granularity_threshold=int(query.get('day_granularity_threshold', 2678400)),
        debug=bool(config.get('app', {}).get('debug', False)),
    )
