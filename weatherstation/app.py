"""
GraphQL-based Flask application for the weather station.

The dashboard retrieves weather data through a single GraphQL endpoint; the
storage engine is passed to the resolvers through the GraphQL context so
several applications (and tests) can each use their own store.

Features:
- GraphQL API using Graphene, with automatic granularity selection.
- Background probe polling with APScheduler.
- Plain JSON health check.
"""

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from graphene import ObjectType, String, Float, List as GrapheneList, Field, Int, Schema

from weatherstation.config import load_config, store_settings
from weatherstation.database import WeatherStationDatabase
from weatherstation.exceptions import WeatherStationError, StorageError
from weatherstation.models import Severity
from weatherstation.poller import ProbePoller

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ['werkzeug', 'apscheduler', 'sqlalchemy', 'graphql']


# GraphQL Types
class WeatherDataPoint(ObjectType):
    timestamp = Int()
    temperature = Float()
    humidity = Float()
    # Only set for per-hour and per-day data
    min_temperature = Float()
    max_temperature = Float()
    min_humidity = Float()
    max_humidity = Float()
    number_values = Int()


class WeatherData(ObjectType):
    timestamp_start = Int()
    timestamp_end = Int()
    granularity = String()
    data = GrapheneList(WeatherDataPoint)


class LogMessage(ObjectType):
    id = Int()
    timestamp = Int()
    severity = Int()
    severity_name = String()
    message = String()


class HealthStatus(ObjectType):
    status = String()
    timestamp = String()
    sample_count = Int()


class Query(ObjectType):
    weather_data = Field(
        WeatherData,
        start=Int(required=True),
        end=Int(required=True),
        granularity=String()
    )
    latest_sample = Field(WeatherDataPoint)
    logs = GrapheneList(LogMessage, limit=Int(default_value=100))
    health = Field(HealthStatus)

    def resolve_weather_data(self, info: Any, start: int, end: int,
                             granularity: Optional[str] = None) -> Optional[WeatherData]:
        """Resolves the weather data of a timeframe.

        Args:
            info: The GraphQL resolve info object.
            start: Beginning of the timeframe, included.
            end: End of the timeframe, excluded.
            granularity: 'raw', 'hour', 'day' or nothing for automatic.

        Returns:
            A WeatherData object, or None if the store reported an error.
        """
        store = info.context['store']
        result = store.get_weather_data(start, end, granularity)
        if result.error:
            logger.error(f"Retrieving weather data failed: {result.error}")
            # Storage failures are already in the event log
            if not isinstance(result.error, StorageError):
                store.log(Severity.ERROR, f"Retrieving weather data [{start}, {end}) failed: {result.error}")
            return None

        payload = result.data
        return WeatherData(
            timestamp_start=payload['timestamp_start'],
            timestamp_end=payload['timestamp_end'],
            granularity=payload['granularity'],
            data=[WeatherDataPoint(**row) for row in payload['data']],
        )

    def resolve_latest_sample(self, info: Any) -> Optional[WeatherDataPoint]:
        sample = info.context['store'].get_latest_sample()
        return WeatherDataPoint(**sample) if sample else None

    def resolve_logs(self, info: Any, limit: int = 100) -> List[LogMessage]:
        limit = max(1, min(limit, 1000))
        return [LogMessage(**entry) for entry in info.context['store'].get_logs(limit=limit)]

    def resolve_health(self, info: Any) -> HealthStatus:
        return HealthStatus(**_health(info.context['store']))


schema = Schema(query=Query)


def _health(store: WeatherStationDatabase) -> Dict[str, Any]:
    try:
        sample_count = store.count_samples()
        status = 'healthy'
    except RuntimeError:
        sample_count = 0
        status = 'unavailable'
    return {
        'status': status,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'sample_count': sample_count,
    }


def create_app(store: WeatherStationDatabase) -> Flask:
    """Creates the Flask application serving the given store.

    Args:
        store: An initialized storage engine.

    Returns:
        The Flask application.
    """
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET_KEY', os.urandom(32).hex())
    app.extensions['weatherstation_store'] = store

    allowed_origins = os.environ.get('ALLOWED_ORIGINS', 'http://localhost:8080').split(',')
    CORS(app, resources={
        r"/*": {
            "origins": allowed_origins,
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type"],
            "max_age": 3600
        }
    })

    @app.route('/graphql', methods=['POST'])
    def graphql_endpoint() -> Response:
        """Handles incoming GraphQL queries."""
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'No JSON data provided'}), 400

        query = data.get('query')
        variables = data.get('variables') or {}
        if not query:
            return jsonify({'error': 'No query provided'}), 400

        try:
            result = schema.execute(query, variable_values=variables, context_value={'store': store})
        except Exception as e:
            logger.error(f"GraphQL endpoint error: {e}")
            return jsonify({'error': 'Internal server error'}), 500

        response_data = {'data': result.data}
        if result.errors:
            response_data['errors'] = [str(error) for error in result.errors]
        return jsonify(response_data)

    @app.route('/health', methods=['GET'])
    def health() -> Response:
        return jsonify(_health(store))

    return app


def configure_logging(level: str = 'INFO'):
    """Sets up root logging and quietens chatty libraries."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_application(config_path: Optional[str] = None, start_polling: bool = True) -> Flask:
    """Builds a ready-to-serve application out of a configuration file.

    The store and the poller are attached to the returned application as
    ``app.extensions['weatherstation_store']`` and
    ``app.extensions['weatherstation_poller']``.
    """
    config = load_config(config_path)
    configure_logging(config.get('app', {}).get('log_level', 'INFO'))

    store = WeatherStationDatabase(store_settings(config)).initialize()
    app = create_app(store)

    poller = None
    if start_polling:
        poller = ProbePoller.from_config(store, config)
        poller.start()
    app.extensions['weatherstation_poller'] = poller
    return app


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Weather station GraphQL server')
    parser.add_argument('--config', default=None, help='Configuration file (default: ./config.json)')
    parser.add_argument('--host', default=None, help='Host to bind to (overrides configuration)')
    parser.add_argument('--port', type=int, default=None, help='Port to listen on (overrides configuration)')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')
    parser.add_argument('--no-polling', action='store_true', help='Serve queries without polling the probes')
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging('DEBUG' if args.debug else config['app'].get('log_level', 'INFO'))

    settings = store_settings(config)
    settings.debug = settings.debug or args.debug
    store = WeatherStationDatabase(settings)
    poller = None

    host = args.host or config['server'].get('host', '0.0.0.0')
    port = args.port or int(config['server'].get('port', 8080))

    try:
        store.initialize()

        if not args.no_polling:
            poller = ProbePoller.from_config(store, config)
            poller.start()

        app = create_app(store)
        logger.info(f"Starting weather station server on {host}:{port}")
        app.run(host=host, port=port, debug=args.debug, use_reloader=False, threaded=True)

    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except (WeatherStationError, ValueError) as e:
        logger.error(f"Server error: {e}")
        return 1
    finally:
        logger.info("Cleaning up application...")
        if poller:
            poller.stop()
        store.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
