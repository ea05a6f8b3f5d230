"""
WSGI entry point for the weather station.

Used by Gunicorn or other WSGI servers. The configuration file is taken from
the WEATHERSTATION_CONFIG environment variable (default: ./config.json).
"""

import os

from weatherstation.app import build_application

application = build_application(os.environ.get('WEATHERSTATION_CONFIG'))

# Example Gunicorn entrypoint command (one worker: the poller is the only writer):
# gunicorn -w 1 -k gthread --threads 4 -b 0.0.0.0:8080 weatherstation.wsgi:application
