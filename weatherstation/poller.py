"""
Periodic probe polling.

Every probe is read on a fixed interval by an APScheduler background job.
A failed read is retried a few seconds later, up to a configured number of
tries; successful reads are handed to the storage engine.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from weatherstation.database import WeatherStationDatabase
from weatherstation.exceptions import WeatherStationError
from weatherstation.models import Severity
from weatherstation.probe_reader import ProbeReader


class ProbePoller:
    """Polls the configured probes and saves their readings.

    Attributes:
        store: The storage engine readings are saved to.
        readers: One ProbeReader per configured probe.
        interval_seconds: Delay between two polls of every probe.
        max_tries: Number of attempts before a poll is abandoned.
        retry_delay_seconds: Delay before retrying a failed read.
        scheduler: The APScheduler scheduler running the jobs.
    """

    def __init__(self, store: WeatherStationDatabase, readers: List[ProbeReader],
                 polling_config: Optional[Dict[str, Any]] = None, scheduler: Optional[Any] = None):
        polling_config = polling_config or {}
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.readers = readers
        self.interval_seconds = int(polling_config.get('interval_seconds', 10))
        self.max_tries = max(1, int(polling_config.get('max_tries', 2)))
        self.retry_delay_seconds = float(polling_config.get('retry_delay_seconds', 4))
        self.scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc)

        if self.max_tries * self.retry_delay_seconds >= self.interval_seconds:
            self.logger.warning("Retries may overlap the next poll: max_tries * retry_delay_seconds "
                                f"({self.max_tries * self.retry_delay_seconds}s) >= interval_seconds "
                                f"({self.interval_seconds}s)")

    @classmethod
    def from_config(cls, store: WeatherStationDatabase, config: Dict[str, Any],
                    scheduler: Optional[Any] = None) -> 'ProbePoller':
        """Builds a poller for every probe listed in the configuration."""
        readers = [ProbeReader(probe) for probe in config.get('probes', [])]
        return cls(store, readers, config.get('polling', {}), scheduler=scheduler)

    def start(self):
        """Schedules the recurring poll, running the first one right away."""
        self.store.log(Severity.INFO, 'Weather station started.')
        self.scheduler.add_job(
            self.poll_all,
            'interval',
            seconds=self.interval_seconds,
            next_run_time=datetime.now(timezone.utc),
            id='poll_probes',
            name=f'Poll {len(self.readers)} probe(s) every {self.interval_seconds}s',
            replace_existing=True,
        )
        self.scheduler.start()
        self.logger.info(f"Polling {len(self.readers)} probe(s) every {self.interval_seconds}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Probe polling stopped")

    def poll_all(self):
        for reader in self.readers:
            self.poll_probe(reader)

    def poll_probe(self, reader: ProbeReader, try_no: int = 1) -> bool:
        """Reads one probe and saves the result.

        Args:
            reader: The probe to read.
            try_no: Number of the current attempt, starting at 1.

        Returns:
            True if a reading was saved, False otherwise.
        """
        self.logger.debug(f"poll_probe({reader.probe_id}, try {try_no})")
        reading = reader.read()

        if reading.valid:
            try:
                self.store.save_weather_data(None, reading.temperature, reading.humidity)
                return True
            except WeatherStationError as e:
                # Storage failures are already recorded in the event log by the store
                self.logger.error(f"Could not save reading of probe {reader.probe_id}: {e}")
                return False

        if try_no < self.max_tries:
            self.store.log(Severity.NOTICE, f"Reading probe {reader.probe_id} failed (attempt no {try_no}).")
            self.scheduler.add_job(
                self.poll_probe,
                'date',
                run_date=datetime.now(timezone.utc) + timedelta(seconds=self.retry_delay_seconds),
                args=[reader, try_no + 1],
                name=f'Retry probe {reader.probe_id} (attempt {try_no + 1})',
            )
        else:
            self.store.log(Severity.WARNING, f"Reading probe {reader.probe_id} failed {try_no} times. Aborting.")
        return False
