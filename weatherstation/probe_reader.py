"""
Probe reader module for the weather station.

A probe is read by running an external command (typically a small DHT22
driver) printing ``<temperature>;<humidity>`` on its standard output. A mock
probe producing random values is available for development and testing.
"""

import logging
import random
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from weatherstation.exceptions import InvalidInput
from weatherstation.validation import parse_measurement


@dataclass
class ProbeReading:
    """A single probe reading with its metadata.

    Attributes:
        probe_id: The identifier of the probe, from the configuration.
        temperature: The temperature in degrees Celsius.
        humidity: The relative humidity in percent.
        timestamp: The Unix timestamp when the reading was taken.
        valid: False when the probe did not return usable data; the
            measurements must then be ignored.
        raw_output: What the probe printed, kept for diagnostics.
    """
    probe_id: str
    temperature: float = 0.0
    humidity: float = 0.0
    timestamp: float = field(default_factory=time.time)
    valid: bool = False
    raw_output: str = ''


def parse_probe_output(output: str) -> Optional[Dict[str, float]]:
    """Parses the ``<temperature>;<humidity>`` output of a probe.

    Extra fields after the humidity are ignored.

    Args:
        output: The text printed by the probe.

    Returns:
        A dictionary with 'temperature' and 'humidity', or None if the
        output does not hold two numbers.
    """
    bits = (output or '').strip().split(';')
    if len(bits) < 2:
        return None
    try:
        return {
            'temperature': parse_measurement(bits[0], 'temperature'),
            'humidity': parse_measurement(bits[1], 'humidity'),
        }
    except InvalidInput:
        return None


class ProbeReader:
    """Reads temperature and humidity from one configured probe.

    Attributes:
        logger: The logger instance for this class.
        probe_id: The probe identifier.
        probe_type: 'command' or 'mock'.
        command: The argv run for 'command' probes.
        timeout: Seconds after which a 'command' probe is considered failed.
    """

    def __init__(self, probe_config: Dict[str, Any]):
        """Initializes the ProbeReader.

        Args:
            probe_config: One entry of the 'probes' configuration list, with
                'id', 'type' ('command' or 'mock') and, for commands,
                'command' (list of arguments) and optionally 'timeout'.

        Raises:
            ValueError: If the probe type is unsupported or a command probe
                has no command.
        """
        self.logger = logging.getLogger(__name__)
        self.probe_id = str(probe_config.get('id', 'default'))
        self.probe_type = probe_config.get('type', 'command')
        self.command: List[str] = [str(arg) for arg in probe_config.get('command', [])]
        self.timeout = float(probe_config.get('timeout', 30))

        if self.probe_type == 'command':
            if not self.command:
                raise ValueError(f"Probe {self.probe_id} has no command configured")
            self.logger.info(f"Using command probe {self.probe_id}: {' '.join(self.command)}")
        elif self.probe_type == 'mock':
            self.logger.info(f"Using mock probe {self.probe_id}")
        else:
            raise ValueError(f"Unsupported probe type: {self.probe_type}")

    def read(self) -> ProbeReading:
        """Queries the probe once.

        Failures never raise: check the 'valid' flag of the result.
        """
        try:
            if self.probe_type == 'mock':
                output = self._read_mock_probe()
            else:
                output = self._run_command()
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.error(f"Error reading probe {self.probe_id}: {e}")
            return ProbeReading(probe_id=self.probe_id)

        self.logger.debug(f"Probe {self.probe_id} returned [{output}]")
        values = parse_probe_output(output)
        if values is None:
            return ProbeReading(probe_id=self.probe_id, raw_output=output)

        return ProbeReading(
            probe_id=self.probe_id,
            temperature=values['temperature'],
            humidity=values['humidity'],
            valid=True,
            raw_output=output,
        )

    def _run_command(self) -> str:
        result = subprocess.run(
            self.command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=self.timeout,
            check=False,
        )
        if result.returncode != 0:
            self.logger.warning(f"Probe {self.probe_id} exited with status {result.returncode}: "
                                f"{result.stderr.decode(errors='replace').strip()}")
        return result.stdout.decode(errors='replace')

    def _read_mock_probe(self) -> str:
        """Generates a mock reading, 0.0-20.0°C and 0.0-100.0%."""
        temperature = random.randrange(0, 200) / 10
        humidity = random.randrange(0, 1000) / 10
        return f"{temperature};{humidity}"

    def get_probe_info(self) -> Dict[str, Any]:
        info = {
            "probe_id": self.probe_id,
            "probe_type": self.probe_type,
        }
        if self.probe_type == 'command':
            info["command"] = self.command
        return info
