"""Logging setup and FlightLogger circular-buffer handler for post-mortem dumps."""

import logging
import re
import sys
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

from scenecut.core.config import get_config

FLIGHT_LOG_CAPACITY = 50_000
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_UNSAFE_LABEL_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")

_flight_logger: "FlightLogger | None" = None


class FlightLogger(logging.Handler):
    """
    Circular buffer handler: keeps the last 50,000 log records (all levels) in memory.
    dump(label) writes the buffer to {forensics_dir}/{label}_{timestamp}.log.
    """

    def __init__(
        self,
        capacity: int = FLIGHT_LOG_CAPACITY,
        forensics_dir: str | Path = "logs/forensics",
    ) -> None:
        super().__init__(level=logging.DEBUG)
        self._buffer: deque[logging.LogRecord] = deque(maxlen=capacity)
        self._forensics_dir = Path(forensics_dir)

    def emit(self, record: logging.LogRecord) -> None:
        self._buffer.append(record)

    def dump(self, label: str) -> str:
        """Write buffer to the forensics dir; return path to the written file."""
        self._forensics_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        safe_label = _UNSAFE_LABEL_CHARS.sub("_", label).strip("_") or "scenecut"
        filepath = self._forensics_dir / f"{safe_label}_{timestamp}.log"
        formatter = self.formatter or logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
        with open(filepath, "w") as f:
            for record in self._buffer:
                f.write(formatter.format(record) + "\n")
        return str(filepath)

    def __len__(self) -> int:
        return len(self._buffer)


def get_flight_logger() -> FlightLogger | None:
    """Return the FlightLogger handler created by setup_logging(), if any."""
    return _flight_logger


def setup_logging(level: str | None = None, forensics_dir: str | Path | None = None) -> FlightLogger:
    """
    Configure application logging.

    Invariants:
    - The root logger is set to DEBUG so that all records reach handlers.
    - The console handler (stderr, so it never mixes with command output) logs at `level`
      (config log_level when omitted, WARNING by default).
    - A FlightLogger handler captures all levels at DEBUG into an in-memory circular buffer.
    """
    global _flight_logger
    if level is None or forensics_dir is None:
        cfg = get_config()
        level = level or cfg.log_level
        forensics_dir = forensics_dir if forensics_dir is not None else cfg.forensics_dir

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    # Remove existing handlers so we don't duplicate when called again
    for h in root.handlers[:]:
        root.removeHandler(h)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level.upper())
    console.setFormatter(formatter)
    root.addHandler(console)

    flight = FlightLogger(capacity=FLIGHT_LOG_CAPACITY, forensics_dir=forensics_dir)
    flight.setLevel(logging.DEBUG)
    flight.setFormatter(formatter)
    root.addHandler(flight)
    _flight_logger = flight
    return flight
