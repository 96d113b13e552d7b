"""
Health file writer for the meter edge daemon.

Writes a JSON health file at a configurable path with three fields:
- last_poll_ts: ISO timestamp of the most recent polling cycle.
- last_forward_ts: ISO timestamp of the most recent forward pass that
  delivered at least one document.
- unsent_count: Number of outbox rows still awaiting delivery.

The file is rewritten on every state change, giving Docker HEALTHCHECK or
monitoring a simple liveness signal.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes edge health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_poll_ts: str | None = None
        self._last_forward_ts: str | None = None
        self._unsent_count: int = 0

    def record_poll(self) -> None:
        """Record a polling cycle and write health file."""
        self._last_poll_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_forward(self) -> None:
        """Record a successful forward pass and write health file."""
        self._last_forward_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_unsent_count(self, count: int) -> None:
        """Update the outbox backlog and write health file."""
        self._unsent_count = count
        self._write()

    def _write(self) -> None:
        data = {
            "last_poll_ts": self._last_poll_ts,
            "last_forward_ts": self._last_forward_ts,
            "unsent_count": self._unsent_count,
        }
        self.path.write_text(json.dumps(data))
