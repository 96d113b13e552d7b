"""
Energy bookkeeping on top of the outbox store.

Three collaborators derive energy figures from cumulative meter counters:

- DeltaEngine: increment of a counter since the previous observation,
  persisted per unit id so it survives restarts.
- HistoricalWindow: the stored counter closest to "N seconds ago", which
  combined with the current counter yields consumption over the window.
- HourlyAccumulator: per-interval deltas bucketed by unit and local
  wall-clock hour, finalized exactly once per unit and bucket.

Counter decreases are never interpreted.  A reset, a replaced meter and a
wrap-around at the counter's numeric limit all look the same and are handled
as a baseline reset with zero delta.  True rollover therefore under-counts
the wrapped energy; this is a known limitation.

CHANGELOG:
- 2026-10-19: Hourly totals per unit instead of one site-wide sum
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from meter_edge.src.models import HourlyEnergy
from meter_edge.src.registers import HISTORY_COLUMNS

if TYPE_CHECKING:
    from meter_edge.src.store import Store

logger = logging.getLogger(__name__)

HOUR_S = 3600


def hour_bucket(ts: float) -> int:
    """Return the epoch seconds of the start of the local hour holding *ts*."""
    start = datetime.fromtimestamp(ts).replace(minute=0, second=0, microsecond=0)
    return int(start.timestamp())


class DeltaEngine:
    """Monotonic energy delta computation with a persisted baseline.

    Args:
        store: Store holding the per-unit baseline.
        divisor: Divides raw counter increments into the reported unit
            (1000 turns Wh into kWh).
    """

    def __init__(self, store: Store, *, divisor: float = 1000.0) -> None:
        self._store = store
        self._divisor = divisor

    async def compute_delta(self, unit_id: int, observed: int) -> float:
        """Return the increment since the last observation of *unit_id*.

        The first observation, and any observation that is not strictly
        greater than the baseline, resets the baseline to *observed* and
        yields zero.  Otherwise the difference is returned divided by the
        configured divisor.  In every case *observed* becomes the new
        baseline.
        """
        last = await self._store.get_energy_state(unit_id) or 0
        await self._store.set_energy_state(unit_id, observed)

        if last == 0:
            logger.info("Unit %d: first counter observation %d, baseline set", unit_id, observed)
            return 0.0
        if observed <= last:
            if observed < last:
                logger.warning(
                    "Unit %d: counter went backwards (%d -> %d), baseline reset",
                    unit_id,
                    last,
                    observed,
                )
            return 0.0

        return (observed - last) / self._divisor


class HistoricalWindow:
    """Lookup of past cumulative counters around a target time.

    Args:
        store: Store holding the readings.
        tolerance_s: Half-width of the search window in seconds.
    """

    def __init__(self, store: Store, *, tolerance_s: int = 30) -> None:
        self._store = store
        self._tolerance_s = tolerance_s

    async def query_near(
        self,
        family: str,
        unit_id: int,
        source_address: str,
        target_ts: int,
    ) -> int | float | None:
        """Return the counter stored closest to *target_ts*, or ``None``."""
        return await self._store.query_near(
            family, unit_id, source_address, target_ts, self._tolerance_s
        )

    async def lookback(
        self,
        family: str,
        unit_id: int,
        source_address: str,
        now: int,
    ) -> dict[str, int | float]:
        """Return every historical-window column for a reading taken at *now*.

        Missing windows are reported as 0.
        """
        history: dict[str, int | float] = {}
        for column, seconds in HISTORY_COLUMNS.items():
            value = await self.query_near(family, unit_id, source_address, now - seconds)
            history[column] = 0 if value is None else value
        return history


class HourlyAccumulator:
    """Buckets positive deltas by unit and local hour, finalizing each once.

    Every unit gets its own hourly total; deltas of different meters are
    never summed together.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def record(self, unit_id: int, delta_kwh: float) -> None:
        """Record a per-interval delta. Zero deltas are not stored."""
        if delta_kwh > 0:
            await self._store.record_delta(unit_id, delta_kwh)

    async def finalize(self, bucket: int, family: str, unit_id: int) -> HourlyEnergy | None:
        """Sum the deltas of *unit_id* within *bucket* and persist the total.

        Returns:
            The finalized total, or ``None`` if the bucket had already been
            finalized for this unit.
        """
        total = await self._store.sum_deltas(unit_id, bucket, bucket + HOUR_S)
        if not await self._store.finalize_hour(bucket, family, unit_id, total):
            logger.info("Hour bucket %d already finalized for unit %d, skipping", bucket, unit_id)
            return None
        logger.info(
            "Hourly energy finalized: %s unit %d bucket=%s total=%.3f kWh",
            family,
            unit_id,
            datetime.fromtimestamp(bucket).isoformat(),
            total,
        )
        return HourlyEnergy(hour_bucket=bucket, family=family, unit_id=unit_id, delta_sum=total)
