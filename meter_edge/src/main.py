"""
Meter edge daemon main loop.

A single sequential ``PollLoop`` drives the pipeline.  Each cycle:

1. Finalizes the previous local hour's energy total when the hour has
   advanced since the previous cycle (exactly once per bucket).
2. Reads every configured meter in turn via the MeterReader, decodes the
   words, computes the energy delta and historical-window columns, and
   appends the reading to the outbox.  A meter that cannot be read is
   skipped; a reading that cannot be stored is dropped.
3. Purges rows older than the retention horizon.
4. Runs one forward pass over the outbox.
5. Updates the health file.

The loop sleeps a fixed interval between cycles, independent of how long the
cycle took.  Every step is resilient: an exception is logged and never
escapes the loop.  Graceful shutdown on SIGTERM/SIGINT sets a shared
asyncio.Event; the in-flight cycle completes, one final forward pass runs,
and the store is closed.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-19: Finalize hourly energy per unit; record deltas only for stored readings
- 2026-10-19: Hourly energy finalize on hour-boundary crossing
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from meter_edge.src.decoder import normalize
from meter_edge.src.energy import DeltaEngine, HistoricalWindow, HourlyAccumulator, hour_bucket
from meter_edge.src.models import Reading
from meter_edge.src.registers import ALL_FAMILIES, DELTA_COLUMN

if TYPE_CHECKING:
    from meter_edge.src.config import EdgeSettings
    from meter_edge.src.forwarder import Forwarder
    from meter_edge.src.health import HealthWriter
    from meter_edge.src.models import MeterConfig
    from meter_edge.src.poller import MeterReader
    from meter_edge.src.store import Store
    from meter_edge.src.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

_DAY_S = 86400


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the edge daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: EdgeSettings) -> None:
    """Log a config summary at startup with the telemetry token masked."""
    meters = ", ".join(f"{m.family}:{m.unit_ids}" for m in settings.meters)
    logger.info(
        "Meter edge daemon starting with config: "
        "gateway=%s:%s, meters=[%s], poll_interval_s=%s, "
        "batch_sizes=%s, default_batch_size=%s, store_path=%s, "
        "retention_days=%s, telemetry_transport=%s, telemetry_host=%s:%s, "
        "telemetry_base_url=%s, telemetry_token_masked=%s",
        settings.gateway_host,
        settings.gateway_port,
        meters,
        settings.poll_interval_s,
        settings.batch_sizes,
        settings.default_batch_size,
        settings.store_path,
        settings.retention_days,
        settings.telemetry_transport,
        settings.telemetry_host,
        settings.telemetry_port,
        settings.telemetry_base_url or "-",
        _masked_token(settings.telemetry_token),
    )


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------


class PollLoop:
    """Sequential per-cycle driver of the store-and-forward pipeline.

    Holds the hour bucket observed by the previous cycle so the hour
    boundary check is a comparison against its own state.

    Args:
        reader: Meter reader for the field-bus gateway.
        store: The opened outbox store.
        forwarder: Forwarder draining the store into the telemetry sink.
        meters: Configured meter families and unit ids.
        health: HealthWriter instance, or None to skip health writes.
        retention_days: Age after which stored rows are purged.
        history_tolerance_s: Half-width of the historical-window search.
        energy_divisor: Divides raw counter increments (Wh -> kWh).
    """

    def __init__(
        self,
        *,
        reader: MeterReader,
        store: Store,
        forwarder: Forwarder,
        meters: list[MeterConfig],
        health: HealthWriter | None = None,
        retention_days: int = 7,
        history_tolerance_s: int = 30,
        energy_divisor: float = 1000.0,
    ) -> None:
        self._reader = reader
        self._store = store
        self._forwarder = forwarder
        self._meters = meters
        self._health = health
        self._retention_s = retention_days * _DAY_S
        self._deltas = DeltaEngine(store, divisor=energy_divisor)
        self._window = HistoricalWindow(store, tolerance_s=history_tolerance_s)
        self._hourly = HourlyAccumulator(store)
        self._last_hour_bucket: int | None = None

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def _check_hour_boundary(self, now: int) -> None:
        bucket = hour_bucket(now)
        previous, self._last_hour_bucket = self._last_hour_bucket, bucket
        if previous is None or previous == bucket:
            return
        logger.info("Hour boundary crossed, finalizing previous hour")
        for meter in self._meters:
            for unit_id in meter.unit_ids:
                try:
                    await self._hourly.finalize(previous, meter.family, unit_id)
                except Exception:
                    logger.error(
                        "Hourly finalize failed for unit %d bucket %d",
                        unit_id,
                        previous,
                        exc_info=True,
                    )

    async def _poll_meter(self, family_name: str, unit_id: int) -> bool:
        """Read, decode and store one meter. Returns True if a row was stored.

        The delta feeds the hourly total only once its reading is stored.  The
        baseline still advances when the append fails, so a dropped reading's
        interval is missing from both the outbox and the hourly total.
        """
        family = ALL_FAMILIES[family_name]
        raw = await self._reader.read_meter(family, unit_id)
        if raw is None:
            logger.warning("%s unit %d skipped this cycle", family_name, unit_id)
            return False

        values = normalize(raw, family)
        if values is None:
            logger.warning("%s unit %d: incomplete data, skipping", family_name, unit_id)
            return False

        source = self._reader.host
        try:
            now = self._store.now()
            delta = await self._deltas.compute_delta(unit_id, int(values[family.delta_counter]))
            history = await self._window.lookback(family_name, unit_id, source, now)
            values = {**values, **history, DELTA_COLUMN: delta}
            reading = Reading(
                family=family_name, unit_id=unit_id, source_address=source, values=values
            )
            row_id = await self._store.append(reading)
        except Exception:
            logger.error(
                "Failed to store %s unit %d reading, dropped", family_name, unit_id, exc_info=True
            )
            return False

        try:
            await self._hourly.record(unit_id, delta)
        except Exception:
            logger.error(
                "Failed to record %s unit %d energy delta", family_name, unit_id, exc_info=True
            )

        logger.info(
            "Stored %s unit %d (id=%d, delta=%.3f kWh)", family_name, unit_id, row_id, delta
        )
        return True

    async def _purge(self) -> None:
        try:
            cutoff = self._store.now() - self._retention_s
            removed = await self._store.purge_older_than(cutoff)
            if removed:
                logger.info("Purged %d rows older than retention horizon", removed)
        except Exception:
            logger.warning("Retention purge failed, retrying next cycle", exc_info=True)

    async def forward(self) -> int:
        """Run one forward pass. Never raises."""
        try:
            sent = await self._forwarder.forward_batch()
        except Exception:
            logger.error("Forward pass error", exc_info=True)
            return 0
        if sent and self._health is not None:
            try:
                self._health.record_forward()
            except Exception:
                logger.warning("Failed to write health file", exc_info=True)
        return sent

    async def _update_health(self) -> None:
        if self._health is None:
            return
        try:
            self._health.set_unsent_count(await self._store.count_unsent())
            self._health.record_poll()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_cycle(self) -> int:
        """Execute one full polling cycle.

        Returns:
            Number of readings stored this cycle.
        """
        stored = 0
        try:
            await self._check_hour_boundary(self._store.now())
            for meter in self._meters:
                for unit_id in meter.unit_ids:
                    if await self._poll_meter(meter.family, unit_id):
                        stored += 1
        except Exception:
            logger.error("Poll cycle error", exc_info=True)

        await self._purge()
        await self.forward()
        await self._update_health()
        return stored

    async def run(self, *, poll_interval_s: float, shutdown_event: asyncio.Event) -> None:
        """Run cycles until shutdown_event is set, then forward once more."""
        logger.info("Poll loop started (interval=%ss)", poll_interval_s)
        while not shutdown_event.is_set():
            await self.run_cycle()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_s)
        logger.info("Poll loop stopped")

        logger.info("Attempting final forward pass before exit")
        await self.forward()
        logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def build_sink(settings: EdgeSettings) -> TelemetrySink:
    """Create the telemetry sink selected by ``telemetry_transport``."""
    from meter_edge.src.telemetry import HttpTelemetrySink, MqttTelemetrySink

    if settings.telemetry_transport == "http":
        return HttpTelemetrySink(
            base_url=settings.telemetry_base_url, token=settings.telemetry_token
        )
    return MqttTelemetrySink(
        host=settings.telemetry_host,
        port=settings.telemetry_port,
        token=settings.telemetry_token,
        topic_prefix=settings.telemetry_topic_prefix,
    )


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the loop.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from meter_edge.src.config import EdgeSettings
    from meter_edge.src.forwarder import Forwarder
    from meter_edge.src.health import HealthWriter
    from meter_edge.src.poller import MeterReader
    from meter_edge.src.store import Store

    settings = EdgeSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    reader = MeterReader(
        host=settings.gateway_host,
        port=settings.gateway_port,
        timeout_s=settings.modbus_timeout_s,
        connect_retries=settings.connect_retries,
        connect_retry_delay_s=settings.connect_retry_delay_s,
    )
    families = list({m.family: ALL_FAMILIES[m.family] for m in settings.meters}.values())
    health = HealthWriter(settings.health_path)

    async with (
        Store(settings.store_path, families=families) as store,
        build_sink(settings) as sink,
    ):
        forwarder = Forwarder(
            store,
            sink,
            families=[f.name for f in families],
            batch_sizes=settings.batch_sizes,
            default_batch_size=settings.default_batch_size,
        )
        poll_loop = PollLoop(
            reader=reader,
            store=store,
            forwarder=forwarder,
            meters=settings.meters,
            health=health,
            retention_days=settings.retention_days,
            history_tolerance_s=settings.history_tolerance_s,
            energy_divisor=settings.energy_divisor,
        )
        await poll_loop.run(
            poll_interval_s=settings.poll_interval_s,
            shutdown_event=shutdown_event,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the meter edge daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
