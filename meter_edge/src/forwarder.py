"""
Telemetry forwarder that drains the outbox into the telemetry sink.

Reads unsent readings from the store (bounded batch per meter family),
serializes each into a timestamped key-value document, publishes it, and
marks the row sent once the sink confirms.  Finalized hourly energy totals
are forwarded the same way after the readings.

Failure handling is fail-fast per family: the first failed publish leaves
that row unsent and skips the rest of the family's batch.  Other families
are still attempted.  There is no backoff; the next polling cycle retries
from the same unsent rows.  Delivery is at least once: if the sink accepted
a document but marking it sent failed, it is published again next cycle.

Operations:
- forward_batch(limit): forward pending readings and hourly totals.

CHANGELOG:
- 2026-10-19: Forward finalized hourly totals through the outbox
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from meter_edge.src.telemetry import TelemetryError, hourly_document, reading_document

if TYPE_CHECKING:
    from meter_edge.src.store import Store
    from meter_edge.src.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

_DEFAULT_BATCH_SIZE = 100


class Forwarder:
    """Outbox-to-sink forwarder with per-family batch limits.

    Args:
        store: The outbox store.
        sink: Telemetry sink used to publish documents.
        families: Names of the meter families to drain, in order.
        batch_sizes: Per-family maximum rows per forward pass.
        default_batch_size: Limit for families absent from *batch_sizes*
            and for hourly totals.

    Usage::

        forwarder = Forwarder(store, sink, families=["iA9MEM15", "iPM2xxx"])
        sent = await forwarder.forward_batch()
    """

    def __init__(
        self,
        store: Store,
        sink: TelemetrySink,
        *,
        families: Iterable[str],
        batch_sizes: Mapping[str, int] | None = None,
        default_batch_size: int = _DEFAULT_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._sink = sink
        self._families = list(families)
        self._batch_sizes = dict(batch_sizes or {})
        self._default_batch_size = default_batch_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def forward_batch(self, limit: int | None = None) -> int:
        """Forward up to one batch per family, then pending hourly totals.

        Args:
            limit: Overrides every per-family batch size when given.

        Returns:
            Number of documents confirmed by the sink and marked sent.
        """
        sent = 0
        for family in self._families:
            size = limit if limit is not None else self._batch_sizes.get(
                family, self._default_batch_size
            )
            sent += await self._forward_family(family, size)
        sent += await self._forward_hourly(
            limit if limit is not None else self._default_batch_size
        )
        return sent

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _forward_family(self, family: str, limit: int) -> int:
        readings = await self._store.list_unsent(family, limit)
        if not readings:
            logger.debug("No unsent %s readings", family)
            return 0

        sent = 0
        for reading in readings:
            try:
                await self._sink.publish(reading_document(reading))
            except TelemetryError as exc:
                logger.warning(
                    "Publish failed for %s row %d (unit %d), stopping batch: %s",
                    family,
                    reading.id,
                    reading.unit_id,
                    exc,
                )
                break
            await self._store.mark_sent(family, reading.id)
            sent += 1
            logger.debug("Sent %s unit=%d id=%d", family, reading.unit_id, reading.id)

        logger.info("Forwarded %d/%d %s readings", sent, len(readings), family)
        return sent

    async def _forward_hourly(self, limit: int) -> int:
        totals = await self._store.list_unsent_hourly(limit)
        sent = 0
        for hourly in totals:
            try:
                await self._sink.publish(hourly_document(hourly))
            except TelemetryError as exc:
                logger.warning(
                    "Publish failed for hourly bucket %d (unit %d), stopping batch: %s",
                    hourly.hour_bucket,
                    hourly.unit_id,
                    exc,
                )
                break
            await self._store.mark_hourly_sent(hourly.hour_bucket, hourly.unit_id)
            sent += 1
            logger.info(
                "Sent hourly energy %.3f kWh (unit %d, bucket %d)",
                hourly.delta_sum,
                hourly.unit_id,
                hourly.hour_bucket,
            )
        return sent
