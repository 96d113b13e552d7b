"""
Async Modbus TCP meter reader.

Connects to the field-bus gateway once per meter, reads every signal of the
meter's family from holding registers, and returns the raw words keyed by
signal name.  Signal addresses and word counts come from the data-driven
table in registers.py; one generic ``read_signal`` serves every signal.

Designed to be robust:

- Connection attempts are retried a bounded number of times.
- Each request is bounded by the Modbus timeout; a timeout counts as a
  failed connection or read.
- Any transport or protocol error skips the meter for this cycle and is
  logged; nothing propagates to the caller.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from pymodbus.client import AsyncModbusTcpClient

if TYPE_CHECKING:
    from meter_edge.src.registers import MeterFamily

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODBUS_TIMEOUT_S: float = 2.0
"""Default timeout per Modbus TCP request in seconds."""


class TransportError(Exception):
    """Raised when the gateway answers a register read with an error."""


# ---------------------------------------------------------------------------
# Register access
# ---------------------------------------------------------------------------


async def read_registers(
    client: AsyncModbusTcpClient,
    unit_id: int,
    address: int,
    count: int,
) -> list[int]:
    """Read *count* holding registers starting at *address*.

    Raises:
        TransportError: If the response is an error or is short.
    """
    response = await client.read_holding_registers(address, count=count, device_id=unit_id)
    if response.isError():
        raise TransportError(f"unit {unit_id}: error reading {count} words at {address}")
    words = list(response.registers)
    if len(words) < count:
        raise TransportError(
            f"unit {unit_id}: short response at {address} ({len(words)}/{count} words)"
        )
    return words[:count]


async def read_signal(
    client: AsyncModbusTcpClient,
    family: MeterFamily,
    name: str,
    unit_id: int,
) -> list[int]:
    """Read the raw words of signal *name* of *family* from *unit_id*."""
    signal = family.signal(name)
    return await read_registers(client, unit_id, signal.address, signal.word_count)


# ---------------------------------------------------------------------------
# Meter reader
# ---------------------------------------------------------------------------


class MeterReader:
    """Reads whole meters through one Modbus TCP gateway.

    A fresh client is created per meter and closed afterwards, so a hung
    connection to one meter never leaks into the next.

    Args:
        host: Gateway IP address or hostname.
        port: Modbus TCP port (default 502).
        timeout_s: Timeout per request in seconds.
        connect_retries: Connection attempts per meter per cycle.
        connect_retry_delay_s: Seconds to wait between connection attempts.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        timeout_s: float = MODBUS_TIMEOUT_S,
        connect_retries: int = 3,
        connect_retry_delay_s: float = 1.0,
    ) -> None:
        self.host = host
        self._port = port
        self._timeout_s = timeout_s
        self._connect_retries = max(connect_retries, 1)
        self._connect_retry_delay_s = connect_retry_delay_s

    async def read_meter(
        self,
        family: MeterFamily,
        unit_id: int,
    ) -> dict[str, list[int]] | None:
        """Read every signal of *family* from *unit_id*.

        Returns:
            ``{signal_name: [word, ...]}`` on success, or ``None`` when the
            meter could not be connected or any read failed.
        """
        client = AsyncModbusTcpClient(self.host, port=self._port, timeout=self._timeout_s)
        try:
            if not await self._connect(client, unit_id):
                return None

            result: dict[str, list[int]] = {}
            for signal in family.signals:
                result[signal.name] = await read_signal(client, family, signal.name, unit_id)
            return result
        except TransportError as exc:
            logger.warning("%s unit %d: %s", family.name, unit_id, exc)
            return None
        except Exception:
            logger.warning(
                "Unexpected error reading %s unit %d via %s:%d",
                family.name,
                unit_id,
                self.host,
                self._port,
                exc_info=True,
            )
            return None
        finally:
            client.close()

    async def _connect(self, client: AsyncModbusTcpClient, unit_id: int) -> bool:
        for attempt in range(1, self._connect_retries + 1):
            try:
                ok = await client.connect()
            except Exception:
                logger.debug("Connect attempt %d raised", attempt, exc_info=True)
                ok = False
            if ok:
                return True
            logger.warning(
                "Failed to connect to %s:%d for unit %d (attempt %d/%d)",
                self.host,
                self._port,
                unit_id,
                attempt,
                self._connect_retries,
            )
            if attempt < self._connect_retries and self._connect_retry_delay_s > 0:
                await asyncio.sleep(self._connect_retry_delay_s)
        return False
