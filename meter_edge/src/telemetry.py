"""
Telemetry documents and sinks.

Builds the key-value documents published for each reading and hands them to
the telemetry sink.  Two transports implement the same ``publish(payload)``
contract:

- MqttTelemetrySink: publishes to ``<prefix>/telemetry`` over MQTT with
  QoS 1, authenticating with the device access token as username.  The
  publish only returns once the broker has acknowledged it.
- HttpTelemetrySink: POSTs the same JSON to
  ``<base_url>/api/v1/<token>/telemetry``.

Document shapes:
- timestamped: ``{"ts": <epoch-ms>, "values": {<key>: <value>, ...}}``
- untimestamped: ``{<key>: <value>, ...}``

Any failed publish raises ``TelemetryError``; the caller decides whether to
retry.  Delivery is at least once.

CHANGELOG:
- 2026-10-19: Reject non-JSON payloads with TelemetryError; hourly keys per unit
- 2026-10-19: Add HTTP transport
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

import aiomqtt
import httpx

if TYPE_CHECKING:
    from meter_edge.src.models import HourlyEnergy, Reading

logger = logging.getLogger(__name__)

HOURLY_ENERGY_KEY = "energy_hour_kwh"

_JSON_HEADERS = {"Content-Type": "application/json"}


class TelemetryError(Exception):
    """Raised when the telemetry sink does not confirm a publish."""


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def telemetry_key(column: str, family: str, unit_id: int) -> str:
    """Namespace *column* by meter family and unit id."""
    return f"{column}_{family}_{unit_id}"


def reading_values(reading: Reading) -> dict[str, Any]:
    """Flatten a reading into namespaced telemetry keys."""
    values: dict[str, Any] = {
        telemetry_key("unit_id", reading.family, reading.unit_id): reading.unit_id,
    }
    for column, value in reading.values.items():
        values[telemetry_key(column, reading.family, reading.unit_id)] = value
    return values


def build_document(values: dict[str, Any], ts_ms: int | None = None) -> dict[str, Any]:
    """Wrap *values* into a telemetry document.

    Args:
        values: Flat key -> value mapping (numbers, booleans or strings).
        ts_ms: Epoch milliseconds. ``None`` yields an untimestamped flat
            document.
    """
    if ts_ms is None:
        return dict(values)
    return {"ts": ts_ms, "values": dict(values)}


def reading_document(reading: Reading) -> dict[str, Any]:
    """Timestamped document for a stored reading."""
    assert reading.ts is not None, "Reading has not been stored yet"
    return build_document(reading_values(reading), ts_ms=reading.ts * 1000)


def hourly_document(hourly: HourlyEnergy) -> dict[str, Any]:
    """Timestamped document for a finalized hour, stamped at the hour's end."""
    ts_ms = (hourly.hour_bucket + 3600) * 1000
    key = telemetry_key(HOURLY_ENERGY_KEY, hourly.family, hourly.unit_id)
    return build_document({key: hourly.delta_sum}, ts_ms=ts_ms)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


def _encode(payload: dict[str, Any]) -> str:
    try:
        return json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise TelemetryError(f"Telemetry payload is not valid JSON: {exc}") from exc


class TelemetrySink(Protocol):
    """Anything able to publish a telemetry document."""

    async def publish(self, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...

    async def __aenter__(self) -> TelemetrySink: ...

    async def __aexit__(self, *exc_info: object) -> None: ...


class MqttTelemetrySink:
    """MQTT telemetry sink with a lazily (re)opened broker connection.

    The connection is opened on the first publish and kept for later
    publishes.  After any MQTT error it is dropped and reopened on the next
    publish, so a broker outage simply fails publishes until it recovers.

    Args:
        host: Broker hostname.
        port: Broker port (default 1883).
        token: Device access token, sent as MQTT username.
        topic_prefix: Topic prefix; documents go to ``<prefix>/telemetry``.
        qos: MQTT quality of service (default 1).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        token: str,
        topic_prefix: str = "v1/devices/me",
        qos: int = 1,
    ) -> None:
        self._host = host
        self._port = port
        self._token = token
        self.topic = f"{topic_prefix.rstrip('/')}/telemetry"
        self._qos = qos
        self._stack: contextlib.AsyncExitStack | None = None
        self._client: aiomqtt.Client | None = None

    async def _connect(self) -> aiomqtt.Client:
        if self._client is None:
            stack = contextlib.AsyncExitStack()
            client = aiomqtt.Client(self._host, port=self._port, username=self._token)
            await stack.enter_async_context(client)
            logger.info("Connected to MQTT broker %s:%d", self._host, self._port)
            self._stack, self._client = stack, client
        return self._client

    async def publish(self, payload: dict[str, Any]) -> None:
        """Publish *payload* and wait for the broker's acknowledgment.

        Raises:
            TelemetryError: On any MQTT error, or if *payload* is not valid
                JSON (non-finite numbers included).
        """
        body = _encode(payload)
        try:
            client = await self._connect()
            await client.publish(self.topic, payload=body, qos=self._qos)
        except aiomqtt.MqttError as exc:
            await self._drop_connection()
            raise TelemetryError(f"MQTT publish to {self.topic} failed: {exc}") from exc

    async def close(self) -> None:
        """Disconnect from the broker if connected."""
        await self._drop_connection()

    async def _drop_connection(self) -> None:
        stack, self._stack, self._client = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except aiomqtt.MqttError:
            logger.debug("Error while closing MQTT connection", exc_info=True)

    async def __aenter__(self) -> MqttTelemetrySink:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class HttpTelemetrySink:
    """HTTP telemetry sink posting documents to the device telemetry API.

    Args:
        base_url: Base URL of the telemetry server (``http://`` or
            ``https://``).
        token: Device access token embedded in the URL path.
        timeout_s: Request timeout in seconds.

    Raises:
        ValueError: If *base_url* has no http(s) scheme.
    """

    def __init__(self, *, base_url: str, token: str, timeout_s: float = 10.0) -> None:
        if not base_url.lower().startswith(("http://", "https://")):
            raise ValueError(f"Telemetry base URL must be http(s) (got: '{base_url}')")
        self._url = f"{base_url.rstrip('/')}/api/v1/{token}/telemetry"
        self._timeout_s = timeout_s

    async def publish(self, payload: dict[str, Any]) -> None:
        """POST *payload*; any non-2xx answer counts as a failure.

        Raises:
            TelemetryError: On network errors, timeouts, non-2xx status or a
                payload that is not valid JSON.
        """
        body = _encode(payload)
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.post(self._url, content=body, headers=_JSON_HEADERS)
        except httpx.TransportError as exc:
            raise TelemetryError(f"HTTP publish failed (network error): {exc}") from exc

        if not response.is_success:
            raise TelemetryError(f"HTTP publish failed (HTTP {response.status_code})")

    async def close(self) -> None:
        """Nothing to release: each publish uses its own HTTP client."""

    async def __aenter__(self) -> HttpTelemetrySink:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
