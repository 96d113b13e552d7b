"""
Edge daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded gateway addresses or credentials.  List and mapping fields
(``METERS``, ``BATCH_SIZES``) are given as JSON.

CHANGELOG:
- 2026-10-19: Add HTTP telemetry transport settings
- 2026-10-19: Initial creation

TODO:
- None
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from meter_edge.src.models import MeterConfig
from meter_edge.src.registers import ALL_FAMILIES


def _default_meters() -> list[MeterConfig]:
    return [
        MeterConfig(family="iA9MEM15", unit_ids=[100, 101, 102]),
        MeterConfig(family="iPM2xxx", unit_ids=[1]),
    ]


class EdgeSettings(BaseSettings):
    """Meter edge daemon configuration.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        gateway_host: Modbus TCP gateway address; also recorded as each
            reading's source address.
        gateway_port: Modbus TCP port (default 502).
        meters: Meter families and the unit ids polled for each.
        modbus_timeout_s: Timeout per Modbus request in seconds.
        connect_retries: Connection attempts per meter per cycle.
        connect_retry_delay_s: Seconds between connection attempts.
        poll_interval_s: Seconds slept between polling cycles.
        batch_sizes: Per-family forward batch limits.
        default_batch_size: Batch limit for unlisted families and hourly
            totals.
        store_path: SQLite outbox file path.
        retention_days: Age after which stored rows are purged.
        history_tolerance_s: Half-width of the historical-window search.
        energy_divisor: Divides raw counter increments (Wh -> kWh).
        telemetry_transport: ``mqtt`` or ``http``.
        telemetry_host: MQTT broker hostname.
        telemetry_port: MQTT broker port.
        telemetry_token: Device access token.
        telemetry_topic_prefix: MQTT topic prefix.
        telemetry_base_url: Telemetry server base URL (http transport).
        health_path: Health JSON file path.
        log_level: Root log level name.
    """

    gateway_host: str
    gateway_port: int = 502
    meters: list[MeterConfig] = Field(default_factory=_default_meters)
    modbus_timeout_s: float = 2.0
    connect_retries: int = 3
    connect_retry_delay_s: float = 1.0
    poll_interval_s: int = 60
    batch_sizes: dict[str, int] = Field(
        default_factory=lambda: {"iA9MEM15": 100, "iPM2xxx": 5}
    )
    default_batch_size: int = 100
    store_path: str = "/data/meter_outbox.db"
    retention_days: int = 7
    history_tolerance_s: int = 30
    energy_divisor: float = 1000.0
    telemetry_transport: Literal["mqtt", "http"] = "mqtt"
    telemetry_host: str = "localhost"
    telemetry_port: int = 1883
    telemetry_token: str
    telemetry_topic_prefix: str = "v1/devices/me"
    telemetry_base_url: str = ""
    health_path: str = "/data/health.json"
    log_level: str = "INFO"

    @field_validator("gateway_port", "telemetry_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate TCP ports are in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("meters")
    @classmethod
    def meters_must_be_known_and_unique(cls, v: list[MeterConfig]) -> list[MeterConfig]:
        """Validate meter families and unit ids.

        Energy delta state is keyed by unit id alone, so a unit id may only
        appear once across all meters.
        """
        if not v:
            raise ValueError("METERS must configure at least one meter")
        seen: set[int] = set()
        for meter in v:
            if meter.family not in ALL_FAMILIES:
                raise ValueError(
                    f"Unknown meter family '{meter.family}' "
                    f"(known: {', '.join(sorted(ALL_FAMILIES))})"
                )
            for unit_id in meter.unit_ids:
                if unit_id < 1 or unit_id > 247:
                    raise ValueError(f"Unit id {unit_id} must be between 1 and 247")
                if unit_id in seen:
                    raise ValueError(f"Unit id {unit_id} is configured more than once")
                seen.add(unit_id)
        return v

    @field_validator("batch_sizes")
    @classmethod
    def batch_sizes_must_be_valid(cls, v: dict[str, int]) -> dict[str, int]:
        """Validate per-family batch sizes are between 1 and 1000."""
        for family, size in v.items():
            if size < 1 or size > 1000:
                raise ValueError(f"BATCH_SIZES[{family}] must be >= 1 and <= 1000")
        return v

    @field_validator("default_batch_size")
    @classmethod
    def default_batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 1000."""
        if v < 1 or v > 1000:
            raise ValueError("DEFAULT_BATCH_SIZE must be >= 1 and <= 1000")
        return v

    @field_validator("poll_interval_s", "connect_retries", "retention_days")
    @classmethod
    def must_be_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("modbus_timeout_s", "energy_divisor")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("connect_retry_delay_s", "history_tolerance_s")
    @classmethod
    def must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @model_validator(mode="after")
    def _http_transport_needs_base_url(self) -> "EdgeSettings":
        """Require an http(s) base URL when the HTTP transport is selected."""
        if self.telemetry_transport == "http":
            if not self.telemetry_base_url.lower().startswith(("http://", "https://")):
                raise ValueError(
                    "TELEMETRY_BASE_URL must be an http:// or https:// URL "
                    f"when TELEMETRY_TRANSPORT=http (got: '{self.telemetry_base_url[:20]}')"
                )
        return self

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
