"""
Shared test fixtures for meter edge daemon tests.

Provides environment variable fixtures for EdgeSettings configuration tests,
a fake clock, and an opened on-disk Store.  All edge env vars are cleaned
before each test to ensure isolation.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from meter_edge.src.store import Store

# All EdgeSettings environment variable names, used for cleanup.
_ALL_EDGE_ENV_VARS = (
    "GATEWAY_HOST",
    "GATEWAY_PORT",
    "METERS",
    "MODBUS_TIMEOUT_S",
    "CONNECT_RETRIES",
    "CONNECT_RETRY_DELAY_S",
    "POLL_INTERVAL_S",
    "BATCH_SIZES",
    "DEFAULT_BATCH_SIZE",
    "STORE_PATH",
    "RETENTION_DAYS",
    "HISTORY_TOLERANCE_S",
    "ENERGY_DIVISOR",
    "TELEMETRY_TRANSPORT",
    "TELEMETRY_HOST",
    "TELEMETRY_PORT",
    "TELEMETRY_TOKEN",
    "TELEMETRY_TOPIC_PREFIX",
    "TELEMETRY_BASE_URL",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_edge_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all edge env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_EDGE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for EdgeSettings."""
    env = {
        "GATEWAY_HOST": "192.168.1.50",
        "GATEWAY_PORT": "5020",
        "METERS": '[{"family": "iA9MEM15", "unit_ids": [100, 101]}, '
        '{"family": "iPM2xxx", "unit_ids": [1]}]',
        "MODBUS_TIMEOUT_S": "1.5",
        "CONNECT_RETRIES": "2",
        "CONNECT_RETRY_DELAY_S": "0.5",
        "POLL_INTERVAL_S": "30",
        "BATCH_SIZES": '{"iA9MEM15": 50, "iPM2xxx": 10}',
        "DEFAULT_BATCH_SIZE": "20",
        "STORE_PATH": "/tmp/test-outbox.db",
        "RETENTION_DAYS": "3",
        "HISTORY_TOLERANCE_S": "15",
        "ENERGY_DIVISOR": "1.0",
        "TELEMETRY_TRANSPORT": "mqtt",
        "TELEMETRY_HOST": "broker.example.com",
        "TELEMETRY_PORT": "8883",
        "TELEMETRY_TOKEN": "device-token-abc",
        "TELEMETRY_TOPIC_PREFIX": "v1/devices/me",
        "HEALTH_PATH": "/tmp/health.json",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {
        "GATEWAY_HOST": "10.0.0.50",
        "TELEMETRY_TOKEN": "device-token-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


class FakeClock:
    """Settable clock returning epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture()
async def store(tmp_path: Path, clock: FakeClock) -> AsyncIterator[Store]:
    """An opened Store on a temporary database file, driven by ``clock``."""
    async with Store(tmp_path / "outbox.db", clock=clock) as s:
        yield s
