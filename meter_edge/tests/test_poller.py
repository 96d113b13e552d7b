"""
Tests for the Modbus TCP meter reader.

Verifies that MeterReader connects to the gateway with bounded retries,
reads every signal of a family from holding registers with the meter's unit
id, returns raw words keyed by signal name, and turns every failure into
``None``.  Tests use a mocked AsyncModbusTcpClient.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from meter_edge.src.poller import MeterReader, TransportError, read_registers, read_signal
from meter_edge.src.registers import IA9MEM15, IPM2XXX

# ---------------------------------------------------------------------------
# Helpers: build a mock pymodbus response object
# ---------------------------------------------------------------------------


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    """Create a mock pymodbus response PDU."""
    resp = MagicMock()
    resp.isError.return_value = is_error
    resp.registers = registers
    return resp


def _make_mock_client(
    connect_results: list[bool] | None = None,
    error_addresses: set[int] | None = None,
    raise_on_read: bool = False,
) -> AsyncMock:
    """Create a fully mocked AsyncModbusTcpClient.

    Reads return ``address, address + 1, ...`` so callers can check which
    registers were requested.

    Args:
        connect_results: Successive connect() results. Defaults to [True].
        error_addresses: Start addresses whose reads return Modbus errors.
        raise_on_read: If True, read_holding_registers raises.
    """
    error_addresses = error_addresses or set()

    client = AsyncMock()
    client.connect = AsyncMock(side_effect=connect_results or [True])
    client.close = MagicMock()

    async def _read_holding_registers(
        address: int, *, count: int = 1, device_id: int = 1
    ) -> MagicMock:
        if raise_on_read:
            raise ConnectionError("Simulated Modbus transport error")
        if address in error_addresses:
            return _make_response([], is_error=True)
        return _make_response(list(range(address, address + count)))

    client.read_holding_registers = AsyncMock(side_effect=_read_holding_registers)
    return client


def _reader(**kwargs) -> MeterReader:
    defaults = {"host": "192.168.1.50", "port": 502, "connect_retry_delay_s": 0}
    defaults.update(kwargs)
    return MeterReader(**defaults)


# ===========================================================================
# Register access
# ===========================================================================


class TestReadRegisters:
    """Low-level register reads."""

    @pytest.mark.asyncio
    async def test_passes_unit_id_and_count(self) -> None:
        client = _make_mock_client()

        words = await read_registers(client, 101, 3019, 2)

        assert words == [3019, 3020]
        client.read_holding_registers.assert_awaited_once_with(3019, count=2, device_id=101)

    @pytest.mark.asyncio
    async def test_error_response_raises_transport_error(self) -> None:
        client = _make_mock_client(error_addresses={3019})

        with pytest.raises(TransportError, match="3019"):
            await read_registers(client, 101, 3019, 2)

    @pytest.mark.asyncio
    async def test_short_response_raises_transport_error(self) -> None:
        client = AsyncMock()
        client.read_holding_registers = AsyncMock(return_value=_make_response([1]))

        with pytest.raises(TransportError, match="short"):
            await read_registers(client, 1, 3203, 4)

    @pytest.mark.asyncio
    async def test_read_signal_uses_table(self) -> None:
        client = _make_mock_client()

        words = await read_signal(client, IA9MEM15, "total_energy", 100)

        assert words == [3203, 3204, 3205, 3206]


# ===========================================================================
# MeterReader
# ===========================================================================


class TestMeterReaderConnect:
    """Connection lifecycle per meter."""

    @pytest.mark.asyncio
    async def test_creates_client_with_host_port_timeout(self) -> None:
        mock_client = _make_mock_client()
        with patch(
            "meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client
        ) as mock_cls:
            await _reader(timeout_s=2.0).read_meter(IA9MEM15, 100)

        mock_cls.assert_called_once_with("192.168.1.50", port=502, timeout=2.0)

    @pytest.mark.asyncio
    async def test_closes_client_after_read(self) -> None:
        mock_client = _make_mock_client()
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            await _reader().read_meter(IA9MEM15, 100)

        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_retried_until_success(self) -> None:
        mock_client = _make_mock_client(connect_results=[False, False, True])
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            result = await _reader(connect_retries=3).read_meter(IA9MEM15, 100)

        assert result is not None
        assert mock_client.connect.await_count == 3

    @pytest.mark.asyncio
    async def test_connect_failure_returns_none_after_retries(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        mock_client = _make_mock_client(connect_results=[False, False, False])
        with (
            patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client),
            caplog.at_level(logging.WARNING),
        ):
            result = await _reader(connect_retries=3).read_meter(IA9MEM15, 100)

        assert result is None
        assert mock_client.connect.await_count == 3
        mock_client.read_holding_registers.assert_not_awaited()
        mock_client.close.assert_called_once()
        assert "attempt 3/3" in caplog.text

    @pytest.mark.asyncio
    async def test_retry_delay_between_attempts(self) -> None:
        mock_client = _make_mock_client(connect_results=[False, True])
        with (
            patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client),
            patch("meter_edge.src.poller.asyncio.sleep", new_callable=AsyncMock) as sleep,
        ):
            await _reader(connect_retries=3, connect_retry_delay_s=1.0).read_meter(
                IA9MEM15, 100
            )

        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_connect_raising_counts_as_failure(self) -> None:
        mock_client = _make_mock_client()
        mock_client.connect = AsyncMock(side_effect=TimeoutError("no route"))
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            result = await _reader(connect_retries=2).read_meter(IA9MEM15, 100)

        assert result is None
        assert mock_client.connect.await_count == 2


class TestMeterReaderRead:
    """Reading whole meters."""

    @pytest.mark.asyncio
    async def test_returns_words_for_every_signal(self) -> None:
        mock_client = _make_mock_client()
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            result = await _reader().read_meter(IPM2XXX, 1)

        assert result is not None
        assert set(result) == {s.name for s in IPM2XXX.signals}
        for sig in IPM2XXX.signals:
            assert len(result[sig.name]) == sig.word_count
            assert result[sig.name][0] == sig.address

    @pytest.mark.asyncio
    async def test_uses_unit_id_for_every_read(self) -> None:
        mock_client = _make_mock_client()
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            await _reader().read_meter(IA9MEM15, 102)

        calls = mock_client.read_holding_registers.call_args_list
        assert len(calls) == len(IA9MEM15.signals)
        assert all(c.kwargs["device_id"] == 102 for c in calls)

    @pytest.mark.asyncio
    async def test_modbus_error_returns_none(self, caplog: pytest.LogCaptureFixture) -> None:
        mock_client = _make_mock_client(error_addresses={3203})
        with (
            patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client),
            caplog.at_level(logging.WARNING),
        ):
            result = await _reader().read_meter(IA9MEM15, 100)

        assert result is None
        assert "iA9MEM15 unit 100" in caplog.text
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_exception_during_read_returns_none(self) -> None:
        mock_client = _make_mock_client(raise_on_read=True)
        with patch("meter_edge.src.poller.AsyncModbusTcpClient", return_value=mock_client):
            result = await _reader().read_meter(IA9MEM15, 100)

        assert result is None
        mock_client.close.assert_called_once()
