"""
Durable local outbox using async SQLite for every decoded meter reading.

Readings are written to the outbox before any forwarding attempt and are
tagged unsent.  The forwarder later flips the flag to sent once the telemetry
sink confirms the publish; rows are never flagged back to unsent.  Retention
is time-based and independent of delivery: ``purge_older_than`` deletes old
rows whether or not they were ever forwarded.  The store survives process
restarts because it is backed by a SQLite database file on disk in WAL mode.

Tables:
- ``readings_<family>``: one outbox table per meter family.
- ``energy_state``: last observed cumulative counter per unit id.
- ``energy_delta``: positive per-interval energy deltas (kWh).
- ``energy_hourly``: finalized hourly totals per unit id, forwarded like
  readings.

Counters are unsigned 64-bit but SQLite INTEGER is signed, so values above
2^63 - 1 are written as their two's-complement pattern and converted back on
read.  Callers always see the unsigned value.

Operations:
- append(reading): INSERT a reading, timestamped by the store.
- list_unsent(family, n): SELECT up to n oldest unsent readings (FIFO).
- mark_sent(family, id): idempotent unsent -> sent transition.
- purge_older_than(cutoff): DELETE rows older than an epoch cutoff.
- query_near(...): closest stored counter around a target time.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-19: Hourly totals keyed per unit id
- 2026-10-19: Store unsigned 64-bit counters above INT64_MAX
- 2026-10-19: Add energy state, delta and hourly tables
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

import aiosqlite

from meter_edge.src.models import HourlyEnergy, Reading
from meter_edge.src.registers import (
    ALL_FAMILIES,
    DELTA_COLUMN,
    HISTORY_COLUMNS,
    MeterFamily,
)

logger = logging.getLogger(__name__)

_CREATE_STATE_SQL = """\
CREATE TABLE IF NOT EXISTS energy_state (
    unit_id INTEGER PRIMARY KEY,
    last_counter INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

_CREATE_DELTA_SQL = """\
CREATE TABLE IF NOT EXISTS energy_delta (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    unit_id INTEGER NOT NULL,
    delta_kwh REAL NOT NULL
);
"""

_CREATE_HOURLY_SQL = """\
CREATE TABLE IF NOT EXISTS energy_hourly (
    hour_bucket INTEGER NOT NULL,
    unit_id INTEGER NOT NULL,
    family TEXT NOT NULL,
    delta_sum REAL NOT NULL,
    created_at INTEGER NOT NULL,
    is_sent INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (hour_bucket, unit_id)
);
"""

_GET_STATE_SQL = "SELECT last_counter FROM energy_state WHERE unit_id = ?;"

_UPSERT_STATE_SQL = """\
INSERT INTO energy_state (unit_id, last_counter, updated_at) VALUES (?, ?, ?)
ON CONFLICT(unit_id) DO UPDATE SET
    last_counter = excluded.last_counter,
    updated_at = excluded.updated_at;
"""

_INSERT_DELTA_SQL = """\
INSERT INTO energy_delta (timestamp, unit_id, delta_kwh) VALUES (?, ?, ?);
"""

_SUM_DELTA_SQL = """\
SELECT COALESCE(SUM(delta_kwh), 0.0)
FROM energy_delta
WHERE unit_id = ? AND timestamp >= ? AND timestamp < ?;
"""

_INSERT_HOURLY_SQL = """\
INSERT OR IGNORE INTO energy_hourly (hour_bucket, unit_id, family, delta_sum, created_at)
VALUES (?, ?, ?, ?, ?);
"""

_PEEK_HOURLY_SQL = """\
SELECT hour_bucket, unit_id, family, delta_sum
FROM energy_hourly
WHERE is_sent = 0
ORDER BY hour_bucket ASC, unit_id ASC
LIMIT ?;
"""

_MARK_HOURLY_SQL = """\
UPDATE energy_hourly SET is_sent = 1
WHERE hour_bucket = ? AND unit_id = ? AND is_sent = 0;
"""

# SQLite INTEGER is signed 64-bit; unsigned counters above INT64_MAX are
# stored as their two's-complement bit pattern.
_INT64_MAX = (1 << 63) - 1
_UINT64_SPAN = 1 << 64


def _to_sqlite_int(value: int | float) -> int | float:
    """Reinterpret an unsigned 64-bit value as signed for storage."""
    if isinstance(value, int) and value > _INT64_MAX:
        return value - _UINT64_SPAN
    return value


def _from_sqlite_int(value: int | float) -> int | float:
    """Undo ``_to_sqlite_int``; every stored integer column is unsigned."""
    if isinstance(value, int) and value < 0:
        return value + _UINT64_SPAN
    return value


def _value_columns(family: MeterFamily) -> list[str]:
    """All value columns of a family table: signals, then derived columns."""
    return [s.name for s in family.signals] + list(HISTORY_COLUMNS) + [DELTA_COLUMN]


def _create_readings_sql(family: MeterFamily) -> str:
    columns = [f"    {s.name} {s.sql_type}" for s in family.signals]
    columns += [f"    {name} INTEGER NOT NULL DEFAULT 0" for name in HISTORY_COLUMNS]
    columns.append(f"    {DELTA_COLUMN} REAL NOT NULL DEFAULT 0")
    body = ",\n".join(columns)
    return (
        f"CREATE TABLE IF NOT EXISTS {family.table} (\n"
        "    id INTEGER PRIMARY KEY AUTOINCREMENT,\n"
        "    timestamp INTEGER NOT NULL,\n"
        "    source_address TEXT NOT NULL,\n"
        "    unit_id INTEGER NOT NULL,\n"
        f"{body},\n"
        "    is_sent INTEGER NOT NULL DEFAULT 0\n"
        ");"
    )


class Store:
    """Durable local outbox backed by a SQLite database.

    Owns every table of the pipeline.  The poll loop, delta engine and
    forwarder receive the same ``Store`` instance; nothing else opens the
    database file.  Write transactions are serialized by an internal lock so
    concurrent coroutines never interleave an append with a purge or a
    sent-flag update.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.
        families: Meter families to create outbox tables for.
        clock: Callable returning epoch seconds.  Timestamps assigned by the
            store never go backwards within one process, even if the clock
            does.

    Usage::

        async with Store(path="/data/meter_outbox.db") as store:
            row_id = await store.append(reading)
            unsent = await store.list_unsent("iPM2xxx", 5)
            await store.mark_sent("iPM2xxx", unsent[0].id)
    """

    def __init__(
        self,
        path: str | Path,
        families: Iterable[MeterFamily] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._families: dict[str, MeterFamily] = {
            f.name: f for f in (families if families is not None else ALL_FAMILIES.values())
        }
        self._clock = clock
        self._last_ts = 0
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema.

        Sets WAL journal mode for crash durability. Creates every table
        that does not exist yet.
        """
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        for family in self._families.values():
            await self._db.execute(_create_readings_sql(family))
        await self._db.execute(_CREATE_STATE_SQL)
        await self._db.execute(_CREATE_DELTA_SQL)
        await self._db.execute(_CREATE_HOURLY_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection.

        After calling close, no further operations should be performed
        on this Store instance.
        """
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Store:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _conn(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        return self._db

    def _family(self, name: str) -> MeterFamily:
        try:
            return self._families[name]
        except KeyError:
            raise ValueError(f"Unknown meter family '{name}'") from None

    def now(self) -> int:
        """Return the next write timestamp (epoch seconds, non-decreasing)."""
        ts = max(int(self._clock()), self._last_ts)
        self._last_ts = ts
        return ts

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    async def append(self, reading: Reading) -> int:
        """Insert a reading as unsent and return its row id.

        The store assigns the timestamp; ``reading.ts`` and ``reading.id``
        are ignored.  Only local disk is involved, so this succeeds whether
        or not the telemetry sink is reachable.

        Raises:
            ValueError: If the family is unknown or a value key is not a
                column of the family table.
        """
        db = self._conn()
        family = self._family(reading.family)
        known = set(_value_columns(family))
        unknown = set(reading.values) - known
        if unknown:
            raise ValueError(f"{family.name}: unknown columns {sorted(unknown)}")

        columns = [c for c in _value_columns(family) if c in reading.values]
        placeholders = ", ".join("?" for _ in range(len(columns) + 3))
        sql = (
            f"INSERT INTO {family.table} "  # noqa: S608
            f"(timestamp, source_address, unit_id{''.join(', ' + c for c in columns)}) "
            f"VALUES ({placeholders});"
        )
        async with self._write_lock:
            params = [self.now(), reading.source_address, reading.unit_id]
            params += [_to_sqlite_int(reading.values[c]) for c in columns]
            cursor = await db.execute(sql, params)
            await db.commit()
        return cursor.lastrowid

    async def list_unsent(self, family: str, limit: int) -> list[Reading]:
        """Return up to *limit* oldest unsent readings of *family*.

        Results are ordered by row id ascending, i.e. insertion order, so an
        older unsent row is never returned after a newer one.

        Returns:
            List of :class:`Reading`. Empty when nothing is pending or
            limit < 1.
        """
        db = self._conn()
        fam = self._family(family)
        if limit < 1:
            return []
        columns = _value_columns(fam)
        sql = (
            f"SELECT id, timestamp, source_address, unit_id, {', '.join(columns)} "  # noqa: S608
            f"FROM {fam.table} WHERE is_sent = 0 ORDER BY id ASC LIMIT ?;"
        )
        cursor = await db.execute(sql, (limit,))
        rows = await cursor.fetchall()
        return [
            Reading(
                id=row[0],
                ts=row[1],
                source_address=row[2],
                unit_id=row[3],
                family=fam.name,
                values={
                    c: _from_sqlite_int(v) for c, v in zip(columns, row[4:]) if v is not None
                },
            )
            for row in rows
        ]

    async def mark_sent(self, family: str, row_id: int) -> bool:
        """Flag a reading as sent.

        Idempotent: marking an already-sent or nonexistent row is a no-op.

        Returns:
            ``True`` if the row flipped from unsent to sent by this call.
        """
        db = self._conn()
        fam = self._family(family)
        sql = f"UPDATE {fam.table} SET is_sent = 1 WHERE id = ? AND is_sent = 0;"  # noqa: S608
        async with self._write_lock:
            cursor = await db.execute(sql, (row_id,))
            await db.commit()
        return cursor.rowcount == 1

    async def count_unsent(self) -> int:
        """Return the number of unsent readings and hourly totals."""
        db = self._conn()
        total = 0
        for fam in self._families.values():
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM {fam.table} WHERE is_sent = 0;"  # noqa: S608
            )
            total += (await cursor.fetchone())[0]
        cursor = await db.execute("SELECT COUNT(*) FROM energy_hourly WHERE is_sent = 0;")
        total += (await cursor.fetchone())[0]
        return total

    async def purge_older_than(self, cutoff: int) -> int:
        """Delete every row timestamped before *cutoff* (epoch seconds).

        Applies to readings (sent or unsent), energy deltas and hourly
        totals alike.  Energy state rows are never purged.

        Returns:
            Total number of deleted rows.
        """
        db = self._conn()
        statements = [
            f"DELETE FROM {fam.table} WHERE timestamp < ?;"  # noqa: S608
            for fam in self._families.values()
        ]
        statements.append("DELETE FROM energy_delta WHERE timestamp < ?;")
        statements.append("DELETE FROM energy_hourly WHERE hour_bucket < ?;")
        deleted = 0
        async with self._write_lock:
            for sql in statements:
                cursor = await db.execute(sql, (cutoff,))
                deleted += max(cursor.rowcount, 0)
            await db.commit()
        if deleted:
            logger.info("Purged %d rows older than %d", deleted, cutoff)
        return deleted

    async def query_near(
        self,
        family: str,
        unit_id: int,
        source_address: str,
        target_ts: int,
        tolerance_s: int,
    ) -> int | float | None:
        """Return the window counter of the reading closest to *target_ts*.

        Only readings of *unit_id* read through *source_address* with a
        timestamp in ``[target_ts - tolerance_s, target_ts + tolerance_s]``
        are considered.  Read-only.

        Returns:
            The stored counter value, or ``None`` when no reading falls in
            the window.
        """
        db = self._conn()
        fam = self._family(family)
        sql = (
            f"SELECT {fam.window_counter} FROM {fam.table} "  # noqa: S608
            "WHERE unit_id = ? AND source_address = ? "
            "AND timestamp BETWEEN ? AND ? "
            "ORDER BY ABS(timestamp - ?) ASC, id DESC LIMIT 1;"
        )
        cursor = await db.execute(
            sql,
            (unit_id, source_address, target_ts - tolerance_s, target_ts + tolerance_s, target_ts),
        )
        row = await cursor.fetchone()
        return None if row is None else _from_sqlite_int(row[0])

    # ------------------------------------------------------------------
    # Energy state, deltas and hourly totals
    # ------------------------------------------------------------------

    async def get_energy_state(self, unit_id: int) -> int | None:
        """Return the last observed counter for *unit_id*, if any."""
        cursor = await self._conn().execute(_GET_STATE_SQL, (unit_id,))
        row = await cursor.fetchone()
        return None if row is None else _from_sqlite_int(row[0])

    async def set_energy_state(self, unit_id: int, counter: int) -> None:
        """Store *counter* as the new baseline for *unit_id*."""
        db = self._conn()
        async with self._write_lock:
            await db.execute(_UPSERT_STATE_SQL, (unit_id, _to_sqlite_int(counter), self.now()))
            await db.commit()

    async def record_delta(self, unit_id: int, delta_kwh: float) -> None:
        """Append one per-interval energy delta."""
        db = self._conn()
        async with self._write_lock:
            await db.execute(_INSERT_DELTA_SQL, (self.now(), unit_id, delta_kwh))
            await db.commit()

    async def sum_deltas(self, unit_id: int, start_ts: int, end_ts: int) -> float:
        """Sum the deltas of *unit_id* timestamped in ``[start_ts, end_ts)``."""
        cursor = await self._conn().execute(_SUM_DELTA_SQL, (unit_id, start_ts, end_ts))
        row = await cursor.fetchone()
        return float(row[0])

    async def finalize_hour(
        self, hour_bucket: int, family: str, unit_id: int, delta_sum: float
    ) -> bool:
        """Persist the total of *unit_id* for *hour_bucket* unless it exists.

        Returns:
            ``True`` if this call created the row.
        """
        db = self._conn()
        async with self._write_lock:
            cursor = await db.execute(
                _INSERT_HOURLY_SQL, (hour_bucket, unit_id, family, delta_sum, self.now())
            )
            await db.commit()
        return cursor.rowcount == 1

    async def list_unsent_hourly(self, limit: int) -> list[HourlyEnergy]:
        """Return up to *limit* oldest unsent hourly totals."""
        if limit < 1:
            return []
        cursor = await self._conn().execute(_PEEK_HOURLY_SQL, (limit,))
        rows = await cursor.fetchall()
        return [
            HourlyEnergy(hour_bucket=row[0], unit_id=row[1], family=row[2], delta_sum=row[3])
            for row in rows
        ]

    async def mark_hourly_sent(self, hour_bucket: int, unit_id: int) -> bool:
        """Flag an hourly total as sent. Idempotent."""
        db = self._conn()
        async with self._write_lock:
            cursor = await db.execute(_MARK_HOURLY_SQL, (hour_bucket, unit_id))
            await db.commit()
        return cursor.rowcount == 1
