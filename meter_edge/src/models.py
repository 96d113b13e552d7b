"""
Pydantic models for decoded meter readings and derived energy aggregates.

Defines the Reading model (one polling cycle's decoded snapshot of one meter),
the HourlyEnergy model (one finalized hour of one meter), and MeterConfig
(one configured meter family and its unit ids).

CHANGELOG:
- 2026-10-19: HourlyEnergy carries family and unit id
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Reading(BaseModel):
    """A single decoded snapshot of one meter's measured values.

    Readings are immutable once built.  The store assigns ``id`` and ``ts``
    when the reading is appended; the only field that ever changes on disk
    afterwards is the sent flag.

    Attributes:
        id: Outbox row id (``None`` until stored).
        family: Meter family name (e.g. ``"iPM2xxx"``).
        unit_id: Modbus unit id, stable per physical meter.
        source_address: Field-bus endpoint the meter was read through.
        ts: Epoch seconds assigned by the store at write time.
        values: Measured and derived values keyed by column name.
        sent: Whether the sink has confirmed this reading.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    family: str
    unit_id: int
    source_address: str
    ts: int | None = None
    values: dict[str, int | float]
    sent: bool = False


class HourlyEnergy(BaseModel):
    """Finalized energy total of one meter for one local wall-clock hour.

    Attributes:
        hour_bucket: Epoch seconds of the start of the local hour.
        family: Meter family name of the unit.
        unit_id: Modbus unit id the deltas were observed on.
        delta_sum: Sum of per-interval deltas (kWh) within the hour.
        sent: Whether the sink has confirmed this total.
    """

    model_config = ConfigDict(frozen=True)

    hour_bucket: int
    family: str
    unit_id: int
    delta_sum: float
    sent: bool = False


class MeterConfig(BaseModel):
    """One configured meter family and the unit ids polled for it."""

    family: str
    unit_ids: list[int] = Field(min_length=1)
