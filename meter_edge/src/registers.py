"""
Schneider power meter register map -- single source of truth.

Defines every signal polled from the meters behind the field-bus gateway as
plain data: ``signal name -> (address, word_count, kind)``.  The poller
consults this table through one generic ``read_signal`` call instead of one
hand-written accessor per register, and the store derives each family's
outbox table columns from it.

All registers are holding registers addressed exactly as listed in the
meter documentation, with a fixed big-endian word order (most significant
word first).

Supported meter families:
    - ``iA9MEM15``: single-phase Acti9 energy meter.
    - ``iPM2xxx``: three-phase PowerLogic PM2000 series meter.

CHANGELOG:
- 2026-10-19: Add historical-window and energy delta derived columns
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------

KIND_U16 = "U16"
KIND_U32 = "U32"
KIND_FLOAT = "FLOAT"
KIND_U64 = "U64"


@dataclass(frozen=True, slots=True)
class SignalDef:
    """Definition of a single named meter signal.

    Attributes:
        name: Unique identifier, used as outbox column name and as the
            base of the telemetry key.
        address: Holding register start address.
        kind: Decoding rule -- one of ``"U16"``, ``"U32"``, ``"FLOAT"``,
            ``"U64"``.
        unit: Engineering unit string (e.g. ``"V"``, ``"Wh"``).
        description: Free-text description of the register.
        word_count: Number of 16-bit words the signal occupies.  Derived
            from *kind* when not set explicitly.
    """

    name: str
    address: int
    kind: str
    unit: str = ""
    description: str = ""
    word_count: int = field(default=0, repr=False)

    def __post_init__(self) -> None:  # noqa: D105
        wc = _WORD_COUNTS.get(self.kind)
        if wc is None:
            msg = f"Signal '{self.name}': unsupported kind '{self.kind}'"
            raise ValueError(msg)
        if self.word_count == 0:
            # frozen=True requires object.__setattr__
            object.__setattr__(self, "word_count", wc)
        elif self.word_count != wc:
            msg = (
                f"Signal '{self.name}': word_count {self.word_count} "
                f"does not match kind '{self.kind}' ({wc} words)"
            )
            raise ValueError(msg)

    @property
    def sql_type(self) -> str:
        """SQLite column affinity used for this signal in the outbox."""
        return "REAL" if self.kind == KIND_FLOAT else "INTEGER"


_WORD_COUNTS: dict[str, int] = {
    KIND_U16: 1,
    KIND_U32: 2,
    KIND_FLOAT: 2,
    KIND_U64: 4,
}


@dataclass(frozen=True, slots=True)
class MeterFamily:
    """A meter model sharing one signal table and one outbox table.

    Attributes:
        name: Family identifier as used in configuration and telemetry keys.
        table: Outbox table name holding this family's readings.
        signals: Ordered signals polled every cycle.
        delta_counter: Signal fed to the energy delta engine.
        window_counter: Signal looked up by the historical-window query.
    """

    name: str
    table: str
    signals: tuple[SignalDef, ...]
    delta_counter: str
    window_counter: str

    def __post_init__(self) -> None:  # noqa: D105
        names = [s.name for s in self.signals]
        if len(names) != len(set(names)):
            raise ValueError(f"Family '{self.name}': duplicate signal names")
        for counter in (self.delta_counter, self.window_counter):
            if counter not in names:
                raise ValueError(
                    f"Family '{self.name}': counter '{counter}' is not a signal"
                )

    def signal(self, name: str) -> SignalDef:
        """Return the signal called *name*.

        Raises:
            KeyError: If the family has no such signal.
        """
        for sig in self.signals:
            if sig.name == name:
                return sig
        raise KeyError(f"{self.name}: unknown signal '{name}'")


# ---------------------------------------------------------------------------
# Columns computed by the pipeline and stored next to the measured values
# ---------------------------------------------------------------------------

HISTORY_COLUMNS: dict[str, int] = {
    "energy_last_1m": 60,
    "energy_last_5m": 300,
    "energy_last_30m": 1800,
    "energy_last_1h": 3600,
    "energy_last_2h": 7200,
}
"""Historical-window column -> lookback in seconds."""

DELTA_COLUMN = "energy_delta_kwh"
"""Per-cycle energy increment reported by the delta engine."""


def _f(name: str, address: int, unit: str, description: str = "") -> SignalDef:
    return SignalDef(name=name, address=address, kind=KIND_FLOAT, unit=unit,
                     description=description)


def _u16(name: str, address: int, unit: str = "", description: str = "") -> SignalDef:
    return SignalDef(name=name, address=address, kind=KIND_U16, unit=unit,
                     description=description)


def _u64(name: str, address: int, unit: str, description: str = "") -> SignalDef:
    return SignalDef(name=name, address=address, kind=KIND_U64, unit=unit,
                     description=description)


# ---------------------------------------------------------------------------
# iA9MEM15 (single phase)
# ---------------------------------------------------------------------------

IA9MEM15 = MeterFamily(
    name="iA9MEM15",
    table="readings_ia9mem15",
    signals=(
        _f("current_a", 2999, "A", "RMS current on phase A"),
        _f("voltage_an", 3019, "V", "RMS phase-to-neutral voltage A-N"),
        _f("active_power_a", 3053, "W", "Active power on phase A"),
        _f("total_active_power", 3059, "W"),
        _f("total_apparent_power", 3069, "VA", "Total apparent power (arithmetic)"),
        _f("total_power_factor", 3079, ""),
        _f("internal_temperature", 3099, "C", "Device internal temperature"),
        _u64("total_energy", 3203, "Wh", "Total active energy delivered (not resettable)"),
    ),
    delta_counter="total_energy",
    window_counter="total_energy",
)

# ---------------------------------------------------------------------------
# iPM2xxx (three phase)
# ---------------------------------------------------------------------------

IPM2XXX = MeterFamily(
    name="iPM2xxx",
    table="readings_ipm2xxx",
    signals=(
        # Float energy accumulators
        _f("active_energy_delivered", 2699, "Wh", "Active energy delivered into load"),
        _f("active_energy_received", 2701, "Wh", "Active energy received out of load"),
        _f("active_energy_del_plus_rec", 2703, "Wh"),
        _f("active_energy_del_minus_rec", 2705, "Wh"),
        _f("reactive_energy_delivered", 2707, "VARh"),
        _f("reactive_energy_received", 2709, "VARh"),
        _f("reactive_energy_del_plus_rec", 2711, "VARh"),
        _f("reactive_energy_del_minus_rec", 2713, "VARh"),
        _f("apparent_energy_delivered", 2715, "VAh"),
        _f("apparent_energy_received", 2717, "VAh"),
        _f("apparent_energy_del_plus_rec", 2719, "VAh"),
        _f("apparent_energy_del_minus_rec", 2721, "VAh"),
        # Currents
        _f("current_a", 2999, "A"),
        _f("current_b", 3001, "A"),
        _f("current_c", 3003, "A"),
        _f("current_avg", 3009, "A"),
        _f("current_unbalance_a", 3011, "%"),
        _f("current_unbalance_b", 3013, "%"),
        _f("current_unbalance_c", 3015, "%"),
        _f("current_unbalance_worst", 3017, "%"),
        # Voltages
        _f("voltage_ab", 3019, "V"),
        _f("voltage_bc", 3021, "V"),
        _f("voltage_ca", 3023, "V"),
        _f("voltage_ll_avg", 3025, "V"),
        _f("voltage_an", 3027, "V"),
        _f("voltage_bn", 3029, "V"),
        _f("voltage_cn", 3031, "V"),
        _f("voltage_ln_avg", 3035, "V"),
        _f("voltage_unbalance_ab", 3037, "%"),
        _f("voltage_unbalance_bc", 3039, "%"),
        _f("voltage_unbalance_ca", 3041, "%"),
        _f("voltage_unbalance_ll_worst", 3043, "%"),
        _f("voltage_unbalance_an", 3045, "%"),
        _f("voltage_unbalance_bn", 3047, "%"),
        _f("voltage_unbalance_cn", 3049, "%"),
        _f("voltage_unbalance_ln_worst", 3051, "%"),
        # Powers
        _f("active_power_a", 3053, "kW"),
        _f("active_power_b", 3055, "kW"),
        _f("active_power_c", 3057, "kW"),
        _f("active_power_total", 3059, "kW"),
        _f("reactive_power_a", 3061, "kVAR"),
        _f("reactive_power_b", 3063, "kVAR"),
        _f("reactive_power_c", 3065, "kVAR"),
        _f("reactive_power_total", 3067, "kVAR"),
        _f("apparent_power_a", 3069, "kVA"),
        _f("apparent_power_b", 3071, "kVA"),
        _f("apparent_power_c", 3073, "kVA"),
        _f("apparent_power_total", 3075, "kVA"),
        # Power factor and frequency
        _f("power_factor_a", 3077, ""),
        _f("power_factor_b", 3079, ""),
        _f("power_factor_c", 3081, ""),
        _f("power_factor_total", 3083, ""),
        _f("displacement_power_factor_a", 3085, ""),
        _f("displacement_power_factor_b", 3087, ""),
        _f("displacement_power_factor_c", 3089, ""),
        _f("displacement_power_factor_total", 3091, ""),
        _f("frequency", 3109, "Hz"),
        # 64-bit energy counters
        _u64("active_energy_delivered_64", 3203, "Wh", "Active energy delivered into load"),
        _u64("active_energy_received_64", 3207, "Wh", "Active energy received out of load"),
        _u64("active_energy_total_64", 3211, "Wh", "Active energy delivered + received"),
        _u64("active_energy_net_64", 3215, "Wh", "Active energy delivered - received"),
        # Demand configuration
        _u16("power_demand_method", 3700),
        _u16("power_demand_interval", 3701, "min"),
        _u16("power_demand_subinterval", 3702, "s"),
        _u16("power_demand_elapsed_interval", 3703, "s"),
        _u16("power_demand_elapsed_subinterval", 3704, "s"),
        _u16("current_demand_method", 3710),
        _u16("current_demand_interval", 3711, "min"),
        _u16("current_demand_subinterval", 3712, "s"),
        _u16("current_demand_elapsed_interval", 3713, "s"),
        _u16("current_demand_elapsed_subinterval", 3714, "s"),
    ),
    delta_counter="active_energy_delivered_64",
    window_counter="active_energy_total_64",
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

ALL_FAMILIES: dict[str, MeterFamily] = {
    family.name: family for family in (IA9MEM15, IPM2XXX)
}
"""Every supported meter family keyed by name."""
