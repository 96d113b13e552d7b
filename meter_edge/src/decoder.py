"""
Pure register decoder that turns raw 16-bit words into engineering values.

The poller returns ``dict[str, list[int]]`` where each key is a signal name
and each value is the list of words read for it.  This module interprets
those words according to the signal's decoding rule, always with the
big-endian word order documented by the meter (most significant word first):

- ``U16``: one word, unsigned.
- ``U32``: two words, unsigned.
- ``FLOAT``: two words reinterpreted as an IEEE-754 single.
- ``U64``: four words, unsigned.

Decoding has no error path for well-formed input.  A word list of the wrong
length is a caller bug and raises ``ValueError``.

This module is pure: no I/O, no clock, no state.

CHANGELOG:
- 2026-10-19: Sanitise every non-finite float and the U64 not-available pattern
- 2026-10-19: Sanitise NaN floats to 0.0 in normalize()
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
import struct
from collections.abc import Sequence
from typing import TYPE_CHECKING

from meter_edge.src.registers import KIND_FLOAT, KIND_U16, KIND_U32, KIND_U64

if TYPE_CHECKING:
    from meter_edge.src.registers import MeterFamily, SignalDef

logger = logging.getLogger(__name__)

# Schneider INT64 registers report this pattern for an unavailable quantity.
U64_NOT_AVAILABLE = 0x8000000000000000


# ---------------------------------------------------------------------------
# Word-level decoders
# ---------------------------------------------------------------------------


def _expect(words: Sequence[int], count: int, kind: str) -> None:
    if len(words) != count:
        raise ValueError(f"{kind} needs {count} words, got {len(words)}")


def decode_u16(words: Sequence[int]) -> int:
    """Interpret a single word as unsigned 16-bit."""
    _expect(words, 1, KIND_U16)
    return words[0] & 0xFFFF


def decode_u32(words: Sequence[int]) -> int:
    """Assemble two words (high word first) into unsigned 32-bit."""
    _expect(words, 2, KIND_U32)
    return ((words[0] & 0xFFFF) << 16) | (words[1] & 0xFFFF)


def decode_float(words: Sequence[int]) -> float:
    """Reinterpret two words (high word first) as an IEEE-754 single."""
    _expect(words, 2, KIND_FLOAT)
    packed = struct.pack(">HH", words[0] & 0xFFFF, words[1] & 0xFFFF)
    return struct.unpack(">f", packed)[0]


def decode_u64(words: Sequence[int]) -> int:
    """Assemble four words (most significant first) into unsigned 64-bit."""
    _expect(words, 4, KIND_U64)
    value = 0
    for word in words:
        value = (value << 16) | (word & 0xFFFF)
    return value


_DECODERS = {
    KIND_U16: decode_u16,
    KIND_U32: decode_u32,
    KIND_FLOAT: decode_float,
    KIND_U64: decode_u64,
}


def decode_signal(signal: SignalDef, words: Sequence[int]) -> int | float:
    """Decode *words* using the rule of *signal*.

    Raises:
        ValueError: If the word count does not match the signal's kind.
    """
    return _DECODERS[signal.kind](words)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    raw: dict[str, list[int]],
    family: MeterFamily,
) -> dict[str, int | float] | None:
    """Convert one meter's raw words into a dict of engineering values.

    Non-finite floats (NaN is reported by meters for unavailable
    quantities, infinities can appear on corrupted words) are stored as
    ``0.0`` so the outbox and telemetry documents only hold finite numbers.
    The 64-bit "not available" pattern ``0x8000000000000000`` is stored as
    ``0``, which the delta engine treats as a missing baseline.

    Args:
        raw: Dict mapping signal names to word lists, as returned by the
            poller.
        family: The meter family the words were read from.

    Returns:
        ``{signal_name: value}`` for every signal of the family, or ``None``
        if any signal is missing from *raw*.
    """
    values: dict[str, int | float] = {}

    for signal in family.signals:
        words = raw.get(signal.name)
        if words is None:
            logger.warning(
                "Signal '%s' (%s): missing from raw data", signal.name, family.name
            )
            return None

        value = decode_signal(signal, words)
        if isinstance(value, float) and not math.isfinite(value):
            logger.debug("Signal '%s': %s replaced by 0.0", signal.name, value)
            value = 0.0
        elif signal.kind == KIND_U64 and value == U64_NOT_AVAILABLE:
            logger.debug("Signal '%s': not available, stored as 0", signal.name)
            value = 0
        values[signal.name] = value

    return values
