"""
Clearance hierarchy shared by every authorization check.

Levels are totally ordered by declaration order (L1 < L2 < L3 < L4). All
comparisons go through `rank` so there is exactly one ordering in the system.
"""

from enum import Enum

from core.domain.errors import InvalidInputError


class ClearanceLevel(str, Enum):
    """Role tiers carried on the caller identity."""

    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    L4 = "L4"


_ORDER: tuple[ClearanceLevel, ...] = tuple(ClearanceLevel)


def rank(level: ClearanceLevel) -> int:
    """Position of `level` in declaration order, starting at 0."""
    return _ORDER.index(level)


def at_least(caller: ClearanceLevel, required: ClearanceLevel) -> bool:
    """True when `caller` is ranked at or above `required`."""
    return rank(caller) >= rank(required)


def parse_clearance(value: ClearanceLevel | str) -> ClearanceLevel:
    """Coerce user input to a ClearanceLevel, rejecting unknown values."""
    if isinstance(value, ClearanceLevel):
        return value
    if isinstance(value, str):
        try:
            return ClearanceLevel(value.strip().upper())
        except ValueError:
            pass
    raise InvalidInputError(f"Unknown clearance level: {value!r}")
