"""
Core Module - Duration.

============================================================
RESPONSIBILITY
============================================================
Validated, unit-carrying time span used by configuration
and by every lifecycle threshold comparison.

- Parses "<positive int><unit>" strings
- Renders back using the largest evenly-dividing unit
- Compares elapsed time at the threshold's own granularity

============================================================
COMPARISON RULE
============================================================
Elapsed time is truncated to whole units of the threshold's
display unit before comparing, and the comparison is
inclusive. A "7d" threshold compares whole days, "36h"
compares whole hours.

============================================================
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Tuple

from lastsignal.core.exceptions import InvalidDurationError


# ============================================================
# UNITS
# ============================================================

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * 60 * 60

UNIT_ALIASES: Dict[str, int] = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": SECONDS_PER_MINUTE, "min": SECONDS_PER_MINUTE, "mins": SECONDS_PER_MINUTE,
    "minute": SECONDS_PER_MINUTE, "minutes": SECONDS_PER_MINUTE,
    "h": SECONDS_PER_HOUR, "hr": SECONDS_PER_HOUR, "hrs": SECONDS_PER_HOUR,
    "hour": SECONDS_PER_HOUR, "hours": SECONDS_PER_HOUR,
    "d": SECONDS_PER_DAY, "day": SECONDS_PER_DAY, "days": SECONDS_PER_DAY,
}

# Largest first, used for rendering and granularity.
DISPLAY_UNITS: Tuple[Tuple[str, int], ...] = (
    ("d", SECONDS_PER_DAY),
    ("h", SECONDS_PER_HOUR),
    ("m", SECONDS_PER_MINUTE),
    ("s", 1),
)


# ============================================================
# CONFIG DURATION
# ============================================================

@dataclass(frozen=True)
class ConfigDuration:
    """A positive whole number of seconds."""

    seconds: int

    def __post_init__(self):
        if self.seconds <= 0:
            raise InvalidDurationError(self.seconds, "Duration must be greater than 0")

    # --------------------------------------------------------
    # CONSTRUCTION
    # --------------------------------------------------------

    @classmethod
    def parse(cls, value: Any) -> "ConfigDuration":
        """
        Parse a duration string such as "7d", "12 hours" or "90s".

        Bare numbers are rejected: a unit is always required.

        Raises:
            InvalidDurationError: on empty, zero, unit-less,
                non-numeric or unknown-unit input
        """
        if isinstance(value, ConfigDuration):
            return value
        if isinstance(value, bool) or not isinstance(value, str):
            raise InvalidDurationError(
                value, "Duration must be a string with a unit, e.g. '7d'"
            )

        text = value.strip()
        if not text:
            raise InvalidDurationError(value, "Duration cannot be empty")

        number_part, unit_part = _split_number_and_unit(text)
        amount = int(number_part)
        if amount == 0:
            raise InvalidDurationError(value, "Duration must be greater than 0")

        multiplier = UNIT_ALIASES.get(unit_part.lower())
        if multiplier is None:
            raise InvalidDurationError(
                value,
                f"Invalid duration unit '{unit_part}'. "
                "Valid units: s, m, h, d (or their full names)",
            )

        return cls(amount * multiplier)

    @classmethod
    def from_seconds(cls, seconds: int) -> "ConfigDuration":
        return cls(int(seconds))

    @classmethod
    def from_minutes(cls, minutes: int) -> "ConfigDuration":
        return cls(int(minutes) * SECONDS_PER_MINUTE)

    @classmethod
    def from_hours(cls, hours: int) -> "ConfigDuration":
        return cls(int(hours) * SECONDS_PER_HOUR)

    @classmethod
    def from_days(cls, days: int) -> "ConfigDuration":
        return cls(int(days) * SECONDS_PER_DAY)

    # --------------------------------------------------------
    # CONVERSION
    # --------------------------------------------------------

    def as_seconds(self) -> int:
        return self.seconds

    def as_minutes(self) -> int:
        return self.seconds // SECONDS_PER_MINUTE

    def as_hours(self) -> int:
        return self.seconds // SECONDS_PER_HOUR

    def as_days(self) -> int:
        return self.seconds // SECONDS_PER_DAY

    def as_timedelta(self) -> timedelta:
        return timedelta(seconds=self.seconds)

    @property
    def granularity(self) -> int:
        """Seconds in the unit this duration is displayed with."""
        for _, unit_seconds in DISPLAY_UNITS:
            if self.seconds % unit_seconds == 0:
                return unit_seconds
        return 1

    # --------------------------------------------------------
    # THRESHOLD COMPARISON
    # --------------------------------------------------------

    def has_elapsed(self, elapsed: timedelta) -> bool:
        """
        Check whether an elapsed span has reached this threshold.

        The span is truncated to whole units of this duration's
        granularity first; the comparison is inclusive.
        """
        unit = self.granularity
        elapsed_units = int(elapsed.total_seconds() // unit)
        return elapsed_units >= self.seconds // unit

    def is_within(self, elapsed: timedelta) -> bool:
        """Strict complement of has_elapsed()."""
        return not self.has_elapsed(elapsed)

    def __str__(self) -> str:
        for suffix, unit_seconds in DISPLAY_UNITS:
            if self.seconds % unit_seconds == 0:
                return f"{self.seconds // unit_seconds}{suffix}"
        return f"{self.seconds}s"


# ============================================================
# HELPERS
# ============================================================

def _split_number_and_unit(text: str) -> Tuple[str, str]:
    split_pos = 0
    for char in text:
        if char.isdigit() and char.isascii():
            split_pos += 1
        else:
            break

    if split_pos == 0:
        raise InvalidDurationError(text, "Duration must start with a number")

    unit_part = text[split_pos:].strip()
    if not unit_part:
        raise InvalidDurationError(text, "Duration must include a unit (s, m, h, d)")

    return text[:split_pos], unit_part


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ConfigDuration",
    "UNIT_ALIASES",
    "SECONDS_PER_MINUTE",
    "SECONDS_PER_HOUR",
    "SECONDS_PER_DAY",
]
