"""
Forecast horizons and the constants that depend on them.

Every horizon-dependent decision in the package goes through ``Horizon``
so a misspelled horizon fails at parse time instead of silently falling
through to the weekly branch.
"""
from enum import Enum

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class Horizon(Enum):
    HOURLY = "hourly"
    WEEKLY = "weekly"

    @classmethod
    def parse(cls, value):
        """Accept a Horizon or its string name ("hourly" / "weekly")"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown forecast horizon: {value!r}")

    @property
    def steps(self):
        if self is Horizon.HOURLY:
            return 24
        elif self is Horizon.WEEKLY:
            return 7
        raise AssertionError(self)

    @property
    def step_ms(self):
        if self is Horizon.HOURLY:
            return HOUR_MS
        elif self is Horizon.WEEKLY:
            return DAY_MS
        raise AssertionError(self)

    @property
    def n_features(self):
        if self is Horizon.HOURLY:
            return 6
        elif self is Horizon.WEEKLY:
            return 5
        raise AssertionError(self)

    @property
    def max_change(self):
        """Largest fractional AQI change allowed between two consecutive steps"""
        if self is Horizon.HOURLY:
            return 0.15
        elif self is Horizon.WEEKLY:
            return 0.30
        raise AssertionError(self)

    @property
    def confidence_floor(self):
        if self is Horizon.HOURLY:
            return 0.5
        elif self is Horizon.WEEKLY:
            return 0.3
        raise AssertionError(self)

    @property
    def confidence_decay(self):
        if self is Horizon.HOURLY:
            return 0.02
        elif self is Horizon.WEEKLY:
            return 0.1
        raise AssertionError(self)
