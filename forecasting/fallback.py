"""
Synthetic forecasts used whenever the model path is unavailable.

The series is built from rush-hour / weekend heuristics around a baseline,
and every step goes through the same step clamp as model output so a
fallback series obeys the same bounds as a model series.
"""
from datetime import datetime

import numpy as np
import structlog

from forecasting.constraints import clamp_aqi, confidence, constrain, derive_components
from forecasting.features import (
    EVENING_RUSH, MORNING_RUSH, day_of_week, is_weekend, local_time,
)
from forecasting.horizon import Horizon
from forecasting.points import ForecastPoint
from forecasting.store import safe_get, safe_set

logger = structlog.get_logger()

DEFAULT_BASELINE = 50
LAST_AQI_KEY = "lastAQIValue"

BASELINE_PERTURBATION = 15.0
NOISE_AMPLITUDE = 5.0

MORNING_RUSH_FACTOR = 1.3
EVENING_RUSH_FACTOR = 1.4
NIGHT_FACTOR = 0.7
WEEKDAY_FACTOR = 1.2
WEEKEND_FACTOR = 0.9
WEEKLY_TREND = 0.02


def hourly_factor(hour):
    if MORNING_RUSH[0] <= hour <= MORNING_RUSH[1]:
        return MORNING_RUSH_FACTOR
    elif EVENING_RUSH[0] <= hour <= EVENING_RUSH[1]:
        return EVENING_RUSH_FACTOR
    elif 0 <= hour <= 5:
        return NIGHT_FACTOR
    return 1.0


def weekly_factor(dow, step):
    base = WEEKEND_FACTOR if is_weekend(dow) else WEEKDAY_FACTOR
    return base * (1 + WEEKLY_TREND * step)


class FallbackGenerator:
    def __init__(self, scalar_store=None, rng=None, state_key=LAST_AQI_KEY):
        self.scalar_store = scalar_store
        self.rng = rng if rng is not None else np.random.default_rng()
        self.state_key = state_key

    def starting_baseline(self, baseline_aqi=None, rng=None):
        """Anchor on the given AQI (or the persisted one), nudge it, persist it"""
        rng = rng if rng is not None else self.rng
        anchor = baseline_aqi
        if anchor is None:
            anchor = safe_get(self.scalar_store, self.state_key, DEFAULT_BASELINE)
        baseline = clamp_aqi(float(anchor) + rng.uniform(-BASELINE_PERTURBATION, BASELINE_PERTURBATION))
        safe_set(self.scalar_store, self.state_key, round(baseline, 2))
        return baseline

    def generate(self, horizon, baseline_aqi=None, now_ms=None, rng=None, tz=None):
        horizon = Horizon.parse(horizon)
        rng = rng if rng is not None else self.rng
        if now_ms is None:
            now_ms = int(datetime.now().timestamp() * 1000)

        baseline = self.starting_baseline(baseline_aqi, rng)
        previous = baseline
        points = []

        for i in range(horizon.steps):
            timestamp = now_ms + i * horizon.step_ms
            dt = local_time(timestamp, tz)

            if horizon is Horizon.HOURLY:
                factor = hourly_factor(dt.hour)
            elif horizon is Horizon.WEEKLY:
                factor = weekly_factor(day_of_week(dt), i)
            else:
                raise AssertionError(horizon)

            target = baseline * factor + rng.uniform(-NOISE_AMPLITUDE, NOISE_AMPLITUDE)
            aqi = constrain(target, previous, horizon, rng)

            points.append(ForecastPoint(
                timestamp=timestamp,
                aqi=aqi,
                confidence=confidence(i, horizon),
                components=derive_components(aqi, rng),
            ))
            previous = aqi

        logger.info("fallback_forecast", horizon=horizon.value, baseline=round(baseline, 1))
        return points
