"""
Prediction constraints: keeps raw model output inside a plausible AQI band
around the previous step and assigns each step a decaying confidence.
"""
import math

from forecasting.horizon import Horizon

AQI_FLOOR = 5
AQI_CEILING = 500

# Uniform jitter added after the step clamp, before the absolute clamp
JITTER_AMPLITUDE = 3.0

# Pollutant concentration estimates as fixed fractions of the AQI
COMPONENT_RATIOS = {
    "pm2_5": 0.4,
    "pm10": 0.6,
    "o3": 1 / 3,
    "no2": 1 / 5,
}
COMPONENT_NOISE = 1.0


def clamp_aqi(value):
    return min(max(float(value), AQI_FLOOR), AQI_CEILING)


def constrain(raw_aqi, baseline, horizon, rng=None):
    """Clamp ``raw_aqi`` to baseline +/- max change, jitter, then clamp to the AQI domain"""
    horizon = Horizon.parse(horizon)
    raw_aqi = float(raw_aqi)
    baseline = float(baseline)
    if not math.isfinite(raw_aqi) or not math.isfinite(baseline):
        raise ValueError(f"Non-finite AQI (raw={raw_aqi}, baseline={baseline})")

    max_change = baseline * horizon.max_change
    value = min(max(raw_aqi, baseline - max_change), baseline + max_change)

    if rng is not None:
        value += rng.uniform(-JITTER_AMPLITUDE, JITTER_AMPLITUDE)

    return int(round(clamp_aqi(value)))


def confidence(step, horizon):
    horizon = Horizon.parse(horizon)
    value = max(horizon.confidence_floor, 1.0 - step * horizon.confidence_decay)
    return round(value, 4)


def derive_components(aqi, rng=None):
    components = {}
    for name, ratio in COMPONENT_RATIOS.items():
        value = aqi * ratio
        if rng is not None:
            value += rng.uniform(-COMPONENT_NOISE, COMPONENT_NOISE)
        components[name] = round(max(0.0, value), 1)
    return components
