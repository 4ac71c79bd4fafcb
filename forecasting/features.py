"""Feature encoding for the hourly and weekly AQI models"""
from datetime import datetime, timedelta, timezone
from enum import Enum

import numpy as np

from forecasting.constraints import AQI_CEILING
from forecasting.horizon import Horizon

# Local hours (inclusive) treated as rush hour by the encoder and the fallback
MORNING_RUSH = (7, 9)
EVENING_RUSH = (16, 19)

HOURLY_FEATURES = ["hour", "day_of_week", "month", "is_rush_hour", "prev_aqi", "weather_factor"]
WEEKLY_FEATURES = ["day_of_week", "month", "is_weekend", "prev_aqi", "weather_code"]


class WeatherCondition(Enum):
    """Coarse weather categories, valued by (code, AQI multiplier)"""
    CLEAR = (0, 1.0)
    CLOUDS = (1, 1.05)
    DRIZZLE = (2, 0.9)
    RAIN = (3, 0.9)
    THUNDERSTORM = (4, 0.8)
    SNOW = (5, 0.95)
    FOG = (6, 1.2)  # mist, haze, dust

    @property
    def code(self):
        return self.value[0]

    @property
    def factor(self):
        return self.value[1]

    @property
    def normalized_code(self):
        return self.code / (len(WeatherCondition) - 1)

    @classmethod
    def from_code(cls, code):
        for condition in cls:
            if condition.code == code:
                return condition
        raise ValueError(f"Unknown weather code: {code}")

    @classmethod
    def from_wmo_code(cls, code):
        """Map an Open-Meteo (WMO) weather code"""
        code = int(code)
        if code == 0:
            return cls.CLEAR
        elif code in (45, 48):
            return cls.FOG
        elif 51 <= code <= 57:
            return cls.DRIZZLE
        elif 61 <= code <= 67 or 80 <= code <= 82:
            return cls.RAIN
        elif 71 <= code <= 77 or code in (85, 86):
            return cls.SNOW
        elif 95 <= code <= 99:
            return cls.THUNDERSTORM
        return cls.CLOUDS

    @classmethod
    def from_openweather_id(cls, code):
        """Map an OpenWeather condition id (2xx thunderstorm ... 80x clouds)"""
        code = int(code)
        if 200 <= code < 300:
            return cls.THUNDERSTORM
        elif 300 <= code < 400:
            return cls.DRIZZLE
        elif 500 <= code < 600:
            return cls.RAIN
        elif 600 <= code < 700:
            return cls.SNOW
        elif 700 <= code < 800:
            return cls.FOG
        elif code == 800:
            return cls.CLEAR
        return cls.CLOUDS


def location_timezone(utc_offset_seconds):
    """Fixed-offset tzinfo for a location, or None (server local time) when unknown"""
    if utc_offset_seconds is None:
        return None
    return timezone(timedelta(seconds=int(utc_offset_seconds)))


def local_time(timestamp_ms, tz=None):
    """Wall-clock time of ``timestamp_ms`` at the forecast location (server local if tz is None)"""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz)
    return dt.replace(tzinfo=None)


def day_of_week(dt):
    """Sunday=0 ... Saturday=6"""
    return (dt.weekday() + 1) % 7


def is_rush_hour(hour):
    return MORNING_RUSH[0] <= hour <= MORNING_RUSH[1] or EVENING_RUSH[0] <= hour <= EVENING_RUSH[1]


def is_weekend(dow):
    return dow == 0 or dow == 6


def normalize_aqi(aqi):
    return min(max(float(aqi), 0.0), AQI_CEILING) / AQI_CEILING


def encode(horizon, timestamp_ms, prev_aqi, weather_signal, tz=None):
    """
    Encode one forecast step.

    For the hourly horizon ``weather_signal`` is the weather AQI multiplier,
    for the weekly horizon it is a WeatherCondition (or its normalized code).
    Calendar fields are read in ``tz``, the forecast location's timezone.
    """
    horizon = Horizon.parse(horizon)
    dt = local_time(timestamp_ms, tz)
    dow = day_of_week(dt)

    if horizon is Horizon.HOURLY:
        if isinstance(weather_signal, WeatherCondition):
            weather_signal = weather_signal.factor
        features = [
            dt.hour / 24,
            dow / 7,
            (dt.month - 1) / 12,
            1.0 if is_rush_hour(dt.hour) else 0.0,
            normalize_aqi(prev_aqi),
            float(weather_signal),
        ]
    elif horizon is Horizon.WEEKLY:
        if isinstance(weather_signal, WeatherCondition):
            weather_signal = weather_signal.normalized_code
        features = [
            dow / 7,
            (dt.month - 1) / 12,
            1.0 if is_weekend(dow) else 0.0,
            normalize_aqi(prev_aqi),
            min(max(float(weather_signal), 0.0), 1.0),
        ]
    else:
        raise AssertionError(horizon)

    return np.asarray(features, dtype=np.float32)


def feature_names(horizon):
    horizon = Horizon.parse(horizon)
    if horizon is Horizon.HOURLY:
        return list(HOURLY_FEATURES)
    elif horizon is Horizon.WEEKLY:
        return list(WEEKLY_FEATURES)
    raise AssertionError(horizon)
