"""Upstream HTTP collaborators: current AQI, weather, optional remote predictor"""
import requests
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

import config
from forecasting.constraints import AQI_CEILING
from forecasting.features import WeatherCondition
from forecasting.horizon import Horizon
from forecasting.points import ForecastPoint

logger = structlog.get_logger()


class ProviderError(Exception):
    """An upstream API was unreachable or answered with unusable data"""


@retry(stop=stop_after_attempt(max(1, config.FETCH_RETRIES)),
       wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
       retry=retry_if_exception_type(requests.RequestException),
       reraise=True)
def fetch_json(url, params=None, timeout=None):
    """GET a JSON document with a bounded timeout and exponential backoff retry"""
    res = requests.get(url, params=params, timeout=timeout or config.FETCH_TIMEOUT)
    res.raise_for_status()
    return res.json()


def fetch_current_aqi(lat, lon):
    """Current AQI from the AQICN geo feed"""
    logger.info("fetching_current_aqi", lat=lat, lon=lon)
    try:
        data = fetch_json(f"{config.AQICN_URL}/geo:{lat};{lon}/", params={"token": config.AQICN_TOKEN})
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"AQICN request failed: {e}") from e

    if data.get("status") != "ok" or "data" not in data:
        raise ProviderError(f"AQICN returned status {data.get('status')!r}")

    feed = data["data"]
    try:
        aqi = float(feed.get("aqi"))
    except (TypeError, ValueError):
        raise ProviderError(f"AQICN returned no numeric AQI ({feed.get('aqi')!r})")

    components = {}
    for name, entry in (feed.get("iaqi") or {}).items():
        if isinstance(entry, dict) and isinstance(entry.get("v"), (int, float)):
            components[name] = entry["v"]

    return {
        "aqi": aqi,
        "level": feed.get("dominentpol"),
        "components": components,
    }


def fetch_openweather(lat, lon):
    """Current weather condition and UTC offset from OpenWeather"""
    params = {"lat": lat, "lon": lon, "appid": config.OPENWEATHER_API_KEY}
    try:
        data = fetch_json(config.OPENWEATHER_URL, params=params)
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"OpenWeather request failed: {e}") from e

    try:
        code = int(data["weather"][0]["id"])
    except (KeyError, IndexError, TypeError, ValueError):
        raise ProviderError("OpenWeather response has no condition id")

    return {
        "condition": WeatherCondition.from_openweather_id(code),
        "code": code,
        "utc_offset_seconds": data.get("timezone"),
    }


def fetch_weather(lat, lon):
    """Current weather condition and the location's UTC offset"""
    logger.info("fetching_weather", lat=lat, lon=lon)
    if config.OPENWEATHER_API_KEY:
        return fetch_openweather(lat, lon)

    params = {
        "latitude": lat,
        "longitude": lon,
        "current": "weather_code",
        "timezone": "auto",
    }
    try:
        data = fetch_json(config.WEATHER_API_URL, params=params)
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"Weather request failed: {e}") from e

    current = data.get("current") or {}
    code = current.get("weather_code")
    if code is None:
        code = (data.get("current_weather") or {}).get("weathercode")
    if code is None:
        raise ProviderError("Weather response has no weather code")

    return {
        "condition": WeatherCondition.from_wmo_code(code),
        "code": int(code),
        "utc_offset_seconds": data.get("utc_offset_seconds"),
    }


def fetch_remote_forecast(horizon, lat, lon, base_url=None):
    """Forecast from the remote prediction backend, or None when none is configured"""
    base_url = base_url or config.PREDICTION_API_URL
    if not base_url:
        return None

    horizon = Horizon.parse(horizon)
    try:
        data = fetch_json(f"{base_url.rstrip('/')}/predict/{horizon.value}", params={"lat": lat, "lon": lon})
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"Prediction backend failed: {e}") from e

    if isinstance(data, dict):
        data = data.get("predictions")
    if not isinstance(data, list) or len(data) != horizon.steps:
        raise ProviderError(f"Prediction backend returned a malformed {horizon.value} series")

    try:
        points = [ForecastPoint.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"Prediction backend returned a malformed point: {e}") from e

    for point in points:
        if not 0 <= point.aqi <= AQI_CEILING or not 0 < point.confidence <= 1:
            raise ProviderError(f"Prediction backend point out of range: {point}")
    for earlier, later in zip(points, points[1:]):
        if later.timestamp - earlier.timestamp != horizon.step_ms:
            raise ProviderError(f"Prediction backend timestamps are not {horizon.value} steps apart")
        if later.confidence > earlier.confidence:
            raise ProviderError("Prediction backend confidence increases over the horizon")
    return points
