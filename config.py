import os

# ===================== API CONFIG =====================
# AQICN API for real-time current AQI (geo feed by coordinates)
AQICN_TOKEN = os.getenv("AQICN_TOKEN", "demo")
AQICN_URL = "https://api.waqi.info/feed"

# Open-Meteo weather API (free, no key needed)
WEATHER_API_URL = os.getenv("WEATHER_API_URL", "https://api.open-meteo.com/v1/forecast")

# OpenWeather current weather, used instead of Open-Meteo when a key is set
OPENWEATHER_API_KEY = os.getenv("OPENWEATHER_API_KEY") or None
OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"

# Optional remote prediction backend, tried before the local model
PREDICTION_API_URL = os.getenv("PREDICTION_API_URL") or None

FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "8"))
FETCH_RETRIES = int(os.getenv("FETCH_RETRIES", "2"))

# ===================== STORAGE =====================
# On Vercel, use /tmp directory (ephemeral storage)
IS_VERCEL = os.environ.get('VERCEL') == '1'
BASE_DIR = '/tmp' if IS_VERCEL else os.path.dirname(os.path.abspath(__file__))

MODEL_DIR = os.getenv("MODEL_DIR", os.path.join(BASE_DIR, "saved_models"))
MODEL_STORAGE_KEY = "aqi-prediction-model"

STATE_DB_PATH = os.getenv("STATE_DB_PATH", os.path.join(BASE_DIR, "airqualnet.db"))
LAST_AQI_KEY = "lastAQIValue"

# ===================== MODEL =====================
TRAINING_EPOCHS = int(os.getenv("TRAINING_EPOCHS", "100"))
INIT_RETRY_SECONDS = float(os.getenv("INIT_RETRY_SECONDS", "300"))
FORECAST_SEED = int(os.environ["FORECAST_SEED"]) if os.getenv("FORECAST_SEED") else None

# ===================== DEFAULTS =====================
# San Francisco, used when the client sends no coordinates
DEFAULT_LAT = float(os.getenv("DEFAULT_LAT", "37.7749"))
DEFAULT_LON = float(os.getenv("DEFAULT_LON", "-122.4194"))
DEFAULT_BASELINE_AQI = 50
