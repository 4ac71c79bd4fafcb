"""
ForecastService: the one object the web app talks to for AQI forecasts.

Owns the hourly/weekly models, their initialization guard and the fallback
generator. Public forecast methods never raise; the worst case is a
fully-formed synthetic series.
"""
import math
import threading
import time
from enum import Enum

import numpy as np
import structlog

import config
from forecasting import providers
from forecasting.constraints import AQI_CEILING, clamp_aqi, confidence, constrain, derive_components
from forecasting.fallback import FallbackGenerator
from forecasting.features import WeatherCondition, encode, feature_names, is_weekend, location_timezone
from forecasting.horizon import Horizon
from forecasting.network import ForecastModel, ModelNotFoundError, ModelUnavailableError
from forecasting.points import ForecastPoint
from forecasting.store import safe_get, safe_set

logger = structlog.get_logger()

MODEL_NAME = "AirQualNet"


class ModelStatus(Enum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


def feature_importance(horizon, vector, condition):
    """Rough per-feature weights shown next to each model forecast"""
    if horizon is Horizon.HOURLY:
        rush = vector[3] == 1.0
        weekend = is_weekend(int(round(vector[1] * 7)))
        return {
            "time_of_day": 0.4 if rush else 0.1,
            "day_of_week": 0.15 if weekend else 0.25,
            "month": 0.05,
            "previous_aqi": 0.3,
            "weather": 0.25 if condition.factor != 1.0 else 0.05,
        }
    elif horizon is Horizon.WEEKLY:
        weekend = vector[2] == 1.0
        return {
            "day_of_week": 0.35 if weekend else 0.2,
            "month": 0.1,
            "weekend_effect": 0.25 if weekend else 0.05,
            "previous_aqi": 0.3,
            "weather": 0.15,
        }
    raise AssertionError(horizon)


class ForecastService:
    def __init__(self, model_store=None, scalar_store=None, aqi_provider=None,
                 weather_provider=None, remote_provider=None, seed=None, clock=None,
                 epochs=None, retry_interval=None, models=None, background_init=False):
        self.model_store = model_store
        self.scalar_store = scalar_store
        self.aqi_provider = aqi_provider or providers.fetch_current_aqi
        self.weather_provider = weather_provider or providers.fetch_weather
        self.remote_provider = remote_provider
        self.seed = seed
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.epochs = epochs if epochs is not None else config.TRAINING_EPOCHS
        self.retry_interval = retry_interval if retry_interval is not None else config.INIT_RETRY_SECONDS
        # train off the request thread; requests fall back until models are ready
        self.background_init = background_init

        self.models = dict(models or {})
        self.status = ModelStatus.READY if self._models_ready() else ModelStatus.LOADING
        self.last_error = None
        self._failed_at = None
        self._init_lock = threading.Lock()
        self._init_thread = None
        self._start_lock = threading.Lock()

        self._seeds = np.random.SeedSequence(seed)
        self._seeds_lock = threading.Lock()
        self.fallback = FallbackGenerator(scalar_store, self._call_rng(), state_key=config.LAST_AQI_KEY)

    # ===================== MODEL LIFECYCLE =====================

    def _models_ready(self):
        return all(h in self.models for h in Horizon)

    @property
    def is_initializing(self):
        return self._init_lock.locked()

    def init_models(self, force_retrain=False):
        """Load or train both models; True when ready for predictions"""
        if not force_retrain and self._models_ready():
            return True
        if not self._init_lock.acquire(blocking=False):
            logger.info("model_init_in_progress")
            return False

        try:
            if not self._models_ready():
                self.status = ModelStatus.LOADING
            models = None if force_retrain else self._load_models()
            if models is None:
                models = self._train_models()
                self._save_models(models)

            self.models = models
            self.status = ModelStatus.READY
            self.last_error = None
            self._failed_at = None
            return True
        except Exception as e:
            logger.error("model_init_failed", error=str(e))
            self.last_error = str(e)
            self._failed_at = time.monotonic()
            if not self._models_ready():
                self.status = ModelStatus.ERROR
            return False
        finally:
            self._init_lock.release()

    def start_background_init(self, force_retrain=False):
        """Run init_models on a daemon thread; None if one is already running"""
        with self._start_lock:
            running = self._init_thread is not None and self._init_thread.is_alive()
            if running or self.is_initializing:
                return None
            thread = threading.Thread(
                target=self.init_models,
                kwargs={"force_retrain": force_retrain},
                name="model-init",
                daemon=True,
            )
            thread.start()
            self._init_thread = thread
        return thread

    def _load_models(self):
        if self.model_store is None:
            return None
        try:
            models = {h: ForecastModel.load(h, self.model_store) for h in Horizon}
        except ModelNotFoundError as e:
            logger.info("models_not_found", reason=str(e))
            return None
        logger.info("models_loaded", directory=self.model_store.directory)
        return models

    def _train_models(self):
        models = {}
        for horizon in Horizon:
            model = ForecastModel.build(horizon, seed=self.seed)
            model.train(self.epochs, now_ms=self.clock(), seed=self.seed)
            models[horizon] = model
        return models

    def _save_models(self, models):
        if self.model_store is None:
            return
        for horizon, model in models.items():
            try:
                model.save(self.model_store)
            except Exception as e:
                logger.warning("model_save_failed", horizon=horizon.value, error=str(e))

    def _ensure_models(self):
        if self._models_ready():
            return True
        if self.is_initializing:
            return False
        if (self.status is ModelStatus.ERROR and self._failed_at is not None
                and time.monotonic() - self._failed_at < self.retry_interval):
            return False
        if self.background_init:
            self.start_background_init()
            return False
        return self.init_models()

    # ===================== UPSTREAM INPUTS =====================

    def _call_rng(self):
        with self._seeds_lock:
            child = self._seeds.spawn(1)[0]
        return np.random.default_rng(child)

    def _current_baseline(self, lat, lon):
        """(baseline AQI, whether it was observed live)"""
        try:
            aqi = float(self.aqi_provider(lat, lon)["aqi"])
            if not math.isfinite(aqi):
                raise ValueError(f"non-finite AQI {aqi}")
            aqi = clamp_aqi(aqi)
            safe_set(self.scalar_store, config.LAST_AQI_KEY, aqi)
            return aqi, True
        except Exception as e:
            logger.warning("current_aqi_unavailable", lat=lat, lon=lon, error=str(e))
            stored = safe_get(self.scalar_store, config.LAST_AQI_KEY)
            return clamp_aqi(stored if stored is not None else config.DEFAULT_BASELINE_AQI), False

    def _current_weather(self, lat, lon):
        """(condition, location tzinfo); CLEAR and server local time when unavailable"""
        try:
            weather = self.weather_provider(lat, lon)
            condition = weather["condition"]
            if not isinstance(condition, WeatherCondition):
                condition = WeatherCondition[str(condition).upper()]
            return condition, location_timezone(weather.get("utc_offset_seconds"))
        except Exception as e:
            logger.warning("weather_unavailable", lat=lat, lon=lon, error=str(e))
            return WeatherCondition.CLEAR, None

    # ===================== FORECASTS =====================

    def _predict_series(self, horizon, baseline, condition, now_ms, rng, tz=None):
        model = self.models[horizon]
        previous = baseline
        points = []

        for i in range(horizon.steps):
            timestamp = now_ms + i * horizon.step_ms
            vector = encode(horizon, timestamp, previous, condition, tz)
            predicted = model.predict(vector) * AQI_CEILING
            aqi = constrain(predicted * condition.factor, previous, horizon, rng)

            points.append(ForecastPoint(
                timestamp=timestamp,
                aqi=aqi,
                confidence=confidence(i, horizon),
                components=derive_components(aqi, rng),
                feature_importance=feature_importance(horizon, vector, condition),
            ))
            previous = aqi

        return points

    def forecast_with_source(self, horizon, lat, lon):
        """(points, source) where source is "remote", "model" or "fallback" """
        horizon = Horizon.parse(horizon)
        rng = self._call_rng()
        now_ms = self.clock()

        if self.remote_provider is not None:
            try:
                points = self.remote_provider(horizon, lat, lon)
                if points:
                    return points, "remote"
            except Exception as e:
                logger.warning("remote_forecast_failed", horizon=horizon.value, error=str(e))

        observed = None
        tz = None
        try:
            baseline, live = self._current_baseline(lat, lon)
            observed = baseline if live else None
            condition, tz = self._current_weather(lat, lon)
            if not self._ensure_models():
                raise ModelUnavailableError(self.last_error or f"models {self.status.value}")
            points = self._predict_series(horizon, baseline, condition, now_ms, rng, tz)
            logger.info("model_forecast", horizon=horizon.value, baseline=baseline,
                        weather=condition.name.lower())
            return points, "model"
        except Exception as e:
            logger.warning("forecast_fallback", horizon=horizon.value, error=str(e))
            return self.fallback.generate(horizon, observed, now_ms, rng, tz), "fallback"

    def get_forecast(self, horizon, lat, lon):
        return self.forecast_with_source(horizon, lat, lon)[0]

    def get_hourly_predictions(self, lat, lon):
        return self.get_forecast(Horizon.HOURLY, lat, lon)

    def get_weekly_predictions(self, lat, lon):
        return self.get_forecast(Horizon.WEEKLY, lat, lon)

    # ===================== INTROSPECTION =====================

    def get_training_metrics(self, horizon=Horizon.HOURLY):
        model = self.models.get(Horizon.parse(horizon))
        if model is None:
            return {"epoch": [], "loss": [], "accuracy": []}
        return model.recorder.snapshot()

    def get_model_information(self):
        info = {
            "status": self.status.value,
            "name": MODEL_NAME,
            "type": "Feed-forward neural network (Keras Sequential)",
            "features": {h.value: feature_names(h) for h in Horizon},
        }
        if self.last_error:
            info["error"] = self.last_error
        if not self._models_ready():
            return info

        training = {}
        layers = {}
        for horizon, model in self.models.items():
            meta = model.metadata
            training[horizon.value] = {
                "epochs": meta.get("epochs"),
                "dataPoints": meta.get("samples"),
                "finalLoss": meta.get("final_loss"),
                "trainedAt": meta.get("trained_at"),
            }
            layers[horizon.value] = model.describe_layers()

        val_mae = self.models[Horizon.HOURLY].metadata.get("val_mae")
        if val_mae is not None:
            info["accuracy"] = f"MAE {val_mae:.1f} AQI"
        info["training"] = training
        info["architecture"] = {"framework": "TensorFlow / Keras", "layers": layers}
        return info
