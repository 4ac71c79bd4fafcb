"""
Small feed-forward AQI regressors (one per horizon).

The models are trained on synthetic rows built with the same feature
encoder used at prediction time, so the training data can never drift
from the inference features.
"""
import math
from datetime import datetime

import numpy as np
import structlog
from sklearn.metrics import mean_absolute_error
from sklearn.model_selection import train_test_split

from forecasting.constraints import AQI_CEILING
from forecasting.features import (
    WeatherCondition, day_of_week, encode, is_rush_hour, is_weekend, local_time,
)
from forecasting.horizon import Horizon
from forecasting.metrics import TrainingMetricsRecorder

# Optional TensorFlow import
try:
    from tensorflow.keras.callbacks import LambdaCallback
    from tensorflow.keras.layers import Dense, Dropout, Input
    from tensorflow.keras.models import Sequential, load_model
    from tensorflow.keras.optimizers import Adam
    from tensorflow.keras.utils import set_random_seed
    TF_AVAILABLE = True
except ImportError:
    TF_AVAILABLE = False

logger = structlog.get_logger()

TRAINING_SAMPLES = {Horizon.HOURLY: 150, Horizon.WEEKLY: 100}
BATCH_SIZE = {Horizon.HOURLY: 16, Horizon.WEEKLY: 8}
HIDDEN_UNITS = {Horizon.HOURLY: (12, 8), Horizon.WEEKLY: (10, 6)}
DROPOUT_RATE = 0.2
LEARNING_RATE = 0.01


class ModelUnavailableError(Exception):
    """The numeric backend is missing or failed to build a model"""


class ModelNotFoundError(Exception):
    """No valid persisted snapshot for a horizon"""


class PredictionError(Exception):
    """The model produced an unusable value"""


def build_model(horizon):
    if not TF_AVAILABLE:
        raise ModelUnavailableError("TensorFlow not installed")

    first, second = HIDDEN_UNITS[horizon]
    model = Sequential([
        Input(shape=(horizon.n_features,)),
        Dense(first, activation="relu", kernel_initializer="he_normal"),
        Dropout(DROPOUT_RATE),
        Dense(second, activation="relu", kernel_initializer="he_normal"),
        Dense(1),
    ], name=f"AirQualNet_{horizon.value}")
    model.compile(optimizer=Adam(learning_rate=LEARNING_RATE), loss="mse", metrics=["mae"])
    return model


def _start_of_day_ms(now_ms):
    dt = local_time(now_ms).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(dt.timestamp() * 1000)


def generate_training_data(horizon, now_ms, rng, n_samples=None):
    """Synthetic (features, normalized target) pairs: cyclical + trend + noise"""
    horizon = Horizon.parse(horizon)
    n_samples = n_samples or TRAINING_SAMPLES[horizon]
    start = _start_of_day_ms(now_ms)
    xs, ys = [], []

    for i in range(n_samples):
        timestamp = start + i * horizon.step_ms
        dt = local_time(timestamp)

        if horizon is Horizon.HOURLY:
            cyclical = math.sin(i / 12) * 15
            trend = math.sin(i / 50) * 10
            noise = rng.uniform(-5, 5)
            prev_aqi = 50 + cyclical + trend + noise
            weather_factor = 1.0 + math.sin(i / 5) * 0.2

            target = 50.0
            if is_rush_hour(dt.hour):
                target += 20
            if 0 <= dt.hour <= 5:
                target -= 15
            target = (target + cyclical + trend) * weather_factor + noise * 0.5

            xs.append(encode(horizon, timestamp, prev_aqi, weather_factor))
        elif horizon is Horizon.WEEKLY:
            weekend = is_weekend(day_of_week(dt))
            seasonal = math.sin(((dt.month - 1) / 6) * math.pi) * 10
            noise = rng.uniform(-4, 4)
            prev_aqi = 50 + seasonal + (-5 if weekend else 5) + noise
            condition = WeatherCondition.from_code(i % len(WeatherCondition))

            target = 50 + seasonal + (-10 if weekend else 5) + condition.code * 3 + noise * 0.7
            target = min(max(target, 20), 200)

            xs.append(encode(horizon, timestamp, prev_aqi, condition))
        else:
            raise AssertionError(horizon)

        ys.append(target / AQI_CEILING)

    return np.asarray(xs, dtype=np.float32), np.asarray(ys, dtype=np.float32).reshape(-1, 1)


class ForecastModel:
    """A trained (or restored) regressor for one horizon"""

    def __init__(self, horizon, model, metadata=None, recorder=None):
        self.horizon = Horizon.parse(horizon)
        self.model = model
        self.metadata = metadata or {}
        self.recorder = recorder or TrainingMetricsRecorder()

    @classmethod
    def build(cls, horizon, seed=None):
        horizon = Horizon.parse(horizon)
        if seed is not None and TF_AVAILABLE:
            set_random_seed(seed)
        return cls(horizon, build_model(horizon))

    def train(self, epochs, now_ms=None, seed=None, n_samples=None):
        """Fit on synthetic data; returns the sampled training metrics"""
        if now_ms is None:
            now_ms = int(datetime.now().timestamp() * 1000)
        if seed is not None:
            set_random_seed(seed)
        rng = np.random.default_rng(seed)

        xs, ys = generate_training_data(self.horizon, now_ms, rng, n_samples)
        x_train, x_test, y_train, y_test = train_test_split(xs, ys, test_size=0.2, random_state=seed)

        self.recorder.reset()
        recorder = self.recorder
        log = logger.bind(horizon=self.horizon.value)

        def on_epoch_end(epoch, logs):
            loss = (logs or {}).get("loss", 0.0)
            if recorder.record(epoch, loss):
                log.info("training_epoch", epoch=epoch, loss=round(float(loss), 6))

        history = self.model.fit(
            x_train, y_train,
            validation_data=(x_test, y_test),
            epochs=epochs,
            batch_size=BATCH_SIZE[self.horizon],
            shuffle=True,
            verbose=0,
            callbacks=[LambdaCallback(on_epoch_end=on_epoch_end)],
        )

        predictions = self.model.predict(x_test, verbose=0).reshape(-1)
        val_mae = mean_absolute_error(y_test.reshape(-1) * AQI_CEILING, predictions * AQI_CEILING)

        self.metadata = {
            "horizon": self.horizon.value,
            "trained_at": datetime.now().isoformat(),
            "epochs": epochs,
            "samples": int(len(xs)),
            "final_loss": float(history.history["loss"][-1]),
            "val_mae": float(val_mae),
            "metrics": recorder.snapshot(),
        }
        log.info("training_complete", val_mae=round(float(val_mae), 2), samples=len(xs))
        return recorder.snapshot()

    def predict(self, vector):
        """Normalized AQI (0..1 before denormalization) for one feature vector"""
        batch = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        value = float(np.asarray(self.model(batch, training=False)).reshape(-1)[0])
        if not math.isfinite(value):
            raise PredictionError(f"{self.horizon.value} model returned {value}")
        return value

    def save(self, store):
        store.ensure_dir()
        self.model.save(store.model_path(self.horizon))
        metadata = dict(self.metadata, metrics=self.recorder.snapshot())
        store.save_metadata(self.horizon, metadata)

    @classmethod
    def load(cls, horizon, store):
        horizon = Horizon.parse(horizon)
        if not TF_AVAILABLE:
            raise ModelUnavailableError("TensorFlow not installed")
        if not store.exists(horizon):
            raise ModelNotFoundError(f"No saved {horizon.value} model in {store.directory}")
        try:
            model = load_model(store.model_path(horizon))
            metadata = store.load_metadata(horizon)
        except Exception as e:
            raise ModelNotFoundError(f"Corrupt {horizon.value} model snapshot: {e}") from e

        if model.input_shape[-1] != horizon.n_features:
            raise ModelNotFoundError(
                f"Saved {horizon.value} model expects {model.input_shape[-1]} features, "
                f"need {horizon.n_features}"
            )

        recorder = TrainingMetricsRecorder()
        recorder.restore(metadata.get("metrics"))
        return cls(horizon, model, metadata=metadata, recorder=recorder)

    def describe_layers(self):
        layers = []
        for layer in self.model.layers:
            if isinstance(layer, Dense):
                activation = layer.get_config().get("activation", "linear")
                layers.append(f"Dense ({layer.units} units, {activation} activation)")
            elif isinstance(layer, Dropout):
                layers.append(f"Dropout ({layer.rate})")
            else:
                layers.append(layer.__class__.__name__)
        return layers
