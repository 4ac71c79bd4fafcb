import threading
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

from forecasting.constraints import AQI_CEILING, AQI_FLOOR, JITTER_AMPLITUDE
from forecasting.features import WeatherCondition
from forecasting.horizon import Horizon
from forecasting.metrics import TrainingMetricsRecorder
from forecasting.network import ForecastModel, ModelNotFoundError, PredictionError
from forecasting.points import ForecastPoint
from forecasting.service import ForecastService, ModelStatus


def ms(dt):
    return int(dt.timestamp() * 1000)


MONDAY_8AM = ms(datetime(2024, 3, 4, 8, 0))


class FakeModel:
    """Stands in for a trained ForecastModel"""

    def __init__(self, horizon, value=0.2, fail_at=None):
        self.horizon = horizon
        self.value = value
        self.fail_at = fail_at
        self.calls = 0
        self.saved = False
        self.recorder = TrainingMetricsRecorder()
        self.metadata = {"epochs": 100, "samples": 150, "val_mae": 4.2, "final_loss": 0.001}

    def predict(self, vector):
        if self.fail_at is not None and self.calls >= self.fail_at:
            raise PredictionError("numeric backend failed")
        self.calls += 1
        return self.value

    def train(self, epochs, now_ms=None, seed=None, n_samples=None):
        self.recorder.record(0, 0.02)
        self.recorder.record(10, 0.01)
        return self.recorder.snapshot()

    def save(self, store):
        self.saved = True

    def describe_layers(self):
        return ["Dense (12 units, relu activation)", "Dropout (0.2)", "Dense (1 units, linear activation)"]


class DictStore:
    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, key, default=None):
        return self.values.get(key, default)

    def set(self, key, value):
        self.values[key] = value


def failing_provider(lat, lon):
    raise ConnectionError("upstream unreachable")


def failing_remote(horizon, lat, lon):
    raise ConnectionError("backend down")


def make_service(models=None, aqi=80, condition=WeatherCondition.CLEAR, **kwargs):
    if models is None:
        models = {h: FakeModel(h) for h in Horizon}
    kwargs.setdefault("aqi_provider", lambda lat, lon: {"aqi": aqi})
    kwargs.setdefault("weather_provider", lambda lat, lon: {"condition": condition})
    kwargs.setdefault("scalar_store", DictStore())
    return ForecastService(models=models, seed=1234, clock=lambda: MONDAY_8AM, **kwargs)


class ForecastAssertions:

    def assert_well_formed(self, points, horizon, baseline):
        self.assertEqual(len(points), horizon.steps)
        previous = baseline
        for i, point in enumerate(points):
            self.assertIsInstance(point, ForecastPoint)
            self.assertGreaterEqual(point.aqi, AQI_FLOOR)
            self.assertLessEqual(point.aqi, AQI_CEILING)
            self.assertLessEqual(abs(point.aqi - previous), horizon.max_change * previous + JITTER_AMPLITUDE + 1)
            if i:
                self.assertEqual(point.timestamp - points[i - 1].timestamp, horizon.step_ms)
                self.assertLessEqual(point.confidence, points[i - 1].confidence)
            previous = point.aqi


class TestModelForecasts(ForecastAssertions, unittest.TestCase):

    def test_01_hourly_predictions(self):
        service = make_service()
        points = service.get_hourly_predictions(12.97, 77.59)
        self.assert_well_formed(points, Horizon.HOURLY, 80)
        self.assertEqual(points[0].timestamp, MONDAY_8AM)
        self.assertIsNotNone(points[0].feature_importance)

    def test_02_rush_hour_first_step_scenario(self):
        """baseline 80 at 08:00: first point within the 15% band plus jitter"""
        service = make_service()
        points, source = service.forecast_with_source(Horizon.HOURLY, 12.97, 77.59)
        self.assertEqual(source, "model")
        self.assertGreaterEqual(points[0].aqi, 80 * 0.85 - JITTER_AMPLITUDE - 0.5)
        self.assertLessEqual(points[0].aqi, 80 * 1.15 + JITTER_AMPLITUDE + 0.5)
        self.assertEqual(points[0].confidence, 1.0)
        self.assertEqual(points[0].feature_importance["time_of_day"], 0.4)

    def test_03_weekly_predictions(self):
        service = make_service()
        points = service.get_weekly_predictions(12.97, 77.59)
        self.assert_well_formed(points, Horizon.WEEKLY, 80)
        self.assertEqual(points[6].confidence, 0.4)

    def test_04_chains_previous_output(self):
        """A model pinned at AQI 250 climbs by at most 15% per hour"""
        models = {h: FakeModel(h, value=0.5) for h in Horizon}
        points = make_service(models=models, aqi=50).get_hourly_predictions(0, 0)
        self.assertGreater(points[-1].aqi, points[0].aqi)
        self.assert_well_formed(points, Horizon.HOURLY, 50)

    def test_05_weather_factor_is_applied(self):
        models = {h: FakeModel(h, value=0.16) for h in Horizon}
        clear = make_service(models=models, condition=WeatherCondition.CLEAR)
        storm = make_service(models=models, condition=WeatherCondition.THUNDERSTORM)
        clear_points = clear.get_hourly_predictions(0, 0)
        storm_points = storm.get_hourly_predictions(0, 0)
        self.assertLess(sum(p.aqi for p in storm_points), sum(p.aqi for p in clear_points))

    def test_06_weather_as_string_name(self):
        service = make_service(weather_provider=lambda lat, lon: {"condition": "fog"})
        self.assertEqual(service._current_weather(0, 0), (WeatherCondition.FOG, None))

    def test_07_same_seed_is_deterministic(self):
        a = make_service().get_hourly_predictions(1, 2)
        b = make_service().get_hourly_predictions(1, 2)
        self.assertEqual([p.aqi for p in a], [p.aqi for p in b])

    def test_08_rush_hour_uses_location_offset(self):
        """02:30 UTC is 08:00 in Delhi; the provider reports the +05:30 offset"""
        now = ms(datetime(2024, 3, 4, 2, 30, tzinfo=timezone.utc))
        seen = []

        class RecordingModel(FakeModel):
            def predict(self, vector):
                seen.append(vector)
                return super().predict(vector)

        models = {h: RecordingModel(h) for h in Horizon}
        service = make_service(
            models=models,
            weather_provider=lambda lat, lon: {"condition": "clear", "utc_offset_seconds": 19800},
        )
        service.clock = lambda: now
        points, source = service.forecast_with_source(Horizon.HOURLY, 28.61, 77.21)
        self.assertEqual(source, "model")
        self.assertAlmostEqual(float(seen[0][0]), 8 / 24, places=5)
        self.assertEqual(float(seen[0][3]), 1.0)
        self.assertEqual(points[0].feature_importance["time_of_day"], 0.4)


class TestUpstreamFailures(ForecastAssertions, unittest.TestCase):

    def test_01_aqi_fetch_failure_still_returns_24_points(self):
        service = make_service(aqi_provider=failing_provider)
        points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
        self.assertEqual(source, "model")
        self.assert_well_formed(points, Horizon.HOURLY, 50)

    def test_02_aqi_failure_uses_stored_baseline(self):
        store = DictStore({"lastAQIValue": 150.0})
        service = make_service(aqi_provider=failing_provider, scalar_store=store)
        baseline, live = service._current_baseline(0, 0)
        self.assertEqual((baseline, live), (150.0, False))

    def test_03_live_aqi_is_persisted(self):
        store = DictStore()
        make_service(aqi=95, scalar_store=store)._current_baseline(0, 0)
        self.assertEqual(store.get("lastAQIValue"), 95.0)

    def test_04_weather_failure_means_neutral_factor(self):
        service = make_service(weather_provider=failing_provider)
        self.assertEqual(service._current_weather(0, 0), (WeatherCondition.CLEAR, None))
        self.assertEqual(len(service.get_weekly_predictions(0, 0)), 7)

    def test_05_out_of_range_aqi_is_clamped(self):
        service = make_service(aqi=900)
        points = service.get_hourly_predictions(0, 0)
        self.assert_well_formed(points, Horizon.HOURLY, 500)

    def test_06_garbage_aqi_payload(self):
        service = make_service(aqi_provider=lambda lat, lon: {"aqi": "-"})
        self.assertEqual(len(service.get_hourly_predictions(0, 0)), 24)


class TestFallbackRouting(ForecastAssertions, unittest.TestCase):

    def test_01_prediction_failure_mid_series_returns_full_fallback(self):
        models = {h: FakeModel(h, fail_at=5) for h in Horizon}
        service = make_service(models=models)
        points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
        self.assertEqual(source, "fallback")
        self.assertEqual(len(points), 24)
        self.assertTrue(all(p.feature_importance is None for p in points))

    def test_02_nan_prediction_falls_back(self):
        models = {h: FakeModel(h, value=float("nan")) for h in Horizon}
        points, source = make_service(models=models).forecast_with_source(Horizon.WEEKLY, 0, 0)
        self.assertEqual(source, "fallback")
        self.assertEqual(len(points), 7)

    def test_03_init_failure_falls_back_and_reports_error(self):
        service = make_service(models={}, retry_interval=300)
        with patch.object(ForecastModel, "build", side_effect=RuntimeError("no backend")) as build:
            points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
            self.assertEqual(source, "fallback")
            self.assertEqual(service.status, ModelStatus.ERROR)
            self.assertIn("no backend", service.last_error)

            # within the retry interval no second training attempt is made
            points, source = service.forecast_with_source(Horizon.WEEKLY, 0, 0)
            self.assertEqual(source, "fallback")
            self.assertEqual(build.call_count, 1)
        self.assert_well_formed(points, Horizon.WEEKLY, points[0].aqi)

    def test_04_retry_after_interval(self):
        service = make_service(models={}, retry_interval=0)
        with patch.object(ForecastModel, "build", side_effect=RuntimeError("no backend")):
            service.get_hourly_predictions(0, 0)
        with patch.object(ForecastModel, "build", side_effect=lambda h, seed=None: FakeModel(h)):
            points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
        self.assertEqual(source, "model")
        self.assertEqual(service.status, ModelStatus.READY)
        self.assertIsNone(service.last_error)

    def test_05_initialization_in_flight_falls_back(self):
        service = make_service(models={})
        with patch.object(ForecastModel, "build") as build:
            service._init_lock.acquire()
            try:
                points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
                self.assertFalse(service.init_models())
            finally:
                service._init_lock.release()
        self.assertEqual(source, "fallback")
        self.assertEqual(len(points), 24)
        build.assert_not_called()

    def test_06_fallback_reuses_live_baseline(self):
        models = {h: FakeModel(h, fail_at=0) for h in Horizon}
        service = make_service(models=models, aqi=300)
        points = service.get_hourly_predictions(0, 0)
        self.assertGreater(points[0].aqi, 200)


class TestRemoteBackend(unittest.TestCase):

    def remote_points(self, horizon, lat, lon):
        return [ForecastPoint(MONDAY_8AM + i * horizon.step_ms, 42, 0.9) for i in range(horizon.steps)]

    def test_remote_answer_wins(self):
        service = make_service(remote_provider=self.remote_points)
        points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
        self.assertEqual(source, "remote")
        self.assertTrue(all(p.aqi == 42 for p in points))

    def test_remote_failure_uses_local_model(self):
        service = make_service(remote_provider=failing_remote)
        points, source = service.forecast_with_source(Horizon.WEEKLY, 0, 0)
        self.assertEqual(source, "model")
        self.assertEqual(len(points), 7)


class TestModelLifecycle(unittest.TestCase):

    def test_01_trains_and_saves_when_nothing_stored(self):
        service = make_service(models={}, model_store=SimpleNamespace(directory="saved_models"))
        with patch.object(ForecastModel, "load", side_effect=ModelNotFoundError("empty")), \
                patch.object(ForecastModel, "build", side_effect=lambda h, seed=None: FakeModel(h)):
            self.assertTrue(service.init_models())
        self.assertEqual(service.status, ModelStatus.READY)
        self.assertTrue(all(m.saved for m in service.models.values()))
        self.assertEqual(service.get_training_metrics()["epoch"], [0, 10])

    def test_02_restores_from_store_without_training(self):
        service = make_service(models={}, model_store=SimpleNamespace(directory="saved_models"))
        with patch.object(ForecastModel, "load", side_effect=lambda h, store: FakeModel(h)), \
                patch.object(ForecastModel, "build") as build:
            self.assertTrue(service.init_models())
        build.assert_not_called()

    def test_03_save_failure_is_ignored(self):
        class UnsavableModel(FakeModel):
            def save(self, store):
                raise OSError("read-only filesystem")

        service = make_service(models={}, model_store=SimpleNamespace(directory="saved_models"))
        with patch.object(ForecastModel, "load", side_effect=ModelNotFoundError("empty")), \
                patch.object(ForecastModel, "build", side_effect=lambda h, seed=None: UnsavableModel(h)):
            self.assertTrue(service.init_models())
        self.assertEqual(service.status, ModelStatus.READY)

    def test_04_ready_models_skip_initialization(self):
        service = make_service()
        with patch.object(ForecastModel, "build") as build:
            self.assertTrue(service.init_models())
        build.assert_not_called()

    def test_05_failed_retrain_keeps_existing_models(self):
        service = make_service()
        with patch.object(ForecastModel, "build", side_effect=RuntimeError("boom")):
            self.assertFalse(service.init_models(force_retrain=True))
        self.assertEqual(service.status, ModelStatus.READY)
        self.assertEqual(len(service.get_hourly_predictions(0, 0)), 24)

    def test_06_background_init_runs_once(self):
        service = make_service(models={})
        started = threading.Event()
        release = threading.Event()

        def slow_build(h, seed=None):
            started.set()
            release.wait(5)
            return FakeModel(h)

        with patch.object(ForecastModel, "build", side_effect=slow_build) as build:
            thread = service.start_background_init()
            self.assertTrue(started.wait(5))
            self.assertIsNone(service.start_background_init())
            self.assertEqual(service.status, ModelStatus.LOADING)
            release.set()
            thread.join(5)
        self.assertEqual(build.call_count, 2)
        self.assertEqual(service.status, ModelStatus.READY)

    def test_07_cold_request_trains_in_background(self):
        """First request on a served app answers from the fallback while training runs"""
        service = make_service(models={}, background_init=True)
        started = threading.Event()
        release = threading.Event()

        def slow_build(h, seed=None):
            started.set()
            release.wait(5)
            return FakeModel(h)

        with patch.object(ForecastModel, "build", side_effect=slow_build):
            points, source = service.forecast_with_source(Horizon.HOURLY, 0, 0)
            self.assertEqual(source, "fallback")
            self.assertEqual(len(points), 24)
            self.assertTrue(started.wait(5))
            self.assertTrue(service._init_thread.is_alive())

            # a second cold request neither blocks nor starts another run
            self.assertEqual(service.forecast_with_source(Horizon.WEEKLY, 0, 0)[1], "fallback")
            release.set()
            service._init_thread.join(5)

        self.assertEqual(service.status, ModelStatus.READY)
        self.assertEqual(service.forecast_with_source(Horizon.HOURLY, 0, 0)[1], "model")

    def test_08_metrics_empty_before_training(self):
        service = make_service(models={})
        self.assertEqual(service.get_training_metrics("weekly"), {"epoch": [], "loss": [], "accuracy": []})

    def test_09_model_information(self):
        info = make_service().get_model_information()
        self.assertEqual(info["status"], "ready")
        self.assertEqual(info["name"], "AirQualNet")
        self.assertEqual(info["accuracy"], "MAE 4.2 AQI")
        self.assertIn("hourly", info["architecture"]["layers"])
        self.assertEqual(len(info["features"]["hourly"]), 6)

        loading = make_service(models={}).get_model_information()
        self.assertEqual(loading["status"], "loading")
        self.assertNotIn("architecture", loading)


if __name__ == '__main__':
    unittest.main(verbosity=2)
