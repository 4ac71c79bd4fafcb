import unittest

import numpy as np

from forecasting.constraints import (
    AQI_CEILING, AQI_FLOOR, JITTER_AMPLITUDE, confidence, constrain, derive_components,
)
from forecasting.horizon import Horizon
from forecasting.metrics import TrainingMetricsRecorder


class TestConstrain(unittest.TestCase):

    def test_01_clamps_to_hourly_band_without_jitter(self):
        self.assertEqual(constrain(250, 80, Horizon.HOURLY), 92)
        self.assertEqual(constrain(10, 80, Horizon.HOURLY), 68)
        self.assertEqual(constrain(85, 80, Horizon.HOURLY), 85)

    def test_02_weekly_band_is_wider(self):
        self.assertEqual(constrain(250, 100, Horizon.WEEKLY), 130)
        self.assertEqual(constrain(0, 100, Horizon.WEEKLY), 70)

    def test_03_jitter_stays_within_amplitude(self):
        rng = np.random.default_rng(7)
        for _ in range(500):
            aqi = constrain(250, 80, Horizon.HOURLY, rng)
            self.assertGreaterEqual(aqi, 92 - JITTER_AMPLITUDE - 0.5)
            self.assertLessEqual(aqi, 92 + JITTER_AMPLITUDE + 0.5)

    def test_04_jitter_never_escapes_domain(self):
        rng = np.random.default_rng(3)
        for _ in range(500):
            low = constrain(0, AQI_FLOOR, Horizon.HOURLY, rng)
            high = constrain(10_000, AQI_CEILING, Horizon.WEEKLY, rng)
            self.assertGreaterEqual(low, AQI_FLOOR)
            self.assertLessEqual(high, AQI_CEILING)

    def test_05_rejects_non_finite(self):
        with self.assertRaises(ValueError):
            constrain(float("nan"), 80, Horizon.HOURLY)

    def test_06_accepts_horizon_names(self):
        self.assertEqual(constrain(250, 80, "hourly"), 92)


class TestConfidence(unittest.TestCase):

    def test_hourly_decay_and_floor(self):
        self.assertEqual(confidence(0, Horizon.HOURLY), 1.0)
        self.assertAlmostEqual(confidence(10, Horizon.HOURLY), 0.8)
        self.assertEqual(confidence(23, Horizon.HOURLY), 0.54)
        self.assertEqual(confidence(40, Horizon.HOURLY), 0.5)

    def test_weekly_last_step(self):
        self.assertEqual(confidence(6, Horizon.WEEKLY), 0.4)
        self.assertEqual(confidence(9, Horizon.WEEKLY), 0.3)

    def test_monotonic(self):
        for horizon in Horizon:
            values = [confidence(i, horizon) for i in range(horizon.steps)]
            self.assertEqual(values, sorted(values, reverse=True))
            self.assertTrue(all(0 < v <= 1 for v in values))


class TestComponents(unittest.TestCase):

    def test_fixed_ratios_without_noise(self):
        components = derive_components(150)
        self.assertEqual(components, {"pm2_5": 60.0, "pm10": 90.0, "o3": 50.0, "no2": 30.0})

    def test_noise_is_small_and_never_negative(self):
        rng = np.random.default_rng(1)
        components = derive_components(5, rng)
        self.assertTrue(all(v >= 0 for v in components.values()))
        self.assertAlmostEqual(derive_components(100, rng)["pm2_5"], 40.0, delta=1.05)


class TestTrainingMetricsRecorder(unittest.TestCase):

    def test_empty_before_training(self):
        self.assertEqual(TrainingMetricsRecorder().snapshot(), {"epoch": [], "loss": [], "accuracy": []})

    def test_samples_every_tenth_epoch(self):
        recorder = TrainingMetricsRecorder()
        for epoch in range(25):
            recorder.record(epoch, 0.05)
        self.assertEqual(recorder.snapshot()["epoch"], [0, 10, 20])
        self.assertEqual(len(recorder), 3)

    def test_accuracy_proxy_is_clamped(self):
        recorder = TrainingMetricsRecorder()
        recorder.record(0, 0.02)
        recorder.record(10, 0.5)
        accuracy = recorder.snapshot()["accuracy"]
        self.assertAlmostEqual(accuracy[0], 0.8)
        self.assertEqual(accuracy[1], 0.0)

    def test_snapshot_is_a_copy(self):
        recorder = TrainingMetricsRecorder()
        recorder.record(0, 0.01)
        snapshot = recorder.snapshot()
        snapshot["loss"].append(99)
        self.assertEqual(recorder.snapshot()["loss"], [0.01])

    def test_restore_and_reset(self):
        recorder = TrainingMetricsRecorder()
        recorder.restore({"epoch": [0, 10], "loss": [0.1, 0.05], "accuracy": [0.0, 0.5]})
        self.assertEqual(recorder.snapshot()["epoch"], [0, 10])
        recorder.reset()
        self.assertEqual(len(recorder), 0)


if __name__ == '__main__':
    unittest.main(verbosity=2)
