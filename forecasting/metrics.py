"""Sampled training curve for the model metrics panel"""
import threading

# accuracy proxy = 1 - loss * ACCURACY_SCALE (loss is MSE on AQI / 500)
ACCURACY_SCALE = 10
SAMPLE_EVERY = 10


class TrainingMetricsRecorder:
    """Keeps every Nth epoch's loss and a display-only accuracy proxy"""

    def __init__(self, every=SAMPLE_EVERY, scale=ACCURACY_SCALE):
        self.every = every
        self.scale = scale
        self._lock = threading.Lock()
        self._epoch = []
        self._loss = []
        self._accuracy = []

    def accuracy_proxy(self, loss):
        return min(1.0, max(0.0, 1.0 - loss * self.scale))

    def record(self, epoch, loss):
        if epoch % self.every != 0:
            return False
        loss = float(loss or 0.0)
        with self._lock:
            self._epoch.append(int(epoch))
            self._loss.append(loss)
            self._accuracy.append(self.accuracy_proxy(loss))
        return True

    def reset(self):
        with self._lock:
            self._epoch, self._loss, self._accuracy = [], [], []

    def restore(self, snapshot):
        snapshot = snapshot or {}
        with self._lock:
            self._epoch = list(snapshot.get("epoch", []))
            self._loss = list(snapshot.get("loss", []))
            self._accuracy = list(snapshot.get("accuracy", []))

    def snapshot(self):
        with self._lock:
            return {
                "epoch": list(self._epoch),
                "loss": list(self._loss),
                "accuracy": list(self._accuracy),
            }

    def __len__(self):
        return len(self._epoch)
