"""Model snapshots on disk and the small SQLite key/value store"""
import os
import sqlite3
from datetime import datetime

import joblib
import structlog

logger = structlog.get_logger()


class ModelStore:
    """Directory of <key>-<horizon>.keras weights and <key>-<horizon>.pkl metadata"""

    def __init__(self, directory, key="aqi-prediction-model"):
        self.directory = directory
        self.key = key

    def model_path(self, horizon):
        return os.path.join(self.directory, f"{self.key}-{horizon.value}.keras")

    def metadata_path(self, horizon):
        return os.path.join(self.directory, f"{self.key}-{horizon.value}.pkl")

    def ensure_dir(self):
        os.makedirs(self.directory, exist_ok=True)

    def exists(self, horizon):
        return os.path.exists(self.model_path(horizon)) and os.path.exists(self.metadata_path(horizon))

    def save_metadata(self, horizon, metadata):
        self.ensure_dir()
        joblib.dump(metadata, self.metadata_path(horizon))

    def load_metadata(self, horizon):
        return joblib.load(self.metadata_path(horizon))

    def clear(self):
        removed = 0
        if not os.path.isdir(self.directory):
            return removed
        for name in os.listdir(self.directory):
            if name.startswith(self.key + "-"):
                os.remove(os.path.join(self.directory, name))
                removed += 1
        return removed


class ScalarStore:
    """Last-writer-wins key/value table for small UI smoothing state"""

    def __init__(self, db_path):
        self.db_path = db_path
        self._initialized = False

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        if not self._initialized:
            conn.execute('''CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value REAL,
                updated_at TIMESTAMP
            )''')
            conn.commit()
            self._initialized = True
        return conn

    def get(self, key, default=None):
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM app_state WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else default

    def set(self, key, value):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO app_state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, float(value), datetime.now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()


def safe_get(store, key, default=None):
    """Read a scalar, treating an unavailable store as empty"""
    if store is None:
        return default
    try:
        return store.get(key, default)
    except Exception as e:
        logger.warning("state_read_failed", key=key, error=str(e))
        return default


def safe_set(store, key, value):
    """Write a scalar; failures are logged and ignored"""
    if store is None:
        return False
    try:
        store.set(key, value)
        return True
    except Exception as e:
        logger.warning("state_write_failed", key=key, error=str(e))
        return False
