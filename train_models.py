"""
Pre-train the hourly and weekly AQI models into MODEL_DIR so the web app
can restore them at startup instead of training on the first request.
"""
import argparse
import sys

import structlog

import config
from forecasting.horizon import Horizon
from forecasting.service import ForecastService
from forecasting.store import ModelStore

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Train AirQualNet forecast models")
    parser.add_argument("--epochs", type=int, default=config.TRAINING_EPOCHS)
    parser.add_argument("--seed", type=int, default=config.FORECAST_SEED)
    parser.add_argument("--model-dir", default=config.MODEL_DIR)
    parser.add_argument("--force", action="store_true", help="retrain even if saved models exist")
    parser.add_argument("--clean", action="store_true", help="delete saved snapshots before training")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    print("=" * 60)
    print("🚀 AIRQUALNET TRAINING - HOURLY + WEEKLY MODELS")
    print("=" * 60)

    store = ModelStore(args.model_dir, key=config.MODEL_STORAGE_KEY)
    if args.clean:
        print(f"🧹 Removed {store.clear()} saved snapshot files from {args.model_dir}")
    service = ForecastService(model_store=store, seed=args.seed, epochs=args.epochs)

    print(f"\n🎯 {'Retraining' if args.force else 'Loading or training'} models ({args.epochs} epochs)...")
    if not service.init_models(force_retrain=args.force):
        print(f"❌ Model initialization failed: {service.last_error}")
        return 1

    info = service.get_model_information()
    print(f"\n✅ Models ready in {args.model_dir}")
    if "accuracy" in info:
        print(f"   Hourly validation: {info['accuracy']}")
    for horizon in Horizon:
        metrics = service.get_training_metrics(horizon)
        if metrics["loss"]:
            print(f"   {horizon.value}: final sampled loss {metrics['loss'][-1]:.5f} "
                  f"(accuracy proxy {metrics['accuracy'][-1]:.2f})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
