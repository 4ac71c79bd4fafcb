from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from datetime import datetime
import os
import io

import structlog

import config
from forecasting import providers
from forecasting.horizon import Horizon
from forecasting.report import generate_forecast_plot, predictions_to_csv, report_filename
from forecasting.service import ForecastService, ModelStatus
from forecasting.store import ModelStore, ScalarStore

# Configure Structlog
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logger = structlog.get_logger()


def build_service():
    """Composition root: the one ForecastService shared by all requests"""
    return ForecastService(
        model_store=ModelStore(config.MODEL_DIR, key=config.MODEL_STORAGE_KEY),
        scalar_store=ScalarStore(config.STATE_DB_PATH),
        aqi_provider=providers.fetch_current_aqi,
        weather_provider=providers.fetch_weather,
        remote_provider=providers.fetch_remote_forecast if config.PREDICTION_API_URL else None,
        seed=config.FORECAST_SEED,
        background_init=True,
    )


def get_coords():
    """Read lat/lon query args, falling back to the configured defaults"""
    lat = request.args.get("lat") or config.DEFAULT_LAT
    lon = request.args.get("lon") or config.DEFAULT_LON
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise ValueError("lat and lon must be numbers")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ValueError("lat/lon out of range")
    return lat, lon


def create_app(service):
    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": "*"}})
    app.config["FORECAST_SERVICE"] = service

    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({"error": str(e)}), 400

    # ===================== PREDICTIONS =====================
    def forecast_response(horizon):
        lat, lon = get_coords()
        points, source = service.forecast_with_source(horizon, lat, lon)
        return jsonify({
            "predictions": [p.to_dict() for p in points],
            "horizon": horizon.value,
            "source": source,
            "status": service.status.value,
            "location": {"lat": lat, "lon": lon},
        })

    @app.route("/api/predict/hourly")
    def predict_hourly():
        """Next 24 hours, one point per hour"""
        return forecast_response(Horizon.HOURLY)

    @app.route("/api/predict/weekly")
    def predict_weekly():
        """Next 7 days, one point per day"""
        return forecast_response(Horizon.WEEKLY)

    # ===================== MODEL =====================
    @app.route("/api/model/status")
    def model_status():
        return jsonify({
            "status": service.status.value,
            "initializing": service.is_initializing,
            "error": service.last_error,
        })

    @app.route("/api/model/metrics")
    def model_metrics():
        horizon = Horizon.parse(request.args.get("horizon", "hourly"))
        return jsonify({"horizon": horizon.value, **service.get_training_metrics(horizon)})

    @app.route("/api/model/info")
    def model_info():
        return jsonify(service.get_model_information())

    @app.route("/api/model/retrain", methods=["POST"])
    def model_retrain():
        thread = service.start_background_init(force_retrain=True)
        if thread is None:
            return jsonify({"status": "busy", "message": "Model initialization already running"}), 409
        logger.info("retrain_started")
        return jsonify({"status": "started"}), 202

    # ===================== REPORTS =====================
    @app.route("/api/report")
    def report():
        """Download hourly + weekly predictions as CSV"""
        lat, lon = get_coords()
        hourly = service.get_hourly_predictions(lat, lon)
        weekly = service.get_weekly_predictions(lat, lon)
        csv_text = predictions_to_csv(hourly, weekly)
        return send_file(
            io.BytesIO(csv_text.encode("utf-8")),
            mimetype="text/csv",
            as_attachment=True,
            download_name=report_filename(),
        )

    @app.route("/api/forecast_image")
    def forecast_image():
        """Get forecast visualization as image"""
        horizon = Horizon.parse(request.args.get("horizon", "hourly"))
        lat, lon = get_coords()
        points = service.get_forecast(horizon, lat, lon)
        title = "24-Hour AQI Forecast" if horizon is Horizon.HOURLY else "7-Day AQI Forecast"

        img_buf = generate_forecast_plot(points, f"{title} ({lat:.2f}, {lon:.2f})")
        if img_buf is None:
            return "No data available", 404
        return send_file(img_buf, mimetype='image/png')

    @app.route("/api/health")
    def health():
        """Health check endpoint"""
        return jsonify({
            "status": "ok",
            "model_status": service.status.value,
            "model_loaded": service.status is ModelStatus.READY,
            "apis": {
                "aqicn": "configured" if config.AQICN_TOKEN != "demo" else "demo_mode",
                "open_meteo": "active",
                "prediction_backend": "configured" if config.PREDICTION_API_URL else "disabled",
            },
            "timestamp": datetime.now().isoformat()
        })

    return app


app = create_app(build_service())

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") != "production"

    # Train or restore the models without blocking the first requests
    if not debug or os.environ.get("WERKZEUG_RUN_MAIN"):
        app.config["FORECAST_SERVICE"].start_background_init()

    print("🚀 Starting Server...")
    app.run(debug=debug, host="0.0.0.0", port=port)
