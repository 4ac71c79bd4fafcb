"""CSV download and chart image for forecast series"""
import io
from datetime import datetime

import matplotlib
matplotlib.use('Agg') # Non-interactive backend
import matplotlib.pyplot as plt
import pandas as pd
import structlog

from forecasting.points import aqi_category, aqi_color

logger = structlog.get_logger()

CSV_COLUMNS = ["Horizon", "Date", "Time", "AQI", "Category", "Confidence"]


def predictions_to_frame(hourly, weekly):
    rows = []
    for label, points in (("hourly", hourly), ("weekly", weekly)):
        for p in points or []:
            dt = datetime.fromtimestamp(p.timestamp / 1000)
            rows.append({
                "Horizon": label,
                "Date": dt.strftime("%Y-%m-%d"),
                "Time": dt.strftime("%H:%M"),
                "AQI": p.aqi,
                "Category": aqi_category(p.aqi),
                "Confidence": round(p.confidence, 2),
            })
    return pd.DataFrame(rows, columns=CSV_COLUMNS)


def predictions_to_csv(hourly, weekly):
    """Combine hourly and weekly predictions into one CSV document"""
    return predictions_to_frame(hourly, weekly).to_csv(index=False)


def report_filename(now=None):
    now = now or datetime.now()
    return f"aqi_predictions_{now.strftime('%Y-%m-%d')}.csv"


def generate_forecast_plot(points, title):
    """Generate a matplotlib PNG for a forecast series, with a confidence band"""
    if not points:
        return None

    aqis = [p.aqi for p in points]
    # band widens as confidence drops
    lower = [p.aqi * p.confidence for p in points]
    upper = [p.aqi * (2 - p.confidence) for p in points]
    labels = [datetime.fromtimestamp(p.timestamp / 1000).strftime("%a %H:%M") for p in points]
    x = range(len(points))

    fig = plt.figure(figsize=(10, 5))
    try:
        plt.style.use('bmh') # Clean style
        plt.fill_between(x, lower, upper, color='gray', alpha=0.2, label='Confidence band')
        plt.plot(x, aqis, marker='o', linestyle='-', linewidth=2, color='#2196f3', label='Forecast')
        plt.scatter(x, aqis, c=[aqi_color(a) for a in aqis], s=50, zorder=5)

        step = max(1, len(points) // 6)
        plt.title(title, fontsize=14)
        plt.xlabel("Forecast time")
        plt.ylabel("AQI")
        plt.xticks(list(x)[::step], labels[::step], rotation=0)
        plt.grid(True, alpha=0.3)
        plt.legend()
        plt.tight_layout()

        buf = io.BytesIO()
        plt.savefig(buf, format='png')
        buf.seek(0)
        return buf
    finally:
        plt.close(fig)
