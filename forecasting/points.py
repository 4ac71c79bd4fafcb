from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional


def aqi_category(aqi):
    """Get AQI category based on US EPA standards"""
    if aqi <= 50: return "Good"
    elif aqi <= 100: return "Moderate"
    elif aqi <= 150: return "Unhealthy for Sensitive Groups"
    elif aqi <= 200: return "Unhealthy"
    elif aqi <= 300: return "Very Unhealthy"
    else: return "Hazardous"


def aqi_color(aqi):
    """Get chart color for AQI value"""
    if aqi <= 50: return "green"
    elif aqi <= 100: return "#f5c400"
    elif aqi <= 150: return "orange"
    elif aqi <= 200: return "red"
    elif aqi <= 300: return "purple"
    else: return "maroon"


@dataclass(frozen=True)
class ForecastPoint:
    """One predicted time step"""
    timestamp: int
    aqi: int
    confidence: float
    components: Mapping[str, float] = field(default_factory=dict)
    feature_importance: Optional[Mapping[str, float]] = None

    def __post_init__(self):
        object.__setattr__(self, "components", MappingProxyType(dict(self.components)))
        if self.feature_importance is not None:
            object.__setattr__(self, "feature_importance", MappingProxyType(dict(self.feature_importance)))

    @property
    def category(self):
        return aqi_category(self.aqi)

    def to_dict(self):
        data = {
            "timestamp": self.timestamp,
            "aqi": self.aqi,
            "confidence": self.confidence,
            "category": self.category,
            "components": dict(self.components),
        }
        if self.feature_importance is not None:
            data["featureImportance"] = dict(self.feature_importance)
        return data

    @classmethod
    def from_dict(cls, data):
        """Build from a remote backend payload; raises on missing or malformed fields"""
        return cls(
            timestamp=int(data["timestamp"]),
            aqi=int(round(float(data["aqi"]))),
            confidence=float(data.get("confidence", 1.0)),
            components={k: float(v) for k, v in (data.get("components") or {}).items()},
        )
