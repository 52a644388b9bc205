"""Trend-based component health predictions from snapshot history."""
from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .history import LAST_ANALYSIS_KEY, PREDICTIONS_KEY, SNAPSHOTS_KEY, SnapshotHistory, Storage
from .thresholds import BatteryThresholds, CatalystThresholds, FuelTrimThresholds, Thresholds, VoltageBands
from .trend import fit_trend

logger = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    GOOD = "good"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER[self]


_SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.WARNING: 1,
    Severity.INFO: 2,
    Severity.GOOD: 3,
}


@dataclass
class Prediction:
    component: str
    severity: Severity
    message: str
    recommendation: str
    timeframe: str
    confidence: int
    current_value: str = ""
    trend: str = "stable"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "severity": self.severity.value,
            "message": self.message,
            "recommendation": self.recommendation,
            "timeframe": self.timeframe,
            "confidence": self.confidence,
            "currentValue": self.current_value,
            "trend": self.trend,
        }

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "Prediction":
        return Prediction(
            component=str(data["component"]),
            severity=Severity(data["severity"]),
            message=str(data.get("message", "")),
            recommendation=str(data.get("recommendation", "")),
            timeframe=str(data.get("timeframe", "")),
            confidence=int(data.get("confidence", 0)),
            current_value=str(data.get("currentValue", "")),
            trend=str(data.get("trend", "stable")),
        )


def classify_voltage(voltage: Optional[float], bands: VoltageBands | None = None) -> str:
    if voltage is None:
        return "Unknown"
    bands = bands or VoltageBands()
    if voltage < bands.critical_low:
        return "Critical"
    if voltage > bands.critical_high:
        return "Overcharge"
    if voltage < bands.warning_low:
        return "Low"
    if voltage > bands.warning_high:
        return "High"
    return "Normal"


def engine_running(voltage: Optional[float], bands: VoltageBands | None = None) -> bool:
    # Alternator output lifts the rail above resting battery voltage
    bands = bands or VoltageBands()
    return voltage is not None and voltage > bands.engine_running


class TrendAnalyzer:
    """
    Grades battery, catalyst and fuel-trim health from accumulated snapshots.

    Each metric yields at most one prediction. The first matching rule in the
    order critical, warning, info, good wins; thresholds come from
    :class:`~elmtrend.thresholds.Thresholds`.
    """

    def __init__(
        self,
        thresholds: Thresholds | None = None,
        min_snapshots: int = 5,
        storage: Optional[Storage] = None,
    ):
        self.thresholds = thresholds or Thresholds()
        self.min_snapshots = min_snapshots
        self.storage = storage
        self.predictions: List[Prediction] = []
        self.last_analysis: Optional[float] = None

    def analyze(self, history: SnapshotHistory) -> List[Prediction]:
        if len(history) < self.min_snapshots:
            logger.info(
                "Collecting data: %d/%d snapshots, analysis skipped", len(history), self.min_snapshots
            )
            return []
        logger.info("Analyzing %d data points...", len(history))
        predictions: List[Prediction] = []
        for result in (
            analyze_battery(history.series("battery_voltage"), self.thresholds.battery),
            analyze_catalyst(history.series("catalyst_ratio"), self.thresholds.catalyst),
            analyze_fuel_trim(history.series("fuel_trim"), self.thresholds.fuel_trim),
        ):
            if result is not None:
                predictions.append(result)
        predictions.sort(key=lambda p: p.severity.rank)
        self.predictions = predictions
        self.last_analysis = time.time()
        self.persist()
        logger.info("Analysis complete - %d predictions generated", len(predictions))
        return predictions

    def report(self, data_points: int, generated_at: Optional[datetime] = None) -> Dict[str, Any]:
        return build_report(self.predictions, data_points, generated_at)

    def persist(self) -> None:
        if self.storage is None:
            return
        self.storage.set(PREDICTIONS_KEY, json.dumps([p.as_dict() for p in self.predictions]))
        if self.last_analysis is not None:
            self.storage.set(LAST_ANALYSIS_KEY, str(int(self.last_analysis * 1000)))

    def load(self) -> None:
        if self.storage is None:
            return
        payload = self.storage.get(PREDICTIONS_KEY)
        if payload:
            self.predictions = [Prediction.from_mapping(item) for item in json.loads(payload)]
        stamp = self.storage.get(LAST_ANALYSIS_KEY)
        if stamp:
            self.last_analysis = int(stamp) / 1000.0

    def clear(self, history: Optional[SnapshotHistory] = None) -> None:
        self.predictions = []
        self.last_analysis = None
        if history is not None:
            history.clear()
        if self.storage is not None:
            for key in (SNAPSHOTS_KEY, PREDICTIONS_KEY, LAST_ANALYSIS_KEY):
                self.storage.delete(key)
        logger.info("All historical data cleared")


def analyze_battery(values: Sequence[float], cfg: BatteryThresholds) -> Optional[Prediction]:
    if len(values) < cfg.min_samples:
        return None
    fit = fit_trend(values)
    current = float(values[-1])
    if current < cfg.critical_low:
        pred = Prediction(
            "Battery", Severity.CRITICAL, "Battery voltage critically low",
            "Replace battery immediately", "Now", 95,
        )
    elif current < cfg.warning_low:
        pred = Prediction(
            "Battery", Severity.WARNING, "Battery voltage below normal",
            "Test battery and charging system", "1-2 weeks", 85,
        )
    elif fit.slope < cfg.decline_slope:
        samples_to_warning = abs((current - cfg.warning_low) / fit.slope)
        pred = Prediction(
            "Battery", Severity.INFO, "Battery voltage slowly declining",
            "Monitor charging system", "2-3 months" if samples_to_warning > 30 else "1 month", 70,
        )
    else:
        pred = Prediction(
            "Battery", Severity.GOOD, "Battery health excellent",
            "No action needed", "12+ months", 90,
        )
    pred.current_value = f"{current:.2f}V"
    if fit.slope > 0:
        pred.trend = "improving"
    elif fit.slope < -0.005:
        pred.trend = "declining"
    else:
        pred.trend = "stable"
    return pred


def analyze_catalyst(values: Sequence[float], cfg: CatalystThresholds) -> Optional[Prediction]:
    if len(values) < cfg.min_samples:
        return None
    fit = fit_trend(values)
    current = float(values[-1])
    if current >= cfg.critical_ratio:
        pred = Prediction(
            "Catalytic Converter", Severity.CRITICAL, "Catalyst very close to failure threshold",
            "Replace catalyst soon to avoid P0420 code", "1-2 months", 90,
        )
    elif current >= cfg.warning_ratio:
        pred = Prediction(
            "Catalytic Converter", Severity.WARNING, "Catalyst efficiency degrading",
            "Monitor closely - may fail emissions test", "3-6 months", 80,
        )
    elif fit.slope > cfg.degrade_slope:
        pred = Prediction(
            "Catalytic Converter", Severity.INFO, "Catalyst slowly degrading (normal aging)",
            "Continue monitoring", "12+ months", 65,
        )
    else:
        pred = Prediction(
            "Catalytic Converter", Severity.GOOD, "Catalyst operating efficiently",
            "No action needed", "24+ months", 85,
        )
    pred.current_value = f"{current:.3f} ratio"
    pred.trend = "degrading" if fit.slope > 0.005 else "stable"
    return pred


def analyze_fuel_trim(values: Sequence[float], cfg: FuelTrimThresholds) -> Optional[Prediction]:
    if len(values) < cfg.min_samples:
        return None
    magnitudes = np.abs(np.asarray(values, dtype=float))
    current = float(magnitudes[-1])
    average = float(magnitudes.mean())
    if current > cfg.critical_offset:
        pred = Prediction(
            "Fuel System", Severity.WARNING, "Excessive fuel trim correction",
            "Check for vacuum leaks or failing O2 sensors", "1-2 weeks", 75,
        )
    elif average > cfg.warning_offset:
        pred = Prediction(
            "Fuel System", Severity.INFO, "Fuel trim trending high",
            "Monitor O2 sensors and air filter", "1-2 months", 60,
        )
    else:
        pred = Prediction(
            "Fuel System", Severity.GOOD, "Fuel system operating normally",
            "No action needed", "12+ months", 85,
        )
    pred.current_value = f"{current:.1f}%"
    pred.trend = "compensating" if average > 8 else "stable"
    return pred


def build_report(
    predictions: Sequence[Prediction],
    data_points: int,
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    stamp = generated_at or datetime.now(timezone.utc)
    return {
        "generatedAt": stamp.isoformat(),
        "dataPoints": data_points,
        "predictions": [p.as_dict() for p in predictions],
    }
