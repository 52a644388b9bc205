"""Health thresholds shared by the live samplers and the trend analyzer."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BatteryThresholds:
    critical_low: float = 12.0
    warning_low: float = 12.4
    warning_high: float = 14.8
    critical_high: float = 15.0
    decline_slope: float = -0.01
    min_samples: int = 5


@dataclass
class CatalystThresholds:
    # Ratios relative to a 0.50 failure limit (80% / 90%)
    warning_ratio: float = 0.40
    critical_ratio: float = 0.45
    degrade_slope: float = 0.01
    min_samples: int = 3


@dataclass
class FuelTrimThresholds:
    warning_offset: float = 10.0
    critical_offset: float = 20.0
    min_samples: int = 5


@dataclass
class Thresholds:
    battery: BatteryThresholds = field(default_factory=BatteryThresholds)
    catalyst: CatalystThresholds = field(default_factory=CatalystThresholds)
    fuel_trim: FuelTrimThresholds = field(default_factory=FuelTrimThresholds)


@dataclass
class VoltageBands:
    """Bands for the live battery status summary."""

    critical_low: float = 11.8
    warning_low: float = 12.0
    normal_low: float = 12.4
    normal_high: float = 14.8
    warning_high: float = 15.0
    critical_high: float = 15.5
    engine_running: float = 13.2
