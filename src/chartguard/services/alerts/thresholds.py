from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from src.chartguard.domain.models.alert import AlertSeverity


@dataclass(frozen=True)
class Band:
    low: float
    high: float

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


@dataclass(frozen=True)
class Threshold:
    """Values outside ``critical`` are CRITICAL, outside ``high`` are HIGH."""

    label: str
    critical: Band
    high: Band


@dataclass(frozen=True)
class ThresholdBreach:
    metric: str
    value: float
    severity: AlertSeverity
    message: str


# Cardiology vital and lab thresholds (AHA/ACC based for HF/HTN/AFib).
DEFAULT_THRESHOLDS: Dict[str, Threshold] = {
    "BLOOD_PRESSURE_SYSTOLIC": Threshold("blood pressure systolic", Band(80, 180), Band(90, 160)),
    "BLOOD_PRESSURE_DIASTOLIC": Threshold("blood pressure diastolic", Band(50, 110), Band(60, 100)),
    "HEART_RATE": Threshold("heart rate", Band(40, 130), Band(45, 120)),
    "OXYGEN_SATURATION": Threshold("oxygen saturation", Band(88, 999), Band(92, 999)),
    "GLUCOSE": Threshold("glucose", Band(50, 400), Band(70, 300)),
    "POTASSIUM": Threshold("potassium", Band(2.5, 6.5), Band(3.3, 5.5)),
    "SODIUM": Threshold("sodium", Band(120, 160), Band(130, 150)),
    "INR": Threshold("INR", Band(0, 5.0), Band(0, 3.5)),
}

ALIASES: Dict[str, str] = {
    "systolic": "BLOOD_PRESSURE_SYSTOLIC",
    "sbp": "BLOOD_PRESSURE_SYSTOLIC",
    "systolic bp": "BLOOD_PRESSURE_SYSTOLIC",
    "blood pressure systolic": "BLOOD_PRESSURE_SYSTOLIC",
    "diastolic": "BLOOD_PRESSURE_DIASTOLIC",
    "dbp": "BLOOD_PRESSURE_DIASTOLIC",
    "diastolic bp": "BLOOD_PRESSURE_DIASTOLIC",
    "blood pressure diastolic": "BLOOD_PRESSURE_DIASTOLIC",
    "heart rate": "HEART_RATE",
    "hr": "HEART_RATE",
    "pulse": "HEART_RATE",
    "spo2": "OXYGEN_SATURATION",
    "sao2": "OXYGEN_SATURATION",
    "o2 sat": "OXYGEN_SATURATION",
    "o2 saturation": "OXYGEN_SATURATION",
    "oxygen saturation": "OXYGEN_SATURATION",
    "glucose": "GLUCOSE",
    "blood glucose": "GLUCOSE",
    "blood sugar": "GLUCOSE",
    "potassium": "POTASSIUM",
    "k": "POTASSIUM",
    "sodium": "SODIUM",
    "na": "SODIUM",
    "inr": "INR",
}

_BLOOD_PRESSURE_NAMES = {"bp", "blood pressure"}
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_PAIR = re.compile(r"(\d{2,3})\s*/\s*(\d{2,3})")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _key(name: str) -> str:
    return _NON_ALNUM.sub(" ", name.lower()).strip()


class ThresholdTable:
    def __init__(
        self,
        thresholds: Optional[Mapping[str, Threshold]] = None,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._thresholds = dict(thresholds or DEFAULT_THRESHOLDS)
        self._aliases = dict(ALIASES if aliases is None else aliases)

    def resolve_metric(self, name: str) -> Optional[str]:
        key = _key(name)
        metric = self._aliases.get(key) or key.upper().replace(" ", "_")
        return metric if metric in self._thresholds else None

    def check_threshold(self, metric: str, value: float) -> Optional[ThresholdBreach]:
        threshold = self._thresholds.get(metric)
        if threshold is None:
            return None
        if not threshold.critical.contains(value):
            band, severity, word = threshold.critical, AlertSeverity.CRITICAL, "CRITICAL"
        elif not threshold.high.contains(value):
            band, severity, word = threshold.high, AlertSeverity.HIGH, "Abnormal"
        else:
            return None
        message = f"{threshold.label}: {value:g} {word} value (thresholds: {band.low:g}-{band.high:g})"
        return ThresholdBreach(metric=metric, value=value, severity=severity, message=message)

    def check_finding(self, name: str, value: str) -> List[ThresholdBreach]:
        """Check a lab or vital reading given as text.

        Blood pressure readings like ``150/95`` are split into systolic and
        diastolic. Unknown names or non-numeric values yield no breaches.
        """

        if _key(name) in _BLOOD_PRESSURE_NAMES:
            pair = _PAIR.search(value)
            if pair is None:
                return []
            breaches = [
                self.check_threshold("BLOOD_PRESSURE_SYSTOLIC", float(pair.group(1))),
                self.check_threshold("BLOOD_PRESSURE_DIASTOLIC", float(pair.group(2))),
            ]
            return [b for b in breaches if b is not None]

        metric = self.resolve_metric(name)
        if metric is None:
            return []
        number = _NUMBER.search(value)
        if number is None:
            return []
        breach = self.check_threshold(metric, float(number.group(0)))
        return [breach] if breach is not None else []


default_threshold_table = ThresholdTable()


def check_threshold(name: str, value: float) -> Optional[AlertSeverity]:
    """Severity for one numeric reading, or None when within range or unknown."""

    metric = default_threshold_table.resolve_metric(name)
    if metric is None:
        return None
    breach = default_threshold_table.check_threshold(metric, value)
    return breach.severity if breach is not None else None
