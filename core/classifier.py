"""Threshold classifier: telemetry sample → speeding verdict (or None)."""

import math
from typing import Optional

from core.models import IncidentType, Severity, TelemetrySample, Verdict

SPEED_THRESHOLD_KMH = 180.0

# (min_speed_kmh, severity, incident_type), checked high-to-low. Speeds are km/h.
SEVERITY_TIERS = (
    (300.0, Severity.CRITICAL, IncidentType.EXTREME_SPEEDING),
    (250.0, Severity.HIGH, IncidentType.DANGEROUS_SPEEDING),
    (200.0, Severity.MEDIUM, IncidentType.EXCESSIVE_SPEEDING),
    (0.0, Severity.LOW, IncidentType.SPEEDING),
)


def _valid_speed(speed) -> Optional[float]:
    try:
        s = float(speed)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(s) or s < 0:
        return None
    return s


def severity_for_speed(speed_kmh: float) -> Severity:
    """Severity tier for a speed (km/h)."""
    for min_speed, severity, _ in SEVERITY_TIERS:
        if speed_kmh >= min_speed:
            return severity
    return Severity.LOW


def _incident_type(speed_kmh: float, latitude, longitude) -> IncidentType:
    for min_speed, severity, incident_type in SEVERITY_TIERS:
        if speed_kmh >= min_speed:
            if severity is Severity.LOW and latitude == 0 and longitude == 0:
                # lost GPS fix reports (0, 0)
                return IncidentType.GPS_ANOMALY
            return incident_type
    return IncidentType.SPEEDING


def classify(sample: TelemetrySample, threshold: float = SPEED_THRESHOLD_KMH) -> Optional[Verdict]:
    """
    Return a Verdict when speed exceeds the threshold, else None.
    Malformed speed (missing, NaN, infinite, negative) is treated as no anomaly.
    """
    speed = _valid_speed(getattr(sample, "speed_kmh", None))
    if speed is None or speed <= threshold:
        return None
    return Verdict(
        incident_type=_incident_type(speed, sample.latitude, sample.longitude),
        severity=severity_for_speed(speed),
        speed_kmh=speed,
        threshold=float(threshold),
    )
