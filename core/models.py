"""Incident pipeline models: telemetry samples, verdicts, incidents, devices, alert events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from core.errors import LedgerTransitionError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentType(str, Enum):
    SPEEDING = "speeding"
    EXCESSIVE_SPEEDING = "excessive_speeding"
    DANGEROUS_SPEEDING = "dangerous_speeding"
    EXTREME_SPEEDING = "extreme_speeding"
    GPS_ANOMALY = "gps_anomaly"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# Dashboard ordering, most severe first
SEVERITY_ORDER = (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)


@dataclass(frozen=True)
class TelemetrySample:
    device_id: str
    timestamp: float  # unix seconds
    latitude: float
    longitude: float
    speed_kmh: float

    def to_dict(self):
        return {
            "device_id": self.device_id,
            "timestamp": self.timestamp,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "speed_kmh": self.speed_kmh,
        }


@dataclass(frozen=True)
class Verdict:
    incident_type: IncidentType
    severity: Severity
    speed_kmh: float
    threshold: float

    @property
    def excess(self) -> float:
        return self.speed_kmh - self.threshold


@dataclass
class Location:
    latitude: float
    longitude: float

    def to_dict(self):
        return {"latitude": round(self.latitude, 6), "longitude": round(self.longitude, 6)}


@dataclass
class SensorSnapshot:
    speed_kmh: float
    threshold: float
    excess_speed: float

    def to_dict(self):
        return {
            "speed_kmh": round(self.speed_kmh, 2),
            "threshold": round(self.threshold, 2),
            "excess_speed": round(self.excess_speed, 2),
        }


@dataclass
class Policy:
    policy_ref: str
    policy_number: Optional[str] = None
    policy_holder: Optional[str] = None
    company_ref: Optional[str] = None
    company_name: Optional[str] = None

    def to_dict(self):
        return {
            "policy_ref": self.policy_ref,
            "policy_number": self.policy_number,
            "policy_holder": self.policy_holder,
            "company_ref": self.company_ref,
            "company_name": self.company_name,
        }


@dataclass
class Device:
    device_id: str
    policy_ref: Optional[str] = None
    last_seen_timestamp: Optional[float] = None
    registered_at: Optional[str] = None

    def to_dict(self):
        return {
            "device_id": self.device_id,
            "policy_ref": self.policy_ref,
            "last_seen_timestamp": self.last_seen_timestamp,
            "registered_at": self.registered_at,
        }


@dataclass(frozen=True)
class DeviceContext:
    """Device with its resolved policy and company (all nullable when the device is unlinked)."""
    device_id: str
    policy_ref: Optional[str] = None
    policy_number: Optional[str] = None
    policy_holder: Optional[str] = None
    company_ref: Optional[str] = None
    company_name: Optional[str] = None


@dataclass
class Incident:
    incident_id: str
    device_id: str
    incident_type: IncidentType
    severity: Severity
    timestamp: float
    location: Location
    sensor_snapshot: SensorSnapshot
    policy_ref: Optional[str] = None
    company_ref: Optional[str] = None
    ledger_status: LedgerStatus = LedgerStatus.PENDING
    ledger_reference: Optional[str] = None
    ledger_error: Optional[str] = None
    ledger_recorded_at: Optional[str] = None
    kora_notified: bool = True
    insurance_notified: bool = True
    created_at: Optional[str] = None

    def __post_init__(self):
        self.incident_type = IncidentType(self.incident_type)
        self.severity = Severity(self.severity)
        self.ledger_status = LedgerStatus(self.ledger_status)
        if self.ledger_status is LedgerStatus.CONFIRMED and not self.ledger_reference:
            raise LedgerTransitionError(f"{self.incident_id}: confirmed incident requires a ledger reference")
        if self.ledger_status is LedgerStatus.PENDING and self.ledger_reference is not None:
            raise LedgerTransitionError(f"{self.incident_id}: pending incident cannot carry a ledger reference")

    def _require_pending(self, target: LedgerStatus) -> None:
        if self.ledger_status is not LedgerStatus.PENDING:
            raise LedgerTransitionError(
                f"{self.incident_id}: cannot move ledger status {self.ledger_status.value} -> {target.value}"
            )

    def confirm(self, reference: str, at: Optional[str] = None) -> None:
        self._require_pending(LedgerStatus.CONFIRMED)
        if not reference:
            raise LedgerTransitionError(f"{self.incident_id}: confirmation requires a ledger reference")
        self.ledger_status = LedgerStatus.CONFIRMED
        self.ledger_reference = reference
        self.ledger_recorded_at = at or utc_now_iso()

    def fail(self, error: str, at: Optional[str] = None) -> None:
        self._require_pending(LedgerStatus.FAILED)
        self.ledger_status = LedgerStatus.FAILED
        self.ledger_error = error or "unknown ledger error"
        self.ledger_recorded_at = at or utc_now_iso()

    def to_dict(self):
        return {
            "incident_id": self.incident_id,
            "device_id": self.device_id,
            "policy_ref": self.policy_ref,
            "company_ref": self.company_ref,
            "incident_type": self.incident_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "location": self.location.to_dict(),
            "sensor_snapshot": self.sensor_snapshot.to_dict(),
            "ledger_status": self.ledger_status.value,
            "ledger_reference": self.ledger_reference,
            "ledger_error": self.ledger_error,
            "ledger_recorded_at": self.ledger_recorded_at,
            "kora_notified": self.kora_notified,
            "insurance_notified": self.insurance_notified,
            "created_at": self.created_at,
        }


def empty_ledger_counts() -> dict[str, int]:
    return {s.value: 0 for s in LedgerStatus}


@dataclass
class CompanySummary:
    """Per-company transparency row for the KORA dashboard."""
    company_ref: str
    company_name: Optional[str] = None
    total_policies: int = 0
    total_devices: int = 0
    total_incidents: int = 0
    last_incident: Optional[float] = None
    ledger_status: dict = field(default_factory=empty_ledger_counts)

    @property
    def ledger_coverage(self) -> float:
        """Percent of this company's incidents with a confirmed ledger proof."""
        if not self.total_incidents:
            return 0.0
        return round(self.ledger_status.get(LedgerStatus.CONFIRMED.value, 0) / self.total_incidents * 100, 2)

    def add_incident(self, ledger_status: str, timestamp: Optional[float], count: int = 1) -> None:
        self.total_incidents += count
        self.ledger_status[ledger_status] = self.ledger_status.get(ledger_status, 0) + count
        if timestamp is not None and (self.last_incident is None or timestamp > self.last_incident):
            self.last_incident = timestamp

    def to_dict(self):
        return {
            "company_ref": self.company_ref,
            "company_name": self.company_name,
            "transparency_metrics": {
                "total_policies": self.total_policies,
                "total_devices_monitored": self.total_devices,
                "total_incidents_detected": self.total_incidents,
                "last_incident": self.last_incident,
                "ledger_status": dict(self.ledger_status),
            },
            "ledger_coverage": self.ledger_coverage,
        }


@dataclass
class IncidentOutcome:
    """Result of an ingest that produced an incident. ledger_task resolves when reconciliation finishes."""
    incident: Incident
    context: DeviceContext
    ledger_task: Optional[object] = None  # concurrent.futures.Future
    alerted: bool = False

    def to_dict(self):
        return {
            "incident": self.incident.to_dict(),
            "alerted": self.alerted,
            "policy_holder": self.context.policy_holder,
            "company_name": self.context.company_name,
        }


ALERT_INCIDENT_CREATED = "incident_created"
ALERT_LEDGER_CONFIRMED = "ledger_confirmed"


@dataclass
class AlertEvent:
    kind: str
    incident_id: str
    device_id: str
    severity: str
    speed_kmh: float
    ledger_status: str
    incident_type: Optional[str] = None
    timestamp: Optional[float] = None
    location: dict = field(default_factory=dict)
    policy_ref: Optional[str] = None
    policy_number: Optional[str] = None
    policy_holder: Optional[str] = None
    company_ref: Optional[str] = None
    company_name: Optional[str] = None
    ledger_reference: Optional[str] = None
    emitted_at: Optional[str] = None

    @classmethod
    def for_incident(cls, kind: str, incident: Incident, context: DeviceContext) -> "AlertEvent":
        return cls(
            kind=kind,
            incident_id=incident.incident_id,
            device_id=incident.device_id,
            severity=incident.severity.value,
            speed_kmh=incident.sensor_snapshot.speed_kmh,
            ledger_status=incident.ledger_status.value,
            incident_type=incident.incident_type.value,
            timestamp=incident.timestamp,
            location=incident.location.to_dict(),
            policy_ref=context.policy_ref,
            policy_number=context.policy_number,
            policy_holder=context.policy_holder,
            company_ref=context.company_ref,
            company_name=context.company_name,
            ledger_reference=incident.ledger_reference,
            emitted_at=utc_now_iso(),
        )

    @property
    def message(self) -> str:
        if self.kind == ALERT_LEDGER_CONFIRMED:
            return f"Incident {self.incident_id} recorded on ledger ({self.ledger_reference})"
        return f"Speeding detected: {self.speed_kmh:g} km/h ({self.severity})"

    def to_dict(self):
        return {
            "type": self.kind,
            "message": self.message,
            "incident_id": self.incident_id,
            "device_id": self.device_id,
            "incident_type": self.incident_type,
            "severity": self.severity,
            "speed_kmh": self.speed_kmh,
            "timestamp": self.timestamp,
            "location": self.location,
            "policy_ref": self.policy_ref,
            "policy_number": self.policy_number,
            "policy_holder": self.policy_holder,
            "company_ref": self.company_ref,
            "company_name": self.company_name,
            "ledger_status": self.ledger_status,
            "ledger_reference": self.ledger_reference,
            "emitted_at": self.emitted_at,
        }
