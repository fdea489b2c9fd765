"""Core incident pipeline: models, threshold classifier, orchestration, and ledger reconciliation."""

from core.models import Incident, IncidentOutcome, LedgerStatus, Severity, TelemetrySample
from core.classifier import classify, SEVERITY_TIERS, SPEED_THRESHOLD_KMH
from core.engine import IncidentPipeline
from core.errors import DeviceNotFound, PipelineError

__all__ = [
    "Incident",
    "IncidentOutcome",
    "LedgerStatus",
    "Severity",
    "TelemetrySample",
    "classify",
    "SEVERITY_TIERS",
    "SPEED_THRESHOLD_KMH",
    "IncidentPipeline",
    "DeviceNotFound",
    "PipelineError",
]
