"""Incident store contract shared by the in-memory and SQL backends."""

from typing import Optional

from core.errors import LedgerTransitionError
from core.models import CompanySummary, Device, DeviceContext, Incident, LedgerStatus, Policy


class IncidentStore:
    """
    Durable incidents plus the device/policy tables the pipeline reads.
    Every mutation is a single-row update keyed by incident id or device id.
    """

    backend = "abstract"

    # --- collaborator writes (device registry, policy linking) ---------------
    def register_policy(self, policy: Policy) -> Policy:
        raise NotImplementedError

    def register_device(self, device_id: str, policy_ref: Optional[str] = None) -> Device:
        raise NotImplementedError

    def link_device(self, device_id: str, policy_ref: Optional[str]) -> Device:
        raise NotImplementedError

    # --- pipeline write path -------------------------------------------------
    def touch_device_liveness(self, device_id: str, timestamp: float) -> bool:
        """Set last_seen_timestamp. Returns False when the device is unknown."""
        raise NotImplementedError

    def get_device_context(self, device_id: str) -> DeviceContext:
        """Raises DeviceNotFound."""
        raise NotImplementedError

    def create_incident(self, incident: Incident) -> Incident:
        """Raises DuplicateIncident. The incident must be pending."""
        raise NotImplementedError

    def update_ledger_status(
        self,
        incident_id: str,
        status: LedgerStatus,
        reference: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Incident:
        """pending → confirmed (with reference) or pending → failed (with error). Raises LedgerTransitionError."""
        raise NotImplementedError

    # --- read projections ----------------------------------------------------
    def get_device(self, device_id: str) -> Optional[Device]:
        raise NotImplementedError

    def list_devices(self) -> list[Device]:
        raise NotImplementedError

    def get_policy(self, policy_ref: str) -> Optional[Policy]:
        raise NotImplementedError

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        raise NotImplementedError

    def list_incidents(
        self,
        severity: Optional[str] = None,
        company_ref: Optional[str] = None,
        device_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Incident]:
        """Newest first."""
        raise NotImplementedError

    def severity_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        raise NotImplementedError

    def incident_counts_by_device(self) -> dict[str, tuple[int, Optional[float]]]:
        """device_id -> (incident count, latest incident timestamp)."""
        raise NotImplementedError

    def ledger_status_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        """Incident counts per ledger status (pending / confirmed / failed), zeros included."""
        raise NotImplementedError

    def company_transparency(self) -> list[CompanySummary]:
        """One summary per company with policies, ordered by company_ref."""
        raise NotImplementedError

    def close(self) -> None:
        pass


def check_transition(incident_id: str, status: LedgerStatus, reference: Optional[str]) -> LedgerStatus:
    """Validate the requested target state before touching storage."""
    status = LedgerStatus(status)
    if status is LedgerStatus.PENDING:
        raise LedgerTransitionError(f"{incident_id}: pending is only legal as the initial state")
    if status is LedgerStatus.CONFIRMED and not reference:
        raise LedgerTransitionError(f"{incident_id}: confirmation requires a ledger reference")
    return status
