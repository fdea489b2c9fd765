"""In-memory incident store (process lifetime only). Safe for concurrent writers."""

import copy
import logging
import threading
from typing import Optional

from core.errors import DeviceNotFound, DuplicateIncident, IncidentNotFound, LedgerTransitionError, PolicyNotFound
from core.models import (
    SEVERITY_ORDER,
    CompanySummary,
    Device,
    DeviceContext,
    Incident,
    LedgerStatus,
    Policy,
    empty_ledger_counts,
    utc_now_iso,
)
from storage.base import IncidentStore, check_transition

logger = logging.getLogger("incident_pipeline.storage.memory")


class MemoryIncidentStore(IncidentStore):
    backend = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._policies: dict[str, Policy] = {}
        self._devices: dict[str, Device] = {}
        self._incidents: dict[str, Incident] = {}  # insertion order = creation order

    def register_policy(self, policy: Policy) -> Policy:
        with self._lock:
            self._policies[policy.policy_ref] = copy.copy(policy)
        return policy

    def register_device(self, device_id: str, policy_ref: Optional[str] = None) -> Device:
        with self._lock:
            if policy_ref is not None and policy_ref not in self._policies:
                raise PolicyNotFound(policy_ref)
            device = self._devices.get(device_id)
            if device is None:
                device = Device(device_id=device_id, policy_ref=policy_ref, registered_at=utc_now_iso())
                self._devices[device_id] = device
            else:
                device.policy_ref = policy_ref
            return copy.copy(device)

    def link_device(self, device_id: str, policy_ref: Optional[str]) -> Device:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise DeviceNotFound(device_id)
            if policy_ref is not None and policy_ref not in self._policies:
                raise PolicyNotFound(policy_ref)
            device.policy_ref = policy_ref
            return copy.copy(device)

    def touch_device_liveness(self, device_id: str, timestamp: float) -> bool:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return False
            device.last_seen_timestamp = timestamp
            return True

    def get_device_context(self, device_id: str) -> DeviceContext:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise DeviceNotFound(device_id)
            policy = self._policies.get(device.policy_ref) if device.policy_ref else None
        if policy is None:
            return DeviceContext(device_id=device_id, policy_ref=device.policy_ref)
        return DeviceContext(
            device_id=device_id,
            policy_ref=policy.policy_ref,
            policy_number=policy.policy_number,
            policy_holder=policy.policy_holder,
            company_ref=policy.company_ref,
            company_name=policy.company_name,
        )

    def create_incident(self, incident: Incident) -> Incident:
        if incident.ledger_status is not LedgerStatus.PENDING:
            raise LedgerTransitionError(f"{incident.incident_id}: incidents must be created pending")
        with self._lock:
            if incident.incident_id in self._incidents:
                raise DuplicateIncident(incident.incident_id)
            stored = copy.deepcopy(incident)
            if stored.created_at is None:
                stored.created_at = utc_now_iso()
            self._incidents[stored.incident_id] = stored
            return copy.deepcopy(stored)

    def update_ledger_status(
        self,
        incident_id: str,
        status: LedgerStatus,
        reference: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Incident:
        status = check_transition(incident_id, status, reference)
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                raise IncidentNotFound(incident_id)
            if status is LedgerStatus.CONFIRMED:
                incident.confirm(reference)
            else:
                incident.fail(error)
            return copy.deepcopy(incident)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(device_id)
            return copy.copy(device) if device else None

    def list_devices(self) -> list[Device]:
        with self._lock:
            return [copy.copy(d) for d in self._devices.values()]

    def get_policy(self, policy_ref: str) -> Optional[Policy]:
        with self._lock:
            policy = self._policies.get(policy_ref)
            return copy.copy(policy) if policy else None

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            incident = self._incidents.get(incident_id)
            return copy.deepcopy(incident) if incident else None

    def list_incidents(
        self,
        severity: Optional[str] = None,
        company_ref: Optional[str] = None,
        device_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Incident]:
        with self._lock:
            items = list(self._incidents.values())
        items.reverse()
        if severity:
            items = [i for i in items if i.severity.value == severity]
        if company_ref:
            items = [i for i in items if i.company_ref == company_ref]
        if device_id:
            items = [i for i in items if i.device_id == device_id]
        if limit and limit > 0:
            items = items[:limit]
        return [copy.deepcopy(i) for i in items]

    def severity_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        counts = {s.value: 0 for s in SEVERITY_ORDER}
        with self._lock:
            for incident in self._incidents.values():
                if company_ref and incident.company_ref != company_ref:
                    continue
                counts[incident.severity.value] += 1
        return counts

    def incident_counts_by_device(self) -> dict[str, tuple[int, Optional[float]]]:
        out: dict[str, tuple[int, Optional[float]]] = {}
        with self._lock:
            for incident in self._incidents.values():
                count, latest = out.get(incident.device_id, (0, None))
                ts = incident.timestamp if latest is None else max(latest, incident.timestamp)
                out[incident.device_id] = (count + 1, ts)
        return out

    def ledger_status_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        counts = empty_ledger_counts()
        with self._lock:
            for incident in self._incidents.values():
                if company_ref and incident.company_ref != company_ref:
                    continue
                counts[incident.ledger_status.value] += 1
        return counts

    def company_transparency(self) -> list[CompanySummary]:
        with self._lock:
            policies = list(self._policies.values())
            devices = list(self._devices.values())
            incidents = [(i.company_ref, i.ledger_status.value, i.timestamp) for i in self._incidents.values()]
        companies: dict[str, CompanySummary] = {}
        policy_company = {}
        for policy in policies:
            if not policy.company_ref:
                continue
            summary = companies.setdefault(policy.company_ref, CompanySummary(company_ref=policy.company_ref))
            summary.company_name = summary.company_name or policy.company_name
            summary.total_policies += 1
            policy_company[policy.policy_ref] = policy.company_ref
        for device in devices:
            company_ref = policy_company.get(device.policy_ref)
            if company_ref is not None:
                companies[company_ref].total_devices += 1
        for company_ref, status, ts in incidents:
            if company_ref in companies:
                companies[company_ref].add_incident(status, ts)
        return [companies[ref] for ref in sorted(companies)]
