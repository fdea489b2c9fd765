"""
Ledger reconciliation: notarize one incident's content hash and write the terminal
ledger status back to the store. Runs in the background, once per incident.
"""

import hashlib
import json
import logging

from core.errors import LedgerTransitionError, NotaryError
from core.models import ALERT_LEDGER_CONFIRMED, AlertEvent, DeviceContext, Incident, LedgerStatus

logger = logging.getLogger("incident_pipeline.ledger")


def content_hash(incident: Incident) -> str:
    """
    SHA-256 over the incident's immutable fields as canonical JSON, 0x-prefixed.
    Policy holder and company never enter the hash; only this digest leaves the system.
    """
    payload = {
        "device_id": incident.device_id,
        "incident_type": incident.incident_type.value,
        "timestamp": incident.timestamp,
        "speed_kmh": incident.sensor_snapshot.speed_kmh,
        "location": {
            "latitude": incident.location.latitude,
            "longitude": incident.location.longitude,
        },
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _record_failure(store, incident: Incident, error: str) -> Incident:
    logger.warning("ledger failed incident_id=%s: %s", incident.incident_id, error)
    return store.update_ledger_status(incident.incident_id, LedgerStatus.FAILED, error=error)


def notarize(incident: Incident, context: DeviceContext, store, notary, alerts=None) -> Incident:
    """
    Submit the content hash and reconcile: pending → confirmed (+ second alert) or
    pending → failed (error text kept on the incident). Failures are not retried.
    A receipt without a tx reference counts as a notary failure, and a confirmation
    write that fails is followed by one attempt to record the incident as failed.
    """
    digest = content_hash(incident)
    logger.info("ledger submit incident_id=%s hash=%s", incident.incident_id, digest)
    try:
        receipt = notary.submit(digest)
        if not getattr(receipt, "tx_reference", None):
            raise NotaryError("notary receipt missing tx reference")
    except Exception as e:
        return _record_failure(store, incident, str(e) or type(e).__name__)

    try:
        confirmed = store.update_ledger_status(
            incident.incident_id, LedgerStatus.CONFIRMED, reference=receipt.tx_reference
        )
    except LedgerTransitionError:
        # already terminal; the first reconciliation wins
        raise
    except Exception as e:
        logger.warning("ledger confirm write failed incident_id=%s: %s", incident.incident_id, e, exc_info=True)
        return _record_failure(
            store, incident, f"anchored as {receipt.tx_reference} but confirmation write failed: {str(e) or type(e).__name__}"
        )
    logger.info("ledger confirmed incident_id=%s tx=%s", incident.incident_id, receipt.tx_reference)
    if alerts is not None:
        alerts.notify(AlertEvent.for_incident(ALERT_LEDGER_CONFIRMED, confirmed, context))
    return confirmed
