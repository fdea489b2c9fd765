"""
Seed demo incidents by registering policies and devices and replaying the dataset's
speeding samples through the /ingest API.

Run with the API already running (python run_api.py). Optionally set PIPELINE_API_URL in env.
Anomalous samples are dealt round-robin across the demo devices so the dashboard shows
incidents for several policy holders and companies.
Usage: python seed_demo_incidents.py
"""

import os
import time

import httpx

from core.config import DEFAULT_DATASET
from simulation import TelemetryDataset

PIPELINE_API_URL = (os.environ.get("PIPELINE_API_URL") or "http://localhost:8000").rstrip("/")

DEMO_POLICIES = [
    {"policy_ref": "pol-001", "policy_number": "UBI-2024-0001", "policy_holder": "Amina Okafor",
     "company_ref": "ins-kora", "company_name": "Kora Mutual"},
    {"policy_ref": "pol-002", "policy_number": "UBI-2024-0002", "policy_holder": "Tomas Lindqvist",
     "company_ref": "ins-kora", "company_name": "Kora Mutual"},
    {"policy_ref": "pol-003", "policy_number": "NR-77-310", "policy_holder": "Priya Raman",
     "company_ref": "ins-northroad", "company_name": "Northroad Insurance"},
]

# One device left unlinked to show incidents without policy context
DEMO_DEVICES = [
    {"device_id": "dev-alpha", "policy_ref": "pol-001"},
    {"device_id": "dev-bravo", "policy_ref": "pol-002"},
    {"device_id": "dev-charlie", "policy_ref": "pol-003"},
    {"device_id": "dev-delta", "policy_ref": None},
]


def main():
    print(f"Seeding demo incidents via {PIPELINE_API_URL}/ingest")
    client = httpx.Client(timeout=30.0)
    try:
        for policy in DEMO_POLICIES:
            r = client.post(f"{PIPELINE_API_URL}/policies", json=policy)
            r.raise_for_status()
        for device in DEMO_DEVICES:
            r = client.post(f"{PIPELINE_API_URL}/devices", json=device)
            r.raise_for_status()
        print(f"  registered {len(DEMO_POLICIES)} policies, {len(DEMO_DEVICES)} devices")

        anomalies = TelemetryDataset.from_csv(DEFAULT_DATASET).anomalies()
        for i, point in enumerate(anomalies):
            device_id = DEMO_DEVICES[i % len(DEMO_DEVICES)]["device_id"]
            r = client.post(
                f"{PIPELINE_API_URL}/ingest",
                json={
                    "device_id": device_id,
                    "timestamp": point.timestamp,
                    "latitude": point.latitude,
                    "longitude": point.longitude,
                    "speed_kmh": point.speed_kmh,
                },
            )
            if r.status_code == 200:
                incident = r.json().get("incident") or {}
                print(f"  [{i+1}/{len(anomalies)}] {device_id} -> {incident.get('incident_id')} ({incident.get('severity')})")
            else:
                print(f"  [{i+1}/{len(anomalies)}] FAILED {r.status_code} {r.text[:200]}")
            time.sleep(0.2)
        print("Done. Open GET /incidents to see ledger status move from pending to confirmed.")
    finally:
        client.close()


if __name__ == "__main__":
    main()
