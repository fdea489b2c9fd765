"""Pytest fixtures for incident pipeline tests."""

import threading
import time

import pytest

from alerts import AlertFanout
from core.engine import IncidentPipeline
from core.errors import NotaryError
from core.models import Policy, TelemetrySample
from notary.base import NotaryReceipt
from simulation import DataPoint, TelemetryDataset, TelemetrySource
from storage import MemoryIncidentStore


class RecordingSink:
    """Alert sink that keeps every event it receives."""

    name = "recording"

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def push(self, event):
        with self._lock:
            self.events.append(event)

    def kinds(self):
        with self._lock:
            return [e.kind for e in self.events]


class FailingSink:
    name = "failing"

    def push(self, event):
        raise RuntimeError("dashboard offline")


class StubNotary:
    """
    Notary double. Returns tx references "0xtx-<n>", raises `error` when set, and
    blocks on `gate` (a threading.Event) when given.
    """

    name = "stub"

    def __init__(self, error=None, gate=None, reference=None):
        self.error = error
        self.gate = gate
        self.reference = reference
        self.submitted = []
        self._lock = threading.Lock()

    def submit(self, content_hash):
        with self._lock:
            self.submitted.append(content_hash)
            n = len(self.submitted)
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.error is not None:
            raise self.error
        return NotaryReceipt(tx_reference=self.reference or f"0xtx-{n}", content_hash=content_hash)


def make_sample(speed=190.0, device_id="D1", ts=1700000000, lat=51.5, lon=-0.12):
    return TelemetrySample(device_id=device_id, timestamp=ts, latitude=lat, longitude=lon, speed_kmh=speed)


@pytest.fixture
def store():
    """Memory store with policy P1 (company C1), device D1 linked to it, device D2 unlinked."""
    s = MemoryIncidentStore()
    s.register_policy(Policy(
        policy_ref="P1",
        policy_number="UBI-0001",
        policy_holder="Jane Driver",
        company_ref="C1",
        company_name="Acme Insurance",
    ))
    s.register_device("D1", "P1")
    s.register_device("D2")
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notary():
    return StubNotary()


@pytest.fixture
def small_dataset():
    return TelemetryDataset([
        DataPoint(timestamp=1700000000, latitude=51.5, longitude=-0.12, speed_kmh=120.0),
        DataPoint(timestamp=1700000005, latitude=51.5, longitude=-0.12, speed_kmh=210.0),
        DataPoint(timestamp=1700000010, latitude=51.5, longitude=-0.12, speed_kmh=95.0),
    ])


@pytest.fixture
def pipeline(store, notary, sink, small_dataset):
    p = IncidentPipeline(
        store=store,
        notary=notary,
        alerts=AlertFanout([sink]),
        source=TelemetrySource(small_dataset),
        threshold=180.0,
        ledger_workers=2,
        default_interval_ms=20,
    )
    yield p
    p.shutdown(join_timeout=1.0)


@pytest.fixture
def app_client(pipeline, monkeypatch):
    """FastAPI TestClient bound to the test pipeline and a fresh WebSocket hub."""
    from fastapi.testclient import TestClient

    import api.main as main_module
    from alerts import WebSocketHub

    hub = WebSocketHub()
    pipeline.alerts.add_sink(hub)
    monkeypatch.setattr(main_module, "pipeline", pipeline)
    monkeypatch.setattr(main_module, "hub", hub)
    return TestClient(main_module.app)


@pytest.fixture
def notary_error():
    return NotaryError("transaction reverted")


@pytest.fixture
def sample_factory():
    """make_sample(speed=190.0, device_id="D1", ts=1700000000, lat=51.5, lon=-0.12)."""
    return make_sample


@pytest.fixture
def pipeline_factory(store, sink):
    """Build extra pipelines over the shared store/sink; all are shut down after the test."""
    created = []

    def build(notary, alerts=None, **kwargs):
        kwargs.setdefault("threshold", 180.0)
        kwargs.setdefault("ledger_workers", 2)
        p = IncidentPipeline(
            store=kwargs.pop("store", store),
            notary=notary,
            alerts=alerts if alerts is not None else AlertFanout([sink]),
            **kwargs,
        )
        created.append(p)
        return p

    yield build
    for p in created:
        p.shutdown(join_timeout=1.0)


def eventually(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy; False on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
