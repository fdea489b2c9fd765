"""Tests for the incident pipeline: ingest steps, background notarization, simulation control."""

import random
import threading
import time

import pytest

from alerts import AlertFanout
from core.engine import IncidentPipeline
from core.errors import DeviceNotFound, PipelineError
from core.models import ALERT_INCIDENT_CREATED, ALERT_LEDGER_CONFIRMED, LedgerStatus, Severity
from storage import MemoryIncidentStore

from conftest import FailingSink, StubNotary, eventually


class TestIngest:
    def test_below_threshold_creates_nothing_but_updates_liveness(self, pipeline, store, sink, sample_factory):
        assert pipeline.ingest(sample_factory(speed=150.0, ts=1234)) is None
        assert store.list_incidents() == []
        assert sink.events == []
        assert store.get_device("D1").last_seen_timestamp == 1234

    def test_anomaly_creates_pending_incident_and_alerts(self, store, sink, sample_factory, pipeline_factory):
        gate = threading.Event()
        p = pipeline_factory(StubNotary(gate=gate))
        outcome = p.ingest(sample_factory(speed=220.0, ts=1000, lat=0.0, lon=0.0))
        try:
            incident = outcome.incident
            assert incident.severity is Severity.MEDIUM
            assert incident.ledger_status is LedgerStatus.PENDING
            assert incident.ledger_reference is None
            assert incident.kora_notified and incident.insurance_notified
            assert incident.policy_ref == "P1"
            assert incident.company_ref == "C1"
            assert outcome.alerted
            assert sink.kinds() == [ALERT_INCIDENT_CREATED]
            assert sink.events[0].ledger_status == "pending"
            assert sink.events[0].policy_holder == "Jane Driver"
            stored = store.list_incidents()
            assert len(stored) == 1
            assert stored[0].ledger_status is LedgerStatus.PENDING
        finally:
            gate.set()

    def test_unknown_device_raises_and_records_nothing(self, pipeline, store, sink, notary, sample_factory):
        with pytest.raises(DeviceNotFound):
            pipeline.ingest(sample_factory(speed=300.0, device_id="UNKNOWN"))
        assert store.list_incidents() == []
        assert sink.events == []
        assert notary.submitted == []

    def test_unknown_device_below_threshold_is_ignored(self, pipeline, sample_factory):
        assert pipeline.ingest(sample_factory(speed=90.0, device_id="UNKNOWN")) is None

    def test_unlinked_device_gets_incident_without_policy(self, pipeline, sink, sample_factory):
        outcome = pipeline.ingest(sample_factory(speed=260.0, device_id="D2"))
        assert outcome.incident.policy_ref is None
        assert outcome.incident.company_ref is None
        assert sink.events[0].policy_holder is None

    def test_incident_ids_are_unique(self, store, sample_factory, pipeline_factory):
        p = pipeline_factory(StubNotary(), clock=lambda: 1000.0)
        ids = {p.ingest(sample_factory(speed=190.0 + i, ts=1000 + i)).incident.incident_id for i in range(20)}
        assert len(ids) == 20
        assert all(i.startswith("INC-") and i.endswith("-D1") for i in ids)

    def test_liveness_follows_sample_order(self, pipeline, store, sample_factory):
        for ts, speed in [(10, 100.0), (20, 190.0), (30, 120.0), (40, 260.0)]:
            pipeline.ingest(sample_factory(speed=speed, ts=ts))
            assert store.get_device("D1").last_seen_timestamp == ts

    def test_persistence_failure_propagates_without_alert(self, sink, sample_factory, pipeline_factory):
        class BrokenStore(MemoryIncidentStore):
            def create_incident(self, incident):
                raise RuntimeError("database unavailable")

        broken = BrokenStore()
        broken.register_device("D1")
        notary = StubNotary()
        p = pipeline_factory(notary, store=broken)
        with pytest.raises(RuntimeError, match="database unavailable"):
            p.ingest(sample_factory(speed=250.0))
        assert sink.events == []
        assert notary.submitted == []

    def test_liveness_failure_does_not_abort(self, sink, sample_factory, pipeline_factory):
        class FlakyLivenessStore(MemoryIncidentStore):
            def touch_device_liveness(self, device_id, timestamp):
                raise RuntimeError("device table locked")

        flaky = FlakyLivenessStore()
        flaky.register_device("D1")
        p = pipeline_factory(StubNotary(), store=flaky)
        outcome = p.ingest(sample_factory(speed=205.0))
        assert outcome is not None
        assert flaky.get_incident(outcome.incident.incident_id) is not None
        assert sink.kinds()[0] == ALERT_INCIDENT_CREATED

    def test_sink_failure_is_swallowed(self, sink, sample_factory, pipeline_factory):
        p = pipeline_factory(StubNotary(), alerts=AlertFanout([FailingSink(), sink]))
        outcome = p.ingest(sample_factory(speed=230.0))
        assert outcome is not None
        assert sink.kinds()[0] == ALERT_INCIDENT_CREATED

    def test_without_alert_fanout(self, store, sample_factory):
        p = IncidentPipeline(store=store, notary=StubNotary())
        try:
            outcome = p.ingest(sample_factory(speed=230.0))
            assert outcome.alerted is False
            assert p.wait_for_ledger(outcome.incident.incident_id, timeout=5.0).ledger_status is LedgerStatus.CONFIRMED
        finally:
            p.shutdown()

    def test_ingest_after_shutdown_raises(self, store, sample_factory):
        p = IncidentPipeline(store=store, notary=StubNotary())
        p.shutdown()
        with pytest.raises(PipelineError):
            p.ingest(sample_factory(speed=230.0))


class TestLedgerReconciliation:
    def test_confirmation_sets_reference_and_sends_second_alert(self, store, sink, sample_factory, pipeline_factory):
        p = pipeline_factory(StubNotary(reference="0xabc"))
        outcome = p.ingest(sample_factory(speed=220.0, ts=1000, lat=0.0, lon=0.0))
        confirmed = outcome.ledger_task.result(timeout=5.0)
        assert confirmed.ledger_status is LedgerStatus.CONFIRMED
        assert confirmed.ledger_reference == "0xabc"
        stored = store.get_incident(outcome.incident.incident_id)
        assert stored.ledger_status is LedgerStatus.CONFIRMED
        assert stored.ledger_reference == "0xabc"
        assert sink.kinds() == [ALERT_INCIDENT_CREATED, ALERT_LEDGER_CONFIRMED]
        assert {e.incident_id for e in sink.events} == {outcome.incident.incident_id}
        assert sink.events[1].ledger_reference == "0xabc"

    def test_notary_failure_marks_failed_without_retry(self, store, sink, notary_error, sample_factory, pipeline_factory):
        notary = StubNotary(error=notary_error)
        p = pipeline_factory(notary)
        outcome = p.ingest(sample_factory(speed=220.0))
        failed = outcome.ledger_task.result(timeout=5.0)
        assert failed.ledger_status is LedgerStatus.FAILED
        assert failed.ledger_reference is None
        assert failed.ledger_error == "transaction reverted"
        assert p.drain(timeout=5.0)
        assert len(notary.submitted) == 1
        assert sink.kinds() == [ALERT_INCIDENT_CREATED]
        assert store.get_incident(outcome.incident.incident_id).ledger_status is LedgerStatus.FAILED

    def test_ingest_does_not_wait_for_notary(self, sample_factory, pipeline_factory):
        gate = threading.Event()
        p = pipeline_factory(StubNotary(gate=gate))
        try:
            started = time.monotonic()
            outcomes = [p.ingest(sample_factory(speed=200.0 + i, ts=i)) for i in range(5)]
            elapsed = time.monotonic() - started
            assert elapsed < 2.0
            assert all(not o.ledger_task.done() for o in outcomes[:2])
            assert p.pending_ledger_tasks() >= 1
        finally:
            gate.set()
        assert p.drain(timeout=5.0)
        assert eventually(lambda: p.pending_ledger_tasks() == 0)

    def test_wait_for_ledger_returns_terminal_incident(self, pipeline, sample_factory):
        outcome = pipeline.ingest(sample_factory(speed=270.0))
        incident = pipeline.wait_for_ledger(outcome.incident.incident_id, timeout=5.0)
        assert incident.ledger_status is LedgerStatus.CONFIRMED
        assert incident.ledger_reference.startswith("0xtx-")

    def test_each_incident_notarized_once(self, pipeline, notary, store, sample_factory):
        for i in range(6):
            pipeline.ingest(sample_factory(speed=185.0 + i * 10, ts=i))
        assert pipeline.drain(timeout=5.0)
        assert len(notary.submitted) == 6
        assert all(i.ledger_status is LedgerStatus.CONFIRMED for i in store.list_incidents())


class TestSimulation:
    def test_start_stream_produces_incidents_then_stop(self, pipeline, store):
        handle = pipeline.start_simulation("D1", interval_ms=20)
        assert handle.device_id == "D1"
        assert [h.device_id for h in pipeline.active_simulations()] == ["D1"]
        assert eventually(lambda: len(store.list_incidents(device_id="D1")) >= 1)
        assert pipeline.stop_simulation(handle, join_timeout=1.0)
        assert pipeline.active_simulations() == []
        assert not handle.active

    def test_stop_by_device_id(self, pipeline):
        pipeline.start_simulation("D1", interval_ms=50)
        assert pipeline.stop_simulation("D1", join_timeout=1.0)
        assert not pipeline.stop_simulation("D1")

    def test_restart_replaces_existing_stream(self, pipeline):
        first = pipeline.start_simulation("D1", interval_ms=50)
        second = pipeline.start_simulation("D1", interval_ms=60)
        assert first is not second
        assert eventually(lambda: not first.active)
        assert pipeline.active_simulations() == [second]

    def test_start_unknown_device(self, pipeline):
        with pytest.raises(DeviceNotFound):
            pipeline.start_simulation("NOPE", interval_ms=20)

    def test_sample_and_ingest_walks_dataset(self, pipeline):
        sample, outcome = pipeline.sample_and_ingest("D1")
        assert sample.speed_kmh == 120.0
        assert outcome is None
        sample, outcome = pipeline.sample_and_ingest("D1")
        assert sample.speed_kmh == 210.0
        assert outcome.incident.severity is Severity.MEDIUM

    def test_sample_and_ingest_randomized(self, pipeline):
        rng = random.Random(11)
        speeds = set()
        for _ in range(12):
            sample, outcome = pipeline.sample_and_ingest("D1", randomize=True, rng=rng)
            speeds.add(sample.speed_kmh)
            assert (outcome is not None) == (sample.speed_kmh == 210.0)
        assert speeds <= {120.0, 210.0, 95.0}
        # the walking cursor is untouched by random draws
        assert pipeline.sample_and_ingest("D1")[0].speed_kmh == 120.0

    def test_sample_and_ingest_unknown_device(self, pipeline):
        with pytest.raises(DeviceNotFound):
            pipeline.sample_and_ingest("NOPE", randomize=True)

    def test_no_source_configured(self, store):
        p = IncidentPipeline(store=store, notary=StubNotary())
        try:
            with pytest.raises(PipelineError):
                p.start_simulation("D1")
        finally:
            p.shutdown()
