"""
Incident pipeline: ingest telemetry → classify → persist + alert synchronously →
notarize in the background → reconcile ledger status into the store.

ingest() never waits on the notary. Each incident gets exactly one reconciliation task
on the pipeline's ledger executor; its outcome is written to the store as data
(confirmed / failed), not raised to the ingest caller.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Union

from core.classifier import SPEED_THRESHOLD_KMH, classify
from core.errors import DeviceNotFound, PipelineError
from core.ledger import notarize
from core.models import (
    ALERT_INCIDENT_CREATED,
    AlertEvent,
    DeviceContext,
    Incident,
    IncidentOutcome,
    LedgerStatus,
    Location,
    SensorSnapshot,
    TelemetrySample,
    utc_now_iso,
)

logger = logging.getLogger("incident_pipeline.engine")


class IncidentPipeline:
    def __init__(
        self,
        store,
        notary,
        alerts=None,
        source=None,
        *,
        threshold: float = SPEED_THRESHOLD_KMH,
        ledger_workers: int = 4,
        default_interval_ms: int = 5000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.notary = notary
        self.alerts = alerts
        self.source = source
        self.threshold = threshold
        self.default_interval_ms = default_interval_ms
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max(1, ledger_workers), thread_name_prefix="ledger")
        self._tasks_lock = threading.Lock()
        self._ledger_tasks: dict[str, Future] = {}
        self._id_lock = threading.Lock()
        self._last_id_ms = 0
        # device_id -> StreamHandle for running simulations
        self._streams_lock = threading.Lock()
        self._streams: dict = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    def new_incident_id(self, device_id: str) -> str:
        """INC-<creation ms>-<device_id>; creation ms is strictly increasing per pipeline."""
        with self._id_lock:
            ms = int(self.clock() * 1000)
            if ms <= self._last_id_ms:
                ms = self._last_id_ms + 1
            self._last_id_ms = ms
        return f"INC-{ms}-{device_id}"

    def _touch_liveness(self, sample: TelemetrySample) -> None:
        try:
            if not self.store.touch_device_liveness(sample.device_id, sample.timestamp):
                logger.debug("liveness skipped: unknown device_id=%s", sample.device_id)
        except Exception as e:
            logger.warning("liveness update failed device_id=%s: %s", sample.device_id, e)

    def _build_incident(self, sample: TelemetrySample, verdict, context: DeviceContext) -> Incident:
        return Incident(
            incident_id=self.new_incident_id(sample.device_id),
            device_id=sample.device_id,
            policy_ref=context.policy_ref,
            company_ref=context.company_ref,
            incident_type=verdict.incident_type,
            severity=verdict.severity,
            timestamp=sample.timestamp,
            location=Location(latitude=sample.latitude, longitude=sample.longitude),
            sensor_snapshot=SensorSnapshot(
                speed_kmh=verdict.speed_kmh,
                threshold=verdict.threshold,
                excess_speed=verdict.excess,
            ),
            ledger_status=LedgerStatus.PENDING,
            kora_notified=True,
            insurance_notified=True,
            created_at=utc_now_iso(),
        )

    def ingest(self, sample: TelemetrySample) -> Optional[IncidentOutcome]:
        """
        Process one sample. Returns None when there is no anomaly.
        Raises DeviceNotFound for an anomaly on an unknown device (nothing recorded),
        and propagates store errors from incident creation (no alert sent).
        """
        if self._closed:
            raise PipelineError("pipeline is shut down")
        self._touch_liveness(sample)

        verdict = classify(sample, self.threshold)
        if verdict is None:
            return None
        logger.info(
            "anomaly detected device_id=%s speed=%.1f severity=%s type=%s",
            sample.device_id, verdict.speed_kmh, verdict.severity.value, verdict.incident_type.value,
        )

        context = self.store.get_device_context(sample.device_id)
        incident = self.store.create_incident(self._build_incident(sample, verdict, context))
        logger.info("incident created incident_id=%s policy_ref=%s", incident.incident_id, context.policy_ref)

        if self.alerts is not None:
            self.alerts.notify(AlertEvent.for_incident(ALERT_INCIDENT_CREATED, incident, context))

        task = self._launch_notarization(incident, context)
        return IncidentOutcome(incident=incident, context=context, ledger_task=task, alerted=self.alerts is not None)

    # ------------------------------------------------------------------
    # Background notarization
    # ------------------------------------------------------------------
    def _on_ledger_done(self, incident_id: str, fut: Future) -> None:
        with self._tasks_lock:
            self._ledger_tasks.pop(incident_id, None)
        if fut.cancelled():
            logger.warning("ledger task cancelled incident_id=%s", incident_id)
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("ledger reconciliation crashed incident_id=%s: %s", incident_id, exc, exc_info=exc)

    def _launch_notarization(self, incident: Incident, context: DeviceContext) -> Future:
        try:
            fut = self._executor.submit(notarize, incident, context, self.store, self.notary, self.alerts)
        except RuntimeError:
            # executor already shut down: reconcile inline so the incident still reaches a terminal state
            logger.warning("ledger executor closed, notarizing inline incident_id=%s", incident.incident_id)
            fut = Future()
            try:
                fut.set_result(notarize(incident, context, self.store, self.notary, self.alerts))
            except Exception as e:
                fut.set_exception(e)
            return fut
        with self._tasks_lock:
            self._ledger_tasks[incident.incident_id] = fut
        # registered before the callback so a fast task still cleans up after itself
        fut.add_done_callback(lambda f, iid=incident.incident_id: self._on_ledger_done(iid, f))
        return fut

    def pending_ledger_tasks(self) -> int:
        with self._tasks_lock:
            return len(self._ledger_tasks)

    def wait_for_ledger(self, incident_id: str, timeout: Optional[float] = None) -> Optional[Incident]:
        """Block until this incident's reconciliation finishes (or timeout); return the stored incident."""
        with self._tasks_lock:
            fut = self._ledger_tasks.get(incident_id)
        if fut is not None:
            wait([fut], timeout=timeout)
        return self.store.get_incident(incident_id)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for all outstanding notarizations. True if none are left running."""
        with self._tasks_lock:
            futures = list(self._ledger_tasks.values())
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Simulation registry (device_id -> stream handle)
    # ------------------------------------------------------------------
    def _require_source(self):
        if self.source is None:
            raise PipelineError("no telemetry source configured")
        return self.source

    def start_simulation(self, device_id: str, interval_ms: Optional[int] = None):
        """Start (or restart) the replay stream for a registered device."""
        source = self._require_source()
        if self._closed:
            raise PipelineError("pipeline is shut down")
        if self.store.get_device(device_id) is None:
            raise DeviceNotFound(device_id)
        interval_ms = interval_ms or self.default_interval_ms
        with self._streams_lock:
            previous = self._streams.pop(device_id, None)
            if previous is not None:
                source.stop(previous)
                logger.info("simulation restarted device_id=%s", device_id)
            handle = source.start(device_id, interval_ms / 1000.0, self.ingest)
            self._streams[device_id] = handle
        logger.info("simulation started device_id=%s interval_ms=%d", device_id, interval_ms)
        return handle

    def stop_simulation(self, target: Union[str, object], join_timeout: Optional[float] = None) -> bool:
        """Stop by handle or device id. False if nothing was running. In-flight work completes."""
        source = self._require_source()
        device_id = target if isinstance(target, str) else target.device_id
        with self._streams_lock:
            handle = self._streams.get(device_id)
            if handle is None or (not isinstance(target, str) and handle is not target):
                handle = None
            else:
                del self._streams[device_id]
        if handle is None:
            if not isinstance(target, str):
                source.stop(target, join_timeout=join_timeout)
            return False
        source.stop(handle, join_timeout=join_timeout)
        logger.info("simulation stopped device_id=%s", device_id)
        return True

    def active_simulations(self) -> list:
        with self._streams_lock:
            return list(self._streams.values())

    def sample_and_ingest(self, device_id: str, randomize: bool = False, rng=None):
        """One on-demand sample for a registered device, run through the pipeline.
        Walks the device's cursor by default; randomize picks any dataset point instead."""
        source = self._require_source()
        if self.store.get_device(device_id) is None:
            raise DeviceNotFound(device_id)
        sample = source.random_sample(device_id, rng) if randomize else source.sample_once(device_id)
        return sample, self.ingest(sample)

    # ------------------------------------------------------------------
    def shutdown(self, wait_for_ledger: bool = True, join_timeout: float = 2.0) -> None:
        """Stop all streams, then let outstanding notarizations finish."""
        self._closed = True
        with self._streams_lock:
            handles = list(self._streams.values())
            self._streams.clear()
        for handle in handles:
            self.source.stop(handle, join_timeout=join_timeout)
        self._executor.shutdown(wait=wait_for_ledger)
        logger.info("pipeline shut down streams=%d", len(handles))
