"""
Simulated telemetry source: replays the historical dataset as live device samples.

Each device keeps its own cursor into the dataset. start() runs one daemon thread per
stream that emits a sample every interval and wraps to the start of the dataset when
exhausted. stop() only halts future sampling; a callback already running finishes.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from core.models import TelemetrySample, utc_now_iso
from simulation.dataset import DataPoint, TelemetryDataset

logger = logging.getLogger("incident_pipeline.simulation.source")


def _to_sample(device_id: str, point: DataPoint) -> TelemetrySample:
    return TelemetrySample(
        device_id=device_id,
        timestamp=point.timestamp,
        latitude=point.latitude,
        longitude=point.longitude,
        speed_kmh=point.speed_kmh,
    )


@dataclass
class StreamHandle:
    device_id: str
    interval_s: float
    started_at: str = field(default_factory=utc_now_iso)
    samples_emitted: int = 0
    _stopped: threading.Event = field(default_factory=threading.Event, repr=False)
    _thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return not self._stopped.is_set() and self._thread is not None and self._thread.is_alive()

    def to_dict(self):
        return {
            "device_id": self.device_id,
            "interval_ms": int(round(self.interval_s * 1000)),
            "started_at": self.started_at,
            "samples_emitted": self.samples_emitted,
            "active": self.active,
        }


class TelemetrySource:
    def __init__(self, dataset: TelemetryDataset):
        self.dataset = dataset
        self._lock = threading.Lock()
        self._cursors: dict[str, int] = {}

    def sample_once(self, device_id: str) -> TelemetrySample:
        """Next sample for this device (cyclic)."""
        with self._lock:
            index = self._cursors.get(device_id, 0)
            self._cursors[device_id] = index + 1
        return _to_sample(device_id, self.dataset.point(index))

    def random_sample(self, device_id: str, rng: Optional[random.Random] = None) -> TelemetrySample:
        return _to_sample(device_id, self.dataset.random_point(rng))

    def reset(self, device_id: str) -> None:
        with self._lock:
            self._cursors.pop(device_id, None)

    def _run(self, handle: StreamHandle, callback: Callable[[TelemetrySample], None]) -> None:
        logger.info("stream started device_id=%s interval_s=%.3f", handle.device_id, handle.interval_s)
        while not handle._stopped.wait(handle.interval_s):
            sample = self.sample_once(handle.device_id)
            handle.samples_emitted += 1
            try:
                callback(sample)
            except Exception as e:
                # one bad sample must not kill the stream
                logger.warning("stream callback failed device_id=%s ts=%s: %s", handle.device_id, sample.timestamp, e)
        logger.info("stream stopped device_id=%s samples=%d", handle.device_id, handle.samples_emitted)

    def start(self, device_id: str, interval_s: float, callback: Callable[[TelemetrySample], None]) -> StreamHandle:
        if interval_s <= 0:
            raise ValueError("interval must be positive")
        handle = StreamHandle(device_id=device_id, interval_s=interval_s)
        handle._thread = threading.Thread(
            target=self._run,
            args=(handle, callback),
            name=f"telemetry-{device_id}",
            daemon=True,
        )
        handle._thread.start()
        return handle

    def stop(self, handle: StreamHandle, join_timeout: Optional[float] = None) -> None:
        handle._stopped.set()
        thread = handle._thread
        if join_timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
