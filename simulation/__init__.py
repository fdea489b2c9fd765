"""Telemetry simulation: historical dataset replayed as per-device streams."""

from simulation.dataset import DataPoint, TelemetryDataset
from simulation.source import StreamHandle, TelemetrySource

__all__ = ["DataPoint", "TelemetryDataset", "StreamHandle", "TelemetrySource"]
