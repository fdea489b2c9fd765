"""Historical telemetry dataset: (timestamp, latitude, longitude, speed_kmh) rows loaded from CSV."""

import csv
import logging
import math
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger("incident_pipeline.simulation.dataset")

CSV_FIELDS = ["timestamp", "latitude", "longitude", "speed_kmh"]


@dataclass(frozen=True)
class DataPoint:
    timestamp: int
    latitude: float
    longitude: float
    speed_kmh: float

    def to_dict(self):
        return {
            "timestamp": self.timestamp,
            "speed_kmh": self.speed_kmh,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
        }


def _parse_row(row: dict) -> Optional[DataPoint]:
    try:
        point = DataPoint(
            timestamp=int(float(row["timestamp"])),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            speed_kmh=float(row["speed_kmh"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
    if not all(math.isfinite(v) for v in (point.latitude, point.longitude, point.speed_kmh)):
        return None
    return point


class TelemetryDataset:
    """Finite, ordered, read-only. Streaming consumers wrap around via point(i)."""

    def __init__(self, points: list[DataPoint]):
        self._points = list(points)

    @classmethod
    def from_csv(cls, path) -> "TelemetryDataset":
        path = Path(path)
        points = []
        skipped = 0
        with path.open("r", newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                point = _parse_row(row)
                if point is None:
                    skipped += 1
                    continue
                points.append(point)
        if skipped:
            logger.warning("dataset %s: skipped %d malformed rows", path.name, skipped)
        logger.info("loaded %d telemetry points from %s", len(points), path.name)
        return cls(points)

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[DataPoint]:
        return iter(self._points)

    def point(self, index: int) -> DataPoint:
        """Cyclic access: index wraps to the start when past the end."""
        if not self._points:
            raise IndexError("telemetry dataset is empty")
        return self._points[index % len(self._points)]

    def random_point(self, rng: Optional[random.Random] = None) -> DataPoint:
        if not self._points:
            raise IndexError("telemetry dataset is empty")
        return (rng or random).choice(self._points)

    def anomalies(self, threshold: float = 180.0) -> list[DataPoint]:
        return [p for p in self._points if p.speed_kmh > threshold]

    def in_range(self, start: int, end: int) -> list[DataPoint]:
        """Points with start <= timestamp <= end."""
        return [p for p in self._points if start <= p.timestamp <= end]

    def stats(self, threshold: float = 180.0) -> dict:
        if not self._points:
            return {
                "total_points": 0,
                "max_speed": None,
                "min_speed": None,
                "avg_speed": None,
                "anomaly_count": 0,
                "anomaly_percentage": 0.0,
            }
        speeds = [p.speed_kmh for p in self._points]
        anomaly_count = len(self.anomalies(threshold))
        return {
            "total_points": len(speeds),
            "max_speed": max(speeds),
            "min_speed": min(speeds),
            "avg_speed": round(sum(speeds) / len(speeds), 2),
            "anomaly_count": anomaly_count,
            "anomaly_percentage": round(anomaly_count / len(speeds) * 100, 2),
        }
