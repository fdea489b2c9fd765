"""
Settings read from the environment (a .env file is loaded by the API entry point).

- SPEED_THRESHOLD: km/h above which a sample is an incident (default 180).
- LEDGER_WORKERS: max concurrent notarizations (default 4).
- LEDGER_NOTARY_URL / LEDGER_NOTARY_TOKEN / LEDGER_NOTARY_TIMEOUT: remote notary gateway; unset = local ledger.
- LOCAL_LEDGER_LATENCY_MS: artificial delay for the local ledger (default 0).
- INCIDENT_STORE_URL: SQLAlchemy URL for the incident store; unset = in-memory.
- TELEMETRY_DATASET: CSV of (timestamp, latitude, longitude, speed_kmh); default is the bundled dataset.
- SIMULATION_INTERVAL_MS: default stream interval (default 5000).
Bad values fall back to the default.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("incident_pipeline.config")

DEFAULT_DATASET = Path(__file__).resolve().parents[1] / "simulation" / "data" / "telemetry.csv"


def _env_str(name: str) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    v = _env_str(name)
    if v is None:
        return default
    try:
        return max(minimum, float(v))
    except ValueError:
        logger.warning("invalid %s=%r, using %s", name, v, default)
        return default


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    v = _env_str(name)
    if v is None:
        return default
    try:
        return max(minimum, int(v))
    except ValueError:
        logger.warning("invalid %s=%r, using %s", name, v, default)
        return default


@dataclass(frozen=True)
class Settings:
    speed_threshold: float = 180.0
    ledger_workers: int = 4
    notary_url: Optional[str] = None
    notary_token: Optional[str] = None
    notary_timeout: float = 30.0
    local_ledger_latency_ms: int = 0
    store_url: Optional[str] = None
    dataset_path: Path = DEFAULT_DATASET
    simulation_interval_ms: int = 5000


def load_settings() -> Settings:
    dataset = _env_str("TELEMETRY_DATASET")
    return Settings(
        speed_threshold=_env_float("SPEED_THRESHOLD", 180.0),
        ledger_workers=_env_int("LEDGER_WORKERS", 4),
        notary_url=_env_str("LEDGER_NOTARY_URL"),
        notary_token=_env_str("LEDGER_NOTARY_TOKEN"),
        notary_timeout=_env_float("LEDGER_NOTARY_TIMEOUT", 30.0, minimum=0.1),
        local_ledger_latency_ms=_env_int("LOCAL_LEDGER_LATENCY_MS", 0, minimum=0),
        store_url=_env_str("INCIDENT_STORE_URL"),
        dataset_path=Path(dataset) if dataset else DEFAULT_DATASET,
        simulation_interval_ms=_env_int("SIMULATION_INTERVAL_MS", 5000, minimum=10),
    )
