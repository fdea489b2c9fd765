"""
Optional Snowflake analytics sink.

When SNOWFLAKE_ACCOUNT, SNOWFLAKE_USER, SNOWFLAKE_PASSWORD (plus optional SNOWFLAKE_WAREHOUSE,
SNOWFLAKE_DATABASE, SNOWFLAKE_SCHEMA, SNOWFLAKE_ROLE) are set, every alert event from the
pipeline (incident_created, ledger_confirmed) is written to Snowflake:

- incident_events: one row per alert (incident_id, kind, device, severity, speed, company,
  ledger status/reference, event JSON, created_at)

Run analytics in Snowflake: incidents by severity, by company, by day; time from creation to
ledger confirmation; etc. No-op if Snowflake env is not set.
"""

import json
import logging
import os
from typing import Any

from core.models import AlertEvent

logger = logging.getLogger("incident_pipeline.analytics.snowflake")

try:
    import snowflake.connector
except ImportError:
    snowflake = None  # type: ignore


def _snowflake_configured() -> bool:
    if snowflake is None:
        return False
    account = os.environ.get("SNOWFLAKE_ACCOUNT", "").strip()
    user = os.environ.get("SNOWFLAKE_USER", "").strip()
    password = os.environ.get("SNOWFLAKE_PASSWORD", "").strip()
    return bool(account and user and password)


def _events_table() -> str:
    return os.environ.get("SNOWFLAKE_EVENTS_TABLE", "incident_events").strip() or "incident_events"


def _get_conn():
    """Lazy connection; raises if not configured or connection fails."""
    if not _snowflake_configured():
        raise ValueError("Snowflake not configured (set SNOWFLAKE_ACCOUNT, SNOWFLAKE_USER, SNOWFLAKE_PASSWORD)")
    return snowflake.connector.connect(
        account=os.environ["SNOWFLAKE_ACCOUNT"].strip(),
        user=os.environ["SNOWFLAKE_USER"].strip(),
        password=os.environ["SNOWFLAKE_PASSWORD"].strip(),
        warehouse=os.environ.get("SNOWFLAKE_WAREHOUSE", "").strip() or None,
        database=os.environ.get("SNOWFLAKE_DATABASE", "").strip() or None,
        schema=os.environ.get("SNOWFLAKE_SCHEMA", "").strip() or None,
        role=os.environ.get("SNOWFLAKE_ROLE", "").strip() or None,
    )


def _ensure_table(conn) -> None:
    cur = conn.cursor()
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {_events_table()} (
            incident_id VARCHAR(192),
            kind VARCHAR(32),
            device_id VARCHAR(128),
            severity VARCHAR(16),
            speed_kmh FLOAT,
            company_ref VARCHAR(128),
            ledger_status VARCHAR(16),
            ledger_reference VARCHAR(256),
            event VARIANT,
            created_at TIMESTAMP_NTZ DEFAULT CURRENT_TIMESTAMP()
        )
    """)
    cur.close()


def sink_alert_event(event: dict[str, Any]) -> None:
    """
    Write one alert event row. No-op if Snowflake env is not set.
    Logs and swallows errors so the pipeline never fails on analytics.
    """
    if not _snowflake_configured():
        return
    try:
        conn = _get_conn()
        _ensure_table(conn)
        cur = conn.cursor()
        # INSERT...SELECT so PARSE_JSON works (VALUES clause can reject it)
        cur.execute(
            f"""INSERT INTO {_events_table()}
                (incident_id, kind, device_id, severity, speed_kmh, company_ref, ledger_status, ledger_reference, event)
                SELECT %s, %s, %s, %s, %s, %s, %s, %s, PARSE_JSON(%s)""",
            (
                event.get("incident_id"),
                event.get("type"),
                event.get("device_id"),
                event.get("severity"),
                event.get("speed_kmh"),
                event.get("company_ref"),
                event.get("ledger_status"),
                event.get("ledger_reference"),
                json.dumps(event),
            ),
        )
        cur.close()
        conn.close()
        logger.debug("snowflake sink ok incident_id=%s kind=%s", event.get("incident_id"), event.get("type"))
    except Exception as e:
        logger.warning("snowflake sink failed: %s", e, exc_info=True)


class SnowflakeAlertSink:
    """Alert sink adapter for AlertFanout."""

    name = "snowflake"

    @staticmethod
    def configured() -> bool:
        return _snowflake_configured()

    def push(self, event: AlertEvent) -> None:
        sink_alert_event(event.to_dict())
