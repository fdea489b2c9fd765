"""
Alert fanout: push incident alerts to every subscribed dashboard sink.
Each sink is isolated; a failing sink is logged and skipped, never raised to the pipeline.
"""

import logging
import threading

from core.models import ALERT_LEDGER_CONFIRMED, AlertEvent

logger = logging.getLogger("incident_pipeline.alerts")


class AlertFanout:
    def __init__(self, sinks=None):
        self._lock = threading.Lock()
        self._sinks = list(sinks or [])

    def add_sink(self, sink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def remove_sink(self, sink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    @property
    def sinks(self) -> list:
        with self._lock:
            return list(self._sinks)

    def notify(self, event: AlertEvent) -> int:
        """Deliver to all sinks; returns how many accepted the event."""
        delivered = 0
        for sink in self.sinks:
            try:
                sink.push(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "alert delivery failed sink=%s kind=%s incident_id=%s: %s",
                    getattr(sink, "name", type(sink).__name__), event.kind, event.incident_id, e,
                    exc_info=True,
                )
        return delivered


class LogAlertSink:
    """Writes the insurance-company and KORA dashboard views of each alert to the log."""

    name = "log"

    def __init__(self, logger_name: str = "incident_pipeline.alerts.dashboard"):
        self._log = logging.getLogger(logger_name)

    def push(self, event: AlertEvent) -> None:
        if event.kind == ALERT_LEDGER_CONFIRMED:
            self._log.info(
                "kora dashboard: ledger proof recorded incident_id=%s company=%s tx=%s",
                event.incident_id, event.company_name, event.ledger_reference,
            )
            return
        self._log.info(
            "insurance dashboard: %s customer=%s device=%s severity=%s",
            event.message, event.policy_holder, event.device_id, event.severity,
        )
        self._log.info(
            "kora dashboard: insurance company notified company=%s device=%s ledger_status=%s",
            event.company_name, event.device_id, event.ledger_status,
        )
