"""Alert fanout and dashboard sinks (log, WebSocket)."""

from alerts.fanout import AlertFanout, LogAlertSink
from alerts.websocket_hub import WebSocketHub

__all__ = ["AlertFanout", "LogAlertSink", "WebSocketHub"]
