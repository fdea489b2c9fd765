"""Live dashboard feed: broadcast alert events to connected WebSocket clients."""

import asyncio
import json
import logging
import threading
from functools import partial

from fastapi import WebSocket

from core.models import AlertEvent

logger = logging.getLogger("incident_pipeline.alerts.websocket")


class WebSocketHub:
    name = "websocket"

    def __init__(self):
        self._lock = threading.Lock()
        self._clients: dict[int, tuple[WebSocket, asyncio.AbstractEventLoop]] = {}

    def add(self, ws: WebSocket, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._clients[id(ws)] = (ws, loop)
        logger.info("dashboard subscribed clients=%d", len(self))

    def discard(self, ws: WebSocket) -> None:
        with self._lock:
            removed = self._clients.pop(id(ws), None)
        if removed is not None:
            logger.info("dashboard unsubscribed clients=%d", len(self))

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def _on_sent(self, ws: WebSocket, fut) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("websocket send failed, dropping client: %s", exc)
            self.discard(ws)

    def push(self, event: AlertEvent) -> None:
        """Schedule the send on each client's loop; never waits for delivery."""
        payload = json.dumps(event.to_dict())
        with self._lock:
            clients = list(self._clients.values())
        for ws, loop in clients:
            try:
                fut = asyncio.run_coroutine_threadsafe(ws.send_text(payload), loop)
            except RuntimeError as e:
                # loop already closed
                logger.warning("websocket loop unavailable, dropping client: %s", e)
                self.discard(ws)
                continue
            fut.add_done_callback(partial(self._on_sent, ws))
