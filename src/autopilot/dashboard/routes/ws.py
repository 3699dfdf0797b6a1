"""WebSocket stream of lifecycle events for dashboard clients.

Clients receive every event as a JSON frame. A client can narrow the stream
by sending ``{"subscribe": ["criticalFailure", ...]}``; an empty list
restores the full stream.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from autopilot.events import LifecycleEvent

log = structlog.get_logger(__name__)

router = APIRouter()

_REPLAY_SIZE = 20


class DashboardHub:
    """Connected clients and the event names each one wants (None = all)."""

    def __init__(self) -> None:
        self._clients: dict[WebSocket, frozenset[str] | None] = {}

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def attach(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients[ws] = None
        log.info("dashboard_ws_connected", total=self.client_count)

    def detach(self, ws: WebSocket) -> None:
        self._clients.pop(ws, None)
        log.info("dashboard_ws_disconnected", total=self.client_count)

    def set_filter(self, ws: WebSocket, events: list[str]) -> None:
        known = {e.value for e in LifecycleEvent}
        wanted = frozenset(e for e in events if e in known)
        self._clients[ws] = wanted or None
        log.debug("dashboard_ws_filter", events=sorted(wanted))

    async def publish(self, event: LifecycleEvent, payload: dict[str, Any]) -> None:
        """EventBus handler: send one event to every interested client."""
        frame = _jsonable({"event": event.value, "timestamp": time.time(), "payload": payload})
        for ws, wanted in list(self._clients.items()):
            if wanted is not None and event.value not in wanted:
                continue
            try:
                await ws.send_json(frame)
            except Exception:
                self._clients.pop(ws, None)
                log.warning("dashboard_ws_send_failed", remaining=self.client_count)


def _jsonable(entry: dict[str, Any]) -> dict[str, Any]:
    # Decimals and other non-JSON values become strings
    return json.loads(json.dumps(entry, default=str))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Replay recent history, then stream events until the client leaves."""
    hub: DashboardHub = websocket.app.state.hub
    await hub.attach(websocket)
    engine = getattr(websocket.app.state, "engine", None)
    try:
        if engine is not None:
            for entry in engine.events.history[-_REPLAY_SIZE:]:
                await websocket.send_json(_jsonable(entry))
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                log.debug("dashboard_ws_bad_message")
                continue
            if isinstance(message, dict) and isinstance(message.get("subscribe"), list):
                hub.set_filter(websocket, message["subscribe"])
    except WebSocketDisconnect:
        hub.detach(websocket)
