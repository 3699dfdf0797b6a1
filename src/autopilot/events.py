"""In-process lifecycle event bus.

The engine announces what it did (deployments, closes, rebalances,
critical audit failures, reports) as named events. Subscribers (the
dashboard WebSocket hub, a notification layer) attach handlers; a failing
handler is logged and never affects the engine.
"""

import asyncio
import inspect
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from autopilot.logging import get_logger

logger = get_logger(__name__)


class LifecycleEvent(str, Enum):
    DEPLOYMENT_SUCCEEDED = "deploymentSucceeded"
    DEPLOYMENT_FAILED = "deploymentFailed"
    POSITION_CLOSED = "positionClosed"
    REBALANCED = "rebalanced"
    CRITICAL_FAILURE = "criticalFailure"
    PERFORMANCE_REPORT = "performanceReport"
    AUDIT_ALERT = "auditAlert"
    AUDIT_STEP = "auditStep"


Handler = Callable[[LifecycleEvent, dict[str, Any]], Awaitable[None] | None]


class EventBus:
    """Fan-out of lifecycle events to sync or async handlers.

    Args:
        history_size: Number of recent events kept for late subscribers.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._handlers: dict[LifecycleEvent | None, list[Handler]] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._pending: set[asyncio.Task] = set()  # type: ignore[type-arg]

    def subscribe(self, event: LifecycleEvent | None, handler: Handler) -> None:
        """Attach a handler to one event, or to every event when event is None."""
        self._handlers.setdefault(event, []).append(handler)

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    async def emit(self, event: LifecycleEvent, payload: dict[str, Any] | None = None) -> None:
        """Deliver an event to its handlers, in subscription order."""
        payload = dict(payload or {})
        self._history.append({"event": event.value, "timestamp": time.time(), "payload": payload})
        logger.debug("lifecycle_event", lifecycle_event=event.value)

        for handler in [*self._handlers.get(event, []), *self._handlers.get(None, [])]:
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("event_handler_failed", lifecycle_event=event.value, exc_info=True)

    def emit_nowait(self, event: LifecycleEvent, payload: dict[str, Any] | None = None) -> None:
        """Schedule emit() from synchronous code running inside the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("event_dropped_no_loop", lifecycle_event=event.value)
            return
        task = loop.create_task(self.emit(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for events scheduled with emit_nowait to be delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
