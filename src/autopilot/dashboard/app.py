"""FastAPI dashboard application factory with the WebSocket event hub."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from autopilot.dashboard.routes import api, ws
from autopilot.dashboard.routes.ws import DashboardHub


def create_dashboard_app(engine: Any = None, lifespan: Any = None) -> FastAPI:
    """Create the read-only operator dashboard.

    Args:
        engine: Engine whose state the routes expose. May be attached later
            through app.state.engine (main.py does so in the lifespan).
        lifespan: Optional async context manager for startup/shutdown.
    """
    app = FastAPI(title="Funding Autopilot Dashboard", lifespan=lifespan)

    hub = DashboardHub()
    app.state.hub = hub
    app.state.engine = engine
    if engine is not None:
        engine.events.subscribe(None, hub.publish)

    app.include_router(api.router, prefix="/api")
    app.include_router(ws.router)
    return app
