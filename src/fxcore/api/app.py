"""FastAPI ops application factory."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from fxcore.api import routes


def create_app(lifespan: Any = None) -> FastAPI:
    """Create the ops API.

    Args:
        lifespan: Optional async context manager for startup/shutdown. main.py
                  injects one that wires and starts all components.

    Route handlers read components from app.state: rule_monitor,
    fee_calculator, provider, settings.
    """
    app = FastAPI(title="fxcore ops", lifespan=lifespan)
    app.include_router(routes.router)
    return app
