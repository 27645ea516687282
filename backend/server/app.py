"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Attach shared resources (config, health reporter) to app.state
- Register routes
"""

from __future__ import annotations

from typing import Any, AsyncContextManager, Callable

from fastapi import FastAPI

from config import AppConfig
from health.reporter import HealthReporter

from server.routes import register_routes


def create_app(
    config: AppConfig,
    reporter: HealthReporter,
    *,
    lifespan: Callable[[FastAPI], AsyncContextManager[Any]] | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators are injected so tests can build an app around fakes and
    the process entry point can share one manager with the HTTP surface.
    """
    app = FastAPI(title="WhatsApp Session Keeper", lifespan=lifespan)

    app.state.config = config
    app.state.health_reporter = reporter

    register_routes(app)

    return app
