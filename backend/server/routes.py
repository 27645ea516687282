"""
Route registration for the session keeper API.

Responsibilities:
- Define HTTP endpoints
- Pull dependencies from app.state
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from health.reporter import HealthReporter
from observability.logger import log_event


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        reporter: HealthReporter = app.state.health_reporter

        try:
            status_code, body = reporter.report()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "level": "error",
                "event_type": "HEALTH_CHECK_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return JSONResponse(status_code=500, content=reporter.error_body(exc))

        return JSONResponse(status_code=status_code, content=body)
