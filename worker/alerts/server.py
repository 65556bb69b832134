"""
HTTP surface for the Flood Alert Worker.

Exposes the collaborator-level entry points next to the scheduled handler:

    - ``POST /trigger``   -- run a sweep synchronously and return its summary
    - ``GET /health``     -- static liveness check
    - ``GET /dev-info``   -- non-production only: schedule and scale factor

Usage:
    python -m worker.alerts.server

Environment Variables:
    SERVER_PORT  - Port to run on (default: 8080)
    (plus everything read by ``worker.alerts.config.Settings``)
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from worker.alerts.config import load_settings
from worker.alerts.handler import run_configured_sweep

logger = logging.getLogger(__name__)

SERVICE_NAME = "flood-alert-worker"


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TriggerResponseModel(BaseModel):
    success: bool
    message: str = ""
    users_checked: int = 0
    alerts_sent: int = 0
    errors: int = 0
    duration_ms: int = 0
    error: str | None = None


class HealthResponseModel(BaseModel):
    status: str
    timestamp: str
    environment: str
    service: str


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Flood Alert Worker",
    description=(
        "On-demand trigger and health endpoints for the river flood "
        "alert sweep."
    ),
    version="1.0.0",
)


@app.post("/trigger", response_model=TriggerResponseModel)
async def trigger_sweep() -> JSONResponse:
    """Run an alert sweep now and return its summary.

    Returns 500 with ``success: false`` if the sweep fails fatally.
    """
    logger.info("Manual alert check triggered")
    try:
        result = await run_configured_sweep()
    except Exception as exc:
        logger.exception("Manual alert check failed")
        body = TriggerResponseModel(success=False, error=str(exc))
        return JSONResponse(content=body.model_dump(), status_code=500)

    logger.info("Manual alert check completed: %s", result.model_dump())
    body = TriggerResponseModel(
        success=True,
        message="Alert check completed successfully",
        users_checked=result.users_checked,
        alerts_sent=result.alerts_sent,
        errors=result.errors,
        duration_ms=result.duration_ms,
    )
    return JSONResponse(content=body.model_dump())


@app.get("/health", response_model=HealthResponseModel)
async def health() -> HealthResponseModel:
    """Liveness check. Does not touch upstream services."""
    return HealthResponseModel(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment=os.environ.get("APP_ENV", "local"),
        service=SERVICE_NAME,
    )


@app.get("/dev-info")
async def dev_info() -> JSONResponse:
    """Explain non-production behaviour. 404 in production."""
    settings = load_settings()
    if settings.is_production:
        return JSONResponse(content={"detail": "Not found"}, status_code=404)

    return JSONResponse(
        content={
            "environment": settings.app_env,
            "schedule_interval_minutes": settings.schedule_interval_minutes,
            "scale_factor": settings.scale_factor,
            "message": (
                f"Return-period thresholds are divided by "
                f"{settings.scale_factor:g} so alerts trigger more easily"
            ),
        }
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Start the FastAPI server using uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    port = int(os.environ.get("SERVER_PORT", "8080"))
    logger.info("Starting %s on port %d", SERVICE_NAME, port)

    uvicorn.run(
        "worker.alerts.server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
