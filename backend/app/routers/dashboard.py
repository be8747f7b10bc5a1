"""
Dashboard API endpoint.

Serves the aggregated pipeline payload (WF1 → WF5) to the monitoring UI.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.models.dashboard import ConfigurationError, DashboardPayload, ErrorPayload
from app.services import aggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=ErrorPayload(error=message).model_dump(),
        headers={"Cache-Control": "no-store"},
    )


@router.get(
    "",
    response_model=DashboardPayload,
    responses={500: {"model": ErrorPayload}},
)
async def get_dashboard(response: Response):
    """
    Get the aggregated pipeline metrics.

    Stage queries that fail are reported inside the payload (``errors``
    and per-stage ``errors``) with their metrics nulled; only a
    configuration problem fails the whole request.
    """
    settings = get_settings()
    try:
        payload = await aggregator.build_dashboard(settings)
    except ConfigurationError as e:
        logger.error("Dashboard configuration error: %s", e)
        return _error_response(str(e))
    except Exception as e:
        logger.exception("Failed to compute dashboard")
        return _error_response(f"Failed to compute dashboard: {e}")

    # Short edge cache to keep load off the record store
    response.headers["Cache-Control"] = f"public, max-age={settings.cache_max_age_seconds}"
    return payload
