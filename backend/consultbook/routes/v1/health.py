# backend/consultbook/routes/v1/health.py
"""
Operational endpoints.

``/metrics`` is public and unauthenticated, the way Prometheus scrapers
expect. ``/health`` checks the database with a trivial query.
"""

import logging

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    environment: str
    database: str


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request, response: Response) -> HealthResponse:
    database_state = "ok"
    try:
        with request.app.state.database.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check database query failed: %s", exc)
        database_state = "unavailable"
        response.status_code = 503
    return HealthResponse(
        status="ok" if database_state == "ok" else "degraded",
        environment=request.app.state.settings.environment,
        database=database_state,
    )


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
