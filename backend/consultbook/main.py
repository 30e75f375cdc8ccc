# backend/consultbook/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import Settings, get_settings
from .database import Database
from .errors import register_error_handlers
from .integrations.meeting_client import build_meeting_client
from .integrations.razorpay_client import build_gateway_client
from .routes.v1 import (
    availability as availability_v1,
    bookings as bookings_v1,
    health as health_v1,
    payments as payments_v1,
    sessions as sessions_v1,
)
from .services.notification_service import build_email_sender

API_PREFIX = "/api/v1"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    config: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    gateway: Any = None,
    meeting_client: Any = None,
    email_sender: Any = None,
) -> FastAPI:
    """
    Build the API application.

    Collaborators passed in are used as-is and left open at shutdown; the
    ones built here are owned by the app and closed in the lifespan.
    """
    config = config or get_settings()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned: list[Any] = []

        db = database
        if db is None:
            db = Database(
                config.database_url,
                echo=config.database_echo,
                pool_size=config.database_pool_size,
                max_overflow=config.database_max_overflow,
            )
            owned.append(db)
        db.connect()
        if db.url.startswith("sqlite") or config.environment == "local":
            db.create_all()

        app.state.settings = config
        app.state.database = db
        app.state.gateway = gateway or build_gateway_client(config)
        app.state.meeting_client = meeting_client or build_meeting_client(config)
        app.state.email_sender = email_sender or build_email_sender(config)
        if gateway is None:
            owned.append(app.state.gateway)
        if meeting_client is None:
            owned.append(app.state.meeting_client)

        logger.info("Consultbook API started", extra={"environment": config.environment})
        try:
            yield
        finally:
            for resource in reversed(owned):
                if isinstance(resource, Database):
                    resource.dispose()
                else:
                    resource.close()
            logger.info("Consultbook API stopped")

    app = FastAPI(
        title="Consultbook API",
        version="1.0.0",
        description="Slot booking and payment settlement for consultation sessions",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    for router in (
        availability_v1.router,
        bookings_v1.router,
        payments_v1.router,
        sessions_v1.router,
        health_v1.router,
    ):
        app.include_router(router, prefix=API_PREFIX)
    # Load balancers and scrapers also expect the unversioned paths.
    app.include_router(health_v1.router, include_in_schema=False)

    return app


app = create_app()
