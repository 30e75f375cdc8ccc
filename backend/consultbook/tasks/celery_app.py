# backend/consultbook/tasks/celery_app.py
"""
Celery application configuration.

Redis is the broker. Each worker process builds its own ``Database`` and
remote clients in ``worker_process_init`` and releases them at shutdown;
tasks reach them through :func:`get_worker_resources`.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from typing import Any, Dict, Iterator, Optional, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging, worker_process_init, worker_process_shutdown
from sqlalchemy.orm import Session

from ..core.config import Settings, settings
from ..database import Database
from ..integrations.meeting_client import build_meeting_client
from ..integrations.razorpay_client import RazorpayClient, build_gateway_client
from ..services.notification_service import build_email_sender

logger = logging.getLogger(__name__)


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Broker priority: CELERY_BROKER_URL, then REDIS_URL, then settings.redis_url.
    """
    broker_url = (
        os.getenv("CELERY_BROKER_URL")
        or os.getenv("REDIS_URL")
        or settings.redis_url
        or "redis://localhost:6379"
    )
    if not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url}/0"

    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("consultbook", broker=broker_url, backend=result_backend)

    base_config = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": settings.default_timezone,
        "enable_utc": True,
        "task_ignore_result": True,
        "worker_prefetch_multiplier": 1,
        "worker_max_tasks_per_child": 1000,
        "task_soft_time_limit": 120,
        "task_time_limit": 300,
        # A lost worker must not lose a settlement-side effect.
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "task_default_retry_delay": 60,
        "worker_hijack_root_logger": False,
        "worker_redirect_stdouts": True,
        "worker_redirect_stdouts_level": "INFO",
        "broker_transport_options": {"visibility_timeout": 3600, "polling_interval": 2.0},
    }
    celery_app.conf.update(base_config)

    celery_app.conf.imports = tuple(
        set(celery_app.conf.imports or ())
        | {
            "consultbook.tasks.outbox_tasks",
            "consultbook.tasks.reservation_tasks",
            "consultbook.tasks.payment_tasks",
            "consultbook.tasks.session_tasks",
        }
    )

    celery_app.conf.task_routes = {
        "outbox.*": {"queue": "notifications"},
        "reservations.*": {"queue": "bookings"},
        "sessions.*": {"queue": "bookings"},
        "payments.*": {"queue": "payments"},
    }

    from .beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Use the application's log format instead of Celery's."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task that logs every failure, retry and success."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "task_args": str(args),
                "task_kwargs": str(kwargs),
            },
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "retry_count": self.request.retries,
            },
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any) -> None:
        logger.info(
            f"Task {self.name}[{task_id}] completed successfully",
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_success(retval, task_id, args, kwargs)


celery_app.Task = cast(Type[Task], BaseTask)


# ---------------------------------------------------------------------------
# Per-process resources
# ---------------------------------------------------------------------------


@dataclass
class WorkerResources:
    config: Settings
    database: Database
    gateway: RazorpayClient
    meeting_client: Any
    email_sender: Any

    def close(self) -> None:
        self.gateway.close()
        self.meeting_client.close()
        self.database.dispose()


_resources: Optional[WorkerResources] = None


def build_worker_resources(config: Optional[Settings] = None) -> WorkerResources:
    config = config or settings
    database = Database(
        config.database_url,
        echo=config.database_echo,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
    ).connect()
    return WorkerResources(
        config=config,
        database=database,
        gateway=build_gateway_client(config),
        meeting_client=build_meeting_client(config),
        email_sender=build_email_sender(config),
    )


def set_worker_resources(resources: Optional[WorkerResources]) -> None:
    global _resources
    _resources = resources


def get_worker_resources() -> WorkerResources:
    """Resources of this worker process, built on first use outside a prefork child."""
    global _resources
    if _resources is None:
        _resources = build_worker_resources()
    return _resources


@worker_process_init.connect  # type: ignore[misc]
def _init_worker_process(**kwargs: Any) -> None:
    set_worker_resources(build_worker_resources())
    logger.info("Worker process resources ready")


@worker_process_shutdown.connect  # type: ignore[misc]
def _shutdown_worker_process(**kwargs: Any) -> None:
    global _resources
    if _resources is not None:
        _resources.close()
        _resources = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """Transactional session on the worker's database."""
    with get_worker_resources().database.session_scope() as session:
        yield session


@celery_app.task(name="consultbook.tasks.health_check")  # type: ignore[misc]
def health_check() -> Dict[str, str]:
    current_task = celery_app.current_task
    return {
        "status": "healthy",
        "worker": current_task.request.hostname if current_task else "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
