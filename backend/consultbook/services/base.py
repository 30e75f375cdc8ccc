# backend/consultbook/services/base.py
"""
Base service.

Provides transaction management, operation timing and structured operation
logs for every service class.
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Dict, Iterator, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for service layer components.

    Subclasses receive a session; they never create one. A service method
    that changes state wraps its writes in ``self.transaction()`` so the
    whole unit commits or rolls back together.
    """

    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                self.db.add(entity)
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}") from e
        except Exception:
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator recording duration and outcome of a service method.

        Usage:
            @BaseService.measure_operation("reserve_slot")
            def reserve(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                success = False
                error_type = None
                db = getattr(self, "db", None)
                outermost = db is not None and not db.in_transaction()
                try:
                    result = func(self, *args, **kwargs)
                    if outermost:
                        self._close_autobegun_transaction(commit=True)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    if outermost:
                        self._close_autobegun_transaction(commit=False)
                    raise
                finally:
                    elapsed = time.time() - start_time
                    if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
                        self.logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )
                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="success" if success else "error",
                        error_type=error_type,
                    )

            setattr(wrapper, "_operation_name", operation_name)
            return cast(F, wrapper)

        return decorator

    def _close_autobegun_transaction(self, *, commit: bool) -> None:
        """
        End a transaction that a read after the last commit opened.

        An operation never leaves its session inside a transaction it did not
        inherit: on SQLite every BEGIN is IMMEDIATE, so a leftover read
        transaction would hold the write lock for every other connection.
        """
        if not self.db.in_transaction():
            return
        if commit:
            self.db.commit()
        else:
            self.db.rollback()

    def log_operation(self, operation: str, **context: Any) -> None:
        """Emit one structured log line for a business event."""
        extra: Dict[str, Any] = {"operation": operation, "service": self.__class__.__name__}
        extra.update(context)
        self.logger.info(f"{operation}", extra=extra)
