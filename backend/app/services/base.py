# backend/app/services/base.py
"""
Base service for the booking core.

Public commands own their unit of work: one transaction, and for anything
that touches a booking group, the group mutex taken before it. Helpers that
other services call from inside a unit only flush.
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.booking_lock import booking_lock
from ..core.exceptions import BookingLockedException, RepositoryException, ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Commit on clean exit, roll back on any error.

        Database errors surface as ServiceException; domain errors raised inside
        the block propagate unchanged after the rollback.
        """
        try:
            yield self.db
            self.db.commit()
        except (SQLAlchemyError, RepositoryException) as exc:
            self.db.rollback()
            self.logger.error("Transaction rolled back: %s", exc)
            raise ServiceException(f"Database operation failed: {exc}") from exc
        except Exception:
            self.db.rollback()
            raise

    @contextmanager
    def aggregate_unit(self, booking_group_id: str) -> Iterator[Session]:
        """Group mutex, then one transaction. A busy mutex raises BookingLockedException."""
        with booking_lock(booking_group_id) as acquired:
            if not acquired:
                raise BookingLockedException(booking_group_id)
            with self.transaction() as session:
                yield session

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Time a service method and export it as a Prometheus histogram sample.

        Usage:
            @BaseService.measure_operation("approve_booking_group")
            def approve_booking_group(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self, *args, **kwargs):  # type: ignore[no-untyped-def]
                started = time.perf_counter()
                error_type = None
                try:
                    return func(self, *args, **kwargs)
                except Exception as exc:
                    error_type = type(exc).__name__
                    raise
                finally:
                    elapsed = time.perf_counter() - started
                    if elapsed > SLOW_OPERATION_SECONDS:
                        self.logger.warning(
                            "Slow operation: %s took %.2fs", operation_name, elapsed
                        )
                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="error" if error_type else "success",
                        error_type=error_type,
                    )

            return cast(F, wrapper)

        return decorator

    def log_operation(self, operation: str, **context: Any) -> None:
        """Structured info log; ``context`` lands in the record's extras."""
        self.logger.info("Operation: %s", operation, extra={"operation": operation, **context})
