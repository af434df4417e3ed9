# backend/app/repositories/base_repository.py
"""
Base repository for the booking core.

Repositories never commit: the service layer owns the unit of work. Status
columns are only written through ``compare_and_set`` so a concurrent writer
that already moved the row makes the second write a no-op the caller can see.
"""

from contextlib import contextmanager
from enum import Enum
import logging
from typing import Any, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _raw(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class BaseRepository(Generic[T]):
    """Shared lookups, savepointed inserts and compare-and-swap updates for one model."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @contextmanager
    def _wrap_errors(self, action: str, entity_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            self.logger.warning(
                "Integrity error while trying to %s %s: %s", action, self.model.__name__, exc.orig
            )
            raise RepositoryException(f"Integrity constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.logger.error(
                "Failed to %s %s %s: %s", action, self.model.__name__, entity_id or "", exc
            )
            raise RepositoryException(f"Failed to {action} {self.model.__name__}: {exc}") from exc

    def get_by_id(self, id: str) -> Optional[T]:
        with self._wrap_errors("load", id):
            return self.db.get(self.model, id)

    def get_for_update(self, id: str) -> Optional[T]:
        """``SELECT ... FOR UPDATE`` where the dialect has it; always re-reads the row."""
        stmt = (
            select(self.model)
            .where(self.model.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        with self._wrap_errors("lock", id):
            return self.db.execute(stmt).scalars().first()

    def find_one_by(self, **criteria: Any) -> Optional[T]:
        with self._wrap_errors("find"):
            return self.db.query(self.model).filter_by(**criteria).first()

    def create(self, **kwargs: Any) -> T:
        """
        Add and flush a new row without committing.

        The insert runs in a savepoint, so a uniqueness violation discards only
        this row and leaves the caller's unit usable.
        """
        entity = self.model(**kwargs)
        with self._wrap_errors("create"):
            with self.db.begin_nested():
                self.db.add(entity)
                self.db.flush()
        return entity

    def flush(self) -> None:
        self.db.flush()

    def compare_and_set(
        self,
        id: str,
        expected: Any,
        new: Any,
        *,
        column: str = "status",
        guards: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> bool:
        """
        Write ``column = new`` (plus ``values``) only if it still equals ``expected``.

        ``guards`` adds further equality conditions, for writes that keep the
        status but must still serialize (repeated partial refunds).

        Returns True when exactly one row changed. In-session instances are
        synchronized with the written values.
        """
        conditions = [self.model.id == id, getattr(self.model, column) == _raw(expected)]
        conditions.extend(
            getattr(self.model, name) == _raw(value) for name, value in (guards or {}).items()
        )
        payload = {column: _raw(new)}
        payload.update({key: _raw(value) for key, value in values.items()})
        stmt = (
            update(self.model)
            .where(*conditions)
            .values(**payload)
            .execution_options(synchronize_session="fetch")
        )
        with self._wrap_errors("update", id):
            result = self.db.execute(stmt)
        return result.rowcount == 1

    def _build_query(self) -> Query:
        return self.db.query(self.model)

    def _execute_query(self, query: Query) -> List[T]:
        with self._wrap_errors("query"):
            return query.all()
