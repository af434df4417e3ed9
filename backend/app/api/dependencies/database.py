# backend/app/api/dependencies/database.py
"""Request-scoped database session."""

from typing import Generator

from sqlalchemy.orm import Session

from ...database import SessionLocal, get_engine


def get_db() -> Generator[Session, None, None]:
    """
    Yield one session per request.

    Services commit their own units of work; whatever is still open when the
    request fails is rolled back before the connection goes back to the pool.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
