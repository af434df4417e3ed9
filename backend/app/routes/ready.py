# backend/app/routes/ready.py
"""
Readiness check.

Ready means the transactional store answers. Redis only backs the optional
group mutex, so its state is reported but never fails the check.
"""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.dependencies import get_db
from app.core.config import settings

router = APIRouter(tags=["internal"])
logger = logging.getLogger(__name__)


class ReadinessResponse(BaseModel):
    status: str
    checks: Dict[str, str]


@router.get("/ready", response_model=ReadinessResponse)
def readiness(response: Response, db: Session = Depends(get_db)) -> ReadinessResponse:
    checks = {"booking_lock": "enabled" if settings.booking_lock_enabled else "disabled"}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Readiness check failed: %s", exc)
        checks["database"] = "unavailable"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status="db_not_ready", checks=checks)
    return ReadinessResponse(status="ok", checks=checks)
