# backend/app/errors.py
"""
Problem+JSON error envelope shared by every route.

Every error body carries ``type``, ``title``, ``status``, ``detail`` and
``instance``; domain errors add their stable ``code`` and, when present, the
structured ``errors`` payload (for example the expected and actual status of
a refused transition).
"""

from http import HTTPStatus
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def _title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def problem_response(
    request: Request,
    status_code: int,
    detail: Any = None,
    *,
    code: Optional[str] = None,
    errors: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {
        "type": "about:blank",
        "title": _title(status_code),
        "status": status_code,
        "detail": detail or "",
        "instance": request.url.path,
    }
    if code:
        body["code"] = code
    if errors is not None:
        body["errors"] = jsonable_encoder(errors)
    return JSONResponse(
        body, status_code=status_code, headers=headers, media_type=PROBLEM_MEDIA_TYPE
    )


def _split_detail(detail: Any) -> Tuple[Optional[str], Optional[str], Any]:
    """HTTPException details are either a message or a ``DomainException.to_dict()``."""
    if isinstance(detail, dict):
        message = detail.get("message") or detail.get("detail")
        code = detail.get("code")
        return (
            message if isinstance(message, str) else None,
            code if isinstance(code, str) else None,
            detail.get("details") or detail.get("errors"),
        )
    if detail is None:
        return None, None, None
    return str(detail), None, None


async def _domain_error(request: Request, exc: DomainException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Domain error on %s: %s", request.url.path, exc.message, extra={"code": exc.code}
        )
    return problem_response(
        request, exc.status_code, exc.message, code=exc.code, errors=exc.details or None
    )


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message, code, errors = _split_detail(exc.detail)
    return problem_response(
        request,
        exc.status_code,
        message,
        code=code,
        errors=errors,
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = jsonable_encoder(exc.errors())
    return problem_response(request, 422, problems, code="validation_error", errors=problems)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return problem_response(
        request, 500, "Internal Server Error", code="internal_server_error"
    )


def register_error_handlers(app: FastAPI) -> None:
    # fastapi.HTTPException subclasses Starlette's, so one handler covers both
    app.add_exception_handler(DomainException, _domain_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error)
