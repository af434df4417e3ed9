# backend/app/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.routing import APIRoute

from .core.config import settings
from .core.constants import API_DESCRIPTION, API_TITLE, API_VERSION, BRAND_NAME
from .database import get_engine
from .errors import register_error_handlers
from .routes import prometheus, ready
from .routes.v1 import (
    bookings as bookings_v1,
    damage_claims as damage_claims_v1,
    overstays as overstays_v1,
    payments as payments_v1,
    storage as storage_v1,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(f"{BRAND_NAME} booking core starting up...")
    logger.info(f"Environment: {settings.environment}")
    if not settings.stripe_configured:
        logger.warning("Stripe secret key not configured; payment calls will fail")
    get_engine()
    yield
    logger.info(f"{BRAND_NAME} booking core shutting down...")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
    generate_unique_id_function=_unique_operation_id,
)
register_error_handlers(app)

api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(bookings_v1.router, prefix="/bookings")
api_v1.include_router(storage_v1.router, prefix="/storage-bookings")
api_v1.include_router(overstays_v1.router, prefix="/overstays")
api_v1.include_router(damage_claims_v1.router, prefix="/damage-claims")
api_v1.include_router(payments_v1.router, prefix="/payments")
app.include_router(api_v1)

# Unversioned infrastructure routes: load balancers and Prometheus depend on these paths
app.include_router(ready.router)
app.include_router(prometheus.router)


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "healthy", "service": API_TITLE, "version": API_VERSION}
