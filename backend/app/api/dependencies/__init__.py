# backend/app/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import Principal, get_current_principal, require_role
from .database import get_db
from .services import (
    get_cancellation_service,
    get_checkout_service,
    get_damage_claim_service,
    get_extension_service,
    get_ledger_service,
    get_overstay_service,
    get_payment_processor,
    get_payment_service,
)

__all__ = [
    # Auth
    "Principal",
    "get_current_principal",
    "require_role",
    # Database
    "get_db",
    # Services
    "get_cancellation_service",
    "get_checkout_service",
    "get_damage_claim_service",
    "get_extension_service",
    "get_ledger_service",
    "get_overstay_service",
    "get_payment_processor",
    "get_payment_service",
]
