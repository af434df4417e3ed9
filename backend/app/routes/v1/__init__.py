# backend/app/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
All new endpoints should be added here.
"""

from . import bookings, damage_claims, overstays, payments, storage

__all__ = [
    "bookings",
    "damage_claims",
    "overstays",
    "payments",
    "storage",
]
