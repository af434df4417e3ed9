# backend/app/core/enums.py
"""
Core enums shared across the booking core.

Roles are resolved upstream by the identity gateway; the core only reads them.
"""

from enum import Enum


class RoleName(str, Enum):
    """Roles recognized on inbound commands."""

    ADMIN = "admin"
    MANAGER = "manager"
    CHEF = "chef"


class ActorSource(str, Enum):
    """Who or what initiated a state transition."""

    CHEF = "chef"
    MANAGER = "manager"
    ADMIN = "admin"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    RECONCILE = "reconcile"

    @classmethod
    def from_role(cls, role: RoleName) -> "ActorSource":
        return cls(role.value)
