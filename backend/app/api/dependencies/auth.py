# backend/app/api/dependencies/auth.py
"""
Caller identity dependencies.

Authentication happens at the gateway in front of the booking core. The
gateway forwards the verified user id and role as ``X-User-Id`` and
``X-User-Role``; the core trusts them and only enforces role checks.
"""

from dataclasses import dataclass
import logging
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, status

from ...core.enums import ActorSource, RoleName

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of one request."""

    user_id: str
    role: RoleName

    @property
    def source(self) -> ActorSource:
        return ActorSource.from_role(self.role)

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN


def get_current_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    """Resolve the caller from gateway headers; 401 when missing, 403 on unknown role."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        role = RoleName((x_user_role or "").strip().lower())
    except ValueError:
        logger.warning("Rejected request with unknown role %r for user %s", x_user_role, user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role",
        )
    return Principal(user_id=user_id, role=role)


def require_role(*roles: RoleName) -> Callable[..., Principal]:
    """
    Dependency factory that admits only the given roles.

    Admins are always admitted.

    Usage:
        @router.post("/approve")
        def approve(principal: Principal = Depends(require_role(RoleName.MANAGER))):
            ...
    """
    allowed = set(roles) | {RoleName.ADMIN}

    def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(sorted(r.value for r in allowed))}",
            )
        return principal

    return _dependency


require_chef = require_role(RoleName.CHEF)
require_manager = require_role(RoleName.MANAGER)
require_admin = require_role()
