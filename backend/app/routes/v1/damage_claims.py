# backend/app/routes/v1/damage_claims.py
"""
Damage claim routes - API v1

Versioned endpoints under /api/v1/damage-claims. Claims are filed through
POST /api/v1/storage-bookings/{id}/checkout/claim; unanswered claims are
approved by the scheduler.

Endpoints:
    GET / - Claims for a location (manager) or the caller's own (chef)
    GET /{claim_id} - One claim
    GET /{claim_id}/history - Append-only audit trail
    POST /{claim_id}/respond - Accept or dispute (chef)
    POST /{claim_id}/decision - Decide a disputed claim (admin)
    POST /{claim_id}/charge - Charge or retry charging an approved claim (manager)
    POST /{claim_id}/resolve - Close a claim whose charge failed (admin)
    POST /{claim_id}/refund - Refund a paid claim (manager)
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import (
    Principal,
    get_current_principal,
    get_damage_claim_service,
    get_ledger_service,
    require_role,
)
from ...core.enums import RoleName
from ...models.damage_claim import DamageClaim
from ...schemas.damage_claim import (
    DamageClaimChefResponse,
    DamageClaimDecisionCreate,
    DamageClaimHistoryResponse,
    DamageClaimList,
    DamageClaimRefund,
    DamageClaimResolve,
    DamageClaimResponse,
)
from ...services.booking_ledger_service import BookingLedgerService
from ...services.damage_claim_service import DamageClaimService
from .bookings import ULID_PATH_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(tags=["damage-claims-v1"])


def _authorize_claim(
    ledger: BookingLedgerService,
    damage_claim_service: DamageClaimService,
    claim_id: str,
    principal: Principal,
    *,
    allow_chef: bool = True,
    allow_manager: bool = True,
) -> DamageClaim:
    claim = damage_claim_service.get_claim(claim_id)
    group = ledger.get_booking_group(claim.booking_group_id)
    ledger.check_group_access(
        group, principal.user_id, principal.role, allow_chef=allow_chef, allow_manager=allow_manager
    )
    return claim


@router.get("", response_model=DamageClaimList)
async def list_damage_claims(
    location_id: Optional[str] = Query(None),
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimList:
    if principal.role == RoleName.CHEF:
        claims = await asyncio.to_thread(
            damage_claim_service.list_for_chef, principal.user_id, status_filter
        )
    else:
        if not location_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="location_id is required"
            )
        ledger.check_location_access(location_id, principal.user_id, principal.role)
        claims = await asyncio.to_thread(
            damage_claim_service.list_for_location, location_id, status_filter
        )
    items = [DamageClaimResponse.model_validate(claim) for claim in claims]
    return DamageClaimList(items=items, total=len(items))


@router.get("/{claim_id}", response_model=DamageClaimResponse)
async def get_damage_claim(
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    claim = _authorize_claim(ledger, damage_claim_service, claim_id, principal)
    return DamageClaimResponse.model_validate(claim)


@router.get("/{claim_id}/history", response_model=List[DamageClaimHistoryResponse])
async def get_damage_claim_history(
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> List[DamageClaimHistoryResponse]:
    _authorize_claim(ledger, damage_claim_service, claim_id, principal)
    history = await asyncio.to_thread(damage_claim_service.get_history, claim_id)
    return [DamageClaimHistoryResponse.model_validate(entry) for entry in history]


@router.post("/{claim_id}/respond", response_model=DamageClaimResponse)
async def respond_to_damage_claim(
    payload: DamageClaimChefResponse,
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    """Acceptance charges the claim right away; a declined card leaves it charge_failed."""
    _authorize_claim(ledger, damage_claim_service, claim_id, principal, allow_manager=False)
    claim = await asyncio.to_thread(
        damage_claim_service.respond_to_claim,
        claim_id,
        principal.user_id,
        accept=payload.accept,
        response=payload.response,
    )
    return DamageClaimResponse.model_validate(claim)


@router.post("/{claim_id}/decision", response_model=DamageClaimResponse)
async def decide_damage_claim(
    payload: DamageClaimDecisionCreate,
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    claim = await asyncio.to_thread(
        damage_claim_service.decide_claim,
        claim_id,
        principal.user_id,
        payload.decision,
        payload.reason,
        approved_amount_cents=payload.approved_amount_cents,
        notes=payload.notes,
    )
    return DamageClaimResponse.model_validate(claim)


@router.post("/{claim_id}/charge", response_model=DamageClaimResponse)
async def charge_damage_claim(
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    """A declined charge returns 200 with the claim in charge_failed."""
    _authorize_claim(ledger, damage_claim_service, claim_id, principal, allow_chef=False)
    claim = await asyncio.to_thread(damage_claim_service.charge_claim, claim_id, principal.user_id)
    return DamageClaimResponse.model_validate(claim)


@router.post("/{claim_id}/resolve", response_model=DamageClaimResponse)
async def resolve_failed_damage_claim(
    payload: DamageClaimResolve,
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    claim = await asyncio.to_thread(
        damage_claim_service.resolve_failed_claim, claim_id, principal.user_id, payload.notes
    )
    return DamageClaimResponse.model_validate(claim)


@router.post("/{claim_id}/refund", response_model=DamageClaimResponse)
async def refund_damage_claim(
    payload: DamageClaimRefund,
    claim_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    _authorize_claim(ledger, damage_claim_service, claim_id, principal, allow_chef=False)
    claim = await asyncio.to_thread(
        damage_claim_service.refund_claim,
        claim_id,
        principal.user_id,
        amount_cents=payload.amount_cents,
        reason=payload.reason,
    )
    return DamageClaimResponse.model_validate(claim)
