# backend/app/routes/v1/bookings.py
"""
Booking group routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingLedgerService and
CancellationPolicyService.

Endpoints:
    POST / - Checkout a kitchen session with its add-ons (authorizes the hold)
    GET / - List booking groups (chef: own; manager/admin: by location)
    GET /cancellation-requests - Open cancellation requests for a location
    POST /cancellation-requests/{request_id}/resolve - Accept or decline a request
    GET /{group_id} - Booking group with add-ons
    POST /{group_id}/addons - Attach a storage or equipment add-on
    POST /{group_id}/transition - Guarded status change (admin)
    POST /{group_id}/approve - Confirm and capture (manager)
    POST /{group_id}/reject - Cancel a pending group (manager)
    POST /{group_id}/complete - Mark the session completed (manager)
    GET /{group_id}/cancellation - Preview what a cancellation would do
    POST /{group_id}/cancel - Cancel or request cancellation
"""

import asyncio
import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import (
    Principal,
    get_cancellation_service,
    get_current_principal,
    get_ledger_service,
    require_role,
)
from ...core.enums import RoleName
from ...schemas.booking import (
    AddonAttach,
    BookingGroupCreate,
    BookingGroupResponse,
    BookingRejection,
    BookingTransitionRequest,
    CancellationCreate,
    CancellationDecisionResponse,
    CancellationRequestResponse,
    CancellationResolve,
    CancellationResultResponse,
    EquipmentBookingResponse,
    StorageBookingResponse,
)
from ...services.booking_ledger_service import BookingLedgerService
from ...services.cancellation_policy_service import (
    CancellationDecision,
    CancellationPolicyService,
    CancellationResult,
)

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def decision_response(decision: CancellationDecision) -> CancellationDecisionResponse:
    return CancellationDecisionResponse(
        tier=decision.tier.value,
        allowed=decision.allowed,
        hours_until_start=round(decision.hours_until_start, 2),
        policy_hours=decision.policy_hours,
        within_window=decision.within_window,
        reason_code=decision.reason_code,
    )


def result_response(result: CancellationResult) -> CancellationResultResponse:
    request = (
        CancellationRequestResponse.model_validate(result.cancellation_request)
        if result.cancellation_request is not None
        else None
    )
    return CancellationResultResponse(
        tier=result.tier.value,
        booking_group_id=result.booking_group_id,
        storage_booking_id=result.storage_booking_id,
        status=result.status,
        payment_action=result.payment_action,
        refunded_cents=result.refunded_cents,
        cancellation_request=request,
    )


# ============================================================================
# SECTION 1: Static routes (no path parameters)
# ============================================================================


@router.post("", response_model=BookingGroupResponse, status_code=status.HTTP_201_CREATED)
async def checkout_booking_group(
    payload: BookingGroupCreate,
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    """Create a pending booking group and authorize one hold for its grand total."""
    group = await asyncio.to_thread(ledger.checkout_booking_group, principal.user_id, payload)
    return BookingGroupResponse.model_validate(group)


@router.get("", response_model=List[BookingGroupResponse])
async def list_booking_groups(
    location_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> List[BookingGroupResponse]:
    if principal.role == RoleName.CHEF:
        groups = await asyncio.to_thread(ledger.list_for_chef, principal.user_id, status_filter)
    else:
        if not location_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="location_id is required"
            )
        ledger.check_location_access(location_id, principal.user_id, principal.role)
        groups = await asyncio.to_thread(ledger.list_for_location, location_id, status_filter)
    return [BookingGroupResponse.model_validate(group) for group in groups]


@router.get("/cancellation-requests", response_model=List[CancellationRequestResponse])
async def list_cancellation_requests(
    location_id: str = Query(...),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> List[CancellationRequestResponse]:
    ledger.check_location_access(location_id, principal.user_id, principal.role)
    requests = await asyncio.to_thread(cancellation_service.list_open_requests, location_id)
    return [CancellationRequestResponse.model_validate(request) for request in requests]


@router.post(
    "/cancellation-requests/{request_id}/resolve", response_model=CancellationResultResponse
)
async def resolve_cancellation_request(
    payload: CancellationResolve,
    request_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> CancellationResultResponse:
    """Accept (cancel and refund) or decline (restore to confirmed) a cancellation request."""
    request = cancellation_service.get_request(request_id)
    group = ledger.get_booking_group(request.booking_group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_chef=False)
    result = await asyncio.to_thread(
        cancellation_service.resolve_cancellation_request,
        request_id,
        principal.user_id,
        payload.outcome,
        notes=payload.notes,
        refund_amount_cents=payload.refund_amount_cents,
    )
    return result_response(result)


# ============================================================================
# SECTION 2: Dynamic routes (with path parameters)
# ============================================================================


@router.get("/{group_id}", response_model=BookingGroupResponse)
async def get_booking_group(
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    group = await asyncio.to_thread(ledger.get_booking_group, group_id)
    ledger.check_group_access(group, principal.user_id, principal.role)
    return BookingGroupResponse.model_validate(group)


@router.post(
    "/{group_id}/addons",
    response_model=Union[StorageBookingResponse, EquipmentBookingResponse],
    status_code=status.HTTP_201_CREATED,
)
async def attach_addon(
    payload: AddonAttach,
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> Union[StorageBookingResponse, EquipmentBookingResponse]:
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_manager=False)
    addon = await asyncio.to_thread(ledger.attach_addon, group_id, payload)
    if payload.storage is not None:
        return StorageBookingResponse.model_validate(addon)
    return EquipmentBookingResponse.model_validate(addon)


@router.post("/{group_id}/transition", response_model=BookingGroupResponse)
async def transition_booking_group(
    payload: BookingTransitionRequest,
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    """Compare-and-set status change; 409 when the stored status is not ``from_status``."""
    group = await asyncio.to_thread(
        ledger.transition,
        group_id,
        payload.from_status,
        payload.to_status,
        actor_id=principal.user_id,
        reason=payload.reason,
    )
    return BookingGroupResponse.model_validate(group)


@router.post("/{group_id}/approve", response_model=BookingGroupResponse)
async def approve_booking_group(
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_chef=False)
    group = await asyncio.to_thread(ledger.approve_booking_group, group_id, principal.user_id)
    return BookingGroupResponse.model_validate(group)


@router.post("/{group_id}/reject", response_model=BookingGroupResponse)
async def reject_booking_group(
    payload: BookingRejection,
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_chef=False)
    group = await asyncio.to_thread(
        ledger.reject_booking_group, group_id, principal.user_id, payload.reason
    )
    return BookingGroupResponse.model_validate(group)


@router.post("/{group_id}/complete", response_model=BookingGroupResponse)
async def complete_booking_group(
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> BookingGroupResponse:
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_chef=False)
    group = await asyncio.to_thread(ledger.complete_booking_group, group_id, principal.user_id)
    return BookingGroupResponse.model_validate(group)


@router.get("/{group_id}/cancellation", response_model=CancellationDecisionResponse)
async def preview_cancellation(
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> CancellationDecisionResponse:
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role)
    decision = await asyncio.to_thread(cancellation_service.preview_group_cancellation, group_id)
    return decision_response(decision)


@router.post("/{group_id}/cancel", response_model=CancellationResultResponse)
async def cancel_booking_group(
    payload: CancellationCreate,
    group_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> CancellationResultResponse:
    """
    Cancel a booking group.

    Uncaptured bookings are cancelled immediately and their hold voided;
    confirmed bookings whose payment was captured open a manager review.
    """
    group = ledger.get_booking_group(group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_manager=False)
    result = await asyncio.to_thread(
        cancellation_service.request_group_cancellation,
        group_id,
        principal.user_id,
        payload.reason,
    )
    return result_response(result)
