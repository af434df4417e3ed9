# backend/app/routes/v1/storage.py
"""
Storage booking routes - API v1

Versioned storage endpoints under /api/v1/storage-bookings.

Endpoints:
    GET /checkout-reviews - Checkout requests awaiting review at a location
    POST /extensions/{extension_id}/pay - Pay for an extension (chef)
    POST /extensions/{extension_id}/approve - Approve an extension (manager)
    POST /extensions/{extension_id}/reject - Reject and refund (manager)
    GET /{storage_booking_id} - Storage booking detail
    GET /{storage_booking_id}/cancellation - Preview a storage cancellation
    POST /{storage_booking_id}/cancel - Cancel or request cancellation (chef)
    POST /{storage_booking_id}/checkout - Request checkout (chef)
    POST /{storage_booking_id}/checkout/photos - Add checkout photos (chef)
    POST /{storage_booking_id}/checkout/approve - Approve checkout (manager)
    POST /{storage_booking_id}/checkout/deny - Deny checkout (manager)
    POST /{storage_booking_id}/checkout/claim - File a damage claim (manager)
    GET /{storage_booking_id}/extensions - Extension history
    POST /{storage_booking_id}/extensions - Request an extension (chef)
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status
from fastapi.params import Path

from ...api.dependencies import (
    Principal,
    get_cancellation_service,
    get_checkout_service,
    get_damage_claim_service,
    get_current_principal,
    get_extension_service,
    get_ledger_service,
    require_role,
)
from ...core.enums import RoleName
from ...models.booking import StorageBooking
from ...schemas.booking import (
    CancellationCreate,
    CancellationDecisionResponse,
    CancellationResultResponse,
    StorageBookingResponse,
)
from ...schemas.damage_claim import DamageClaimCreate, DamageClaimResponse
from ...schemas.storage import (
    CheckoutDenial,
    CheckoutPhotosAdd,
    CheckoutRequestCreate,
    ExtensionCreate,
    ExtensionRejection,
    StorageExtensionResponse,
)
from ...services.booking_ledger_service import BookingLedgerService
from ...services.cancellation_policy_service import CancellationPolicyService
from ...services.damage_claim_service import DamageClaimService
from ...services.storage_checkout_service import StorageCheckoutService
from ...services.storage_extension_service import StorageExtensionService
from .bookings import ULID_PATH_PATTERN, decision_response, result_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["storage-v1"])


def _authorize_storage(
    ledger: BookingLedgerService,
    storage_booking_id: str,
    principal: Principal,
    *,
    allow_chef: bool = True,
    allow_manager: bool = True,
) -> StorageBooking:
    booking = ledger.get_storage_booking(storage_booking_id)
    group = ledger.get_booking_group(booking.booking_group_id)
    ledger.check_group_access(
        group,
        principal.user_id,
        principal.role,
        allow_chef=allow_chef,
        allow_manager=allow_manager,
    )
    return booking


# ============================================================================
# SECTION 1: Static routes
# ============================================================================


@router.get("/checkout-reviews", response_model=List[StorageBookingResponse])
async def list_checkout_reviews(
    location_id: str = Query(...),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    checkout_service: StorageCheckoutService = Depends(get_checkout_service),
) -> List[StorageBookingResponse]:
    ledger.check_location_access(location_id, principal.user_id, principal.role)
    bookings = await asyncio.to_thread(checkout_service.list_pending_reviews, location_id)
    return [StorageBookingResponse.model_validate(booking) for booking in bookings]


@router.post("/extensions/{extension_id}/pay", response_model=StorageExtensionResponse)
async def pay_extension(
    extension_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    extension_service: StorageExtensionService = Depends(get_extension_service),
) -> StorageExtensionResponse:
    extension = extension_service.get_extension(extension_id)
    _authorize_storage(ledger, extension.storage_booking_id, principal, allow_manager=False)
    extension = await asyncio.to_thread(extension_service.pay_extension, extension_id)
    return StorageExtensionResponse.model_validate(extension)


@router.post("/extensions/{extension_id}/approve", response_model=StorageExtensionResponse)
async def approve_extension(
    extension_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    extension_service: StorageExtensionService = Depends(get_extension_service),
) -> StorageExtensionResponse:
    extension = extension_service.get_extension(extension_id)
    _authorize_storage(ledger, extension.storage_booking_id, principal, allow_chef=False)
    extension = await asyncio.to_thread(
        extension_service.approve_extension, extension_id, principal.user_id
    )
    return StorageExtensionResponse.model_validate(extension)


@router.post("/extensions/{extension_id}/reject", response_model=StorageExtensionResponse)
async def reject_extension(
    payload: ExtensionRejection,
    extension_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    extension_service: StorageExtensionService = Depends(get_extension_service),
) -> StorageExtensionResponse:
    extension = extension_service.get_extension(extension_id)
    _authorize_storage(ledger, extension.storage_booking_id, principal, allow_chef=False)
    extension = await asyncio.to_thread(
        extension_service.reject_extension, extension_id, principal.user_id, payload.reason
    )
    return StorageExtensionResponse.model_validate(extension)


# ============================================================================
# SECTION 2: Storage booking routes
# ============================================================================


@router.get("/{storage_booking_id}", response_model=StorageBookingResponse)
async def get_storage_booking(
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> StorageBookingResponse:
    booking = _authorize_storage(ledger, storage_booking_id, principal)
    return StorageBookingResponse.model_validate(booking)


@router.get("/{storage_booking_id}/cancellation", response_model=CancellationDecisionResponse)
async def preview_storage_cancellation(
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> CancellationDecisionResponse:
    _authorize_storage(ledger, storage_booking_id, principal)
    decision = await asyncio.to_thread(
        cancellation_service.preview_storage_cancellation, storage_booking_id
    )
    return decision_response(decision)


@router.post("/{storage_booking_id}/cancel", response_model=CancellationResultResponse)
async def cancel_storage_booking(
    payload: CancellationCreate,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    cancellation_service: CancellationPolicyService = Depends(get_cancellation_service),
) -> CancellationResultResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_manager=False)
    result = await asyncio.to_thread(
        cancellation_service.request_storage_cancellation,
        storage_booking_id,
        principal.user_id,
        payload.reason,
    )
    return result_response(result)


@router.post("/{storage_booking_id}/checkout", response_model=StorageBookingResponse)
async def request_checkout(
    payload: CheckoutRequestCreate,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    checkout_service: StorageCheckoutService = Depends(get_checkout_service),
) -> StorageBookingResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_manager=False)
    booking = await asyncio.to_thread(
        checkout_service.request_checkout,
        storage_booking_id,
        principal.user_id,
        notes=payload.notes,
        photo_urls=payload.photo_urls,
    )
    return StorageBookingResponse.model_validate(booking)


@router.post("/{storage_booking_id}/checkout/photos", response_model=StorageBookingResponse)
async def add_checkout_photos(
    payload: CheckoutPhotosAdd,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    checkout_service: StorageCheckoutService = Depends(get_checkout_service),
) -> StorageBookingResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_manager=False)
    booking = await asyncio.to_thread(
        checkout_service.add_checkout_photos, storage_booking_id, payload.photo_urls
    )
    return StorageBookingResponse.model_validate(booking)


@router.post("/{storage_booking_id}/checkout/approve", response_model=StorageBookingResponse)
async def approve_checkout(
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    checkout_service: StorageCheckoutService = Depends(get_checkout_service),
) -> StorageBookingResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_chef=False)
    booking = await asyncio.to_thread(
        checkout_service.approve_checkout, storage_booking_id, principal.user_id
    )
    return StorageBookingResponse.model_validate(booking)


@router.post("/{storage_booking_id}/checkout/deny", response_model=StorageBookingResponse)
async def deny_checkout(
    payload: CheckoutDenial,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    checkout_service: StorageCheckoutService = Depends(get_checkout_service),
) -> StorageBookingResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_chef=False)
    booking = await asyncio.to_thread(
        checkout_service.deny_checkout, storage_booking_id, principal.user_id, payload.reason
    )
    return StorageBookingResponse.model_validate(booking)


@router.post(
    "/{storage_booking_id}/checkout/claim",
    response_model=DamageClaimResponse,
    status_code=status.HTTP_201_CREATED,
)
async def file_damage_claim(
    payload: DamageClaimCreate,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    damage_claim_service: DamageClaimService = Depends(get_damage_claim_service),
) -> DamageClaimResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_chef=False)
    claim = await asyncio.to_thread(
        damage_claim_service.file_claim,
        storage_booking_id,
        principal.user_id,
        title=payload.title,
        description=payload.description,
        claimed_amount_cents=payload.claimed_amount_cents,
        damage_date=payload.damage_date,
    )
    return DamageClaimResponse.model_validate(claim)


@router.get("/{storage_booking_id}/extensions", response_model=List[StorageExtensionResponse])
async def list_extensions(
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    extension_service: StorageExtensionService = Depends(get_extension_service),
) -> List[StorageExtensionResponse]:
    _authorize_storage(ledger, storage_booking_id, principal)
    extensions = await asyncio.to_thread(extension_service.list_for_booking, storage_booking_id)
    return [StorageExtensionResponse.model_validate(extension) for extension in extensions]


@router.post(
    "/{storage_booking_id}/extensions",
    response_model=StorageExtensionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_extension(
    payload: ExtensionCreate,
    storage_booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.CHEF)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    extension_service: StorageExtensionService = Depends(get_extension_service),
) -> StorageExtensionResponse:
    _authorize_storage(ledger, storage_booking_id, principal, allow_manager=False)
    extension = await asyncio.to_thread(
        extension_service.request_extension,
        storage_booking_id,
        principal.user_id,
        payload.new_end_date,
    )
    return StorageExtensionResponse.model_validate(extension)
