# backend/app/routes/v1/overstays.py
"""
Overstay penalty routes - API v1

Versioned endpoints under /api/v1/overstays. Detection and grace-period
handling run on the scheduler; these routes cover the manager review and
settlement steps.

Endpoints:
    GET / - Records for a location (manager) or the caller's own (chef)
    GET /stats - Per-status counts and collected amount for a location
    GET /{record_id} - One record
    GET /{record_id}/history - Append-only audit trail
    POST /{record_id}/approve - Approve the penalty, optionally lowered
    POST /{record_id}/waive - Waive and resolve
    POST /{record_id}/charge - Charge the approved penalty off-session
    POST /{record_id}/resolve - Close an escalated record (admin)
    POST /{record_id}/refund - Refund a charged penalty
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import (
    Principal,
    get_current_principal,
    get_ledger_service,
    get_overstay_service,
    require_role,
)
from ...core.enums import RoleName
from ...models.overstay import OverstayPenaltyRecord
from ...schemas.overstay import (
    EscalationResolution,
    OverstayHistoryResponse,
    OverstayRecordList,
    OverstayRecordResponse,
    OverstayStatsResponse,
    PenaltyApproval,
    PenaltyRefund,
    PenaltyWaiver,
)
from ...services.booking_ledger_service import BookingLedgerService
from ...services.overstay_penalty_service import OverstayPenaltyService
from .bookings import ULID_PATH_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(tags=["overstays-v1"])


def _authorize_record(
    ledger: BookingLedgerService,
    overstay_service: OverstayPenaltyService,
    record_id: str,
    principal: Principal,
    *,
    allow_chef: bool = True,
) -> OverstayPenaltyRecord:
    record = overstay_service.get_record(record_id)
    booking = ledger.get_storage_booking(record.storage_booking_id)
    group = ledger.get_booking_group(booking.booking_group_id)
    ledger.check_group_access(group, principal.user_id, principal.role, allow_chef=allow_chef)
    return record


@router.get("", response_model=OverstayRecordList)
async def list_overstays(
    location_id: Optional[str] = Query(None),
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordList:
    if principal.role == RoleName.CHEF:
        records = await asyncio.to_thread(
            overstay_service.list_for_chef, principal.user_id, status_filter
        )
    else:
        if not location_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="location_id is required"
            )
        ledger.check_location_access(location_id, principal.user_id, principal.role)
        records = await asyncio.to_thread(
            overstay_service.list_for_location, location_id, status_filter
        )
    items = [OverstayRecordResponse.model_validate(record) for record in records]
    return OverstayRecordList(items=items, total=len(items))


@router.get("/stats", response_model=OverstayStatsResponse)
async def overstay_stats(
    location_id: str = Query(...),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayStatsResponse:
    ledger.check_location_access(location_id, principal.user_id, principal.role)
    stats = await asyncio.to_thread(overstay_service.stats_for_location, location_id)
    return OverstayStatsResponse(**stats)


@router.get("/{record_id}", response_model=OverstayRecordResponse)
async def get_overstay(
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    record = _authorize_record(ledger, overstay_service, record_id, principal)
    return OverstayRecordResponse.model_validate(record)


@router.get("/{record_id}/history", response_model=List[OverstayHistoryResponse])
async def get_overstay_history(
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(get_current_principal),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> List[OverstayHistoryResponse]:
    _authorize_record(ledger, overstay_service, record_id, principal)
    history = await asyncio.to_thread(overstay_service.get_history, record_id)
    return [OverstayHistoryResponse.model_validate(entry) for entry in history]


@router.post("/{record_id}/approve", response_model=OverstayRecordResponse)
async def approve_penalty(
    payload: PenaltyApproval,
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    _authorize_record(ledger, overstay_service, record_id, principal, allow_chef=False)
    record = await asyncio.to_thread(
        overstay_service.approve_penalty,
        record_id,
        principal.user_id,
        final_penalty_cents=payload.final_penalty_cents,
        notes=payload.notes,
    )
    return OverstayRecordResponse.model_validate(record)


@router.post("/{record_id}/waive", response_model=OverstayRecordResponse)
async def waive_penalty(
    payload: PenaltyWaiver,
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    _authorize_record(ledger, overstay_service, record_id, principal, allow_chef=False)
    record = await asyncio.to_thread(
        overstay_service.waive_penalty, record_id, principal.user_id, payload.reason
    )
    return OverstayRecordResponse.model_validate(record)


@router.post("/{record_id}/charge", response_model=OverstayRecordResponse)
async def charge_penalty(
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    """A declined charge returns 200 with the record escalated."""
    _authorize_record(ledger, overstay_service, record_id, principal, allow_chef=False)
    record = await asyncio.to_thread(overstay_service.charge_penalty, record_id, principal.user_id)
    return OverstayRecordResponse.model_validate(record)


@router.post("/{record_id}/resolve", response_model=OverstayRecordResponse)
async def resolve_escalated(
    payload: EscalationResolution,
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    record = await asyncio.to_thread(
        overstay_service.resolve_escalated, record_id, principal.user_id, payload.notes
    )
    return OverstayRecordResponse.model_validate(record)


@router.post("/{record_id}/refund", response_model=OverstayRecordResponse)
async def refund_penalty(
    payload: PenaltyRefund,
    record_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role(RoleName.MANAGER)),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    overstay_service: OverstayPenaltyService = Depends(get_overstay_service),
) -> OverstayRecordResponse:
    _authorize_record(ledger, overstay_service, record_id, principal, allow_chef=False)
    record = await asyncio.to_thread(
        overstay_service.refund_penalty,
        record_id,
        principal.user_id,
        amount_cents=payload.amount_cents,
        reason=payload.reason,
    )
    return OverstayRecordResponse.model_validate(record)
