"""
Pricing calculators for bookings, storage extensions and fees.

Everything here is a pure function over integer cents. "Round" always means
round half up on exact decimal arithmetic, never float banker's rounding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from app.core.config import settings
from app.core.exceptions import BelowMinimumException, ValidationException
from app.core.timezone_utils import ceil_days_between

Number = Union[int, float, Decimal, str]


def _dec(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_cents(value: Number) -> int:
    return int(_dec(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_tax(base_cents: int, tax_rate_percent: Optional[Number]) -> int:
    """Tax on a base amount; a missing or non-positive rate means no tax."""
    if tax_rate_percent is None:
        return 0
    rate = _dec(tax_rate_percent)
    if rate <= 0:
        return 0
    return round_cents(_dec(base_cents) * rate / Decimal(100))


@dataclass(frozen=True)
class ExtensionPrice:
    extension_days: int
    base_price_cents: int
    tax_cents: int
    total_price_cents: int


def extension_price(
    daily_rate_cents: int,
    current_end: datetime,
    new_end: datetime,
    minimum_duration_days: int,
    tax_rate_percent: Optional[Number],
) -> ExtensionPrice:
    """
    Price a storage extension from ``current_end`` to ``new_end``.

    Partial days round up. A range shorter than the listing minimum raises
    BelowMinimumException.
    """
    if daily_rate_cents < 0:
        raise ValidationException("Daily rate must not be negative", code="INVALID_RATE")
    requested_days = ceil_days_between(current_end, new_end)
    if requested_days <= 0:
        raise ValidationException(
            "New end date must be after the current end date",
            code="INVALID_EXTENSION_RANGE",
            details={
                "current_end": current_end.isoformat(),
                "new_end": new_end.isoformat(),
            },
        )
    minimum = max(1, int(minimum_duration_days or 1))
    if requested_days < minimum:
        raise BelowMinimumException(requested_days, minimum)
    days = max(requested_days, minimum)
    base = daily_rate_cents * days
    tax = calculate_tax(base, tax_rate_percent)
    return ExtensionPrice(
        extension_days=days,
        base_price_cents=base,
        tax_cents=tax,
        total_price_cents=base + tax,
    )


@dataclass(frozen=True)
class PlatformFee:
    fee_cents: int
    manager_receives_cents: int


def platform_fee(
    base_cents: int,
    percentage_fee: Optional[Number] = None,
    flat_fee_cents: Optional[int] = None,
) -> PlatformFee:
    """Marketplace commission on a manager payout; defaults come from settings."""
    if percentage_fee is None:
        percentage_fee = settings.platform_fee_percentage
    if flat_fee_cents is None:
        flat_fee_cents = settings.platform_flat_fee_cents
    fee = round_cents(_dec(base_cents) * _dec(percentage_fee) + _dec(flat_fee_cents))
    return PlatformFee(fee_cents=fee, manager_receives_cents=base_cents - fee)


def service_fee(base_cents: int, rate: Number) -> int:
    if _dec(rate) <= 0:
        return 0
    return round_cents(_dec(base_cents) * _dec(rate))


@dataclass(frozen=True)
class CombinedTotal:
    subtotal_cents: int
    tax_cents: int
    grand_total_cents: int


def combined_booking_total(
    kitchen_base_cents: int,
    storage_base_cents: Iterable[int],
    equipment_base_cents: Iterable[int],
    tax_rate_percent: Optional[Number],
) -> CombinedTotal:
    subtotal = kitchen_base_cents + sum(storage_base_cents) + sum(equipment_base_cents)
    tax = calculate_tax(subtotal, tax_rate_percent)
    return CombinedTotal(subtotal_cents=subtotal, tax_cents=tax, grand_total_cents=subtotal + tax)


# Listing prices


def parse_slot(slot: str) -> Tuple[time, time]:
    """Parse an ``"HH:MM-HH:MM"`` slot into start and end times."""
    try:
        start_raw, end_raw = slot.split("-", 1)
        start = time.fromisoformat(start_raw.strip())
        end = time.fromisoformat(end_raw.strip())
    except ValueError as exc:
        raise ValidationException(
            f"Invalid time slot {slot!r}", code="INVALID_SLOT", details={"slot": slot}
        ) from exc
    if end <= start:
        raise ValidationException(
            f"Time slot {slot!r} must end after it starts",
            code="INVALID_SLOT",
            details={"slot": slot},
        )
    return start, end


def _slot_hours(start: time, end: time) -> Decimal:
    minutes = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
    return Decimal(minutes) / Decimal(60)


@dataclass(frozen=True)
class KitchenSlotPrice:
    start_time: time
    end_time: time
    billable_hours: Decimal
    base_price_cents: int


def kitchen_slot_price(
    hourly_rate_cents: int,
    slots: Sequence[str],
    minimum_booking_hours: int = 1,
) -> KitchenSlotPrice:
    """
    Price the selected kitchen slots.

    Slots may be non-contiguous; billable hours are the sum of slot lengths,
    floored at the kitchen's minimum booking hours.
    """
    if not slots:
        raise ValidationException("At least one time slot is required", code="NO_SLOTS")
    parsed: List[Tuple[time, time]] = sorted(parse_slot(slot) for slot in slots)
    for (_, previous_end), (next_start, _) in zip(parsed, parsed[1:]):
        if next_start < previous_end:
            raise ValidationException("Time slots overlap", code="OVERLAPPING_SLOTS")
    hours = sum((_slot_hours(start, end) for start, end in parsed), Decimal(0))
    billable = max(hours, Decimal(max(0, minimum_booking_hours)))
    return KitchenSlotPrice(
        start_time=parsed[0][0],
        end_time=parsed[-1][1],
        billable_hours=billable,
        base_price_cents=round_cents(_dec(hourly_rate_cents) * billable),
    )


@dataclass(frozen=True)
class StoragePrice:
    days: int
    base_price_cents: int


def storage_booking_price(
    daily_rate_cents: int,
    start: datetime,
    end: datetime,
    minimum_booking_days: int = 1,
) -> StoragePrice:
    days = ceil_days_between(start, end)
    if days <= 0:
        raise ValidationException(
            "Storage end date must be after its start date", code="INVALID_STORAGE_RANGE"
        )
    days = max(days, max(1, minimum_booking_days))
    return StoragePrice(days=days, base_price_cents=daily_rate_cents * days)


@dataclass(frozen=True)
class EquipmentPrice:
    rental_cents: int
    damage_deposit_cents: int


def equipment_rental_price(session_rate_cents: int, damage_deposit_cents: int = 0) -> EquipmentPrice:
    """Equipment is rented per kitchen session; the deposit is tracked, not charged here."""
    return EquipmentPrice(rental_cents=session_rate_cents, damage_deposit_cents=damage_deposit_cents)


def overstay_penalty_cents(daily_rate_cents: int, penalty_rate: Number, days_overdue: int) -> int:
    return round_cents(_dec(daily_rate_cents) * _dec(penalty_rate) * days_overdue)
