"""Unit tests for the pricing calculators."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import BelowMinimumException, ValidationException
from app.services.pricing_service import (
    calculate_tax,
    combined_booking_total,
    equipment_rental_price,
    extension_price,
    kitchen_slot_price,
    overstay_penalty_cents,
    platform_fee,
    round_cents,
    service_fee,
    storage_booking_price,
)

D0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestExtensionPrice:
    def test_five_days_with_tax(self):
        price = extension_price(1000, D0, D0 + timedelta(days=5), 1, 13)

        assert (
            price.extension_days,
            price.base_price_cents,
            price.tax_cents,
            price.total_price_cents,
        ) == (5, 5000, 650, 5650)

    def test_partial_day_rounds_up(self):
        price = extension_price(1000, D0, D0 + timedelta(days=2, hours=1), 1, None)

        assert price.extension_days == 3
        assert price.base_price_cents == 3000
        assert price.tax_cents == 0
        assert price.total_price_cents == 3000

    def test_below_listing_minimum_is_rejected(self):
        with pytest.raises(BelowMinimumException) as exc_info:
            extension_price(1000, D0, D0 + timedelta(days=2), 3, 13)

        assert exc_info.value.code == "BELOW_MINIMUM"

    @pytest.mark.parametrize("delta", [timedelta(0), timedelta(days=-1)])
    def test_new_end_must_be_after_current_end(self, delta):
        with pytest.raises(ValidationException) as exc_info:
            extension_price(1000, D0, D0 + delta, 1, 13)

        assert exc_info.value.code == "INVALID_EXTENSION_RANGE"

    def test_negative_rate_is_rejected(self):
        with pytest.raises(ValidationException):
            extension_price(-1, D0, D0 + timedelta(days=1), 1, 13)


class TestRounding:
    def test_round_half_up(self):
        assert round_cents(Decimal("2.5")) == 3
        assert round_cents(Decimal("3.5")) == 4
        assert round_cents("2.49") == 2

    def test_tax_rounds_half_up_not_to_even(self):
        # 50 * 13% = 6.5
        assert calculate_tax(50, 13) == 7
        assert calculate_tax(1005, Decimal("13")) == 131

    @pytest.mark.parametrize("rate", [None, 0, -5])
    def test_missing_or_non_positive_tax_rate(self, rate):
        assert calculate_tax(10000, rate) == 0


class TestFees:
    def test_platform_fee_percentage_plus_flat(self):
        fee = platform_fee(10000, "0.15", 30)

        assert fee.fee_cents == 1530
        assert fee.manager_receives_cents == 8470

    def test_platform_fee_defaults_from_settings(self, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "platform_fee_percentage", 0.1)
        monkeypatch.setattr(settings, "platform_flat_fee_cents", 0)

        assert platform_fee(10000).fee_cents == 1000

    def test_service_fee(self):
        assert service_fee(10000, 0) == 0
        assert service_fee(10000, "0.05") == 500

    def test_combined_total_taxes_the_whole_subtotal(self):
        total = combined_booking_total(10000, [3000], [2500], 13)

        assert total.subtotal_cents == 15500
        assert total.tax_cents == 2015
        assert total.grand_total_cents == 17515


class TestKitchenSlots:
    def test_single_slot(self):
        price = kitchen_slot_price(5000, ["10:00-12:00"], 1)

        assert price.start_time == time(10, 0)
        assert price.end_time == time(12, 0)
        assert price.billable_hours == Decimal(2)
        assert price.base_price_cents == 10000

    def test_non_contiguous_slots_sum_their_lengths(self):
        price = kitchen_slot_price(4000, ["14:00-15:30", "09:00-10:00"], 1)

        assert price.start_time == time(9, 0)
        assert price.end_time == time(15, 30)
        assert price.billable_hours == Decimal("2.5")
        assert price.base_price_cents == 10000

    def test_minimum_hours_floor(self):
        price = kitchen_slot_price(5000, ["10:00-11:00"], 3)

        assert price.billable_hours == Decimal(3)
        assert price.base_price_cents == 15000

    @pytest.mark.parametrize(
        "slots,code",
        [
            ([], "NO_SLOTS"),
            (["10:00-12:00", "11:00-13:00"], "OVERLAPPING_SLOTS"),
            (["12:00-10:00"], "INVALID_SLOT"),
            (["noon-one"], "INVALID_SLOT"),
        ],
    )
    def test_invalid_slots(self, slots, code):
        with pytest.raises(ValidationException) as exc_info:
            kitchen_slot_price(5000, slots, 1)

        assert exc_info.value.code == code


class TestStorageAndEquipment:
    def test_storage_priced_per_started_day(self):
        price = storage_booking_price(1000, D0, D0 + timedelta(days=3, minutes=1), 1)

        assert price.days == 4
        assert price.base_price_cents == 4000

    def test_storage_minimum_days(self):
        price = storage_booking_price(1000, D0, D0 + timedelta(days=3), 7)

        assert price.days == 7
        assert price.base_price_cents == 7000

    def test_storage_range_must_be_positive(self):
        with pytest.raises(ValidationException) as exc_info:
            storage_booking_price(1000, D0, D0, 1)

        assert exc_info.value.code == "INVALID_STORAGE_RANGE"

    def test_equipment_deposit_is_tracked_not_charged(self):
        price = equipment_rental_price(2500, 10000)

        assert price.rental_cents == 2500
        assert price.damage_deposit_cents == 10000


class TestOverstayPenalty:
    def test_rate_times_days(self):
        assert overstay_penalty_cents(2000, Decimal("0.5"), 3) == 3000

    def test_rounds_to_whole_cents(self):
        # 1999 * 0.1 = 199.9
        assert overstay_penalty_cents(1999, "0.1", 1) == 200

    def test_zero_days_is_free(self):
        assert overstay_penalty_cents(2000, Decimal("0.5"), 0) == 0
