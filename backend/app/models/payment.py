"""
Payment models for processor-backed authorizations.

A PaymentAuthorization mirrors one processor PaymentIntent. Booking holds are
authorized at checkout and captured on manager approval; extensions and
overstay penalties get their own authorizations. Amount invariants are
enforced by CHECK constraints as well as by the service layer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import ulid
from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from app.database import Base
from app.models.base_enum import enum_check


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PaymentAuthorizationStatus(str, Enum):
    AUTHORIZED_HOLD = "authorized_hold"
    CAPTURED = "captured"
    VOIDED = "voided"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentAuthorizationKind(str, Enum):
    BOOKING_HOLD = "booking_hold"
    STORAGE_EXTENSION = "storage_extension"
    OVERSTAY_PENALTY = "overstay_penalty"
    DAMAGE_CLAIM = "damage_claim"


class PaymentEventSource(str, Enum):
    API = "api"
    WEBHOOK = "webhook"
    RECONCILE = "reconcile"
    SWEEP = "sweep"


class PaymentAuthorization(Base):
    """Local ledger of one processor authorization."""

    __tablename__ = "payment_authorizations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    processor_authorization_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentAuthorizationKind.BOOKING_HOLD.value
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentAuthorizationStatus.AUTHORIZED_HOLD.value, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="cad")
    authorized_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    captured_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    authorized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now_utc, nullable=False
    )
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    events: Mapped[list["PaymentEvent"]] = relationship(
        "PaymentEvent", back_populates="authorization", order_by="PaymentEvent.created_at"
    )

    __table_args__ = (
        enum_check("status", PaymentAuthorizationStatus, "ck_payment_authorizations_status"),
        enum_check("kind", PaymentAuthorizationKind, "ck_payment_authorizations_kind"),
        CheckConstraint("authorized_amount_cents >= 0", name="ck_payment_authorizations_authorized"),
        CheckConstraint(
            "captured_amount_cents >= 0 AND captured_amount_cents <= authorized_amount_cents",
            name="ck_payment_authorizations_captured",
        ),
        CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= captured_amount_cents",
            name="ck_payment_authorizations_refunded",
        ),
    )

    @property
    def refundable_amount_cents(self) -> int:
        return max(0, int(self.captured_amount_cents or 0) - int(self.refunded_amount_cents or 0))

    def __repr__(self) -> str:
        return (
            f"<PaymentAuthorization {self.processor_authorization_id} status={self.status} "
            f"authorized={self.authorized_amount_cents} captured={self.captured_amount_cents} "
            f"refunded={self.refunded_amount_cents}>"
        )


class PaymentEvent(Base):
    """Append-only audit trail of everything that happened to an authorization."""

    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_authorization_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("payment_authorizations.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentEventSource.API.value)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now_utc, nullable=False
    )

    authorization: Mapped["PaymentAuthorization"] = relationship(
        "PaymentAuthorization", back_populates="events"
    )
