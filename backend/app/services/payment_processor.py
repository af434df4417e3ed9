"""
Payment processor boundary.

Only the PaymentAuthorizationService talks to a processor. Implementations
raise ProcessorTransientError for failures worth retrying (network, rate
limit, processor-side 5xx) and ProcessorDeclinedError for final answers
(card declined, invalid request). ``call_with_backoff`` turns both into
PaymentFailureException once the retry attempts are spent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

import stripe

from app.core.config import settings
from app.core.exceptions import PaymentFailureException
from app.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ProcessorError(Exception):
    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ProcessorTransientError(ProcessorError):
    """Failure that may succeed if retried."""


class ProcessorDeclinedError(ProcessorError):
    """Final rejection; retrying cannot help."""


@dataclass(frozen=True)
class ProcessorResult:
    authorization_id: str
    status: str
    amount_cents: int
    charge_id: Optional[str] = None


@dataclass(frozen=True)
class ProcessorSnapshot:
    """Canonical processor-side view of one authorization, used by reconciliation."""

    authorization_id: str
    status: str  # authorized_hold | captured | voided | unknown
    amount_capturable_cents: int = 0
    amount_received_cents: int = 0
    amount_refunded_cents: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    def authorize(
        self,
        amount_cents: int,
        *,
        currency: str,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProcessorResult:
        ...

    def capture(self, authorization_id: str, amount_cents: int, *, idempotency_key: str) -> ProcessorResult:
        ...

    def void(self, authorization_id: str, *, idempotency_key: str) -> ProcessorResult:
        ...

    def refund(self, authorization_id: str, amount_cents: int, *, idempotency_key: str) -> ProcessorResult:
        ...

    def charge_off_session(
        self,
        amount_cents: int,
        *,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProcessorResult:
        ...

    def retrieve(self, authorization_id: str) -> ProcessorSnapshot:
        ...


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_seconds * (2**attempt), max_seconds)


def call_with_backoff(
    operation: str,
    func: Callable[[], R],
    *,
    authorization_id: Optional[str] = None,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    max_backoff_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> R:
    """
    Run a processor call with bounded exponential backoff.

    Only ProcessorTransientError is retried. Raises PaymentFailureException on
    a decline or when every attempt failed.
    """
    attempts_allowed = max_attempts or settings.payment_retry_max_attempts
    base = settings.payment_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    ceiling = (
        settings.payment_retry_backoff_max_seconds
        if max_backoff_seconds is None
        else max_backoff_seconds
    )

    for attempt in range(attempts_allowed):
        try:
            result = func()
            prometheus_metrics.record_processor_call(operation, "success")
            return result
        except ProcessorDeclinedError as exc:
            prometheus_metrics.record_processor_call(operation, "declined")
            logger.warning(
                "processor_declined",
                extra={"operation": operation, "authorization_id": authorization_id, "code": exc.code},
            )
            raise PaymentFailureException(
                str(exc),
                operation=operation,
                authorization_id=authorization_id,
                retryable=False,
                attempts=attempt + 1,
                processor_code=exc.code,
            ) from exc
        except ProcessorTransientError as exc:
            if attempt < attempts_allowed - 1:
                wait_time = backoff_delay(attempt, base, ceiling)
                prometheus_metrics.record_processor_call(operation, "retry")
                logger.warning(
                    f"Attempt {attempt + 1}/{attempts_allowed} failed for {operation}: {str(exc)}. "
                    f"Retrying in {wait_time}s..."
                )
                sleep(wait_time)
                continue
            prometheus_metrics.record_processor_call(operation, "exhausted")
            logger.error(f"All {attempts_allowed} attempts failed for {operation}: {str(exc)}")
            raise PaymentFailureException(
                str(exc),
                operation=operation,
                authorization_id=authorization_id,
                retryable=True,
                attempts=attempts_allowed,
                processor_code=exc.code,
            ) from exc
    raise RuntimeError("Retry loop exited without a result")


_TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _translate_stripe_error(exc: stripe.StripeError) -> ProcessorError:
    code = getattr(exc, "code", None)
    if isinstance(exc, _TRANSIENT_STRIPE_ERRORS):
        return ProcessorTransientError(str(exc), code=code)
    return ProcessorDeclinedError(getattr(exc, "user_message", None) or str(exc), code=code)


def _stripe_status(intent_status: Optional[str]) -> str:
    return {
        "requires_capture": "authorized_hold",
        "succeeded": "captured",
        "canceled": "voided",
    }.get(intent_status or "", "unknown")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StripePaymentProcessor:
    """PaymentProcessor backed by Stripe manual-capture PaymentIntents."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        key = api_key or settings.stripe_secret_key.get_secret_value()
        if key:
            stripe.api_key = key
        # Retries are owned by call_with_backoff so attempts stay bounded in one place
        stripe.max_network_retries = settings.stripe_max_network_retries

    def _call(self, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc) from exc

    def authorize(
        self,
        amount_cents: int,
        *,
        currency: str,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProcessorResult:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["confirm"] = True
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        intent = self._call(
            lambda: stripe.PaymentIntent.create(**params, idempotency_key=idempotency_key)
        )
        return ProcessorResult(
            authorization_id=intent["id"],
            status=_stripe_status(_field(intent, "status")),
            amount_cents=int(_field(intent, "amount", amount_cents)),
        )

    def capture(self, authorization_id: str, amount_cents: int, *, idempotency_key: str) -> ProcessorResult:
        intent = self._call(
            lambda: stripe.PaymentIntent.capture(
                authorization_id,
                amount_to_capture=amount_cents,
                idempotency_key=idempotency_key,
            )
        )
        return ProcessorResult(
            authorization_id=authorization_id,
            status=_stripe_status(_field(intent, "status")),
            amount_cents=int(_field(intent, "amount_received", amount_cents) or amount_cents),
            charge_id=_field(intent, "latest_charge"),
        )

    def void(self, authorization_id: str, *, idempotency_key: str) -> ProcessorResult:
        intent = self._call(
            lambda: stripe.PaymentIntent.cancel(authorization_id, idempotency_key=idempotency_key)
        )
        return ProcessorResult(
            authorization_id=authorization_id,
            status=_stripe_status(_field(intent, "status")),
            amount_cents=0,
        )

    def refund(self, authorization_id: str, amount_cents: int, *, idempotency_key: str) -> ProcessorResult:
        refund = self._call(
            lambda: stripe.Refund.create(
                payment_intent=authorization_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        )
        return ProcessorResult(
            authorization_id=authorization_id,
            status=str(_field(refund, "status", "succeeded")),
            amount_cents=int(_field(refund, "amount", amount_cents)),
            charge_id=_field(refund, "charge"),
        )

    def charge_off_session(
        self,
        amount_cents: int,
        *,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProcessorResult:
        intent = self._call(
            lambda: stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        )
        status = _field(intent, "status")
        if status != "succeeded":
            raise ProcessorDeclinedError(
                f"Off-session charge ended in status {status}", code=str(status)
            )
        return ProcessorResult(
            authorization_id=intent["id"],
            status="captured",
            amount_cents=int(_field(intent, "amount_received", amount_cents) or amount_cents),
            charge_id=_field(intent, "latest_charge"),
        )

    def retrieve(self, authorization_id: str) -> ProcessorSnapshot:
        intent = self._call(
            lambda: stripe.PaymentIntent.retrieve(authorization_id, expand=["latest_charge"])
        )
        charge = _field(intent, "latest_charge")
        refunded = _field(charge, "amount_refunded", 0) if not isinstance(charge, str) else 0
        return ProcessorSnapshot(
            authorization_id=authorization_id,
            status=_stripe_status(_field(intent, "status")),
            amount_capturable_cents=int(_field(intent, "amount_capturable", 0) or 0),
            amount_received_cents=int(_field(intent, "amount_received", 0) or 0),
            amount_refunded_cents=int(refunded or 0),
        )


def construct_webhook_event(payload: bytes, signature: str) -> Dict[str, Any]:
    """Verify a Stripe webhook signature and return the event as a dict."""
    secret = settings.stripe_webhook_secret.get_secret_value()
    stripe.Webhook.construct_event(payload, signature, secret)
    return json.loads(payload)
