import logging
import random
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import razorpay
import requests
import stripe
from razorpay.errors import BadRequestError, GatewayError, ServerError

from app.config import Settings
from app.exceptions import GatewayUnavailable
from app.schemas.orders_schemas import PaymentMethodIn
from app.services.fee_calculator import money, to_minor_units

logger = logging.getLogger(__name__)


class GatewayKind(str, Enum):
    SIMULATOR = "simulator"
    STRIPE = "stripe"
    RAZORPAY = "razorpay"


@dataclass
class ChargeResult:
    success: bool
    provider_tx_id: Optional[str]
    amount: Decimal
    currency: str
    fees: Decimal = Decimal("0.00")
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str]
    amount: Decimal
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MethodValidation:
    valid: bool
    token: Optional[str] = None
    reason: Optional[str] = None


class PaymentGateway(ABC):
    """Blocking client for a payment processor. Every call is a remote call."""

    kind: GatewayKind

    @abstractmethod
    def charge(self, amount: Decimal, currency: str, payment_method: PaymentMethodIn) -> ChargeResult:
        ...

    @abstractmethod
    def refund(self, provider_tx_id: str, amount: Decimal, reason: str) -> RefundResult:
        ...

    @abstractmethod
    def validate_method(self, payment_method: PaymentMethodIn) -> MethodValidation:
        ...

    def _failure(self, amount, currency, code, reason, **raw) -> ChargeResult:
        return ChargeResult(
            success=False,
            provider_tx_id=None,
            amount=amount,
            currency=currency,
            failure_code=code,
            failure_reason=reason,
            raw={"gateway": self.kind.value, **raw},
        )


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------

# fingerprint suffix -> (failure code, message)
SENTINEL_FAILURES = {
    "0002": ("card_declined", "Card was declined"),
    "0004": ("insufficient_funds", "Insufficient funds"),
    "0009": ("fraud_detected", "Transaction flagged for fraud"),
}

CARD_TYPES = {"card", "credit_card", "debit_card"}


class SimulatorGateway(PaymentGateway):
    """Deterministic test gateway.

    Outcomes depend only on the amount and the payment method's last four
    characters; latency is random within ``latency_ms`` so callers can't
    treat it as an in-process call.
    """

    kind = GatewayKind.SIMULATOR

    def __init__(self, latency_ms=(200, 1000), amount_limit: Decimal = Decimal("1000")):
        low, high = latency_ms
        self.latency_ms = (max(1, low), max(1, low, high))
        self.amount_limit = Decimal(str(amount_limit))

    def _simulate_delay(self, scale: float = 1.0):
        time.sleep(random.uniform(*self.latency_ms) * scale / 1000)

    def charge(self, amount, currency, payment_method):
        logger.info(f"[SIMULATOR] Processing charge of {amount} {currency}")
        self._simulate_delay()

        if amount <= 0:
            return self._failure(amount, currency, "invalid_amount", "Amount must be greater than 0")

        if amount > self.amount_limit:
            return self._failure(amount, currency, "amount_too_high", "Amount exceeds limit for test payments")

        sentinel = SENTINEL_FAILURES.get(payment_method.last_four_digits or "")
        if sentinel:
            code, message = sentinel
            return self._failure(amount, currency, code, message, message=f"Payment failed: {message} (TEST MODE)")

        return ChargeResult(
            success=True,
            provider_tx_id=f"sim_{uuid4().hex[:16]}",
            amount=amount,
            currency=currency,
            fees=money(amount * Decimal("0.029") + Decimal("0.30")),
            raw={"gateway": self.kind.value, "message": "Payment processed successfully (TEST MODE)"},
        )

    def refund(self, provider_tx_id, amount, reason):
        logger.info(f"[SIMULATOR] Processing refund for transaction {provider_tx_id}")
        self._simulate_delay(0.8)

        return RefundResult(
            success=True,
            refund_id=f"ref_{uuid4().hex[:16]}",
            amount=amount,
            raw={"gateway": self.kind.value, "reason": reason},
        )

    def validate_method(self, payment_method):
        self._simulate_delay(0.3)

        if payment_method.type in CARD_TYPES and not payment_method.reference:
            return MethodValidation(valid=False, reason="Card payments require a fingerprint or token")

        return MethodValidation(valid=True, token=f"tok_{uuid4().hex[:16]}")


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

STRIPE_DECLINE_CODES = {
    "insufficient_funds": "insufficient_funds",
    "fraudulent": "fraud_detected",
    "stolen_card": "fraud_detected",
    "lost_card": "fraud_detected",
}


class StripeGateway(PaymentGateway):
    kind = GatewayKind.STRIPE

    def __init__(self, api_key: str):
        self.api_key = api_key

    def charge(self, amount, currency, payment_method):
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=payment_method.reference,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                api_key=self.api_key,
            )
        except stripe.CardError as e:
            decline_code = getattr(getattr(e, "error", None), "decline_code", None)
            code = STRIPE_DECLINE_CODES.get(decline_code or "", "card_declined")
            return self._failure(amount, currency, code, e.user_message or "Card was declined",
                                 decline_code=decline_code)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe charge failed: {e}")
            return self._failure(amount, currency, "card_declined", "Payment could not be processed")

        if intent.status != "succeeded":
            return self._failure(amount, currency, "card_declined",
                                 "Payment requires additional authentication", intent_status=intent.status)

        return ChargeResult(
            success=True,
            provider_tx_id=intent.id,
            amount=amount,
            currency=currency,
            raw={"gateway": self.kind.value, "status": intent.status},
        )

    def refund(self, provider_tx_id, amount, reason):
        try:
            refund = stripe.Refund.create(
                payment_intent=provider_tx_id,
                amount=to_minor_units(amount),
                metadata={"reason": reason},
                api_key=self.api_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e
        except stripe.StripeError as e:
            return RefundResult(success=False, refund_id=None, amount=amount,
                                failure_code="refund_failed", failure_reason=e.user_message or str(e))

        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            amount=amount,
            failure_code=None if refund.status in ("succeeded", "pending") else "refund_failed",
            raw={"gateway": self.kind.value, "status": refund.status},
        )

    def validate_method(self, payment_method):
        if not payment_method.reference:
            return MethodValidation(valid=False, reason="Payment method token is required")
        try:
            method = stripe.PaymentMethod.retrieve(payment_method.reference, api_key=self.api_key)
        except stripe.InvalidRequestError:
            return MethodValidation(valid=False, reason="Unknown payment method")
        except stripe.StripeError as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e
        return MethodValidation(valid=True, token=method.id)


# ---------------------------------------------------------------------------
# Razorpay
# ---------------------------------------------------------------------------

class RazorpayGateway(PaymentGateway):
    """Captures payments the client already authorized with Razorpay Checkout."""

    kind = GatewayKind.RAZORPAY

    def __init__(self, key_id: str, key_secret: str):
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def charge(self, amount, currency, payment_method):
        payment_id = payment_method.reference
        try:
            payment = self.client.payment.capture(
                payment_id, to_minor_units(amount), {"currency": currency}
            )
        except BadRequestError as e:
            message = str(e)
            code = "insufficient_funds" if "insufficient" in message.lower() else "card_declined"
            return self._failure(amount, currency, code, message or "Payment was declined")
        except (ServerError, GatewayError, requests.RequestException) as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e

        if payment.get("status") != "captured":
            return self._failure(amount, currency, "card_declined", "Payment was not captured",
                                 payment_status=payment.get("status"))

        return ChargeResult(
            success=True,
            provider_tx_id=payment["id"],
            amount=amount,
            currency=currency,
            fees=money(Decimal(payment.get("fee") or 0) / 100),
            raw={"gateway": self.kind.value, "method": payment.get("method")},
        )

    def refund(self, provider_tx_id, amount, reason):
        try:
            refund = self.client.payment.refund(
                provider_tx_id, {"amount": to_minor_units(amount), "notes": {"reason": reason}}
            )
        except BadRequestError as e:
            return RefundResult(success=False, refund_id=None, amount=amount,
                                failure_code="refund_failed", failure_reason=str(e))
        except (ServerError, GatewayError, requests.RequestException) as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e

        return RefundResult(
            success=True,
            refund_id=refund["id"],
            amount=amount,
            raw={"gateway": self.kind.value, "status": refund.get("status")},
        )

    def validate_method(self, payment_method):
        if not payment_method.reference:
            return MethodValidation(valid=False, reason="Razorpay payment id is required")
        try:
            payment = self.client.payment.fetch(payment_method.reference)
        except BadRequestError:
            return MethodValidation(valid=False, reason="Unknown payment")
        except (ServerError, GatewayError, requests.RequestException) as e:
            raise GatewayUnavailable("Payment gateway is currently unavailable",
                                     {"gateway": self.kind.value}) from e

        if payment.get("status") != "authorized":
            return MethodValidation(valid=False, reason=f"Payment is {payment.get('status')}, not authorized")
        return MethodValidation(valid=True, token=payment["id"])


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayRoute:
    primary: GatewayKind
    backup: Optional[GatewayKind] = None


SIMULATOR_ROUTE = GatewayRoute(GatewayKind.SIMULATOR)
DEFAULT_PRODUCTION_ROUTE = GatewayRoute(GatewayKind.STRIPE)

PRODUCTION_ROUTES = {
    "US": GatewayRoute(GatewayKind.STRIPE),
    "GB": GatewayRoute(GatewayKind.STRIPE),
    "SG": GatewayRoute(GatewayKind.STRIPE),
    "IN": GatewayRoute(GatewayKind.RAZORPAY, backup=GatewayKind.STRIPE),
}


def select_gateway(environment: str, country_code: str, payment_method_type: Optional[str]) -> GatewayRoute:
    if environment != "production":
        return SIMULATOR_ROUTE

    country_code = (country_code or "").upper()
    if country_code == "IN" and payment_method_type == "upi":
        return GatewayRoute(GatewayKind.RAZORPAY)

    return PRODUCTION_ROUTES.get(country_code, DEFAULT_PRODUCTION_ROUTE)


def is_configured(kind: GatewayKind, settings: Settings) -> bool:
    if kind == GatewayKind.STRIPE:
        return bool(settings.stripe_secret_key)
    if kind == GatewayKind.RAZORPAY:
        return bool(settings.razorpay_key_id and settings.razorpay_key_secret)
    return True


def build_gateway(kind: GatewayKind, settings: Settings) -> PaymentGateway:
    kind = GatewayKind(kind)
    if not is_configured(kind, settings):
        raise GatewayUnavailable(f"Gateway {kind.value} is not configured", {"gateway": kind.value})

    if kind == GatewayKind.STRIPE:
        return StripeGateway(settings.stripe_secret_key)
    if kind == GatewayKind.RAZORPAY:
        return RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret)
    return SimulatorGateway(
        latency_ms=(settings.simulator_min_latency_ms, settings.simulator_max_latency_ms),
        amount_limit=Decimal(str(settings.simulator_amount_limit)),
    )


def resolve_gateway(route: GatewayRoute, settings: Settings) -> PaymentGateway:
    """Primary if it has credentials, else the backup."""
    if is_configured(route.primary, settings) or route.backup is None:
        return build_gateway(route.primary, settings)

    logger.warning(f"Gateway {route.primary.value} not configured, using backup {route.backup.value}")
    return build_gateway(route.backup, settings)


def call_with_timeout(fn: Callable, timeout: float, *args, **kwargs):
    """Run a blocking gateway call, giving up after ``timeout`` seconds.

    The worker thread is abandoned on timeout; callers treat that exactly
    like a gateway failure and never retry the charge themselves.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateway")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise GatewayUnavailable(
            "Payment gateway timed out",
            {"timeout_seconds": timeout, "reason": "gateway_timeout"},
        ) from exc
    finally:
        executor.shutdown(wait=False)
