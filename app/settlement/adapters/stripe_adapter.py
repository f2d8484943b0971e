"""
Stripe API adapter for settlement money movement.

Every processor call made by the settlement engine goes through
StripeAdapter: authorize (confirm a manual-capture PaymentIntent), capture,
transfer to the seller's Connect account, and refund. Reads by reference
(retrieve_*) back the reconciliation pass.

All calls:
- carry an idempotency key (IdempotencyKeyGenerator)
- log start/finish with timing under the adapter's logger
- translate stripe SDK errors to settlement.exceptions.Stripe*Error

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK network retries per call (default: 3)

Usage:
    from settlement.adapters import StripeAdapter, IdempotencyKeyGenerator

    result = StripeAdapter.capture_payment_intent(
        payment_intent_id="pi_xxx",
        idempotency_key=IdempotencyKeyGenerator.generate("capture", order.id),
        amount_to_capture=10000,
    )
    result.charge_id  # "ch_xxx"
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import stripe
from django.conf import settings

from settlement.exceptions import (
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeError,
    StripeInsufficientFundsError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

# PaymentIntent statuses meaning funds are held and capturable
AUTHORIZED_INTENT_STATUSES = frozenset({"requires_capture"})


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CreatePaymentIntentParams:
    """
    Parameters for the checkout PaymentIntent of an order.

    Settlement intents are always manual-capture: funds are authorized at
    acceptance and captured in escrow later.
    """

    amount_cents: int
    currency: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    customer_id: str | None = None
    payment_method_types: list[str] = field(default_factory=lambda: ["card"])
    transfer_group: str | None = None

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.currency:
            raise ValueError("currency is required")


@dataclass
class PaymentIntentResult:
    """
    Result from Stripe PaymentIntent operations.

    Attributes:
        id: PaymentIntent ID (pi_xxx)
        status: requires_payment_method, requires_capture, succeeded, ...
        amount_cents: Intent amount
        amount_capturable: Amount currently authorized and capturable
        amount_received: Amount captured so far
        charge_id: Latest charge (ch_xxx), once one exists
    """

    id: str
    status: str
    amount_cents: int
    currency: str
    amount_capturable: int = 0
    amount_received: int = 0
    charge_id: str | None = None
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_authorized(self) -> bool:
        return self.status in AUTHORIZED_INTENT_STATUSES


@dataclass
class TransferResult:
    """Result from Stripe Transfer operations."""

    id: str
    amount_cents: int
    currency: str
    destination_account: str
    transfer_group: str | None = None
    reversed: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result from Stripe Refund operations."""

    id: str
    amount_cents: int
    currency: str
    status: str
    charge_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Keys & Retry Helpers
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always produces the same key, so
    a retried call after a timeout is deduplicated by Stripe. A new attempt
    number is used only after a recorded decline.
    """

    @staticmethod
    def generate(operation: str, entity_id: uuid.UUID | str, attempt: int = 1) -> str:
        entity_str = str(entity_id)
        digest = hashlib.sha256(
            f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}".encode()
        ).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{digest}"


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations used by settlement.

    All methods are classmethods; no instance state is kept, so the
    adapter is safe to share between Celery workers. Services hold it as
    a class attribute so tests can substitute a mock.
    """

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _call(cls, log_context: dict[str, Any], func, *args, **kwargs):
        """
        Run one SDK call with timing and error translation.

        Raises:
            StripeError subclass for any SDK failure
        """
        cls._configure_stripe()
        logger = cls.get_logger()
        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            obj = func(*args, **kwargs)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "stripe_id": getattr(obj, "id", None),
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )
        return obj

    # =========================================================================
    # Result Mapping
    # =========================================================================

    @staticmethod
    def _intent_result(intent) -> PaymentIntentResult:
        latest_charge = getattr(intent, "latest_charge", None)
        if latest_charge is not None and not isinstance(latest_charge, str):
            latest_charge = latest_charge.id
        return PaymentIntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            amount_capturable=getattr(intent, "amount_capturable", 0) or 0,
            amount_received=getattr(intent, "amount_received", 0) or 0,
            charge_id=latest_charge,
            client_secret=getattr(intent, "client_secret", None),
            metadata=dict(intent.metadata or {}),
            raw_response=intent.to_dict(),
        )

    @staticmethod
    def _transfer_result(transfer) -> TransferResult:
        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
            transfer_group=getattr(transfer, "transfer_group", None),
            reversed=bool(getattr(transfer, "reversed", False)),
            metadata=dict(transfer.metadata or {}),
            raw_response=transfer.to_dict(),
        )

    @staticmethod
    def _refund_result(refund) -> RefundResult:
        return RefundResult(
            id=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency,
            status=refund.status,
            charge_id=getattr(refund, "charge", None),
            metadata=dict(refund.metadata or {}),
            raw_response=refund.to_dict(),
        )

    # =========================================================================
    # Checkout
    # =========================================================================

    @classmethod
    def create_payment_intent(
        cls,
        params: CreatePaymentIntentParams,
        trace_id: str | None = None,
    ) -> PaymentIntentResult:
        """Create the manual-capture PaymentIntent an order is paid with."""
        log_context = {
            "operation": "create_payment_intent",
            "amount_cents": params.amount_cents,
            "currency": params.currency,
            "idempotency_key": params.idempotency_key,
            "trace_id": trace_id,
        }
        create_params: dict[str, Any] = {
            "amount": params.amount_cents,
            "currency": params.currency.lower(),
            "metadata": params.metadata,
            "payment_method_types": params.payment_method_types,
            "capture_method": "manual",
        }
        if params.customer_id:
            create_params["customer"] = params.customer_id
        if params.transfer_group:
            create_params["transfer_group"] = params.transfer_group

        intent = cls._call(
            log_context,
            stripe.PaymentIntent.create,
            idempotency_key=params.idempotency_key,
            **create_params,
        )
        return cls._intent_result(intent)

    # =========================================================================
    # Money Movement
    # =========================================================================

    @classmethod
    def authorize_payment_intent(
        cls,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
        trace_id: str | None = None,
    ) -> PaymentIntentResult:
        """
        Place (or confirm) the authorization hold without capturing.

        An intent already in requires_capture is not confirmed again. The
        hold must cover amount_cents.

        Raises:
            StripeCardDeclinedError: Confirmation did not produce a capturable
                hold, or the hold does not cover the amount
        """
        log_context = {
            "operation": "authorize_payment_intent",
            "payment_intent_id": payment_intent_id,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
            "trace_id": trace_id,
        }
        intent = cls._call(log_context, stripe.PaymentIntent.retrieve, payment_intent_id)
        if intent.status not in AUTHORIZED_INTENT_STATUSES:
            intent = cls._call(
                log_context,
                stripe.PaymentIntent.confirm,
                payment_intent_id,
                idempotency_key=idempotency_key,
            )

        result = cls._intent_result(intent)
        if not result.is_authorized or result.amount_capturable < amount_cents:
            cls.get_logger().warning(
                "Authorization not capturable",
                extra={
                    **log_context,
                    "status": result.status,
                    "amount_capturable": result.amount_capturable,
                },
            )
            raise StripeCardDeclinedError(
                "Payment authorization was declined",
                stripe_code="authorization_not_capturable",
                details={"status": result.status},
            )
        return result

    @classmethod
    def capture_payment_intent(
        cls,
        payment_intent_id: str,
        idempotency_key: str,
        amount_to_capture: int | None = None,
        trace_id: str | None = None,
    ) -> PaymentIntentResult:
        """Capture (part of) an authorized PaymentIntent."""
        log_context = {
            "operation": "capture_payment_intent",
            "payment_intent_id": payment_intent_id,
            "amount_to_capture": amount_to_capture,
            "idempotency_key": idempotency_key,
            "trace_id": trace_id,
        }
        capture_params: dict[str, Any] = {"expand": ["latest_charge"]}
        if amount_to_capture is not None:
            capture_params["amount_to_capture"] = amount_to_capture

        intent = cls._call(
            log_context,
            stripe.PaymentIntent.capture,
            payment_intent_id,
            idempotency_key=idempotency_key,
            **capture_params,
        )
        return cls._intent_result(intent)

    @classmethod
    def create_transfer(
        cls,
        amount_cents: int,
        destination_account: str,
        idempotency_key: str,
        currency: str,
        transfer_group: str | None = None,
        source_transaction: str | None = None,
        metadata: dict[str, str] | None = None,
        trace_id: str | None = None,
    ) -> TransferResult:
        """
        Transfer funds to a connected account.

        Raises:
            StripeInvalidAccountError: Destination cannot receive transfers
        """
        log_context = {
            "operation": "create_transfer",
            "amount_cents": amount_cents,
            "destination_account": destination_account,
            "transfer_group": transfer_group,
            "idempotency_key": idempotency_key,
            "trace_id": trace_id,
        }
        transfer_params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "destination": destination_account,
            "metadata": metadata or {},
        }
        if transfer_group:
            transfer_params["transfer_group"] = transfer_group
        if source_transaction:
            transfer_params["source_transaction"] = source_transaction

        transfer = cls._call(
            log_context,
            stripe.Transfer.create,
            idempotency_key=idempotency_key,
            **transfer_params,
        )
        return cls._transfer_result(transfer)

    @classmethod
    def create_refund(
        cls,
        charge_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        reason: str | None = None,
        metadata: dict[str, str] | None = None,
        trace_id: str | None = None,
    ) -> RefundResult:
        """Refund (part of) a captured charge."""
        log_context = {
            "operation": "create_refund",
            "charge_id": charge_id,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
            "trace_id": trace_id,
        }
        refund_params: dict[str, Any] = {
            "charge": charge_id,
            "metadata": metadata or {},
        }
        if amount_cents is not None:
            refund_params["amount"] = amount_cents
        if reason:
            refund_params["reason"] = reason

        refund = cls._call(
            log_context,
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            **refund_params,
        )
        return cls._refund_result(refund)

    # =========================================================================
    # Reads by Reference
    # =========================================================================

    @classmethod
    def retrieve_payment_intent(
        cls,
        payment_intent_id: str,
        trace_id: str | None = None,
    ) -> PaymentIntentResult:
        log_context = {
            "operation": "retrieve_payment_intent",
            "payment_intent_id": payment_intent_id,
            "trace_id": trace_id,
        }
        intent = cls._call(log_context, stripe.PaymentIntent.retrieve, payment_intent_id)
        return cls._intent_result(intent)

    @classmethod
    def retrieve_transfer(cls, transfer_id: str, trace_id: str | None = None) -> TransferResult:
        log_context = {
            "operation": "retrieve_transfer",
            "transfer_id": transfer_id,
            "trace_id": trace_id,
        }
        transfer = cls._call(log_context, stripe.Transfer.retrieve, transfer_id)
        return cls._transfer_result(transfer)

    @classmethod
    def retrieve_refund(cls, refund_id: str, trace_id: str | None = None) -> RefundResult:
        log_context = {
            "operation": "retrieve_refund",
            "refund_id": refund_id,
            "trace_id": trace_id,
        }
        refund = cls._call(log_context, stripe.Refund.retrieve, refund_id)
        return cls._refund_result(refund)

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate a stripe SDK exception into a settlement StripeError.

        Always raises.
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, StripeError):
            raise error

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            error_class = (
                StripeInsufficientFundsError
                if decline_code == "insufficient_funds"
                else StripeCardDeclinedError
            )
            raise error_class(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            )

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if "account" in str(error).lower():
                raise StripeInvalidAccountError(str(error), stripe_code=error.code)
            raise StripeInvalidRequestError(str(error), stripe_code=error.code)

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            )

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            if "timeout" in str(error).lower() or "timed out" in str(error).lower():
                raise StripeTimeoutError(
                    "Stripe request timed out. Retry with the same idempotency key.",
                    stripe_code="timeout",
                )
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            )

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            )

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            )

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise StripeAPIUnavailableError(
            f"Unexpected Stripe error: {error}",
            stripe_code="unknown_error",
        )
