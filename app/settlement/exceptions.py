"""
Settlement-specific exceptions.

This module provides the error taxonomy of the settlement engine: lifecycle
conflicts, idempotency guards, processor failures, and concurrency errors.
Every class inherits from core.exceptions so the API layer renders them
with to_dict() and the class's HTTP status.

Exception Hierarchy:
    PricingValidationError - Bad pricing input (inherits ValidationError)
    PricingLockedError - Locked pricing snapshot modified (ConflictError)

    StateConflictError - Transition not legal from current status (ConflictError)
    └── InvalidStageOrderError - Stage requested out of table order
    AlreadyProcessedError - Stage already recorded (ConflictError)
    └── AlreadyReleasedError - Payment lifecycle already closed
    StaleRecordError - Optimistic locking conflict (ConflictError)
    LockAcquisitionError - Per-order lock timeout (ConflictError)

    SettlementError (base for settlement domain)
    ├── PaymentDeclinedError - Processor rejected the money movement
    ├── PayoutDestinationMissingError - Seller cannot receive funds yet
    ├── PartialCommitFailureError - Processor succeeded, local commit failed
    └── PaymentProcessingError
        └── StripeError - Base for all Stripe errors
            ├── StripeCardDeclinedError - Card declined (permanent)
            ├── StripeInsufficientFundsError - Insufficient funds (permanent)
            ├── StripeInvalidAccountError - Invalid Connect account (permanent)
            ├── StripeInvalidRequestError - Invalid request params (permanent)
            ├── StripeRateLimitError - Rate limited (transient, retry)
            ├── StripeAPIUnavailableError - API unavailable (transient, retry)
            └── StripeTimeoutError - Request timeout (transient, retry)

Usage:
    from settlement.exceptions import AlreadyProcessedError, InvalidStageOrderError

    try:
        orchestrator.record_delivery(order_id, actor)
    except AlreadyProcessedError as e:
        entry = e.existing  # the entry recorded by the first call
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ValidationError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Input Validation
# =============================================================================


class PricingValidationError(ValidationError):
    """
    Raised when pricing input is unusable.

    Rejected before any side effect: non-numeric or non-positive base
    price, malformed country code.
    """

    default_error_code: str = "INVALID_PRICING_INPUT"


class PricingLockedError(ConflictError):
    """
    Raised when a locked pricing snapshot would be modified.

    The snapshot is frozen at first authorization; re-deriving it after
    money has moved would corrupt VAT records.
    """

    default_error_code: str = "PRICING_LOCKED"


# =============================================================================
# Lifecycle Conflicts
# =============================================================================


class StateConflictError(ConflictError):
    """
    Raised when the order's current status does not permit the operation.

    Wraps django-fsm's TransitionNotAllowed as well as the orchestrator's
    own stage gates. No side effect has happened when this is raised.

    Example:
        raise StateConflictError(
            "Cannot capture escrow for order in 'pending' status",
            details={"current_status": "pending", "stage": "in_escrow"},
        )
    """

    default_error_code: str = "STATE_CONFLICT"


class InvalidStageOrderError(StateConflictError):
    """
    Raised when a milestone stage is requested out of table order.

    Example: recording 'delivered' before 'in_escrow'. No ledger entry
    is created.
    """

    default_error_code: str = "INVALID_STAGE_ORDER"


class AlreadyProcessedError(ConflictError):
    """
    Raised when a stage has already been recorded for the order.

    This is the idempotency guard for duplicate transition requests. The
    entry written by the first request is available as ``existing`` so
    callers can return the original result instead of re-charging.
    """

    default_error_code: str = "ALREADY_PROCESSED"

    def __init__(
        self,
        message: str,
        existing: Any = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if existing is not None:
            details.setdefault("existing_entry_id", str(existing.pk))
        super().__init__(message, error_code=error_code, details=details)
        self.existing = existing


class AlreadyReleasedError(AlreadyProcessedError):
    """
    Raised when the order's payment lifecycle is already closed.

    A cancellation arriving after a release (or a second cancellation)
    is rejected rather than partially reversed.
    """

    default_error_code: str = "ALREADY_RELEASED"


# =============================================================================
# Settlement Domain Exceptions
# =============================================================================


class SettlementError(BaseApplicationError):
    """Base exception for settlement operations."""

    default_error_code: str = "SETTLEMENT_ERROR"


class PaymentDeclinedError(SettlementError):
    """
    Raised when the processor rejects an authorization or capture.

    A 'failed' ledger entry has been recorded; the order is unaffected.
    """

    default_error_code: str = "PAYMENT_DECLINED"
    http_status: int = 402


class PayoutDestinationMissingError(SettlementError):
    """
    Raised when the seller has no verified payout destination.

    The release is deferred with no partial or irreversible action and
    can be retried once the seller finishes onboarding.
    """

    default_error_code: str = "PAYOUT_DESTINATION_MISSING"
    http_status: int = 409


class PartialCommitFailureError(SettlementError):
    """
    Raised when the processor call succeeded but local persistence failed.

    Money has moved without being reflected in the ledger. A
    SettlementReconciliation record exists (its id is in details) and
    must be resolved by reading processor state, never by retrying the
    money movement.
    """

    default_error_code: str = "PARTIAL_COMMIT_FAILURE"
    http_status: int = 500


class ReconciliationPendingError(ConflictError):
    """
    Raised when the order has an open reconciliation record.

    Processor state and the ledger disagree until the record is decided,
    so no further settlement operation may run on the order.
    """

    default_error_code: str = "RECONCILIATION_PENDING"


class PaymentProcessingError(SettlementError):
    """Raised when a processor call fails for reasons other than a decline."""

    default_error_code: str = "PAYMENT_PROCESSING_ERROR"
    http_status: int = 502


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(PaymentProcessingError):
    """
    Base exception for all Stripe-related errors.

    Attributes:
        stripe_code: Stripe's internal error code
        decline_code: Card decline code (if applicable)
        is_retryable: Whether the operation can be retried with the same
            idempotency key
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(StripeError):
    """
    Card was declined, or the authorization cannot cover the amount.

    The orchestrator turns this into PaymentDeclinedError after writing
    the failed ledger entry.
    """

    default_error_code: str = "CARD_DECLINED"


class StripeInsufficientFundsError(StripeCardDeclinedError):
    """Insufficient funds on the payment method."""

    default_error_code: str = "INSUFFICIENT_FUNDS"


class StripeInvalidAccountError(StripeError):
    """
    Invalid Stripe Connect account.

    Raised when the transfer destination is missing, restricted, or
    not able to receive payouts.
    """

    default_error_code: str = "INVALID_STRIPE_ACCOUNT"


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe.

    This usually indicates a bug in our code, not a user error.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Rate limited by Stripe API."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """
    Stripe API is temporarily unavailable.

    Covers network connectivity issues and Stripe server errors (5xx).
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe API call timed out.

    IMPORTANT: The operation may have succeeded on Stripe's side.
    Retry only with the same idempotency key.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when the per-order lock cannot be acquired.

    Another operation on the same order is in flight.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    # Validation
    "PricingValidationError",
    "PricingLockedError",
    # Lifecycle
    "StateConflictError",
    "InvalidStageOrderError",
    "AlreadyProcessedError",
    "AlreadyReleasedError",
    # Settlement domain
    "SettlementError",
    "PaymentDeclinedError",
    "PayoutDestinationMissingError",
    "PartialCommitFailureError",
    "ReconciliationPendingError",
    "PaymentProcessingError",
    # Stripe-specific
    "StripeError",
    "StripeCardDeclinedError",
    "StripeInsufficientFundsError",
    "StripeInvalidAccountError",
    "StripeInvalidRequestError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
]
