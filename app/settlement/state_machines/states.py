"""
State enums for settlement models.

These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Order Status:
    pending → accepted → requirements_submitted → started → halfway_done
        → delivered ⇄ requested_revision
        → waiting_review → ready_for_payment → completed
    any non-terminal → cancelled / disputed
    disputed → completed (release) / cancelled (refund)

Milestone Payment Status:
    pending / authorized / captured / held_in_escrow / pending_release
        → released | refunded | cancelled
    failed (processor rejected; never settled)
"""

from django.db import models


class OrderStatus(models.TextChoices):
    """
    Lifecycle states of an Order.

    Terminal states: COMPLETED, CANCELLED
    DISPUTED is terminal for work but can still be settled (release or refund).

    The only cycle is DELIVERED ⇄ REQUESTED_REVISION.
    """

    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    REQUIREMENTS_SUBMITTED = "requirements_submitted", "Requirements Submitted"
    STARTED = "started", "Started"
    HALFWAY_DONE = "halfway_done", "Halfway Done"
    DELIVERED = "delivered", "Delivered"
    REQUESTED_REVISION = "requested_revision", "Requested Revision"
    WAITING_REVIEW = "waiting_review", "Waiting Review"
    READY_FOR_PAYMENT = "ready_for_payment", "Ready For Payment"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    DISPUTED = "disputed", "Disputed"


class OrderType(models.TextChoices):
    """Commercial shape of the order."""

    SIMPLE = "simple", "Simple"
    MILESTONE = "milestone", "Milestone"
    CUSTOM = "custom", "Custom"


class MilestoneStage(models.TextChoices):
    """
    Ledger stages, in processing order.

    ORDER_PLACED through COMPLETED form the fixed payment table;
    CANCELLED, REFUNDED and DISPUTED are out-of-band stages.
    """

    ORDER_PLACED = "order_placed", "Order Placed"
    ACCEPTED = "accepted", "Freelancer Accepted"
    IN_ESCROW = "in_escrow", "Funds in Escrow"
    DELIVERED = "delivered", "Work Delivered"
    REVIEWED = "reviewed", "Review Completed"
    COMPLETED = "completed", "Payment Complete"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"
    DISPUTED = "disputed", "Disputed"


class MilestonePaymentStatus(models.TextChoices):
    """
    Processor-facing state of a single ledger entry.

    Open states: PENDING, AUTHORIZED, CAPTURED, HELD_IN_ESCROW, PENDING_RELEASE
    Terminal states: RELEASED, REFUNDED, FAILED, CANCELLED
    """

    PENDING = "pending", "Pending"
    AUTHORIZED = "authorized", "Authorized"
    CAPTURED = "captured", "Captured"
    HELD_IN_ESCROW = "held_in_escrow", "Held in Escrow"
    PENDING_RELEASE = "pending_release", "Pending Release"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class EscrowStatus(models.TextChoices):
    """Escrow position of the order as a whole."""

    NONE = "none", "None"
    PARTIAL = "partial", "Partial"
    FULL = "full", "Full"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"


class OrderPaymentStatus(models.TextChoices):
    """Buyer-facing payment status of the order."""

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class ActorRole(models.TextChoices):
    """Who triggered a transition or ledger entry."""

    BUYER = "buyer", "Buyer"
    SELLER = "seller", "Seller"
    SYSTEM = "system", "System"
    ADMIN = "admin", "Admin"


class OnboardingStatus(models.TextChoices):
    """
    Payout onboarding status of a seller's PayoutAccount.

    Only COMPLETE (with payouts enabled) allows receiving funds.
    """

    NOT_STARTED = "not_started", "Not Started"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETE = "complete", "Complete"
    REJECTED = "rejected", "Rejected"


class ReconciliationStatus(models.TextChoices):
    """
    Lifecycle of a partial-commit reconciliation record.

    State Flow:
        OPEN → RESOLVED (processor confirmed, local commit applied)
        OPEN → ABANDONED (processor shows no effect)
    """

    OPEN = "open", "Open"
    RESOLVED = "resolved", "Resolved"
    ABANDONED = "abandoned", "Abandoned"


__all__ = [
    "OrderStatus",
    "OrderType",
    "MilestoneStage",
    "MilestonePaymentStatus",
    "EscrowStatus",
    "OrderPaymentStatus",
    "ActorRole",
    "OnboardingStatus",
    "ReconciliationStatus",
]
