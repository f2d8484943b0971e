"""
MilestoneEntry model: the per-order payment ledger.

One entry per payment event. Entries are created exclusively by the
EscrowOrchestrator (and OrderService for the initial order_placed row) and
are immutable after creation except for settlement: an open entry moves to
a terminal status (released / refunded / cancelled) when a terminal entry
settles it, and settled_by points at that terminal entry.

Ledger Flow (order total 200):
    order_placed    0.00  pending
    accepted       20.00  authorized
    in_escrow     100.00  held_in_escrow  -> released (settled_by completed)
    delivered      40.00  pending_release -> released (settled_by completed)
    reviewed       40.00  pending_release -> released (settled_by completed)
    completed     180.00  released        (terminal, literal sum of the above)
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models

from core.exceptions import ConflictError
from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from settlement.state_machines import (
    ActorRole,
    MilestonePaymentStatus,
    MilestoneStage,
)

OPEN_STATUSES = (
    MilestonePaymentStatus.PENDING,
    MilestonePaymentStatus.AUTHORIZED,
    MilestonePaymentStatus.CAPTURED,
    MilestonePaymentStatus.HELD_IN_ESCROW,
    MilestonePaymentStatus.PENDING_RELEASE,
)

SETTLED_STATUSES = (
    MilestonePaymentStatus.RELEASED,
    MilestonePaymentStatus.REFUNDED,
    MilestonePaymentStatus.CANCELLED,
)

# Fields an entry may still change after creation (settlement only)
MUTABLE_FIELDS = frozenset(
    {
        "payment_status",
        "released_at",
        "refunded_at",
        "settled_by",
        "updated_at",
    }
)


class MilestoneEntryQuerySet(models.QuerySet):
    def for_order(self, order):
        return self.filter(order=order)

    def effective(self):
        """Entries that count towards the order (failed attempts excluded)."""
        return self.exclude(payment_status=MilestonePaymentStatus.FAILED)

    def with_status(self, *statuses):
        return self.filter(payment_status__in=statuses)

    def total(self) -> Decimal:
        result = self.aggregate(total=models.Sum("amount"))["total"]
        return result if result is not None else Decimal("0.00")


class MilestoneEntry(UUIDPrimaryKeyMixin, BaseModel):
    """
    One immutable payment event tied to one lifecycle stage.

    Fields:
        order: Order the event belongs to
        sequence: Processing order within the order (monotonic)
        stage: Lifecycle stage that produced the entry
        percentage_of_total: Share of the order total for this stage
        amount: Money involved (2-decimal, order currency)
        payment_intent_id/charge_id/transfer_id/refund_id: Processor refs
        payment_status: Processor-facing state of this entry
        *_at: Lifecycle timestamps
        triggered_by_*: Who or what caused the entry
        idempotency_key: Key sent with the processor call, if any
        settled_by: Terminal entry that closed this one

    Note:
        (order, stage) is unique among non-failed entries, so a declined
        attempt can be retried without clashing with the retry's entry.
    """

    order = models.ForeignKey(
        "settlement.Order",
        on_delete=models.PROTECT,
        related_name="milestones",
    )

    sequence = models.PositiveIntegerField(
        help_text="Processing order within the order, starting at 1",
    )

    stage = models.CharField(max_length=20, choices=MilestoneStage.choices)

    percentage_of_total = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("0"),
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)

    # ==========================================================================
    # Processor References
    # ==========================================================================

    payment_intent_id = models.CharField(max_length=255, null=True, blank=True)
    charge_id = models.CharField(max_length=255, null=True, blank=True)
    transfer_id = models.CharField(max_length=255, null=True, blank=True)
    refund_id = models.CharField(max_length=255, null=True, blank=True)

    payment_status = models.CharField(
        max_length=20,
        choices=MilestonePaymentStatus.choices,
        default=MilestonePaymentStatus.PENDING,
        db_index=True,
    )

    # ==========================================================================
    # Lifecycle Timestamps
    # ==========================================================================

    authorized_at = models.DateTimeField(null=True, blank=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    failure_reason = models.TextField(null=True, blank=True)
    failure_code = models.CharField(max_length=64, null=True, blank=True)

    # ==========================================================================
    # Audit
    # ==========================================================================

    triggered_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    triggered_by_role = models.CharField(
        max_length=10,
        choices=ActorRole.choices,
        default=ActorRole.SYSTEM,
    )
    triggered_by_action = models.CharField(max_length=50, blank=True, default="")

    notes = models.TextField(blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)

    idempotency_key = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
    )

    settled_by = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="settled_entries",
        help_text="Terminal entry (completed/cancelled) that closed this entry",
    )

    objects = MilestoneEntryQuerySet.as_manager()

    class Meta:
        ordering = ["order", "sequence"]
        verbose_name = "Milestone Entry"
        verbose_name_plural = "Milestone Entries"
        indexes = [
            models.Index(fields=["order", "payment_status"], name="stl_entry_order_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "stage"],
                condition=~models.Q(payment_status=MilestonePaymentStatus.FAILED),
                name="settlement_milestone_unique_stage",
            ),
            models.UniqueConstraint(
                fields=["order", "sequence"],
                name="settlement_milestone_unique_sequence",
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="settlement_milestone_amount_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"MilestoneEntry({self.order_id}, {self.stage}, {self.amount}, {self.payment_status})"

    @property
    def is_open(self) -> bool:
        return self.payment_status in OPEN_STATUSES

    def save(self, *args, **kwargs):
        """
        Save, allowing only settlement fields to change on existing rows.

        Raises:
            ConflictError: An existing entry is saved without update_fields,
                or with fields outside the settlement set
        """
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= MUTABLE_FIELDS:
                raise ConflictError(
                    "Ledger entries are immutable except for settlement",
                    error_code="LEDGER_IMMUTABLE",
                    details={"entry_id": str(self.pk)},
                )
        super().save(*args, **kwargs)
