"""
SettlementReconciliation model.

One row per partial commit: the processor call of an orchestrator operation
succeeded but the local commit that should have recorded it failed. The
row carries everything needed to apply the local commit later (processor
reference, idempotency key, amount) and is worked off by
ReconciliationService, which reads processor state by reference before
touching the ledger.

Example:
    SettlementReconciliation.objects.create(
        order=order,
        operation="capture",
        stage="in_escrow",
        processor_reference="ch_xxx",
        idempotency_key="capture-<order_id>-1-a1b2c3d4",
        amount=Decimal("100.00"),
        currency="EUR",
        error_message="database is locked",
    )
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from settlement.state_machines import ActorRole, MilestoneStage, ReconciliationStatus


class ReconciliationOperation(models.TextChoices):
    """Processor operation whose local commit failed."""

    AUTHORIZE = "authorize", "Authorize"
    CAPTURE = "capture", "Capture"
    TRANSFER = "transfer", "Transfer"
    REFUND = "refund", "Refund"


class SettlementReconciliation(UUIDPrimaryKeyMixin, BaseModel):
    """
    Operator-visible record of money moved but not yet in the ledger.

    Fields:
        order: Order the operation ran against
        operation: Processor operation that succeeded
        stage: Ledger stage the local commit would have written
        processor_reference: Object returned by the processor (pi/ch/tr/re)
        idempotency_key: Key the processor call was made with
        amount/currency: Money moved
        actor/actor_role/reason: Original request context, replayed on resolve
        status: OPEN until resolved or abandoned
        resolved_entry: Ledger entry written when resolved
    """

    order = models.ForeignKey(
        "settlement.Order",
        on_delete=models.PROTECT,
        related_name="reconciliations",
    )

    operation = models.CharField(max_length=20, choices=ReconciliationOperation.choices)
    stage = models.CharField(max_length=20, choices=MilestoneStage.choices)

    processor_reference = models.CharField(max_length=255, blank=True, default="")
    idempotency_key = models.CharField(max_length=255, blank=True, default="")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)

    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    actor_role = models.CharField(
        max_length=10,
        choices=ActorRole.choices,
        default=ActorRole.SYSTEM,
    )
    reason = models.TextField(blank=True, default="")

    error_message = models.TextField(blank=True, default="")

    status = models.CharField(
        max_length=20,
        choices=ReconciliationStatus.choices,
        default=ReconciliationStatus.OPEN,
        db_index=True,
    )
    attempts = models.PositiveIntegerField(default=0)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolution_notes = models.TextField(blank=True, default="")

    resolved_entry = models.ForeignKey(
        "settlement.MilestoneEntry",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Settlement Reconciliation"
        verbose_name_plural = "Settlement Reconciliations"
        indexes = [
            models.Index(fields=["status", "created_at"], name="stl_recon_status_created_idx"),
            models.Index(fields=["order", "status"], name="stl_recon_order_status_idx"),
        ]

    def __str__(self) -> str:
        return (
            f"SettlementReconciliation({self.order_id}, {self.operation}, {self.status})"
        )

    @property
    def is_open(self) -> bool:
        return self.status == ReconciliationStatus.OPEN


__all__ = [
    "ReconciliationOperation",
    "SettlementReconciliation",
]
