"""
Reconciliation of partial commits.

A SettlementReconciliation row means the processor moved money but the
local commit recording it failed. resolve() reads the processor object by
reference and then either:

    - applies the orchestrator's local commit for that step (once), or
    - marks the row ABANDONED when the processor shows no effect.

It never re-issues the money movement. Rows that cannot be decided (the
processor is unreachable, the commit fails again) stay OPEN with their
attempt counter bumped, for the next sweep or an operator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import BaseService, ServiceResult

from settlement.adapters import StripeAdapter
from settlement.exceptions import StripeError
from settlement.ledger import recorded_stages
from settlement.locks import order_lock
from settlement.models import Order, ReconciliationOperation, SettlementReconciliation
from settlement.pricing import to_minor_units
from settlement.services.orchestrator import EscrowOrchestrator
from settlement.state_machines import ReconciliationStatus

if TYPE_CHECKING:
    from typing import Any

REFUND_EFFECTIVE_STATUSES = frozenset({"succeeded", "pending"})


class ReconciliationService(BaseService):
    """Resolves SettlementReconciliation rows against processor state."""

    _stripe_adapter: type | None = None
    orchestrator = EscrowOrchestrator

    @classmethod
    def get_stripe_adapter(cls) -> type:
        return cls._stripe_adapter or StripeAdapter

    @classmethod
    def set_stripe_adapter(cls, adapter: type | None) -> None:
        cls._stripe_adapter = adapter

    @classmethod
    def _processor_confirms(cls, record: SettlementReconciliation, order: Order) -> bool:
        """
        Whether the processor shows the effect the record describes.

        Raises:
            StripeError: Processor state could not be read
        """
        adapter = cls.get_stripe_adapter()
        operation = record.operation

        if operation == ReconciliationOperation.AUTHORIZE:
            intent = adapter.retrieve_payment_intent(
                record.processor_reference or order.payment_intent_id
            )
            return intent.is_authorized

        if operation == ReconciliationOperation.CAPTURE:
            intent = adapter.retrieve_payment_intent(order.payment_intent_id)
            if intent.amount_received < to_minor_units(record.amount) or not intent.charge_id:
                return False
            if not record.processor_reference:
                record.processor_reference = intent.charge_id
            return True

        if not record.processor_reference:
            return False

        if operation == ReconciliationOperation.TRANSFER:
            transfer = adapter.retrieve_transfer(record.processor_reference)
            return not transfer.reversed

        if operation == ReconciliationOperation.REFUND:
            refund = adapter.retrieve_refund(record.processor_reference)
            return refund.status in REFUND_EFFECTIVE_STATUSES

        raise ValueError(f"Unknown reconciliation operation: {operation}")

    @classmethod
    def _mark_failed_attempt(cls, record: SettlementReconciliation, exc: Exception) -> None:
        record.attempts += 1
        record.error_message = str(exc)
        record.save(update_fields=["attempts", "error_message", "updated_at"])

    @classmethod
    def resolve(cls, record_id: Any) -> ServiceResult[SettlementReconciliation]:
        """
        Decide one reconciliation record.

        Returns:
            ServiceResult with the (resolved, abandoned or still open) record
        """
        record = (
            SettlementReconciliation.objects.select_related("order")
            .filter(pk=record_id)
            .first()
        )
        if record is None:
            return ServiceResult.failure(
                f"Reconciliation record {record_id} not found",
                error_code="RECONCILIATION_NOT_FOUND",
                details={"reconciliation_id": str(record_id)},
            )
        if not record.is_open:
            return ServiceResult.success(record)

        log_context = {
            "reconciliation_id": str(record.id),
            "order_id": str(record.order_id),
            "operation": record.operation,
            "stage": record.stage,
            "processor_reference": record.processor_reference,
        }

        try:
            with order_lock(record.order_id):
                confirmed = cls._processor_confirms(record, record.order)
                with cls.atomic():
                    locked = SettlementReconciliation.objects.select_for_update().get(pk=record.pk)
                    if not locked.is_open:
                        return ServiceResult.success(locked)
                    if confirmed:
                        locked.processor_reference = record.processor_reference
                        cls._apply(locked)
                    else:
                        locked.status = ReconciliationStatus.ABANDONED
                        locked.resolution_notes = "Processor shows no effect for this reference"
                    locked.attempts += 1
                    locked.resolved_at = timezone.now()
                    locked.save()
                    record = locked
        except StripeError as e:
            cls._mark_failed_attempt(record, e)
            cls.get_logger().warning(
                "Reconciliation deferred: processor state unavailable",
                extra={**log_context, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)
        except Exception as e:
            cls._mark_failed_attempt(record, e)
            return cls.handle_exception(e, f"Reconciliation {record.id} failed")

        cls.get_logger().info(
            "Reconciliation record decided",
            extra={**log_context, "status": record.status},
        )
        return ServiceResult.success(record)

    @classmethod
    def _apply(cls, record: SettlementReconciliation) -> None:
        """Apply the local commit, or link the entry if it already exists."""
        existing = recorded_stages(record.order).get(record.stage)
        if existing is not None:
            record.resolved_entry = existing
            record.resolution_notes = "Ledger entry already recorded"
        else:
            record.resolved_entry = cls.orchestrator.apply_reconciled(record)
            record.resolution_notes = "Processor confirmed; local commit applied"
        record.status = ReconciliationStatus.RESOLVED

    @classmethod
    def sweep_open(cls, limit: int = 100) -> ServiceResult[dict[str, int]]:
        """Resolve up to `limit` open records, oldest first."""
        counts = {"resolved": 0, "abandoned": 0, "open": 0}
        record_ids = list(
            SettlementReconciliation.objects.filter(status=ReconciliationStatus.OPEN)
            .order_by("created_at")
            .values_list("id", flat=True)[:limit]
        )
        for record_id in record_ids:
            result = cls.resolve(record_id)
            status = ReconciliationStatus.OPEN
            if result.success and result.data is not None:
                status = result.data.status
            counts[status] += 1

        if counts["open"]:
            cls.get_logger().critical(
                "Reconciliation records remain open",
                extra=counts,
            )
        return ServiceResult.success(counts)
