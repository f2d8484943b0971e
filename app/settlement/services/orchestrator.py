"""
Escrow settlement orchestrator.

EscrowOrchestrator is the only component that moves money for an order and
the only writer of the milestone ledger after order creation. Every
operation follows the same sequence:

    1. Acquire the per-order Redis lock (held until the operation ends)
    2. Phase 1: under a row lock, evaluate preconditions in order
         - open reconciliation record       -> ReconciliationPendingError
         - stage already recorded           -> AlreadyProcessedError
         - order closed                     -> StateConflictError
         - stage requested out of order     -> InvalidStageOrderError
         - order status does not permit it  -> StateConflictError
    3. Call the processor OUTSIDE any transaction (idempotency-keyed)
    4. Phase 2: one transaction writes the ledger entry, settles entries,
       fires the FSM transition, rebuilds the breakdown cache and
       schedules notifications
    5. If phase 2 fails after the processor succeeded, a
       SettlementReconciliation row is written and PartialCommitFailureError
       raised; the money movement is never retried blindly

Usage:
    from settlement.services import EscrowOrchestrator

    EscrowOrchestrator.authorize(order.id, actor=seller)
    EscrowOrchestrator.capture_escrow(order.id)
    EscrowOrchestrator.record_delivery(order.id, actor=seller)
    EscrowOrchestrator.record_review(order.id, actor=buyer)
    EscrowOrchestrator.release_funds(order.id)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from django.utils import timezone

from django_fsm import can_proceed

from core.services import BaseService

from settlement.adapters import IdempotencyKeyGenerator, StripeAdapter
from settlement.exceptions import (
    AlreadyProcessedError,
    AlreadyReleasedError,
    InvalidStageOrderError,
    PartialCommitFailureError,
    PaymentDeclinedError,
    PayoutDestinationMissingError,
    ReconciliationPendingError,
    StateConflictError,
    StripeCardDeclinedError,
    StripeError,
    StripeInvalidAccountError,
)
from settlement.ledger import (
    append_entry,
    booked_amount_for_stage,
    failed_attempts,
    recorded_stages,
    refresh_breakdown,
    released_total,
    stage_index,
)
from settlement.locks import lock_order, order_lock
from settlement.models import (
    MilestoneEntry,
    Order,
    OrderStatusEvent,
    ReconciliationOperation,
    SettlementReconciliation,
)
from settlement.pricing import to_minor_units
from settlement.services.earnings import EarningsService
from settlement.services.notifications import NotificationDispatcher
from settlement.services.payouts import PayoutDestinationResolver
from settlement.state_machines import (
    ACTIVE_STATUSES,
    PAYMENT_STAGE_ORDER,
    STAGE_ALLOWED_STATUSES,
    STAGE_PREREQUISITES,
    TERMINAL_STATUSES,
    ActorRole,
    EscrowStatus,
    MilestonePaymentStatus,
    MilestoneStage,
    OrderPaymentStatus,
    OrderStatus,
    ReconciliationStatus,
)

if TYPE_CHECKING:
    from typing import Any, Callable

    from django.contrib.auth.models import User


ZERO = Decimal("0.00")

# Transitions that move no money and write no ledger entry
NON_FINANCIAL_TRANSITIONS = frozenset(
    {
        "submit_requirements",
        "start",
        "mark_halfway",
        "request_revision",
        "approve_delivery",
        "submit_review",
    }
)

REFUNDABLE_STATUSES = (
    MilestonePaymentStatus.CAPTURED,
    MilestonePaymentStatus.HELD_IN_ESCROW,
)

RELEASABLE_STATUSES = (
    MilestonePaymentStatus.HELD_IN_ESCROW,
    MilestonePaymentStatus.PENDING_RELEASE,
)

VOIDABLE_STATUSES = (
    MilestonePaymentStatus.PENDING,
    MilestonePaymentStatus.AUTHORIZED,
    MilestonePaymentStatus.PENDING_RELEASE,
)


@dataclass
class SettlementStep:
    """
    One settlement step, as decided in phase 1 and applied in phase 2.

    Reconciliation rebuilds a step from a SettlementReconciliation row and
    applies it with the same code path.
    """

    operation: str
    stage: str
    amount: Decimal
    idempotency_key: str | None = None
    reference: str | None = None
    actor: Any = None
    role: str = ActorRole.SYSTEM
    reason: str = ""
    action: str = ""
    expected_version: int | None = None


class EscrowOrchestrator(BaseService):
    """
    Mutation entry points of the settlement engine.

    Collaborators are class attributes so tests can substitute them:
        _stripe_adapter     processor capability (StripeAdapter)
        payout_resolver     seller -> payout destination or None
        earnings            seller earnings ledger
        notifier            out-of-band notification dispatcher
    """

    _stripe_adapter: type | None = None
    payout_resolver = PayoutDestinationResolver
    earnings = EarningsService
    notifier = NotificationDispatcher

    @classmethod
    def get_stripe_adapter(cls) -> type:
        return cls._stripe_adapter or StripeAdapter

    @classmethod
    def set_stripe_adapter(cls, adapter: type | None) -> None:
        cls._stripe_adapter = adapter

    # =========================================================================
    # Preconditions
    # =========================================================================

    @classmethod
    def _check_reconciliation(cls, order: Order) -> None:
        """
        Refuse to act on an order whose last processor call is unrecorded.

        Raises:
            ReconciliationPendingError: An open reconciliation record exists
        """
        record = (
            SettlementReconciliation.objects.filter(
                order=order, status=ReconciliationStatus.OPEN
            )
            .order_by("created_at")
            .first()
        )
        if record is None:
            return
        cls.get_logger().warning(
            "Operation blocked by open reconciliation",
            extra={
                "order_id": str(order.id),
                "reconciliation_id": str(record.id),
                "operation": record.operation,
            },
        )
        raise ReconciliationPendingError(
            f"Order {order.id} has an unrecorded {record.operation} awaiting reconciliation",
            details={"order_id": str(order.id), "operation": record.operation},
        )

    @classmethod
    def _check_stage(cls, order: Order, stage: str) -> dict[str, MilestoneEntry]:
        """
        Evaluate the stage preconditions against a row-locked order.

        Raises:
            AlreadyProcessedError: Stage already recorded (carries the entry)
            StateConflictError: Order closed, or status does not permit stage
            InvalidStageOrderError: Prerequisite missing or later stage recorded
        """
        cls._check_reconciliation(order)
        recorded = recorded_stages(order)
        details = {"order_id": str(order.id), "stage": stage, "current_status": order.status}

        existing = recorded.get(stage)
        if existing is not None:
            cls.get_logger().warning(
                "Stage already processed",
                extra={**details, "entry_id": str(existing.id)},
            )
            raise AlreadyProcessedError(
                f"Stage '{stage}' already recorded for order {order.id}",
                existing=existing,
                details=details,
            )

        if order.status in TERMINAL_STATUSES:
            raise StateConflictError(
                f"Order {order.id} is {order.status}",
                details=details,
            )

        later = [
            recorded_stage
            for recorded_stage in recorded
            if recorded_stage in PAYMENT_STAGE_ORDER
            and stage_index(recorded_stage) > stage_index(stage)
        ]
        prerequisite = STAGE_PREREQUISITES.get(stage)
        if later or (prerequisite and prerequisite not in recorded):
            raise InvalidStageOrderError(
                f"Stage '{stage}' cannot be recorded for order {order.id} "
                f"(requires '{prerequisite}')",
                details={**details, "requires": prerequisite, "later_stages": later},
            )

        if order.status not in STAGE_ALLOWED_STATUSES[stage]:
            raise StateConflictError(
                f"Cannot record '{stage}' for order in '{order.status}' status",
                details=details,
            )
        return recorded

    @classmethod
    def _idempotency_key(cls, operation: str, order: Order, stage: str) -> str:
        attempt = failed_attempts(order, stage) + 1
        return IdempotencyKeyGenerator.generate(operation, order.id, attempt)

    # =========================================================================
    # Phase 2 / Failure Recording
    # =========================================================================

    @classmethod
    def _commit(
        cls,
        order_id: Any,
        step: SettlementStep,
        apply: Callable[[Order, SettlementStep], MilestoneEntry],
        reconcile: bool = True,
    ) -> MilestoneEntry:
        """
        Apply a step in one transaction under the order's row lock.

        With reconcile=True (a processor call already succeeded), any
        failure is turned into a reconciliation record and
        PartialCommitFailureError.
        """
        try:
            with cls.atomic():
                order = lock_order(order_id, expected_version=step.expected_version)
                entry = apply(order, step)
                refresh_breakdown(order)
                order.save()
                cls.notifier.notify_milestone(order, entry.stage, entry.amount)
        except Exception as exc:
            if not reconcile:
                raise
            record = cls._open_reconciliation(order_id, step, exc)
            raise PartialCommitFailureError(
                "Payment was processed but could not be recorded; "
                "it will be reconciled",
                details={
                    "order_id": str(order_id),
                    "stage": step.stage,
                    "reconciliation_id": str(record.id),
                },
            ) from exc

        cls.get_logger().info(
            "Settlement step committed",
            extra={
                "order_id": str(order_id),
                "operation": step.operation,
                "stage": step.stage,
                "entry_id": str(entry.id),
                "amount": str(entry.amount),
                "processor_reference": step.reference,
            },
        )
        return entry

    @classmethod
    def _open_reconciliation(
        cls,
        order_id: Any,
        step: SettlementStep,
        exc: Exception,
    ) -> SettlementReconciliation:
        with cls.atomic():
            record = SettlementReconciliation.objects.create(
                order_id=order_id,
                operation=step.operation,
                stage=step.stage,
                processor_reference=step.reference or "",
                idempotency_key=step.idempotency_key or "",
                amount=step.amount,
                currency=_order_currency(order_id),
                actor=step.actor,
                actor_role=step.role,
                reason=step.reason,
                error_message=str(exc) or exc.__class__.__name__,
            )
        cls.get_logger().critical(
            "Partial commit failure: processor succeeded, ledger not updated",
            extra={
                "order_id": str(order_id),
                "operation": step.operation,
                "stage": step.stage,
                "amount": str(step.amount),
                "processor_reference": step.reference,
                "idempotency_key": step.idempotency_key,
                "reconciliation_id": str(record.id),
                "error": str(exc),
            },
            exc_info=exc,
        )
        return record

    @classmethod
    def _record_decline(
        cls,
        order_id: Any,
        step: SettlementStep,
        error: StripeError,
    ) -> MilestoneEntry:
        """Write the 'failed' entry for a declined processor call. Order unaffected."""
        with cls.atomic():
            order = lock_order(order_id)
            entry = append_entry(
                order,
                step.stage,
                step.amount,
                MilestonePaymentStatus.FAILED,
                payment_intent_id=order.payment_intent_id,
                failed_at=timezone.now(),
                failure_reason=error.message,
                failure_code=error.decline_code or error.stripe_code or error.error_code,
                idempotency_key=step.idempotency_key,
                triggered_by_user=step.actor,
                triggered_by_role=step.role,
                triggered_by_action=step.action,
            )
            refresh_breakdown(order)
            order.save(update_fields=["payment_breakdown", "breakdown_version", "version", "updated_at"])

        cls.get_logger().warning(
            "Payment declined",
            extra={
                "order_id": str(order_id),
                "stage": step.stage,
                "amount": str(step.amount),
                "idempotency_key": step.idempotency_key,
                "decline_code": error.decline_code,
                "entry_id": str(entry.id),
            },
        )
        return entry

    @classmethod
    def _processor_failed(cls, order: Order, step: SettlementStep, error: StripeError) -> None:
        cls.get_logger().error(
            "Processor call failed",
            extra={
                "order_id": str(order.id),
                "operation": step.operation,
                "stage": step.stage,
                "amount": str(step.amount),
                "payment_intent_id": order.payment_intent_id,
                "charge_id": order.charge_id,
                "idempotency_key": step.idempotency_key,
                "error_code": error.error_code,
                "is_retryable": error.is_retryable,
            },
        )

    # =========================================================================
    # Authorize (stage: accepted)
    # =========================================================================

    @classmethod
    def authorize(
        cls,
        order_id: Any,
        actor: User | None = None,
        role: str = ActorRole.SELLER,
    ) -> MilestoneEntry:
        """
        Seller accepts: authorize the checkout payment without capture.

        Raises:
            StateConflictError: No payment reference, or order not pending
            AlreadyProcessedError: Already authorized
            PaymentDeclinedError: Processor declined (failed entry recorded)
        """
        stage = MilestoneStage.ACCEPTED
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_stage(order, stage)
                if not order.payment_intent_id:
                    raise StateConflictError(
                        f"Order {order.id} has no payment reference",
                        error_code="PAYMENT_REFERENCE_MISSING",
                        details={"order_id": str(order.id)},
                    )
                step = SettlementStep(
                    operation=ReconciliationOperation.AUTHORIZE,
                    stage=stage,
                    amount=booked_amount_for_stage(order, stage),
                    idempotency_key=cls._idempotency_key("authorize", order, stage),
                    actor=actor,
                    role=role,
                    action="accept_order",
                    expected_version=order.version,
                )

            try:
                result = cls.get_stripe_adapter().authorize_payment_intent(
                    payment_intent_id=order.payment_intent_id,
                    amount_cents=to_minor_units(order.total_amount),
                    idempotency_key=step.idempotency_key,
                )
            except StripeCardDeclinedError as e:
                cls._record_decline(order_id, step, e)
                raise PaymentDeclinedError(
                    "Payment authorization was declined",
                    details={"order_id": str(order_id), "stage": stage},
                ) from e
            except StripeError as e:
                cls._processor_failed(order, step, e)
                raise

            step.reference = result.id
            return cls._commit(order_id, step, cls._apply_authorize)

    @classmethod
    def _apply_authorize(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        now = timezone.now()
        entry = append_entry(
            order,
            step.stage,
            step.amount,
            MilestonePaymentStatus.AUTHORIZED,
            payment_intent_id=step.reference or order.payment_intent_id,
            authorized_at=now,
            idempotency_key=step.idempotency_key,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action or "accept_order",
        )
        order.lock_pricing()
        order.accept(actor=step.actor, role=step.role)
        order.payment_milestone_stage = step.stage
        order.payment_status = OrderPaymentStatus.PROCESSING
        return entry

    # =========================================================================
    # Capture Escrow (stage: in_escrow)
    # =========================================================================

    @classmethod
    def capture_escrow(
        cls,
        order_id: Any,
        actor: User | None = None,
        role: str = ActorRole.SYSTEM,
    ) -> MilestoneEntry:
        """
        Capture the escrow share of the total against the authorization.

        Raises:
            InvalidStageOrderError: Not authorized yet
            StateConflictError: Order status does not permit escrow
            AlreadyProcessedError: Escrow already captured
            PaymentDeclinedError: Processor declined (failed entry recorded)
        """
        stage = MilestoneStage.IN_ESCROW
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_stage(order, stage)
                step = SettlementStep(
                    operation=ReconciliationOperation.CAPTURE,
                    stage=stage,
                    amount=booked_amount_for_stage(order, stage),
                    idempotency_key=cls._idempotency_key("capture", order, stage),
                    actor=actor,
                    role=role,
                    action="capture_escrow",
                    expected_version=order.version,
                )

            try:
                result = cls.get_stripe_adapter().capture_payment_intent(
                    payment_intent_id=order.payment_intent_id,
                    idempotency_key=step.idempotency_key,
                    amount_to_capture=to_minor_units(step.amount),
                )
            except StripeCardDeclinedError as e:
                cls._record_decline(order_id, step, e)
                raise PaymentDeclinedError(
                    "Escrow capture was declined",
                    details={"order_id": str(order_id), "stage": stage},
                ) from e
            except StripeError as e:
                cls._processor_failed(order, step, e)
                raise

            step.reference = result.charge_id
            return cls._commit(order_id, step, cls._apply_capture)

    @classmethod
    def _apply_capture(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        now = timezone.now()
        entry = append_entry(
            order,
            step.stage,
            step.amount,
            MilestonePaymentStatus.HELD_IN_ESCROW,
            payment_intent_id=order.payment_intent_id,
            charge_id=step.reference,
            captured_at=now,
            idempotency_key=step.idempotency_key,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action or "capture_escrow",
        )
        order.charge_id = step.reference
        order.escrow_status = EscrowStatus.PARTIAL
        order.escrow_locked_at = now
        order.payment_milestone_stage = step.stage
        cls.earnings.accrue(order.seller_id, step.amount, order.currency)
        return entry

    # =========================================================================
    # Delivery & Review (no processor call)
    # =========================================================================

    @classmethod
    def record_delivery(
        cls,
        order_id: Any,
        actor: User | None = None,
        role: str = ActorRole.SELLER,
    ) -> MilestoneEntry:
        """
        Seller delivers: reserve the delivery share for release.

        A re-delivery after a revision request only moves the order back to
        DELIVERED and returns the original entry.
        """
        stage = MilestoneStage.DELIVERED
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_reconciliation(order)
                existing = recorded_stages(order).get(stage)
                if existing is not None and order.status == OrderStatus.REQUESTED_REVISION:
                    order.deliver(actor=actor, role=role, reason="redelivery")
                    order.save()
                    cls.get_logger().info(
                        "Order re-delivered after revision",
                        extra={"order_id": str(order.id), "entry_id": str(existing.id)},
                    )
                    return existing
                cls._check_stage(order, stage)
                step = SettlementStep(
                    operation="record_delivery",
                    stage=stage,
                    amount=booked_amount_for_stage(order, stage),
                    actor=actor,
                    role=role,
                    action="deliver_order",
                )
            return cls._commit(order_id, step, cls._apply_delivery, reconcile=False)

    @classmethod
    def _apply_delivery(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        entry = append_entry(
            order,
            step.stage,
            step.amount,
            MilestonePaymentStatus.PENDING_RELEASE,
            payment_intent_id=order.payment_intent_id,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action,
        )
        order.deliver(actor=step.actor, role=step.role)
        order.payment_milestone_stage = step.stage
        return entry

    @classmethod
    def record_review(
        cls,
        order_id: Any,
        actor: User | None = None,
        role: str = ActorRole.BUYER,
    ) -> MilestoneEntry:
        """Buyer reviews: reserve the review share for release."""
        stage = MilestoneStage.REVIEWED
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_stage(order, stage)
                step = SettlementStep(
                    operation="record_review",
                    stage=stage,
                    amount=booked_amount_for_stage(order, stage),
                    actor=actor,
                    role=role,
                    action="review_order",
                )
            return cls._commit(order_id, step, cls._apply_review, reconcile=False)

    @classmethod
    def _apply_review(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        entry = append_entry(
            order,
            step.stage,
            step.amount,
            MilestonePaymentStatus.PENDING_RELEASE,
            payment_intent_id=order.payment_intent_id,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action,
        )
        if order.status == OrderStatus.DELIVERED:
            order.approve_delivery(actor=step.actor, role=step.role)
        order.submit_review(actor=step.actor, role=step.role)
        order.payment_milestone_stage = step.stage
        return entry

    # =========================================================================
    # Release (stage: completed)
    # =========================================================================

    @classmethod
    def release_funds(
        cls,
        order_id: Any,
        actor: User | None = None,
        role: str = ActorRole.SYSTEM,
    ) -> MilestoneEntry:
        """
        Transfer everything held or pending release to the seller, at once.

        Raises:
            PayoutDestinationMissingError: Seller cannot receive funds yet;
                nothing was changed
            StateConflictError: Order not in a review-complete state, or the
                release would exceed the order total
            AlreadyProcessedError: Already released
        """
        stage = MilestoneStage.COMPLETED
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_stage(order, stage)
                total = (
                    MilestoneEntry.objects.for_order(order)
                    .with_status(*RELEASABLE_STATUSES)
                    .total()
                )
                if total <= ZERO:
                    raise StateConflictError(
                        f"Order {order.id} has no funds to release",
                        details={"order_id": str(order.id)},
                    )
                already_released = released_total(order)
                if already_released + total > order.total_amount:
                    raise StateConflictError(
                        f"Release of {total} would exceed order total {order.total_amount}",
                        error_code="RELEASE_EXCEEDS_TOTAL",
                        details={
                            "order_id": str(order.id),
                            "amount": str(total),
                            "already_released": str(already_released),
                            "total_amount": str(order.total_amount),
                        },
                    )
                destination = cls.payout_resolver.resolve(order.seller_id)
                if not destination:
                    cls.get_logger().warning(
                        "Release deferred: payout destination missing",
                        extra={"order_id": str(order.id), "seller_id": str(order.seller_id)},
                    )
                    raise PayoutDestinationMissingError(
                        "Seller has no verified payout destination",
                        details={"order_id": str(order.id), "seller_id": str(order.seller_id)},
                    )
                step = SettlementStep(
                    operation=ReconciliationOperation.TRANSFER,
                    stage=stage,
                    amount=total,
                    idempotency_key=cls._idempotency_key("transfer", order, stage),
                    actor=actor,
                    role=role,
                    action="release_funds",
                    expected_version=order.version,
                )

            try:
                result = cls.get_stripe_adapter().create_transfer(
                    amount_cents=to_minor_units(total),
                    destination_account=destination,
                    idempotency_key=step.idempotency_key,
                    currency=order.currency,
                    transfer_group=f"ORDER_{order.id}",
                    source_transaction=order.charge_id,
                    metadata={"order_id": str(order.id), "seller_id": str(order.seller_id)},
                )
            except StripeInvalidAccountError as e:
                cls._processor_failed(order, step, e)
                raise PayoutDestinationMissingError(
                    "Seller payout destination rejected the transfer",
                    details={"order_id": str(order_id), "destination": destination},
                ) from e
            except StripeError as e:
                cls._processor_failed(order, step, e)
                raise

            step.reference = result.id
            return cls._commit(order_id, step, cls._apply_release)

    @classmethod
    def _apply_release(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        now = timezone.now()
        open_entries = list(
            MilestoneEntry.objects.for_order(order).with_status(*RELEASABLE_STATUSES)
        )
        total = sum((entry.amount for entry in open_entries), ZERO)
        if total != step.amount:
            cls.get_logger().error(
                "Released total differs from transferred amount",
                extra={
                    "order_id": str(order.id),
                    "ledger_total": str(total),
                    "transferred": str(step.amount),
                },
            )

        completed = append_entry(
            order,
            step.stage,
            total,
            MilestonePaymentStatus.RELEASED,
            payment_intent_id=order.payment_intent_id,
            charge_id=order.charge_id,
            transfer_id=step.reference,
            released_at=now,
            idempotency_key=step.idempotency_key,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action or "release_funds",
        )
        # The uncaptured authorization is folded into completion without adding
        # to the transferred amount.
        lapsed = MilestoneEntry.objects.for_order(order).with_status(
            MilestonePaymentStatus.AUTHORIZED
        )
        for entry in [*open_entries, *lapsed]:
            entry.payment_status = MilestonePaymentStatus.RELEASED
            entry.released_at = now
            entry.settled_by = completed
            entry.save(update_fields=["payment_status", "released_at", "settled_by", "updated_at"])

        order.transfer_id = step.reference
        order.escrow_status = EscrowStatus.RELEASED
        order.payment_status = OrderPaymentStatus.COMPLETED
        order.funds_released_at = now
        order.payment_milestone_stage = step.stage
        order.complete(actor=step.actor, role=step.role)
        cls.earnings.release(order.seller_id, total)
        return completed

    # =========================================================================
    # Cancellation / Refund
    # =========================================================================

    @classmethod
    def cancel(
        cls,
        order_id: Any,
        reason: str,
        actor: User | None = None,
        role: str = ActorRole.SYSTEM,
    ) -> MilestoneEntry:
        """
        Cancel the order, refunding captured escrow in one processor call.

        Raises:
            AlreadyReleasedError: Order already released or cancelled
            StateConflictError: Order cannot be cancelled from its status
        """
        stage = MilestoneStage.CANCELLED
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_reconciliation(order)
                recorded = recorded_stages(order)
                closing = recorded.get(MilestoneStage.COMPLETED) or recorded.get(stage)
                if closing is not None or order.is_terminal:
                    raise AlreadyReleasedError(
                        f"Payment lifecycle of order {order.id} is already closed",
                        existing=closing,
                        details={"order_id": str(order.id), "current_status": order.status},
                    )
                if not can_proceed(order.cancel):
                    raise StateConflictError(
                        f"Cannot cancel order in '{order.status}' status",
                        details={"order_id": str(order.id), "current_status": order.status},
                    )
                refund_total = (
                    MilestoneEntry.objects.for_order(order)
                    .with_status(*REFUNDABLE_STATUSES)
                    .total()
                )
                step = SettlementStep(
                    operation=ReconciliationOperation.REFUND,
                    stage=stage,
                    amount=refund_total,
                    idempotency_key=(
                        cls._idempotency_key("refund", order, stage) if refund_total > ZERO else None
                    ),
                    actor=actor,
                    role=role,
                    reason=reason,
                    action="cancel_order",
                    expected_version=order.version,
                )
                if refund_total > ZERO and not order.charge_id:
                    raise StateConflictError(
                        f"Order {order.id} holds escrow without a charge reference",
                        error_code="CHARGE_REFERENCE_MISSING",
                        details={"order_id": str(order.id)},
                    )

            if refund_total <= ZERO:
                return cls._commit(order_id, step, cls._apply_cancel, reconcile=False)

            try:
                result = cls.get_stripe_adapter().create_refund(
                    charge_id=order.charge_id,
                    idempotency_key=step.idempotency_key,
                    amount_cents=to_minor_units(refund_total),
                    reason="requested_by_customer",
                    metadata={"order_id": str(order.id), "reason": reason[:500]},
                )
            except StripeError as e:
                cls._processor_failed(order, step, e)
                raise

            step.reference = result.id
            return cls._commit(order_id, step, cls._apply_cancel)

    @classmethod
    def _apply_cancel(cls, order: Order, step: SettlementStep) -> MilestoneEntry:
        now = timezone.now()
        entries = list(MilestoneEntry.objects.for_order(order).effective())
        refunded = [e for e in entries if e.payment_status in REFUNDABLE_STATUSES]
        voided = [e for e in entries if e.payment_status in VOIDABLE_STATUSES]
        refund_total = sum((e.amount for e in refunded), ZERO)

        cancel_entry = append_entry(
            order,
            step.stage,
            refund_total,
            MilestonePaymentStatus.REFUNDED if refund_total > ZERO else MilestonePaymentStatus.CANCELLED,
            payment_intent_id=order.payment_intent_id,
            charge_id=order.charge_id,
            refund_id=step.reference,
            refunded_at=now if refund_total > ZERO else None,
            idempotency_key=step.idempotency_key,
            notes=step.reason,
            triggered_by_user=step.actor,
            triggered_by_role=step.role,
            triggered_by_action=step.action or "cancel_order",
        )
        for entry in refunded:
            entry.payment_status = MilestonePaymentStatus.REFUNDED
            entry.refunded_at = now
            entry.settled_by = cancel_entry
            entry.save(update_fields=["payment_status", "refunded_at", "settled_by", "updated_at"])
        for entry in voided:
            entry.payment_status = MilestonePaymentStatus.CANCELLED
            entry.settled_by = cancel_entry
            entry.save(update_fields=["payment_status", "settled_by", "updated_at"])

        if refund_total > ZERO:
            order.escrow_status = EscrowStatus.REFUNDED
            order.payment_status = OrderPaymentStatus.REFUNDED
            cls.earnings.reverse(order.seller_id, refund_total)
        order.payment_milestone_stage = step.stage
        order.cancel(actor=step.actor, role=step.role, reason=step.reason)
        return cancel_entry

    # =========================================================================
    # Disputes & Non-Financial Transitions
    # =========================================================================

    @classmethod
    def open_dispute(
        cls,
        order_id: Any,
        reason: str,
        actor: User | None = None,
        role: str = ActorRole.BUYER,
    ) -> Order:
        """Stop work on the order. Money stays where it is."""
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_reconciliation(order)
                if not can_proceed(order.dispute):
                    raise StateConflictError(
                        f"Cannot dispute order in '{order.status}' status",
                        details={"order_id": str(order.id), "current_status": order.status},
                    )
                order.dispute(actor=actor, role=role, reason=reason)
                order.save()
                payload = {"order_id": str(order.id), "reason": reason}
                cls.notifier.notify(order.buyer_id, "order.disputed", payload)
                cls.notifier.notify(order.seller_id, "order.disputed", payload)

        cls.get_logger().info(
            "Order disputed",
            extra={"order_id": str(order.id), "actor_role": role},
        )
        return order

    @classmethod
    def advance_status(
        cls,
        order_id: Any,
        transition: str,
        actor: User | None = None,
        role: str = ActorRole.SYSTEM,
        reason: str = "",
    ) -> Order:
        """
        Fire a lifecycle transition that moves no money.

        Raises:
            ValueError: transition is not a non-financial transition
            StateConflictError: Transition not allowed from current status
        """
        if transition not in NON_FINANCIAL_TRANSITIONS:
            raise ValueError(f"Unknown lifecycle transition: {transition}")

        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                cls._check_reconciliation(order)
                method = getattr(order, transition)
                if not can_proceed(method):
                    raise StateConflictError(
                        f"Cannot {transition} order in '{order.status}' status",
                        details={
                            "order_id": str(order.id),
                            "current_status": order.status,
                            "transition": transition,
                        },
                    )
                method(actor=actor, role=role, reason=reason)
                order.save()
        return order

    @classmethod
    def extend_deadline(cls, order_id: Any, days: int, reason: str = "") -> Order | None:
        """
        Push a stalled order's deadline back once. Money is not touched.

        Returns None when the order no longer qualifies (finished, already
        extended, or deadline not passed) by the time the lock is held.
        """
        with order_lock(order_id):
            with cls.atomic():
                order = lock_order(order_id)
                now = timezone.now()
                if (
                    order.status not in ACTIVE_STATUSES
                    or order.deadline_extended
                    or order.deadline is None
                    or order.deadline >= now
                ):
                    return None
                previous = order.deadline
                order.deadline = previous + timedelta(days=days)
                order.deadline_extended = True
                order.save(update_fields=["deadline", "deadline_extended", "version", "updated_at"])
                OrderStatusEvent.objects.create(
                    order=order,
                    from_status=order.status,
                    to_status=order.status,
                    transition="extend_deadline",
                    actor_role=ActorRole.SYSTEM,
                    reason=reason or f"Deadline passed; extended by {days} days",
                )
                payload = {
                    "order_id": str(order.id),
                    "previous_deadline": previous.isoformat(),
                    "deadline": order.deadline.isoformat(),
                }
                cls.notifier.notify(order.buyer_id, "order.deadline_extended", payload)
                cls.notifier.notify(order.seller_id, "order.deadline_extended", payload)

        cls.get_logger().info(
            "Order deadline extended",
            extra={"order_id": str(order.id), "deadline": order.deadline.isoformat()},
        )
        return order

    # =========================================================================
    # Reconciliation Support
    # =========================================================================

    APPLY_BY_OPERATION = {
        ReconciliationOperation.AUTHORIZE: "_apply_authorize",
        ReconciliationOperation.CAPTURE: "_apply_capture",
        ReconciliationOperation.TRANSFER: "_apply_release",
        ReconciliationOperation.REFUND: "_apply_cancel",
    }

    @classmethod
    def apply_reconciled(cls, record: SettlementReconciliation) -> MilestoneEntry:
        """
        Apply the local commit of a confirmed reconciliation record.

        Runs the same phase 2 as the original operation; the caller holds
        the order lock.
        """
        step = SettlementStep(
            operation=record.operation,
            stage=record.stage,
            amount=record.amount,
            idempotency_key=record.idempotency_key or None,
            reference=record.processor_reference or None,
            actor=record.actor,
            role=record.actor_role,
            reason=record.reason,
            action=f"reconcile_{record.operation}",
        )
        apply = getattr(cls, cls.APPLY_BY_OPERATION[record.operation])
        return cls._commit(record.order_id, step, apply, reconcile=False)


def _order_currency(order_id: Any) -> str:
    return Order.objects.filter(pk=order_id).values_list("currency", flat=True).first() or ""
