"""
Tests for EscrowOrchestrator settlement steps.

Covers authorization, escrow capture, delivery, review and release:
processor calls (mocked Stripe adapter), ledger entries, order state,
precondition ordering, idempotent replays, declines and partial commits.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from settlement.exceptions import (
    AlreadyProcessedError,
    InvalidStageOrderError,
    LockAcquisitionError,
    PartialCommitFailureError,
    PaymentDeclinedError,
    PayoutDestinationMissingError,
    ReconciliationPendingError,
    StateConflictError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
)
from settlement.models import (
    MilestoneEntry,
    Order,
    OrderStatusEvent,
    SellerEarnings,
    SettlementReconciliation,
)
from settlement.services import EscrowOrchestrator
from settlement.state_machines import (
    ActorRole,
    EscrowStatus,
    MilestonePaymentStatus,
    MilestoneStage,
    OrderPaymentStatus,
    OrderStatus,
    ReconciliationStatus,
)
from settlement.tests.factories import (
    MilestoneEntryFactory,
    OrderFactory,
    PayoutAccountFactory,
    SettlementReconciliationFactory,
)


def entries_of(order):
    return list(MilestoneEntry.objects.for_order(order))


# =============================================================================
# Authorize
# =============================================================================


class TestAuthorize:
    """Tests for EscrowOrchestrator.authorize()."""

    def test_authorizes_ten_percent(self, placed_order, seller, mock_stripe):
        entry = EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        assert entry.stage == MilestoneStage.ACCEPTED
        assert entry.amount == Decimal("20.00")
        assert entry.payment_status == MilestonePaymentStatus.AUTHORIZED
        assert entry.sequence == 2
        assert entry.authorized_at is not None
        assert entry.triggered_by_user == seller
        assert entry.triggered_by_role == ActorRole.SELLER

    def test_holds_full_total_at_processor(self, placed_order, seller, mock_stripe):
        EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        kwargs = mock_stripe.authorize_payment_intent.call_args.kwargs
        assert kwargs["payment_intent_id"] == placed_order.payment_intent_id
        assert kwargs["amount_cents"] == 20000
        assert kwargs["idempotency_key"].startswith(f"authorize:{placed_order.id}:1:")

    def test_order_accepted_and_pricing_locked(self, placed_order, seller, mock_stripe):
        EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        order = Order.objects.get(pk=placed_order.pk)
        assert order.status == OrderStatus.ACCEPTED
        assert order.accepted_at is not None
        assert order.pricing_locked_at is not None
        assert order.payment_milestone_stage == MilestoneStage.ACCEPTED
        assert order.payment_status == OrderPaymentStatus.PROCESSING
        assert order.payment_breakdown["authorized_amount"] == "20.00"
        assert order.breakdown_version == 1

    def test_history_event_written(self, placed_order, seller, mock_stripe):
        EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        event = OrderStatusEvent.objects.get(order=placed_order)
        assert event.transition == "accept"
        assert event.actor == seller

    def test_duplicate_is_already_processed(self, accepted_order, seller, mock_stripe):
        """A replayed accept returns the original entry and charges nothing."""
        original = MilestoneEntry.objects.get(
            order=accepted_order, stage=MilestoneStage.ACCEPTED
        )

        with pytest.raises(AlreadyProcessedError) as exc_info:
            EscrowOrchestrator.authorize(accepted_order.id, actor=seller)

        assert exc_info.value.existing == original
        assert exc_info.value.details["existing_entry_id"] == str(original.id)
        assert mock_stripe.authorize_payment_intent.call_count == 1
        assert len(entries_of(accepted_order)) == 2

    def test_missing_payment_reference(self, db, mock_stripe):
        order = OrderFactory(payment_intent_id=None)
        MilestoneEntryFactory(order=order)

        with pytest.raises(StateConflictError) as exc_info:
            EscrowOrchestrator.authorize(order.id)

        assert exc_info.value.error_code == "PAYMENT_REFERENCE_MISSING"
        mock_stripe.authorize_payment_intent.assert_not_called()

    def test_decline_records_failed_entry(self, placed_order, seller, mock_stripe):
        mock_stripe.authorize_payment_intent.side_effect = StripeCardDeclinedError(
            "Your card was declined", decline_code="generic_decline"
        )

        with pytest.raises(PaymentDeclinedError) as exc_info:
            EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        failed = MilestoneEntry.objects.get(
            order=placed_order, payment_status=MilestonePaymentStatus.FAILED
        )
        assert exc_info.value.http_status == 402
        assert exc_info.value.details == {"order_id": str(placed_order.id), "stage": "accepted"}
        assert failed.stage == MilestoneStage.ACCEPTED
        assert failed.failure_code == "generic_decline"
        assert failed.failure_reason == "Your card was declined"
        order = Order.objects.get(pk=placed_order.pk)
        assert order.status == OrderStatus.PENDING
        assert order.pricing_locked_at is None

    def test_retry_after_decline_uses_new_attempt(self, placed_order, seller, mock_stripe):
        authorized = mock_stripe.authorize_payment_intent.return_value
        mock_stripe.authorize_payment_intent.side_effect = [
            StripeCardDeclinedError("Your card was declined"),
            authorized,
        ]
        with pytest.raises(PaymentDeclinedError):
            EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        entry = EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        first_key = mock_stripe.authorize_payment_intent.call_args_list[0].kwargs["idempotency_key"]
        second_key = mock_stripe.authorize_payment_intent.call_args_list[1].kwargs[
            "idempotency_key"
        ]
        assert ":1:" in first_key
        assert ":2:" in second_key
        assert entry.idempotency_key == second_key
        assert entry.sequence == 3

    def test_processor_outage_changes_nothing(self, placed_order, mock_stripe):
        mock_stripe.authorize_payment_intent.side_effect = StripeAPIUnavailableError(
            "Could not connect to Stripe"
        )

        with pytest.raises(StripeAPIUnavailableError):
            EscrowOrchestrator.authorize(placed_order.id)

        assert len(entries_of(placed_order)) == 1
        assert Order.objects.get(pk=placed_order.pk).status == OrderStatus.PENDING

    def test_terminal_order_is_state_conflict(self, placed_order, mock_stripe):
        EscrowOrchestrator.cancel(placed_order.id, reason="changed mind")

        with pytest.raises(StateConflictError):
            EscrowOrchestrator.authorize(placed_order.id)

        mock_stripe.authorize_payment_intent.assert_not_called()

    def test_lock_held_elsewhere(self, placed_order, mock_stripe, mock_redis, settings):
        """A concurrent operation on the same order fails fast, nothing moves."""
        settings.SETTLEMENT_LOCK_TIMEOUT_SECONDS = 0.1
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError):
            EscrowOrchestrator.authorize(placed_order.id)

        mock_stripe.authorize_payment_intent.assert_not_called()


# =============================================================================
# Capture Escrow
# =============================================================================


class TestCaptureEscrow:
    """Tests for EscrowOrchestrator.capture_escrow()."""

    def test_captures_fifty_percent(self, accepted_order, buyer, mock_stripe):
        entry = EscrowOrchestrator.capture_escrow(accepted_order.id, actor=buyer)

        assert entry.stage == MilestoneStage.IN_ESCROW
        assert entry.amount == Decimal("100.00")
        assert entry.payment_status == MilestonePaymentStatus.HELD_IN_ESCROW
        assert entry.charge_id == "ch_test_123"
        kwargs = mock_stripe.capture_payment_intent.call_args.kwargs
        assert kwargs["amount_to_capture"] == 10000
        assert kwargs["payment_intent_id"] == accepted_order.payment_intent_id

    def test_order_escrow_fields(self, accepted_order, mock_stripe):
        EscrowOrchestrator.capture_escrow(accepted_order.id)

        order = Order.objects.get(pk=accepted_order.pk)
        assert order.status == OrderStatus.ACCEPTED
        assert order.charge_id == "ch_test_123"
        assert order.escrow_status == EscrowStatus.PARTIAL
        assert order.escrow_locked_at is not None
        assert order.payment_breakdown["escrow_amount"] == "100.00"
        assert order.payment_breakdown["processed_percentage"] == "60"

    def test_accrues_seller_earnings(self, accepted_order, seller, mock_stripe):
        EscrowOrchestrator.capture_escrow(accepted_order.id)

        earnings = SellerEarnings.objects.get(seller=seller)
        assert earnings.pending_amount == Decimal("100.00")
        assert earnings.available_amount == Decimal("0.00")

    def test_before_authorization_is_invalid_order(self, placed_order, mock_stripe):
        with pytest.raises(InvalidStageOrderError) as exc_info:
            EscrowOrchestrator.capture_escrow(placed_order.id)

        assert exc_info.value.details["requires"] == MilestoneStage.ACCEPTED
        mock_stripe.capture_payment_intent.assert_not_called()

    def test_capture_twice(self, escrowed_order, mock_stripe):
        with pytest.raises(AlreadyProcessedError):
            EscrowOrchestrator.capture_escrow(escrowed_order.id)

        assert mock_stripe.capture_payment_intent.call_count == 1

    def test_capture_allowed_after_start(self, accepted_order, seller, mock_stripe):
        EscrowOrchestrator.advance_status(accepted_order.id, "start", actor=seller)

        entry = EscrowOrchestrator.capture_escrow(accepted_order.id)

        assert entry.stage == MilestoneStage.IN_ESCROW

    def test_capture_not_allowed_from_halfway(self, accepted_order, seller, mock_stripe):
        EscrowOrchestrator.advance_status(accepted_order.id, "start", actor=seller)
        EscrowOrchestrator.advance_status(accepted_order.id, "mark_halfway", actor=seller)

        with pytest.raises(StateConflictError) as exc_info:
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        assert not isinstance(exc_info.value, InvalidStageOrderError)

    def test_capture_decline(self, accepted_order, mock_stripe):
        mock_stripe.capture_payment_intent.side_effect = StripeCardDeclinedError("expired")

        with pytest.raises(PaymentDeclinedError):
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        order = Order.objects.get(pk=accepted_order.pk)
        assert order.escrow_status == EscrowStatus.NONE
        assert MilestoneEntry.objects.filter(
            order=order, stage=MilestoneStage.IN_ESCROW, payment_status="failed"
        ).exists()

    def test_partial_commit_opens_reconciliation(self, accepted_order, mock_stripe, mocker):
        """Processor captured but the local commit failed."""
        earnings = MagicMock()
        earnings.accrue.side_effect = RuntimeError("database is locked")
        mocker.patch.object(EscrowOrchestrator, "earnings", earnings)

        with pytest.raises(PartialCommitFailureError) as exc_info:
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        record = SettlementReconciliation.objects.get(order=accepted_order)
        assert exc_info.value.http_status == 500
        assert exc_info.value.details["reconciliation_id"] == str(record.id)
        assert record.status == ReconciliationStatus.OPEN
        assert record.operation == "capture"
        assert record.stage == MilestoneStage.IN_ESCROW
        assert record.processor_reference == "ch_test_123"
        assert record.amount == Decimal("100.00")
        assert "database is locked" in record.error_message
        # Local state untouched
        order = Order.objects.get(pk=accepted_order.pk)
        assert order.charge_id is None
        assert not MilestoneEntry.objects.filter(
            order=order, stage=MilestoneStage.IN_ESCROW
        ).exists()


# =============================================================================
# Delivery & Review
# =============================================================================


class TestDeliveryAndReview:
    def test_delivery_reserves_twenty_percent(self, started_order, seller, mock_stripe):
        calls_before = len(mock_stripe.method_calls)

        entry = EscrowOrchestrator.record_delivery(started_order.id, actor=seller)

        assert entry.amount == Decimal("40.00")
        assert entry.payment_status == MilestonePaymentStatus.PENDING_RELEASE
        assert len(mock_stripe.method_calls) == calls_before
        order = Order.objects.get(pk=started_order.pk)
        assert order.status == OrderStatus.DELIVERED
        assert order.payment_breakdown["delivery_amount"] == "40.00"
        assert order.payment_breakdown["pending_release_amount"] == "40.00"

    def test_delivery_before_work_started(self, escrowed_order, seller):
        with pytest.raises(StateConflictError) as exc_info:
            EscrowOrchestrator.record_delivery(escrowed_order.id, actor=seller)

        assert not isinstance(exc_info.value, InvalidStageOrderError)

    def test_delivery_without_escrow_is_invalid_order(self, accepted_order, seller):
        EscrowOrchestrator.advance_status(accepted_order.id, "start", actor=seller)

        with pytest.raises(InvalidStageOrderError):
            EscrowOrchestrator.record_delivery(accepted_order.id, actor=seller)

    def test_redelivery_after_revision(self, delivered_order, buyer, seller):
        """Re-delivery moves the order back without a second ledger entry."""
        original = MilestoneEntry.objects.get(
            order=delivered_order, stage=MilestoneStage.DELIVERED
        )
        EscrowOrchestrator.advance_status(delivered_order.id, "request_revision", actor=buyer)

        entry = EscrowOrchestrator.record_delivery(delivered_order.id, actor=seller)

        assert entry == original
        assert Order.objects.get(pk=delivered_order.pk).status == OrderStatus.DELIVERED
        assert (
            MilestoneEntry.objects.filter(
                order=delivered_order, stage=MilestoneStage.DELIVERED
            ).count()
            == 1
        )

    def test_delivery_twice(self, delivered_order, seller):
        with pytest.raises(AlreadyProcessedError):
            EscrowOrchestrator.record_delivery(delivered_order.id, actor=seller)

    def test_review_reserves_twenty_percent(self, delivered_order, buyer):
        entry = EscrowOrchestrator.record_review(delivered_order.id, actor=buyer)

        assert entry.amount == Decimal("40.00")
        assert entry.payment_status == MilestonePaymentStatus.PENDING_RELEASE
        order = Order.objects.get(pk=delivered_order.pk)
        assert order.status == OrderStatus.READY_FOR_PAYMENT
        assert order.payment_breakdown["pending_release_amount"] == "80.00"
        assert order.payment_breakdown["processed_percentage"] == "100"

    def test_review_after_buyer_approval(self, delivered_order, buyer):
        EscrowOrchestrator.advance_status(delivered_order.id, "approve_delivery", actor=buyer)

        EscrowOrchestrator.record_review(delivered_order.id, actor=buyer)

        assert Order.objects.get(pk=delivered_order.pk).status == OrderStatus.READY_FOR_PAYMENT

    def test_review_before_delivery(self, started_order, buyer):
        with pytest.raises(InvalidStageOrderError):
            EscrowOrchestrator.record_review(started_order.id, actor=buyer)


# =============================================================================
# Release
# =============================================================================


class TestReleaseFunds:
    """Tests for EscrowOrchestrator.release_funds()."""

    def test_releases_escrow_and_pending(self, reviewed_order, payout_account, mock_stripe):
        completed = EscrowOrchestrator.release_funds(reviewed_order.id)

        assert completed.stage == MilestoneStage.COMPLETED
        assert completed.amount == Decimal("180.00")
        assert completed.payment_status == MilestonePaymentStatus.RELEASED
        assert completed.transfer_id == "tr_test_123"
        settled = MilestoneEntry.objects.filter(settled_by=completed)
        assert {entry.stage for entry in settled} == {
            MilestoneStage.ACCEPTED,
            MilestoneStage.IN_ESCROW,
            MilestoneStage.DELIVERED,
            MilestoneStage.REVIEWED,
        }
        assert all(entry.payment_status == "released" for entry in settled)

    def test_transfer_parameters(self, reviewed_order, payout_account, mock_stripe):
        EscrowOrchestrator.release_funds(reviewed_order.id)

        kwargs = mock_stripe.create_transfer.call_args.kwargs
        assert kwargs["amount_cents"] == 18000
        assert kwargs["destination_account"] == payout_account.stripe_account_id
        assert kwargs["transfer_group"] == f"ORDER_{reviewed_order.id}"
        assert kwargs["source_transaction"] == "ch_test_123"
        assert kwargs["currency"] == "EUR"

    def test_order_completed(self, reviewed_order, payout_account, seller, mock_stripe):
        EscrowOrchestrator.release_funds(reviewed_order.id)

        order = Order.objects.get(pk=reviewed_order.pk)
        assert order.status == OrderStatus.COMPLETED
        assert order.escrow_status == EscrowStatus.RELEASED
        assert order.payment_status == OrderPaymentStatus.COMPLETED
        assert order.transfer_id == "tr_test_123"
        assert order.funds_released_at is not None
        assert order.payment_breakdown["total_released_amount"] == "180.00"
        assert order.payment_breakdown["pending_release_amount"] == "0.00"
        assert order.payment_breakdown["authorized_amount"] == "0.00"
        assert order.payment_breakdown["escrow_amount"] == "0.00"
        earnings = SellerEarnings.objects.get(seller=seller)
        assert earnings.available_amount == Decimal("180.00")
        assert earnings.total_earned == Decimal("180.00")
        assert earnings.pending_amount == Decimal("0.00")

    def test_missing_payout_destination(self, reviewed_order, mock_stripe):
        """No verified destination: nothing moves, order unchanged."""
        with pytest.raises(PayoutDestinationMissingError) as exc_info:
            EscrowOrchestrator.release_funds(reviewed_order.id)

        assert exc_info.value.http_status == 409
        mock_stripe.create_transfer.assert_not_called()
        order = Order.objects.get(pk=reviewed_order.pk)
        assert order.status == OrderStatus.READY_FOR_PAYMENT
        assert order.payment_breakdown["pending_release_amount"] == "80.00"
        assert order.payment_breakdown["escrow_amount"] == "100.00"
        assert not MilestoneEntry.objects.filter(
            order=order, stage=MilestoneStage.COMPLETED
        ).exists()

    def test_release_capped_at_order_total(self, reviewed_order, payout_account, mock_stripe):
        MilestoneEntry.objects.filter(
            order=reviewed_order, stage=MilestoneStage.REVIEWED
        ).update(amount=Decimal("150.00"))

        with pytest.raises(StateConflictError) as exc_info:
            EscrowOrchestrator.release_funds(reviewed_order.id)

        assert exc_info.value.error_code == "RELEASE_EXCEEDS_TOTAL"
        assert exc_info.value.details["amount"] == "290.00"
        assert exc_info.value.details["already_released"] == "0.00"
        mock_stripe.create_transfer.assert_not_called()

    def test_unverified_payout_account(self, reviewed_order, seller, mock_stripe):
        PayoutAccountFactory(seller=seller, payouts_enabled=False)

        with pytest.raises(PayoutDestinationMissingError):
            EscrowOrchestrator.release_funds(reviewed_order.id)

    def test_destination_rejected_by_processor(self, reviewed_order, payout_account, mock_stripe):
        mock_stripe.create_transfer.side_effect = StripeInvalidAccountError(
            "No such destination account"
        )

        with pytest.raises(PayoutDestinationMissingError):
            EscrowOrchestrator.release_funds(reviewed_order.id)

        assert not MilestoneEntry.objects.filter(
            order=reviewed_order, stage=MilestoneStage.COMPLETED
        ).exists()

    def test_release_before_review(self, delivered_order, payout_account, mock_stripe):
        with pytest.raises(StateConflictError):
            EscrowOrchestrator.release_funds(delivered_order.id)

        mock_stripe.create_transfer.assert_not_called()

    def test_release_without_escrow(self, accepted_order, payout_account, mock_stripe):
        with pytest.raises(InvalidStageOrderError):
            EscrowOrchestrator.release_funds(accepted_order.id)

    def test_release_twice(self, completed_order, mock_stripe):
        with pytest.raises(AlreadyProcessedError):
            EscrowOrchestrator.release_funds(completed_order.id)

        assert mock_stripe.create_transfer.call_count == 1

    def test_release_from_dispute(self, started_order, buyer, payout_account, mock_stripe):
        """A disputed order settles early with whatever escrow holds."""
        EscrowOrchestrator.open_dispute(started_order.id, reason="no response", actor=buyer)

        completed = EscrowOrchestrator.release_funds(started_order.id)

        assert completed.amount == Decimal("100.00")
        assert Order.objects.get(pk=started_order.pk).status == OrderStatus.COMPLETED


# =============================================================================
# Open Reconciliation
# =============================================================================


class TestOpenReconciliationBlocksOrder:
    """Every operation is refused while a partial commit is undecided."""

    def test_capture_not_retried(self, accepted_order, mock_stripe, mocker):
        earnings = MagicMock()
        earnings.accrue.side_effect = RuntimeError("database is locked")
        mocker.patch.object(EscrowOrchestrator, "earnings", earnings)
        with pytest.raises(PartialCommitFailureError):
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        with pytest.raises(ReconciliationPendingError) as exc_info:
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        assert exc_info.value.details == {
            "order_id": str(accepted_order.id),
            "operation": "capture",
        }
        assert mock_stripe.capture_payment_intent.call_count == 1

    def test_authorize_blocked(self, placed_order, seller, mock_stripe):
        SettlementReconciliationFactory(
            order=placed_order, operation="authorize", stage=MilestoneStage.ACCEPTED
        )

        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.authorize(placed_order.id, actor=seller)

        mock_stripe.authorize_payment_intent.assert_not_called()

    def test_delivery_and_review_blocked(self, started_order, seller, buyer):
        SettlementReconciliationFactory(order=started_order)

        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.record_delivery(started_order.id, actor=seller)
        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.record_review(started_order.id, actor=buyer)

        assert not MilestoneEntry.objects.filter(
            order=started_order,
            stage__in=[MilestoneStage.DELIVERED, MilestoneStage.REVIEWED],
        ).exists()

    def test_release_blocked(self, reviewed_order, payout_account, mock_stripe):
        SettlementReconciliationFactory(order=reviewed_order)

        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.release_funds(reviewed_order.id)

        mock_stripe.create_transfer.assert_not_called()

    def test_lifecycle_changes_blocked(self, escrowed_order, buyer, seller):
        SettlementReconciliationFactory(order=escrowed_order)

        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.open_dispute(escrowed_order.id, reason="no response", actor=buyer)
        with pytest.raises(ReconciliationPendingError):
            EscrowOrchestrator.advance_status(escrowed_order.id, "start", actor=seller)

        assert Order.objects.get(pk=escrowed_order.pk).status == OrderStatus.ACCEPTED

    def test_resolved_record_does_not_block(self, escrowed_order, seller):
        SettlementReconciliationFactory(
            order=escrowed_order, status=ReconciliationStatus.RESOLVED
        )

        order = EscrowOrchestrator.advance_status(escrowed_order.id, "start", actor=seller)

        assert order.status == OrderStatus.STARTED


# =============================================================================
# Non-Financial Operations
# =============================================================================


class TestLifecycleOperations:
    def test_advance_status(self, accepted_order, buyer):
        order = EscrowOrchestrator.advance_status(
            accepted_order.id,
            "submit_requirements",
            actor=buyer,
            role=ActorRole.BUYER,
            reason="brief attached",
        )

        assert order.status == OrderStatus.REQUIREMENTS_SUBMITTED
        event = OrderStatusEvent.objects.filter(order=order).last()
        assert event.transition == "submit_requirements"
        assert event.reason == "brief attached"

    def test_advance_status_rejects_financial_transition(self, accepted_order):
        with pytest.raises(ValueError):
            EscrowOrchestrator.advance_status(accepted_order.id, "complete")

    def test_advance_status_not_allowed(self, accepted_order):
        with pytest.raises(StateConflictError) as exc_info:
            EscrowOrchestrator.advance_status(accepted_order.id, "mark_halfway")

        assert exc_info.value.details["transition"] == "mark_halfway"

    def test_open_dispute(self, escrowed_order, buyer):
        order = EscrowOrchestrator.open_dispute(
            escrowed_order.id, reason="seller unresponsive", actor=buyer
        )

        assert order.status == OrderStatus.DISPUTED
        assert order.escrow_status == EscrowStatus.PARTIAL
        event = OrderStatusEvent.objects.filter(order=order).last()
        assert event.transition == "dispute"
        assert event.reason == "seller unresponsive"

    def test_dispute_notifies_both_parties(
        self, escrowed_order, buyer, mocker, django_capture_on_commit_callbacks
    ):
        delay = mocker.patch("settlement.tasks.send_settlement_notification.delay")

        with django_capture_on_commit_callbacks(execute=True):
            EscrowOrchestrator.open_dispute(escrowed_order.id, reason="late", actor=buyer)

        recipients = {call.args[0] for call in delay.call_args_list}
        assert recipients == {str(escrowed_order.buyer_id), str(escrowed_order.seller_id)}
        assert {call.args[1] for call in delay.call_args_list} == {"order.disputed"}

    def test_cannot_dispute_completed_order(self, completed_order):
        with pytest.raises(StateConflictError):
            EscrowOrchestrator.open_dispute(completed_order.id, reason="too late")


# =============================================================================
# Notifications
# =============================================================================


class TestMilestoneNotifications:
    def test_step_notifies_after_commit(
        self, accepted_order, mock_stripe, mocker, django_capture_on_commit_callbacks
    ):
        delay = mocker.patch("settlement.tasks.send_settlement_notification.delay")

        with django_capture_on_commit_callbacks(execute=True):
            EscrowOrchestrator.capture_escrow(accepted_order.id)

        assert delay.call_count == 2
        user_id, event, payload = delay.call_args_list[0].args
        assert event == "milestone.in_escrow"
        assert payload["amount"] == "100.00"
        assert payload["percentage"] == "60"

    def test_notification_failure_does_not_fail_step(
        self, accepted_order, mock_stripe, mocker, django_capture_on_commit_callbacks
    ):
        mocker.patch(
            "settlement.tasks.send_settlement_notification.delay",
            side_effect=ConnectionError("broker down"),
        )

        with django_capture_on_commit_callbacks(execute=True):
            entry = EscrowOrchestrator.capture_escrow(accepted_order.id)

        assert entry.payment_status == MilestonePaymentStatus.HELD_IN_ESCROW

    def test_failed_step_sends_nothing(
        self, placed_order, mock_stripe, mocker, django_capture_on_commit_callbacks
    ):
        delay = mocker.patch("settlement.tasks.send_settlement_notification.delay")
        mock_stripe.authorize_payment_intent.side_effect = StripeCardDeclinedError("declined")

        with django_capture_on_commit_callbacks(execute=True):
            with pytest.raises(PaymentDeclinedError):
                EscrowOrchestrator.authorize(placed_order.id)

        delay.assert_not_called()
