"""
Tests for settlement models.

Tests model creation, the pricing lock, ledger and history immutability,
database constraints and derived properties.
"""

from decimal import Decimal

import pytest
from django.db import IntegrityError, transaction

from core.exceptions import ConflictError
from settlement.exceptions import PricingLockedError
from settlement.models import MilestoneEntry, Order, OrderStatusEvent
from settlement.state_machines import (
    MilestonePaymentStatus,
    MilestoneStage,
    OnboardingStatus,
    OrderStatus,
)
from settlement.tests.factories import (
    MilestoneEntryFactory,
    OrderFactory,
    PayoutAccountFactory,
    VatRateFactory,
)


# =============================================================================
# Order Tests
# =============================================================================


class TestOrder:
    """Tests for Order model."""

    def test_create_defaults(self, db):
        order = OrderFactory()

        assert order.status == OrderStatus.PENDING
        assert order.payment_milestone_stage == MilestoneStage.ORDER_PLACED
        assert order.escrow_status == "none"
        assert order.payment_status == "pending"
        assert order.version == 1
        assert order.is_pricing_locked is False

    def test_version_increments_on_save(self, db):
        order = OrderFactory()

        order.deadline_extended = True
        order.save()

        assert order.version == 2

    def test_str(self, db):
        order = OrderFactory()

        assert "200.00 EUR" in str(order)

    def test_pricing_can_change_before_lock(self, db):
        order = Order.objects.get(pk=OrderFactory().pk)

        order.base_amount = Decimal("150.00")
        order.save()

        assert Order.objects.get(pk=order.pk).base_amount == Decimal("150.00")

    def test_locked_pricing_cannot_change(self, db):
        """Once pricing_locked_at is set the snapshot is frozen."""
        order = OrderFactory()
        order.lock_pricing()
        order.save()

        fresh = Order.objects.get(pk=order.pk)
        fresh.total_amount = Decimal("250.00")

        with pytest.raises(PricingLockedError) as exc_info:
            fresh.save()

        assert exc_info.value.details["fields"] == ["total_amount"]
        assert Order.objects.get(pk=order.pk).total_amount == Decimal("200.00")

    def test_locked_order_other_fields_can_change(self, db):
        order = OrderFactory()
        order.lock_pricing()
        order.save()

        fresh = Order.objects.get(pk=order.pk)
        fresh.charge_id = "ch_123"
        fresh.save()

        assert Order.objects.get(pk=order.pk).charge_id == "ch_123"

    def test_lock_pricing_keeps_first_timestamp(self, db):
        order = OrderFactory()
        order.lock_pricing()
        locked_at = order.pricing_locked_at

        order.lock_pricing()

        assert order.pricing_locked_at == locked_at

    @pytest.mark.parametrize(
        "status,progress",
        [
            (OrderStatus.PENDING, 0),
            (OrderStatus.ACCEPTED, 20),
            (OrderStatus.STARTED, 40),
            (OrderStatus.DELIVERED, 70),
            (OrderStatus.READY_FOR_PAYMENT, 95),
            (OrderStatus.COMPLETED, 100),
            (OrderStatus.DISPUTED, 0),
        ],
    )
    def test_progress(self, db, status, progress):
        order = OrderFactory(status=status)

        assert order.progress == progress

    def test_total_must_cover_base(self, db):
        with pytest.raises(IntegrityError), transaction.atomic():
            OrderFactory(base_amount=Decimal("300.00"), total_amount=Decimal("200.00"))

    def test_payment_intent_id_is_unique(self, db):
        OrderFactory(payment_intent_id="pi_same")

        with pytest.raises(IntegrityError), transaction.atomic():
            OrderFactory(payment_intent_id="pi_same")


# =============================================================================
# MilestoneEntry Tests
# =============================================================================


class TestMilestoneEntry:
    """Tests for ledger entry immutability and constraints."""

    def test_entry_cannot_be_rewritten(self, db):
        entry = MilestoneEntryFactory(amount=Decimal("20.00"))
        entry.amount = Decimal("25.00")

        with pytest.raises(ConflictError) as exc_info:
            entry.save()

        assert exc_info.value.error_code == "LEDGER_IMMUTABLE"
        assert MilestoneEntry.objects.get(pk=entry.pk).amount == Decimal("20.00")

    def test_non_settlement_fields_cannot_be_updated(self, db):
        entry = MilestoneEntryFactory()
        entry.notes = "edited"

        with pytest.raises(ConflictError):
            entry.save(update_fields=["notes"])

    def test_settlement_fields_can_be_updated(self, db):
        entry = MilestoneEntryFactory(payment_status=MilestonePaymentStatus.HELD_IN_ESCROW)
        entry.payment_status = MilestonePaymentStatus.REFUNDED

        entry.save(update_fields=["payment_status", "updated_at"])

        assert MilestoneEntry.objects.get(pk=entry.pk).payment_status == "refunded"

    def test_one_effective_entry_per_stage(self, db):
        order = OrderFactory()
        MilestoneEntryFactory(order=order, sequence=1, stage=MilestoneStage.ACCEPTED)

        with pytest.raises(IntegrityError), transaction.atomic():
            MilestoneEntryFactory(order=order, sequence=2, stage=MilestoneStage.ACCEPTED)

    def test_failed_attempt_does_not_block_stage(self, db):
        order = OrderFactory()
        MilestoneEntryFactory(
            order=order,
            sequence=1,
            stage=MilestoneStage.ACCEPTED,
            payment_status=MilestonePaymentStatus.FAILED,
        )

        MilestoneEntryFactory(
            order=order,
            sequence=2,
            stage=MilestoneStage.ACCEPTED,
            payment_status=MilestonePaymentStatus.AUTHORIZED,
        )

        assert order.milestones.count() == 2

    def test_negative_amount_rejected(self, db):
        with pytest.raises(IntegrityError), transaction.atomic():
            MilestoneEntryFactory(amount=Decimal("-1.00"))

    def test_is_open(self, db):
        assert MilestoneEntryFactory(payment_status=MilestonePaymentStatus.AUTHORIZED).is_open
        assert not MilestoneEntryFactory(payment_status=MilestonePaymentStatus.RELEASED).is_open

    def test_queryset_total(self, db):
        order = OrderFactory()
        MilestoneEntryFactory(
            order=order,
            sequence=1,
            stage=MilestoneStage.IN_ESCROW,
            amount=Decimal("100.00"),
            payment_status=MilestonePaymentStatus.HELD_IN_ESCROW,
        )
        MilestoneEntryFactory(
            order=order,
            sequence=2,
            stage=MilestoneStage.DELIVERED,
            amount=Decimal("40.00"),
            payment_status=MilestonePaymentStatus.PENDING_RELEASE,
        )

        entries = MilestoneEntry.objects.for_order(order)

        assert entries.total() == Decimal("140.00")
        assert entries.with_status(MilestonePaymentStatus.PENDING_RELEASE).total() == Decimal(
            "40.00"
        )
        assert entries.with_status(MilestonePaymentStatus.RELEASED).total() == Decimal("0.00")


# =============================================================================
# OrderStatusEvent Tests
# =============================================================================


class TestOrderStatusEvent:
    def test_history_is_append_only(self, db):
        event = OrderStatusEvent.objects.create(
            order=OrderFactory(),
            from_status=OrderStatus.PENDING,
            to_status=OrderStatus.ACCEPTED,
            transition="accept",
        )
        event.reason = "rewritten"

        with pytest.raises(ConflictError) as exc_info:
            event.save()

        assert exc_info.value.error_code == "HISTORY_IMMUTABLE"


# =============================================================================
# Payout / VAT Tests
# =============================================================================


class TestPayoutAccount:
    def test_ready_for_payouts(self, db):
        assert PayoutAccountFactory().is_ready_for_payouts is True

    def test_incomplete_onboarding_not_ready(self, db):
        account = PayoutAccountFactory(onboarding_status=OnboardingStatus.IN_PROGRESS)

        assert account.is_ready_for_payouts is False

    def test_payouts_disabled_not_ready(self, db):
        assert PayoutAccountFactory(payouts_enabled=False).is_ready_for_payouts is False


class TestVatRate:
    def test_as_fraction(self, db):
        rate = VatRateFactory(country_code="FR", standard_rate=Decimal("20.00"))

        assert rate.as_fraction == Decimal("0.2")
        assert str(rate) == "FR: 20.00%"
