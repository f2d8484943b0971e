"""
Tests for PaymentStatusService and stage display statuses.
"""

import uuid

import pytest

from core.exceptions import NotFoundError
from settlement.services import EscrowOrchestrator, PaymentStatusService
from settlement.services.payment_status import StageStatus, stage_status
from settlement.state_machines import MilestoneStage


def statuses(result):
    return {stage["id"]: stage["status"] for stage in result["stages"]}


class TestStageStatus:
    @pytest.mark.parametrize(
        "stage,expected",
        [
            (MilestoneStage.ORDER_PLACED, StageStatus.COMPLETED),
            (MilestoneStage.ACCEPTED, StageStatus.COMPLETED),
            (MilestoneStage.IN_ESCROW, StageStatus.CURRENT),
            (MilestoneStage.DELIVERED, StageStatus.PENDING),
            (MilestoneStage.COMPLETED, StageStatus.PENDING),
        ],
    )
    def test_relative_to_current(self, stage, expected):
        assert stage_status(stage, MilestoneStage.IN_ESCROW) == expected

    def test_final_stage_is_completed_not_current(self):
        assert stage_status(MilestoneStage.COMPLETED, MilestoneStage.COMPLETED) == "completed"

    def test_nothing_recorded(self):
        assert stage_status(MilestoneStage.ORDER_PLACED, None) == StageStatus.PENDING

    def test_cancelled_order(self):
        assert stage_status(MilestoneStage.ACCEPTED, MilestoneStage.ACCEPTED, True) == "cancelled"
        assert stage_status(MilestoneStage.IN_ESCROW, MilestoneStage.ACCEPTED, True) == "pending"


class TestGetPaymentStatus:
    """Tests for PaymentStatusService.get_payment_status()."""

    def test_escrowed_order(self, escrowed_order):
        result = PaymentStatusService.get_payment_status(escrowed_order.id)

        assert result["order"]["id"] == str(escrowed_order.id)
        assert result["order"]["status"] == "accepted"
        assert result["order"]["escrow_status"] == "partial"
        assert statuses(result) == {
            "order_placed": "completed",
            "accepted": "completed",
            "in_escrow": "current",
            "delivered": "pending",
            "reviewed": "pending",
            "completed": "pending",
        }
        assert result["totals"]["authorized"] == "20.00"
        assert result["totals"]["in_escrow"] == "100.00"
        assert result["totals"]["processed_percentage"] == "60"
        assert result["totals"]["current_stage"] == MilestoneStage.IN_ESCROW
        assert result["totals"]["order_total"] == "200.00"

    def test_stage_table(self, placed_order):
        result = PaymentStatusService.get_payment_status(placed_order.id)

        stages = {stage["id"]: stage for stage in result["stages"]}
        assert [stage["id"] for stage in result["stages"]] == [
            "order_placed",
            "accepted",
            "in_escrow",
            "delivered",
            "reviewed",
            "completed",
        ]
        assert stages["in_escrow"]["percentage"] == "50"
        assert stages["in_escrow"]["cumulative_percentage"] == "60"
        assert stages["completed"]["percentage"] == "100"
        assert stages["accepted"]["description"] == "10% payment authorized"

    def test_milestones_listing(self, escrowed_order):
        result = PaymentStatusService.get_payment_status(escrowed_order.id)

        milestones = result["milestones"]
        assert [m["stage"] for m in milestones] == ["order_placed", "accepted", "in_escrow"]
        escrow = milestones[2]
        assert escrow["amount"] == "100.00"
        assert escrow["display_amount"] == "100.00 EUR"
        assert escrow["status"] == "held_in_escrow"
        assert escrow["processor_reference"] == "ch_test_123"
        assert milestones[1]["processor_reference"] == "pi_test_authorized"

    def test_completed_order(self, completed_order):
        result = PaymentStatusService.get_payment_status(completed_order.id)

        assert set(statuses(result).values()) == {"completed"}
        assert result["totals"]["released"] == "180.00"
        assert result["totals"]["pending_release"] == "0.00"
        assert result["totals"]["processed_percentage"] == "100"
        assert result["milestones"][-1]["processor_reference"] == "tr_test_123"

    def test_cancelled_order(self, escrowed_order, mock_stripe):
        EscrowOrchestrator.cancel(escrowed_order.id, reason="not as described")

        result = PaymentStatusService.get_payment_status(escrowed_order.id)

        assert statuses(result) == {
            "order_placed": "cancelled",
            "accepted": "cancelled",
            "in_escrow": "cancelled",
            "delivered": "pending",
            "reviewed": "pending",
            "completed": "pending",
        }
        assert result["totals"]["refunded"] == "100.00"
        assert result["milestones"][-1]["stage"] == MilestoneStage.CANCELLED
        assert result["milestones"][-1]["processor_reference"] == "re_test_123"

    def test_unknown_order(self, db):
        with pytest.raises(NotFoundError) as exc_info:
            PaymentStatusService.get_payment_status(uuid.uuid4())

        assert exc_info.value.error_code == "ORDER_NOT_FOUND"
