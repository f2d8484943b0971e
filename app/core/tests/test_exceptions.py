"""
Tests for the application exception hierarchy.

These tests verify that:
- Each exception kind carries its default error code and HTTP status
- to_dict() renders the API error body, omitting empty details
- Settlement exceptions map onto the core kinds
"""

from __future__ import annotations

import pytest

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from settlement.exceptions import (
    AlreadyReleasedError,
    InvalidStageOrderError,
    PaymentDeclinedError,
    StripeTimeoutError,
)


class TestBaseApplicationError:
    def test_to_dict(self):
        exc = NotFoundError(
            "Order 1 not found",
            error_code="ORDER_NOT_FOUND",
            details={"order_id": "1"},
        )

        assert exc.to_dict() == {
            "error": "Order 1 not found",
            "error_code": "ORDER_NOT_FOUND",
            "details": {"order_id": "1"},
        }

    def test_to_dict_without_details(self):
        assert "details" not in ConflictError("Busy").to_dict()

    def test_str_and_repr(self):
        exc = ValidationError("Base price must be positive")

        assert str(exc) == "[VALIDATION_ERROR] Base price must be positive"
        assert repr(exc).startswith("ValidationError(message='Base price must be positive'")

    @pytest.mark.parametrize(
        "exc_class,code,http_status",
        [
            (BaseApplicationError, "APPLICATION_ERROR", 400),
            (ValidationError, "VALIDATION_ERROR", 400),
            (NotFoundError, "NOT_FOUND", 404),
            (PermissionDeniedError, "PERMISSION_DENIED", 403),
            (ConflictError, "CONFLICT", 409),
            (ExternalServiceError, "EXTERNAL_SERVICE_ERROR", 502),
        ],
    )
    def test_defaults(self, exc_class, code, http_status):
        exc = exc_class("message")

        assert exc.error_code == code
        assert exc.http_status == http_status


class TestSettlementKinds:
    def test_invalid_stage_order_is_a_conflict(self):
        exc = InvalidStageOrderError("out of order")

        assert isinstance(exc, ConflictError)
        assert exc.http_status == 409

    def test_already_released_carries_existing(self):
        existing = type("Entry", (), {"pk": "abc"})()

        exc = AlreadyReleasedError("closed", existing=existing)

        assert exc.existing is existing
        assert exc.details["existing_entry_id"] == "abc"
        assert exc.error_code == "ALREADY_RELEASED"

    def test_payment_declined_status(self):
        assert PaymentDeclinedError("declined").http_status == 402

    def test_stripe_error_details(self):
        exc = StripeTimeoutError("timed out", stripe_code="timeout")

        assert exc.is_retryable is True
        assert exc.details == {"stripe_code": "timeout"}
        assert exc.http_status == 502
