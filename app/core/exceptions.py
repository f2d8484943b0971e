"""
Application error hierarchy.

Every domain error carries a human-readable message, a machine-readable
error_code and optional details, plus the HTTP status the API layer
answers with (see core.views.api_exception_handler).

Exception Hierarchy:
    BaseApplicationError (400)
    ├── ValidationError (400)
    ├── NotFoundError (404)
    ├── PermissionDeniedError (403)
    ├── ConflictError (409)
    └── ExternalServiceError (502)

settlement.exceptions builds its settlement and processor errors on top
of these families.

Usage:
    from core.exceptions import NotFoundError

    raise NotFoundError(
        f"Order {order_id} not found",
        error_code="ORDER_NOT_FOUND",
        details={"order_id": str(order_id)},
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base for all domain errors.

    Attributes:
        message: Human-readable description
        error_code: Stable code clients switch on
        details: Extra context (entity ids, current status, ...)
        http_status: Status used when the error reaches a view
    """

    default_error_code: str = "APPLICATION_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        API payload for the error.

        The details key is present only when there are details:
            {"error": "...", "error_code": "ORDER_NOT_FOUND", "details": {...}}
        """
        payload: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Service-layer input rejection (prices, country codes, VAT ids).

    Request-shape validation stays with DRF serializers.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    default_error_code: str = "NOT_FOUND"
    http_status: int = 404


class PermissionDeniedError(BaseApplicationError):
    """The caller is authenticated but not allowed to perform the action."""

    default_error_code: str = "PERMISSION_DENIED"
    http_status: int = 403


class ConflictError(BaseApplicationError):
    """
    The request clashes with the current state of a resource.

    Covers duplicate steps, out-of-order steps, transitions the state
    machine rejects and lock contention.
    """

    default_error_code: str = "CONFLICT"
    http_status: int = 409


class ExternalServiceError(BaseApplicationError):
    """
    A third-party call (Stripe) failed.

    Log the underlying error; clients only see the message and code.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    http_status: int = 502
