"""
Service layer base classes.

- ServiceResult: outcome wrapper for operations whose failures the caller
  inspects and moves on from (reconciliation passes, periodic sweeps)
- BaseService: per-service logger, transaction helper and
  exception-to-result conversion

Failures a caller must not ignore (conflicts, declines, stale stages) are
raised as core.exceptions subclasses instead of being wrapped.

Usage:
    from core.services import BaseService, ServiceResult

    class ReconciliationService(BaseService):
        @classmethod
        def resolve(cls, record_id) -> ServiceResult[SettlementReconciliation]:
            with cls.atomic():
                ...
            return ServiceResult.success(record)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Success-or-failure outcome of a service call.

    Truthy on success. On failure, error and error_code describe what went
    wrong and details carries the originating exception's context.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            details=details or {},
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Failed result built from an exception.

        Domain errors keep their code and details; anything else is coded
        by its class name.
        """
        code = error_code or getattr(exc, "error_code", None)
        message = getattr(exc, "message", None) or str(exc)
        return cls(
            success=False,
            error=message,
            error_code=code or exc.__class__.__name__.upper(),
            details=dict(getattr(exc, "details", None) or {}),
        )

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for the settlement services.

    Services are stateless classes of classmethods. Collaborators such as
    the Stripe adapter are class attributes, swapped in tests.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named "<module>.<ServiceClass>"."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """Marks a transaction boundary in service code."""
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log an exception and turn it into a failed ServiceResult.

        Tracebacks are attached at ERROR and above.
        """
        message = f"{context}: {exc}" if context else str(exc)
        cls.get_logger().log(log_level, message, exc_info=log_level >= logging.ERROR)
        return ServiceResult.from_exception(exc)
