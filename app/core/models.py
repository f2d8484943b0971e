"""
Abstract timestamped base model.

Every settlement table (orders, ledger entries, payout accounts,
reconciliation records, VAT rates) inherits created_at/updated_at from
BaseModel. Primary-key and versioning behavior lives in core.model_mixins.

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin

    class PayoutAccount(UUIDPrimaryKeyMixin, BaseModel):
        stripe_account_id = models.CharField(max_length=255)

Note:
    Always list mixins before BaseModel in inheritance.
"""

from __future__ import annotations

from django.db import models


class BaseModel(models.Model):
    """
    Abstract model with creation and modification timestamps.

    Newest rows sort first unless a subclass overrides Meta.ordering
    (the ledger orders by sequence instead).
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When the row was inserted",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the row was last saved",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.pk})"
