"""
Seller-side models: payout destination and earnings balances.

PayoutAccount is what the payout destination resolver reads: a seller can
receive a release only once their Stripe Connect account has finished
onboarding with payouts enabled.

SellerEarnings holds the seller's running balances. It is written only by
settlement.services.earnings (accrue on capture, release on payout,
reverse on refund).

Usage:
    from settlement.models import PayoutAccount

    account = PayoutAccount.objects.create(
        seller=seller,
        stripe_account_id="acct_1234567890",
        onboarding_status=OnboardingStatus.COMPLETE,
        payouts_enabled=True,
    )
    account.is_ready_for_payouts  # True
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from settlement.state_machines import OnboardingStatus


class PayoutAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    A seller's Stripe Connect account used as the payout destination.

    Fields:
        seller: OneToOne link to the selling user
        stripe_account_id: Unique Stripe Account ID (acct_xxx)
        onboarding_status: Current state of Stripe Connect onboarding
        payouts_enabled: Whether Stripe has enabled payouts
    """

    seller = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payout_account",
    )

    stripe_account_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Account ID (acct_xxx)",
    )

    onboarding_status = models.CharField(
        max_length=20,
        choices=OnboardingStatus.choices,
        default=OnboardingStatus.NOT_STARTED,
        db_index=True,
    )

    payouts_enabled = models.BooleanField(default=False)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payout Account"
        verbose_name_plural = "Payout Accounts"

    def __str__(self) -> str:
        return f"PayoutAccount({self.stripe_account_id}, {self.onboarding_status})"

    @property
    def is_ready_for_payouts(self) -> bool:
        return (
            self.onboarding_status == OnboardingStatus.COMPLETE and self.payouts_enabled
        )


class SellerEarnings(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    Running earnings balances of one seller.

    Fields:
        pending_amount: Captured into escrow, not yet released
        available_amount: Released to the seller
        total_earned: Lifetime released total
    """

    seller = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="earnings",
    )

    currency = models.CharField(max_length=3, default="EUR")

    pending_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )
    available_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )
    total_earned = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )

    class Meta:
        verbose_name = "Seller Earnings"
        verbose_name_plural = "Seller Earnings"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(pending_amount__gte=0),
                name="settlement_earnings_pending_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"SellerEarnings({self.seller_id}, pending={self.pending_amount})"
