"""
VatRate model: standard VAT rates per country.

Read by DatabaseVatRateProvider. A missing or inactive row falls back to
the static table in settlement.pricing.
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models

from core.models import BaseModel


class VatRate(BaseModel):
    """
    Standard VAT rate for one country.

    Fields:
        country_code: ISO 3166-1 alpha-2 code (upper case)
        standard_rate: Rate as a percentage (19.00 = 19%)
        is_active: Inactive rows are ignored by the rate lookup
    """

    country_code = models.CharField(max_length=2, unique=True)
    country_name = models.CharField(max_length=100, blank=True, default="")
    standard_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        help_text="Standard rate as a percentage",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["country_code"]
        verbose_name = "VAT Rate"
        verbose_name_plural = "VAT Rates"

    def __str__(self) -> str:
        return f"{self.country_code}: {self.standard_rate}%"

    @property
    def as_fraction(self) -> Decimal:
        return self.standard_rate / Decimal("100")
