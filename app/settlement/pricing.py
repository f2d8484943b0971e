"""
Pricing and VAT calculator for marketplace orders.

compute_breakdown() is the single source of truth for order amounts. It is
deterministic and side-effect free, so the same call serves the
unauthenticated checkout preview and the authoritative snapshot locked at
order creation.

Rules, in order:
    1. platform_fee = round(base × fee_rate, 2)
    2. taxable = base + platform_fee
    3. buyer country outside the VAT set → rate 0
    4. business buyer with a VAT ID valid for that country → rate 0,
       reverse charge applied with the legal note
    5. otherwise the country's standard rate from the rate provider;
       a provider failure never blocks checkout: rate 0, fallback flagged
    6. vat = round(taxable × rate, 2), total = round(taxable + vat, 2),
       seller_earnings = round(base − platform_fee, 2)

All rounding is ROUND_HALF_UP to cents at each step, matching what the
processor charges in minor units.

Usage:
    from settlement.pricing import compute_breakdown

    breakdown = compute_breakdown(Decimal("100"), "DE")
    breakdown.total_amount  # Decimal("124.95")
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Protocol

from django.conf import settings

from settlement.exceptions import PricingValidationError

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

REVERSE_CHARGE_NOTE = "VAT reverse-charged under Article 44 and 196 of EU VAT Directive"

FALLBACK_VAT_RATES: dict[str, Decimal] = {
    "AT": Decimal("0.20"),
    "BE": Decimal("0.21"),
    "BG": Decimal("0.20"),
    "HR": Decimal("0.25"),
    "CY": Decimal("0.19"),
    "CZ": Decimal("0.21"),
    "DK": Decimal("0.25"),
    "EE": Decimal("0.22"),
    "FI": Decimal("0.24"),
    "FR": Decimal("0.20"),
    "DE": Decimal("0.19"),
    "GR": Decimal("0.24"),
    "HU": Decimal("0.27"),
    "IE": Decimal("0.23"),
    "IT": Decimal("0.22"),
    "LV": Decimal("0.21"),
    "LT": Decimal("0.21"),
    "LU": Decimal("0.17"),
    "MT": Decimal("0.18"),
    "NL": Decimal("0.21"),
    "PL": Decimal("0.23"),
    "PT": Decimal("0.23"),
    "RO": Decimal("0.19"),
    "SK": Decimal("0.20"),
    "SI": Decimal("0.22"),
    "ES": Decimal("0.21"),
    "SE": Decimal("0.25"),
}

# National VAT number formats, applied after the country prefix is stripped
VAT_ID_FORMATS: dict[str, re.Pattern[str]] = {
    country: re.compile(pattern)
    for country, pattern in {
        "AT": r"^U\d{8}$",
        "BE": r"^0?\d{9,10}$",
        "BG": r"^\d{9,10}$",
        "HR": r"^\d{11}$",
        "CY": r"^\d{8}[A-Z]$",
        "CZ": r"^\d{8,10}$",
        "DK": r"^\d{8}$",
        "EE": r"^\d{9}$",
        "FI": r"^\d{8}$",
        "FR": r"^[A-Z0-9]{2}\d{9}$",
        "DE": r"^\d{9}$",
        "GR": r"^\d{9}$",
        "HU": r"^\d{8}$",
        "IE": r"^\d{7}[A-Z]{1,2}$|^\d[A-Z+*]\d{5}[A-Z]$",
        "IT": r"^\d{11}$",
        "LV": r"^\d{11}$",
        "LT": r"^\d{9}$|^\d{12}$",
        "LU": r"^\d{8}$",
        "MT": r"^\d{8}$",
        "NL": r"^\d{9}B\d{2}$",
        "PL": r"^\d{10}$",
        "PT": r"^\d{9}$",
        "RO": r"^\d{2,10}$",
        "SK": r"^\d{10}$",
        "SI": r"^\d{8}$",
        "ES": r"^[A-Z0-9]\d{7}[A-Z0-9]$",
        "SE": r"^\d{12}$",
    }.items()
}


# =============================================================================
# Money Helpers
# =============================================================================


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a 2-decimal amount to the processor's minor units (cents)."""
    return int(quantize_money(amount) * 100)


def from_minor_units(amount_cents: int) -> Decimal:
    """Convert processor minor units back to a 2-decimal amount."""
    return quantize_money(Decimal(amount_cents) / 100)


def _coerce_price(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise PricingValidationError(
            "Base price must be a number",
            details={"base_price": str(value)},
        )
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise PricingValidationError(
            "Base price must be a number",
            details={"base_price": str(value)},
        ) from None
    if not price.is_finite() or price <= 0:
        raise PricingValidationError(
            "Base price must be positive",
            details={"base_price": str(value)},
        )
    return price


# =============================================================================
# VAT ID Validation
# =============================================================================


@dataclass(frozen=True)
class VatIdValidation:
    """Outcome of a VAT ID check."""

    valid: bool
    normalized_id: str | None = None
    error: str | None = None


class VatIdValidator:
    """
    Format-level VAT ID validator for EU member states.

    Whitespace is stripped, the ID upper-cased and an optional country
    prefix removed before matching the national format. A valid ID is
    normalized to '<country><number>'.
    """

    def validate(self, vat_id: str | None, country_code: str | None) -> VatIdValidation:
        if not vat_id or not country_code:
            return VatIdValidation(valid=False, error="VAT ID or country code missing")

        country = country_code.strip().upper()
        clean = re.sub(r"\s", "", vat_id).upper()

        if country not in VAT_ID_FORMATS:
            return VatIdValidation(valid=False, error="Country has no VAT ID format")

        number = clean[len(country):] if clean.startswith(country) else clean
        if not VAT_ID_FORMATS[country].match(number):
            return VatIdValidation(valid=False, error="Invalid VAT ID format")

        return VatIdValidation(valid=True, normalized_id=f"{country}{number}")


# =============================================================================
# VAT Rate Providers
# =============================================================================


class VatRateProvider(Protocol):
    """Looks up the standard VAT rate (as a fraction) for a country."""

    def standard_rate(self, country_code: str) -> Decimal: ...


class FallbackVatRateProvider:
    """Static standard-rate table; used when no rate store is configured."""

    def standard_rate(self, country_code: str) -> Decimal:
        try:
            return FALLBACK_VAT_RATES[country_code]
        except KeyError:
            raise LookupError(f"No VAT rate known for {country_code}") from None


class DatabaseVatRateProvider(FallbackVatRateProvider):
    """
    Rate lookup backed by the VatRate table.

    An active VatRate row wins; countries without one use the static
    table. Database errors propagate so compute_breakdown can flag the
    fallback.
    """

    def standard_rate(self, country_code: str) -> Decimal:
        from settlement.models import VatRate

        row = (
            VatRate.objects.filter(country_code=country_code, is_active=True)
            .only("standard_rate")
            .first()
        )
        if row is not None:
            return row.as_fraction
        return super().standard_rate(country_code)


# =============================================================================
# Breakdown
# =============================================================================


@dataclass(frozen=True)
class PriceBreakdown:
    """
    Complete, immutable pricing of one order.

    Attributes mirror the snapshot stored on Order once it is locked.
    """

    base_amount: Decimal
    platform_fee: Decimal
    platform_fee_rate: Decimal
    taxable_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    seller_earnings: Decimal
    currency: str
    client_country: str | None
    reverse_charge_applied: bool = False
    reverse_charge_note: str | None = None
    vat_id: str | None = None
    fallback_applied: bool = False
    fallback_reason: str | None = None

    @property
    def vat_collected(self) -> bool:
        return self.vat_amount > 0

    @property
    def vat_rate_percentage(self) -> Decimal:
        return quantize_money(self.vat_rate * 100)

    @property
    def total_minor_units(self) -> int:
        return to_minor_units(self.total_amount)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (amounts as strings)."""
        data = {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in asdict(self).items()
        }
        data["vat_collected"] = self.vat_collected
        data["vat_rate_percentage"] = str(self.vat_rate_percentage)
        data["total_minor_units"] = self.total_minor_units
        return data

    def to_stripe_metadata(self) -> dict[str, str]:
        """Flat string metadata attached to the checkout PaymentIntent."""
        return {
            "base_amount": str(self.base_amount),
            "platform_fee": str(self.platform_fee),
            "vat_rate": str(self.vat_rate),
            "vat_amount": str(self.vat_amount),
            "total_amount": str(self.total_amount),
            "client_country": self.client_country or "",
            "reverse_charge": "true" if self.reverse_charge_applied else "false",
            "vat_id": self.vat_id or "",
        }


def vat_countries() -> frozenset[str]:
    return frozenset(code.upper() for code in settings.SETTLEMENT_VAT_COUNTRIES)


def compute_breakdown(
    base_price: Any,
    buyer_country: str | None,
    buyer_vat_id: str | None = None,
    is_business_client: bool = False,
    *,
    currency: str | None = None,
    rate_provider: VatRateProvider | None = None,
    vat_id_validator: VatIdValidator | None = None,
) -> PriceBreakdown:
    """
    Price an order for a buyer.

    Args:
        base_price: Seller's price (Decimal, int, or numeric string)
        buyer_country: ISO 3166-1 alpha-2 billing country
        buyer_vat_id: Business VAT ID, if any
        is_business_client: Whether the buyer buys as a business
        currency: ISO currency code (defaults to SETTLEMENT_DEFAULT_CURRENCY)
        rate_provider: Standard-rate lookup (defaults to the static table)
        vat_id_validator: VAT ID checker (defaults to format validation)

    Returns:
        PriceBreakdown

    Raises:
        PricingValidationError: Base price is not a positive number
    """
    price = _coerce_price(base_price)
    rate_provider = rate_provider or FallbackVatRateProvider()
    vat_id_validator = vat_id_validator or VatIdValidator()
    country = (buyer_country or "").strip().upper() or None
    fee_rate = Decimal(str(settings.SETTLEMENT_PLATFORM_FEE_RATE))

    platform_fee = quantize_money(price * fee_rate)
    taxable = quantize_money(price + platform_fee)

    vat_rate = Decimal("0")
    reverse_charge = False
    normalized_vat_id = None
    fallback_applied = False
    fallback_reason = None

    if country in vat_countries():
        if is_business_client and buyer_vat_id:
            validation = _validate_vat_id(vat_id_validator, buyer_vat_id, country)
            if validation.valid:
                reverse_charge = True
                normalized_vat_id = validation.normalized_id

        if not reverse_charge:
            try:
                vat_rate = Decimal(str(rate_provider.standard_rate(country)))
            except Exception as exc:
                fallback_applied = True
                fallback_reason = str(exc) or exc.__class__.__name__
                logger.warning(
                    "VAT rate lookup failed, charging 0% VAT",
                    extra={"country": country, "reason": fallback_reason},
                )

    vat_amount = quantize_money(taxable * vat_rate)
    total = quantize_money(taxable + vat_amount)
    seller_earnings = quantize_money(price - platform_fee)

    return PriceBreakdown(
        base_amount=quantize_money(price),
        platform_fee=platform_fee,
        platform_fee_rate=fee_rate,
        taxable_amount=taxable,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        total_amount=total,
        seller_earnings=seller_earnings,
        currency=(currency or settings.SETTLEMENT_DEFAULT_CURRENCY).upper(),
        client_country=country,
        reverse_charge_applied=reverse_charge,
        reverse_charge_note=REVERSE_CHARGE_NOTE if reverse_charge else None,
        vat_id=normalized_vat_id,
        fallback_applied=fallback_applied,
        fallback_reason=fallback_reason,
    )


def _validate_vat_id(
    validator: VatIdValidator,
    vat_id: str,
    country: str,
) -> VatIdValidation:
    """Validator failure degrades to 'not reverse-charged'."""
    try:
        return validator.validate(vat_id, country)
    except Exception as exc:
        logger.warning(
            "VAT ID validation unavailable, charging VAT",
            extra={"country": country, "error": str(exc)},
        )
        return VatIdValidation(valid=False, error=str(exc))
