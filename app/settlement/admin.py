"""
Settlement admin configuration.

Orders and the milestone ledger are read-only here: state changes go
through the service layer. VatRate and PayoutAccount are editable
configuration. Open reconciliation records can be resolved from the
changelist.
"""

from django.contrib import admin, messages

from settlement.models import (
    MilestoneEntry,
    Order,
    OrderStatusEvent,
    PayoutAccount,
    SellerEarnings,
    SettlementReconciliation,
    VatRate,
)


class ReadOnlyAdminMixin:
    """Disable add/change/delete (audit trail)."""

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


class MilestoneEntryInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = MilestoneEntry
    fk_name = "order"
    extra = 0
    fields = [
        "sequence",
        "stage",
        "amount",
        "payment_status",
        "charge_id",
        "transfer_id",
        "refund_id",
        "created_at",
    ]
    readonly_fields = fields


class OrderStatusEventInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = OrderStatusEvent
    extra = 0
    fields = ["from_status", "to_status", "transition", "actor", "actor_role", "reason", "created_at"]
    readonly_fields = fields


@admin.register(Order)
class OrderAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for Order.

    State changes should be made through the service layer, not admin.
    """

    list_display = [
        "id",
        "buyer",
        "seller",
        "status",
        "total_display",
        "payment_milestone_stage",
        "escrow_status",
        "payment_status",
        "created_at",
    ]
    list_filter = ["status", "escrow_status", "payment_status", "currency", "created_at"]
    search_fields = ["id", "payment_intent_id", "charge_id", "transfer_id", "buyer__email"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [MilestoneEntryInline, OrderStatusEventInline]

    fieldsets = (
        (None, {"fields": ("id", "buyer", "seller", "gig_id", "order_type", "status")}),
        (
            "Pricing Snapshot",
            {
                "fields": (
                    "base_amount",
                    "platform_fee",
                    "vat_rate",
                    "vat_amount",
                    "total_amount",
                    "seller_earnings",
                    "currency",
                    "client_country",
                    "vat_id",
                    "reverse_charge_applied",
                    "pricing_locked_at",
                ),
            },
        ),
        (
            "Settlement",
            {
                "fields": (
                    "payment_milestone_stage",
                    "escrow_status",
                    "payment_status",
                    "payment_intent_id",
                    "charge_id",
                    "transfer_id",
                    "payment_breakdown",
                    "breakdown_version",
                ),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "accepted_at",
                    "escrow_locked_at",
                    "delivered_at",
                    "funds_released_at",
                    "completed_at",
                    "cancelled_at",
                    "deadline",
                    "deadline_extended",
                    "created_at",
                    "updated_at",
                ),
                "classes": ("collapse",),
            },
        ),
    )

    def total_display(self, obj: Order) -> str:
        return f"{obj.total_amount} {obj.currency}"

    total_display.short_description = "Total"


@admin.register(MilestoneEntry)
class MilestoneEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Ledger entries are immutable; visible for audit only."""

    list_display = [
        "id",
        "order",
        "sequence",
        "stage",
        "amount",
        "currency",
        "payment_status",
        "triggered_by_role",
        "created_at",
    ]
    list_filter = ["stage", "payment_status", "currency"]
    search_fields = ["id", "order__id", "payment_intent_id", "charge_id", "transfer_id", "refund_id"]
    ordering = ["-created_at"]


@admin.register(SettlementReconciliation)
class SettlementReconciliationAdmin(admin.ModelAdmin):
    """Partial commits awaiting resolution."""

    list_display = [
        "id",
        "order",
        "operation",
        "stage",
        "amount",
        "status",
        "attempts",
        "created_at",
    ]
    list_filter = ["status", "operation"]
    search_fields = ["id", "order__id", "processor_reference", "idempotency_key"]
    ordering = ["-created_at"]
    readonly_fields = [
        field.name
        for field in SettlementReconciliation._meta.fields
        if field.name != "resolution_notes"
    ]
    actions = ["resolve_selected"]

    @admin.action(description="Resolve selected against Stripe")
    def resolve_selected(self, request, queryset):
        from settlement.services import ReconciliationService

        for record in queryset:
            result = ReconciliationService.resolve(record.id)
            if result.success:
                self.message_user(request, f"{record.id}: {result.data.status}")
            else:
                self.message_user(request, f"{record.id}: {result.error}", level=messages.ERROR)

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PayoutAccount)
class PayoutAccountAdmin(admin.ModelAdmin):
    list_display = ["id", "seller", "stripe_account_id", "onboarding_status", "payouts_enabled"]
    list_filter = ["onboarding_status", "payouts_enabled"]
    search_fields = ["id", "stripe_account_id", "seller__email"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(SellerEarnings)
class SellerEarningsAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["seller", "currency", "pending_amount", "available_amount", "total_earned"]
    search_fields = ["seller__email"]


@admin.register(VatRate)
class VatRateAdmin(admin.ModelAdmin):
    list_display = ["country_code", "country_name", "standard_rate", "is_active"]
    list_filter = ["is_active"]
    search_fields = ["country_code", "country_name"]
    ordering = ["country_code"]
