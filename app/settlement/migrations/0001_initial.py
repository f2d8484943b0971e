import decimal
import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models

ORDER_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("accepted", "Accepted"),
    ("requirements_submitted", "Requirements Submitted"),
    ("started", "Started"),
    ("halfway_done", "Halfway Done"),
    ("delivered", "Delivered"),
    ("requested_revision", "Requested Revision"),
    ("waiting_review", "Waiting Review"),
    ("ready_for_payment", "Ready For Payment"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
    ("disputed", "Disputed"),
]

MILESTONE_STAGE_CHOICES = [
    ("order_placed", "Order Placed"),
    ("accepted", "Freelancer Accepted"),
    ("in_escrow", "Funds in Escrow"),
    ("delivered", "Work Delivered"),
    ("reviewed", "Review Completed"),
    ("completed", "Payment Complete"),
    ("cancelled", "Cancelled"),
    ("refunded", "Refunded"),
    ("disputed", "Disputed"),
]

MILESTONE_PAYMENT_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("authorized", "Authorized"),
    ("captured", "Captured"),
    ("held_in_escrow", "Held in Escrow"),
    ("pending_release", "Pending Release"),
    ("released", "Released"),
    ("refunded", "Refunded"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
]

ACTOR_ROLE_CHOICES = [
    ("buyer", "Buyer"),
    ("seller", "Seller"),
    ("system", "System"),
    ("admin", "Admin"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="VatRate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("country_code", models.CharField(max_length=2, unique=True)),
                ("country_name", models.CharField(blank=True, default="", max_length=100)),
                ("standard_rate", models.DecimalField(decimal_places=2, help_text="Standard rate as a percentage", max_digits=5)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "verbose_name": "VAT Rate",
                "verbose_name_plural": "VAT Rates",
                "ordering": ["country_code"],
            },
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID4)", primary_key=True, serialize=False)),
                ("gig_id", models.UUIDField(db_index=True, help_text="Gig/service the order was placed for")),
                ("order_type", models.CharField(choices=[("simple", "Simple"), ("milestone", "Milestone"), ("custom", "Custom")], default="simple", max_length=20)),
                ("status", django_fsm.FSMField(choices=ORDER_STATUS_CHOICES, db_index=True, default="pending", help_text="Current lifecycle status (managed by FSM)", max_length=50, protected=True)),
                ("base_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("platform_fee", models.DecimalField(decimal_places=2, max_digits=12)),
                ("vat_rate", models.DecimalField(decimal_places=4, help_text="VAT rate as a fraction (0.1900 = 19%)", max_digits=6)),
                ("vat_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("seller_earnings", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="EUR", max_length=3)),
                ("client_country", models.CharField(blank=True, max_length=2, null=True)),
                ("vat_id", models.CharField(blank=True, max_length=32, null=True)),
                ("reverse_charge_applied", models.BooleanField(default=False)),
                ("pricing_details", models.JSONField(blank=True, default=dict, help_text="Full breakdown as computed (notes, fallback flags)")),
                ("pricing_locked_at", models.DateTimeField(blank=True, help_text="When the snapshot was frozen (first authorization)", null=True)),
                ("payment_intent_id", models.CharField(blank=True, help_text="Processor payment reference created at checkout (pi_xxx)", max_length=255, null=True, unique=True)),
                ("charge_id", models.CharField(blank=True, help_text="Captured charge reference (ch_xxx)", max_length=255, null=True)),
                ("transfer_id", models.CharField(blank=True, help_text="Seller payout transfer reference (tr_xxx)", max_length=255, null=True)),
                ("payment_milestone_stage", models.CharField(choices=MILESTONE_STAGE_CHOICES, default="order_placed", max_length=20)),
                ("escrow_status", models.CharField(choices=[("none", "None"), ("partial", "Partial"), ("full", "Full"), ("released", "Released"), ("refunded", "Refunded")], default="none", max_length=20)),
                ("payment_status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded")], default="pending", max_length=20)),
                ("payment_breakdown", models.JSONField(blank=True, default=dict, help_text="Projection of the milestone ledger; never authoritative")),
                ("breakdown_version", models.PositiveIntegerField(default=0, help_text="Incremented each time payment_breakdown is rebuilt")),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("escrow_locked_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("funds_released_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("deadline", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("deadline_extended", models.BooleanField(default=False)),
                ("cancellation_reason", models.TextField(blank=True, null=True)),
                ("buyer", models.ForeignKey(help_text="User paying for the order", on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to=settings.AUTH_USER_MODEL)),
                ("seller", models.ForeignKey(help_text="User delivering the work and receiving the payout", on_delete=django.db.models.deletion.PROTECT, related_name="sales", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Order",
                "verbose_name_plural": "Orders",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["buyer", "status"], name="stl_order_buyer_status_idx"),
                    models.Index(fields=["seller", "status"], name="stl_order_seller_status_idx"),
                    models.Index(fields=["status", "deadline"], name="stl_order_status_deadline_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("base_amount__gt", 0)), name="settlement_order_base_amount_positive"),
                    models.CheckConstraint(condition=models.Q(("total_amount__gte", models.F("base_amount"))), name="settlement_order_total_covers_base"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderStatusEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("from_status", models.CharField(choices=ORDER_STATUS_CHOICES, max_length=30)),
                ("to_status", models.CharField(choices=ORDER_STATUS_CHOICES, max_length=30)),
                ("transition", models.CharField(max_length=50)),
                ("actor_role", models.CharField(choices=ACTOR_ROLE_CHOICES, default="system", max_length=10)),
                ("reason", models.TextField(blank=True, default="")),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="status_events", to="settlement.order")),
            ],
            options={
                "verbose_name": "Order Status Event",
                "verbose_name_plural": "Order Status Events",
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["order", "created_at"], name="stl_event_order_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MilestoneEntry",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID4)", primary_key=True, serialize=False)),
                ("sequence", models.PositiveIntegerField(help_text="Processing order within the order, starting at 1")),
                ("stage", models.CharField(choices=MILESTONE_STAGE_CHOICES, max_length=20)),
                ("percentage_of_total", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), max_digits=5)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("payment_intent_id", models.CharField(blank=True, max_length=255, null=True)),
                ("charge_id", models.CharField(blank=True, max_length=255, null=True)),
                ("transfer_id", models.CharField(blank=True, max_length=255, null=True)),
                ("refund_id", models.CharField(blank=True, max_length=255, null=True)),
                ("payment_status", models.CharField(choices=MILESTONE_PAYMENT_STATUS_CHOICES, db_index=True, default="pending", max_length=20)),
                ("authorized_at", models.DateTimeField(blank=True, null=True)),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, null=True)),
                ("failure_code", models.CharField(blank=True, max_length=64, null=True)),
                ("triggered_by_role", models.CharField(choices=ACTOR_ROLE_CHOICES, default="system", max_length=10)),
                ("triggered_by_action", models.CharField(blank=True, default="", max_length=50)),
                ("notes", models.TextField(blank=True, default="")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("idempotency_key", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="milestones", to="settlement.order")),
                ("settled_by", models.ForeignKey(blank=True, help_text="Terminal entry (completed/cancelled) that closed this entry", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="settled_entries", to="settlement.milestoneentry")),
                ("triggered_by_user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Milestone Entry",
                "verbose_name_plural": "Milestone Entries",
                "ordering": ["order", "sequence"],
                "indexes": [
                    models.Index(fields=["order", "payment_status"], name="stl_entry_order_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("payment_status", "failed"), _negated=True), fields=("order", "stage"), name="settlement_milestone_unique_stage"),
                    models.UniqueConstraint(fields=("order", "sequence"), name="settlement_milestone_unique_sequence"),
                    models.CheckConstraint(condition=models.Q(("amount__gte", 0)), name="settlement_milestone_amount_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutAccount",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID4)", primary_key=True, serialize=False)),
                ("stripe_account_id", models.CharField(help_text="Stripe Account ID (acct_xxx)", max_length=255, unique=True)),
                ("onboarding_status", models.CharField(choices=[("not_started", "Not Started"), ("in_progress", "In Progress"), ("complete", "Complete"), ("rejected", "Rejected")], db_index=True, default="not_started", max_length=20)),
                ("payouts_enabled", models.BooleanField(default=False)),
                ("seller", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="payout_account", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Payout Account",
                "verbose_name_plural": "Payout Accounts",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="SellerEarnings",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID4)", primary_key=True, serialize=False)),
                ("currency", models.CharField(default="EUR", max_length=3)),
                ("pending_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=12)),
                ("available_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=12)),
                ("total_earned", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=12)),
                ("seller", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="earnings", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Seller Earnings",
                "verbose_name_plural": "Seller Earnings",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("pending_amount__gte", 0)), name="settlement_earnings_pending_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SettlementReconciliation",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID4)", primary_key=True, serialize=False)),
                ("operation", models.CharField(choices=[("authorize", "Authorize"), ("capture", "Capture"), ("transfer", "Transfer"), ("refund", "Refund")], max_length=20)),
                ("stage", models.CharField(choices=MILESTONE_STAGE_CHOICES, max_length=20)),
                ("processor_reference", models.CharField(blank=True, default="", max_length=255)),
                ("idempotency_key", models.CharField(blank=True, default="", max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("actor_role", models.CharField(choices=ACTOR_ROLE_CHOICES, default="system", max_length=10)),
                ("reason", models.TextField(blank=True, default="")),
                ("error_message", models.TextField(blank=True, default="")),
                ("status", models.CharField(choices=[("open", "Open"), ("resolved", "Resolved"), ("abandoned", "Abandoned")], db_index=True, default="open", max_length=20)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("resolution_notes", models.TextField(blank=True, default="")),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="reconciliations", to="settlement.order")),
                ("resolved_entry", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="settlement.milestoneentry")),
            ],
            options={
                "verbose_name": "Settlement Reconciliation",
                "verbose_name_plural": "Settlement Reconciliations",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="stl_recon_status_created_idx"),
                    models.Index(fields=["order", "status"], name="stl_recon_order_status_idx"),
                ],
            },
        ),
    ]
