"""
Order and OrderStatusEvent models.

Order is the central entity of the settlement engine: one per purchase,
carrying the lifecycle status (django-fsm), the locked pricing snapshot,
processor references, and a cached projection of the milestone ledger.

OrderStatusEvent is the append-only status history. One row is written for
every FSM transition by the post_transition receiver in settlement.signals.

Usage:
    from settlement.models import Order

    order = Order.objects.create(buyer=buyer, seller=seller, gig_id=gig_id, ...)

    # State transitions using django-fsm (actor/reason flow into history)
    order.accept(actor=seller, role=ActorRole.SELLER)
    order.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.exceptions import ConflictError
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from settlement.exceptions import PricingLockedError
from settlement.state_machines import (
    ORDER_PROGRESS,
    ActorRole,
    EscrowStatus,
    MilestoneStage,
    OrderPaymentStatus,
    OrderStatus,
    OrderType,
)

# Snapshot fields frozen once pricing_locked_at is set
PRICING_FIELDS = (
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
)

NON_TERMINAL = [
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.REQUIREMENTS_SUBMITTED,
    OrderStatus.STARTED,
    OrderStatus.HALFWAY_DONE,
    OrderStatus.DELIVERED,
    OrderStatus.REQUESTED_REVISION,
    OrderStatus.WAITING_REVIEW,
    OrderStatus.READY_FOR_PAYMENT,
]


class Order(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    One marketplace purchase and its settlement state.

    State Flow:
        PENDING -> ACCEPTED -> [REQUIREMENTS_SUBMITTED] -> STARTED
            -> [HALFWAY_DONE] -> DELIVERED (⇄ REQUESTED_REVISION)
            -> WAITING_REVIEW -> [READY_FOR_PAYMENT] -> COMPLETED

    Exit Flow:
        any non-terminal -> CANCELLED / DISPUTED
        DISPUTED -> COMPLETED (release) / CANCELLED (refund)

    Fields:
        buyer/seller: Parties to the order
        status: Current FSM state (protected, change through transitions)
        base_amount..reverse_charge_applied: Pricing snapshot
        pricing_locked_at: Set at first authorization, snapshot frozen after
        payment_intent_id/charge_id/transfer_id: Processor references
        payment_breakdown: Cached ledger projection, rebuilt on every ledger write
        version: Optimistic locking version

    Note:
        Money movement never happens in these transitions. They are fired
        by the EscrowOrchestrator after the processor call succeeded.
    """

    # ==========================================================================
    # Parties & Product
    # ==========================================================================

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="purchases",
        help_text="User paying for the order",
    )

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="sales",
        help_text="User delivering the work and receiving the payout",
    )

    gig_id = models.UUIDField(
        db_index=True,
        help_text="Gig/service the order was placed for",
    )

    order_type = models.CharField(
        max_length=20,
        choices=OrderType.choices,
        default=OrderType.SIMPLE,
    )

    status = FSMField(
        default=OrderStatus.PENDING,
        choices=OrderStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current lifecycle status (managed by FSM)",
    )

    # ==========================================================================
    # Pricing Snapshot
    # ==========================================================================

    base_amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2)
    vat_rate = models.DecimalField(
        max_digits=6,
        decimal_places=4,
        help_text="VAT rate as a fraction (0.1900 = 19%)",
    )
    vat_amount = models.DecimalField(max_digits=12, decimal_places=2)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    seller_earnings = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="EUR")
    client_country = models.CharField(max_length=2, null=True, blank=True)
    vat_id = models.CharField(max_length=32, null=True, blank=True)
    reverse_charge_applied = models.BooleanField(default=False)

    pricing_details = models.JSONField(
        default=dict,
        blank=True,
        help_text="Full breakdown as computed (notes, fallback flags)",
    )

    pricing_locked_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the snapshot was frozen (first authorization)",
    )

    # ==========================================================================
    # Processor References
    # ==========================================================================

    payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor payment reference created at checkout (pi_xxx)",
    )

    charge_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Captured charge reference (ch_xxx)",
    )

    transfer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Seller payout transfer reference (tr_xxx)",
    )

    # ==========================================================================
    # Settlement State
    # ==========================================================================

    payment_milestone_stage = models.CharField(
        max_length=20,
        choices=MilestoneStage.choices,
        default=MilestoneStage.ORDER_PLACED,
    )

    escrow_status = models.CharField(
        max_length=20,
        choices=EscrowStatus.choices,
        default=EscrowStatus.NONE,
    )

    payment_status = models.CharField(
        max_length=20,
        choices=OrderPaymentStatus.choices,
        default=OrderPaymentStatus.PENDING,
    )

    payment_breakdown = models.JSONField(
        default=dict,
        blank=True,
        help_text="Projection of the milestone ledger; never authoritative",
    )

    breakdown_version = models.PositiveIntegerField(
        default=0,
        help_text="Incremented each time payment_breakdown is rebuilt",
    )

    # ==========================================================================
    # Timestamps & Deadline
    # ==========================================================================

    accepted_at = models.DateTimeField(null=True, blank=True)
    escrow_locked_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    funds_released_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    deadline = models.DateTimeField(null=True, blank=True, db_index=True)
    deadline_extended = models.BooleanField(default=False)

    cancellation_reason = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Order"
        verbose_name_plural = "Orders"
        indexes = [
            models.Index(fields=["buyer", "status"], name="stl_order_buyer_status_idx"),
            models.Index(fields=["seller", "status"], name="stl_order_seller_status_idx"),
            models.Index(fields=["status", "deadline"], name="stl_order_status_deadline_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(base_amount__gt=0),
                name="settlement_order_base_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(total_amount__gte=models.F("base_amount")),
                name="settlement_order_total_covers_base",
            ),
        ]

    def __str__(self) -> str:
        return f"Order({self.id}, {self.status}, {self.total_amount} {self.currency})"

    # ==========================================================================
    # Pricing Lock
    # ==========================================================================

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._remember_pricing()
        return instance

    def _remember_pricing(self) -> None:
        if self.__dict__.get("pricing_locked_at") is None:
            self._locked_pricing = None
            return
        self._locked_pricing = {
            name: self.__dict__[name] for name in PRICING_FIELDS if name in self.__dict__
        }

    def save(self, *args, **kwargs):
        """
        Save, refusing changes to a locked pricing snapshot.

        Raises:
            PricingLockedError: A snapshot field differs from its locked value
        """
        locked = getattr(self, "_locked_pricing", None)
        if locked:
            changed = [
                name
                for name, value in locked.items()
                if self.__dict__.get(name) != value
            ]
            if changed:
                raise PricingLockedError(
                    f"Pricing for order {self.id} is locked",
                    details={"order_id": str(self.id), "fields": changed},
                )
        super().save(*args, **kwargs)
        self._remember_pricing()

    @property
    def is_pricing_locked(self) -> bool:
        return self.pricing_locked_at is not None

    def lock_pricing(self) -> None:
        if self.pricing_locked_at is None:
            self.pricing_locked_at = timezone.now()

    @property
    def progress(self) -> int:
        """Completion percentage shown to both parties."""
        return ORDER_PROGRESS.get(self.status, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    # ==========================================================================
    # State Transitions (django-fsm)
    #
    # Every transition accepts actor/role/reason keyword arguments; the
    # post_transition receiver records them in OrderStatusEvent.
    # ==========================================================================

    @transition(field=status, source=OrderStatus.PENDING, target=OrderStatus.ACCEPTED)
    def accept(self, actor=None, role=ActorRole.SELLER, reason=""):
        """Seller accepts the order. Transition: PENDING -> ACCEPTED"""
        self.accepted_at = timezone.now()

    @transition(
        field=status,
        source=OrderStatus.ACCEPTED,
        target=OrderStatus.REQUIREMENTS_SUBMITTED,
    )
    def submit_requirements(self, actor=None, role=ActorRole.BUYER, reason=""):
        """Buyer submits requirements. Transition: ACCEPTED -> REQUIREMENTS_SUBMITTED"""

    @transition(
        field=status,
        source=[OrderStatus.ACCEPTED, OrderStatus.REQUIREMENTS_SUBMITTED],
        target=OrderStatus.STARTED,
    )
    def start(self, actor=None, role=ActorRole.SELLER, reason=""):
        """Seller starts work."""

    @transition(field=status, source=OrderStatus.STARTED, target=OrderStatus.HALFWAY_DONE)
    def mark_halfway(self, actor=None, role=ActorRole.SELLER, reason=""):
        """Seller reports half of the work done."""

    @transition(
        field=status,
        source=[
            OrderStatus.STARTED,
            OrderStatus.HALFWAY_DONE,
            OrderStatus.REQUESTED_REVISION,
        ],
        target=OrderStatus.DELIVERED,
    )
    def deliver(self, actor=None, role=ActorRole.SELLER, reason=""):
        """
        Seller delivers (or re-delivers after a revision request).

        Transition: STARTED/HALFWAY_DONE/REQUESTED_REVISION -> DELIVERED
        """
        self.delivered_at = timezone.now()

    @transition(
        field=status,
        source=OrderStatus.DELIVERED,
        target=OrderStatus.REQUESTED_REVISION,
    )
    def request_revision(self, actor=None, role=ActorRole.BUYER, reason=""):
        """Buyer asks for changes. The only backwards edge."""

    @transition(
        field=status,
        source=OrderStatus.DELIVERED,
        target=OrderStatus.WAITING_REVIEW,
    )
    def approve_delivery(self, actor=None, role=ActorRole.BUYER, reason=""):
        """Buyer accepts the delivery."""

    @transition(
        field=status,
        source=OrderStatus.WAITING_REVIEW,
        target=OrderStatus.READY_FOR_PAYMENT,
    )
    def submit_review(self, actor=None, role=ActorRole.BUYER, reason=""):
        """Buyer leaves a review; the order can now be paid out."""

    @transition(
        field=status,
        source=[
            OrderStatus.WAITING_REVIEW,
            OrderStatus.READY_FOR_PAYMENT,
            OrderStatus.DISPUTED,
        ],
        target=OrderStatus.COMPLETED,
    )
    def complete(self, actor=None, role=ActorRole.SYSTEM, reason=""):
        """
        Funds released to the seller.

        Transition: WAITING_REVIEW/READY_FOR_PAYMENT/DISPUTED -> COMPLETED
        """
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=NON_TERMINAL + [OrderStatus.DISPUTED],
        target=OrderStatus.CANCELLED,
    )
    def cancel(self, actor=None, role=ActorRole.SYSTEM, reason=""):
        """
        Cancel the order.

        Transition: any non-terminal/DISPUTED -> CANCELLED
        """
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason or None

    @transition(field=status, source=NON_TERMINAL, target=OrderStatus.DISPUTED)
    def dispute(self, actor=None, role=ActorRole.BUYER, reason=""):
        """Either party opens a dispute. Work stops; money stays where it is."""


class OrderStatusEvent(BaseModel):
    """
    Append-only status history (timeline) of an Order.

    Written once per FSM transition, inside the transaction that saves
    the order. Rows are never updated.
    """

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name="status_events",
    )
    from_status = models.CharField(max_length=30, choices=OrderStatus.choices)
    to_status = models.CharField(max_length=30, choices=OrderStatus.choices)
    transition = models.CharField(max_length=50)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    actor_role = models.CharField(
        max_length=10,
        choices=ActorRole.choices,
        default=ActorRole.SYSTEM,
    )
    reason = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["created_at", "id"]
        verbose_name = "Order Status Event"
        verbose_name_plural = "Order Status Events"
        indexes = [
            models.Index(fields=["order", "created_at"], name="stl_event_order_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.order_id}: {self.from_status} -> {self.to_status}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ConflictError(
                "Status history is append-only",
                error_code="HISTORY_IMMUTABLE",
                details={"event_id": self.pk},
            )
        super().save(*args, **kwargs)
