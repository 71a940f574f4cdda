import uuid
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone


class ShopModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=120)
    address = models.CharField(max_length=255, blank=True, default="")
    is_open = models.BooleanField(default=True)

    # Payment processor connected account and its capability flags
    merchant_account = models.CharField(max_length=64, unique=True, null=True, blank=True)
    charges_enabled = models.BooleanField(default=False)
    payouts_enabled = models.BooleanField(default=False)
    details_submitted = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "shops"


class ItemModel(models.Model):
    class StockPolicy(models.TextChoices):
        TRACKED = "tracked"
        UNLIMITED = "unlimited"
        HIDDEN = "hidden"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    shop = models.ForeignKey(ShopModel, on_delete=models.CASCADE, related_name="items")
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(max_digits=10, decimal_places=2)

    stock_policy = models.CharField(max_length=16, choices=StockPolicy.choices, default=StockPolicy.TRACKED)
    # Units left after every commit; meaningless unless tracked
    stock_count = models.PositiveIntegerField(default=0)
    # Sum of held reservations
    reserved = models.PositiveIntegerField(default=0)
    # Bumped on every stock write; conditional updates key on it
    version = models.PositiveIntegerField(default=0)
    deleted = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "items"
        constraints = [
            models.CheckConstraint(
                condition=~Q(stock_policy="tracked") | Q(reserved__lte=F("stock_count")),
                name="items_reserved_within_stock",
            ),
            models.CheckConstraint(condition=Q(price__gte=0), name="items_price_non_negative"),
        ]


class ReservationModel(models.Model):
    class State(models.TextChoices):
        HELD = "held"
        COMMITTED = "committed"
        RELEASED = "released"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(ItemModel, on_delete=models.CASCADE, related_name="reservations")
    # Checkout attempt; the order row is written after the holds
    order_id = models.UUIDField(db_index=True)
    quantity = models.PositiveIntegerField()
    state = models.CharField(max_length=16, choices=State.choices, default=State.HELD)
    tracked = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()

    class Meta:
        db_table = "reservations"
        indexes = [models.Index(fields=["state", "expires_at"])]


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Incremental order number shown to customers and baristas
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        PENDING_PAYMENT = "pending_payment"
        PENDING = "pending"
        ACCEPTED = "accepted"
        PREPARING = "preparing"
        READY = "ready"
        COMPLETED = "completed"
        CANCELLED = "cancelled"

    shop = models.ForeignKey(ShopModel, on_delete=models.PROTECT, related_name="orders")
    customer_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_PAYMENT)
    pickup_time = models.DateTimeField(null=True, blank=True)

    subtotal = models.DecimalField(max_digits=10, decimal_places=2)
    tax = models.DecimalField(max_digits=10, decimal_places=2)
    total = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="usd")
    amount_minor = models.PositiveIntegerField()
    application_fee_minor = models.PositiveIntegerField(default=0)
    payment_ref = models.CharField(max_length=255, unique=True, null=True, blank=True)

    expires_at = models.DateTimeField()
    placed_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=32, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["shop", "status", "created_at"]),
            models.Index(fields=["customer_id", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(status="pending_payment") | Q(payment_ref__isnull=False),
                name="orders_visible_have_payment_ref",
            ),
        ]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveSmallIntegerField()
    # Snapshot: no FK so deleting the item never touches order history
    item_id = models.UUIDField()
    name = models.CharField(max_length=120)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    quantity = models.PositiveIntegerField()

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]


class OrderStatusChangeModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="status_changes")
    from_status = models.CharField(max_length=32, choices=OrderModel.Status.choices)
    to_status = models.CharField(max_length=32, choices=OrderModel.Status.choices)
    actor_id = models.CharField(max_length=64, null=True, blank=True)
    note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "order_status_changes"
        ordering = ["created_at", "id"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
