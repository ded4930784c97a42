import uuid
from django.db import models, transaction


class VariantModel(models.Model):
    sku = models.CharField(max_length=64, primary_key=True)
    product_id = models.CharField(max_length=64, db_index=True)
    size = models.CharField(max_length=32, null=True, blank=True)
    color = models.CharField(max_length=32, null=True, blank=True)
    name = models.CharField(max_length=200, blank=True, default="")
    price_cents = models.PositiveIntegerField()
    promo_price_cents = models.PositiveIntegerField(null=True, blank=True)
    on_hand = models.PositiveIntegerField(default=0)
    weight_grams = models.PositiveIntegerField(default=300)

    class Meta:
        db_table = "variants"
        constraints = [
            models.UniqueConstraint(fields=["product_id", "size", "color"], name="ux_variant_key"),
            models.CheckConstraint(
                condition=models.Q(promo_price_cents__isnull=True) | models.Q(promo_price_cents__lte=models.F("price_cents")),
                name="ck_promo_not_above_price",
            ),
        ]


class ReservationModel(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "ACTIVE"
        RELEASED = "RELEASED"
        COMMITTED = "COMMITTED"
        EXPIRED = "EXPIRED"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE, db_index=True)
    expires_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    committed_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "reservations"
        indexes = [models.Index(fields=["status", "expires_at"])]


class ReservationLineModel(models.Model):
    reservation = models.ForeignKey(ReservationModel, related_name="lines", on_delete=models.CASCADE)
    variant = models.ForeignKey(VariantModel, related_name="reservation_lines", on_delete=models.PROTECT)
    quantity = models.PositiveIntegerField()

    class Meta:
        db_table = "reservation_lines"


class CartLineModel(models.Model):
    owner_id = models.CharField(max_length=128, db_index=True)
    position = models.PositiveIntegerField(default=0)
    product_id = models.CharField(max_length=64)
    size = models.CharField(max_length=32, null=True, blank=True)
    color = models.CharField(max_length=32, null=True, blank=True)
    quantity = models.PositiveIntegerField()
    price_snapshot_cents = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        db_table = "cart_lines"
        ordering = ["owner_id", "position"]


class OrderModel(models.Model):
    # UUID PK exposed as the checkout id
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        INITIATED = "INITIATED"
        QUOTED = "QUOTED"
        RESERVED = "RESERVED"
        PAYMENT_PENDING = "PAYMENT_PENDING"
        PAID = "PAID"
        PAYMENT_FAILED = "PAYMENT_FAILED"
        EXPIRED = "EXPIRED"
        FULFILLING = "FULFILLING"
        COMPLETED = "COMPLETED"
        CANCELED = "CANCELED"

    owner_id = models.CharField(max_length=128, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.INITIATED, db_index=True)
    currency = models.CharField(max_length=3, default="BRL")

    zip_code = models.CharField(max_length=16)
    city = models.CharField(max_length=100, blank=True, default="")
    state = models.CharField(max_length=2, blank=True, default="")
    country = models.CharField(max_length=2, default="BR")

    shipping_method = models.CharField(max_length=64)
    shipping_cents = models.PositiveIntegerField(default=0)
    shipping_eta_days = models.PositiveIntegerField(default=0)

    payment_method = models.CharField(max_length=16, null=True, blank=True)
    installments = models.PositiveSmallIntegerField(default=1)
    payer_name = models.CharField(max_length=200, blank=True, default="")
    payer_email = models.CharField(max_length=254, blank=True, default="")
    payer_document = models.CharField(max_length=32, blank=True, default="")

    reservation_id = models.UUIDField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    reconciliation_required = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

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
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    position = models.PositiveIntegerField(default=0)
    sku = models.CharField(max_length=64)
    product_id = models.CharField(max_length=64)
    size = models.CharField(max_length=32, null=True, blank=True)
    color = models.CharField(max_length=32, null=True, blank=True)
    name = models.CharField(max_length=200, blank=True, default="")
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()
    weight_grams = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_lines"
        ordering = ["order", "position"]


class OrderStatusModel(models.Model):
    """Append-only status history."""

    order = models.ForeignKey(OrderModel, related_name="history", on_delete=models.CASCADE)
    status = models.CharField(max_length=32, choices=OrderModel.Status.choices)
    reason = models.CharField(max_length=255, blank=True, default="")
    at = models.DateTimeField()

    class Meta:
        db_table = "order_status_history"
        ordering = ["order", "id"]


class PaymentAttemptModel(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        CONFIRMED = "CONFIRMED"
        FAILED = "FAILED"
        SUPERSEDED = "SUPERSEDED"

    order = models.ForeignKey(OrderModel, related_name="attempts", on_delete=models.CASCADE)
    transaction_ref = models.CharField(max_length=128, unique=True)
    method = models.CharField(max_length=16)
    amount_cents = models.PositiveIntegerField()
    installments = models.PositiveSmallIntegerField(default=1)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    created_at = models.DateTimeField()

    class Meta:
        db_table = "payment_attempts"
        ordering = ["order", "id"]


class AppliedEventModel(models.Model):
    """Gateway events already applied, keyed by (order, transaction, outcome)."""

    order = models.ForeignKey(OrderModel, related_name="applied_events", on_delete=models.CASCADE)
    transaction_ref = models.CharField(max_length=128)
    outcome = models.CharField(max_length=16)
    applied_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "applied_payment_events"
        constraints = [
            models.UniqueConstraint(fields=["order", "transaction_ref", "outcome"], name="ux_applied_event"),
        ]


class ReconciliationConflictModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="conflicts", on_delete=models.PROTECT)
    transaction_ref = models.CharField(max_length=128)
    reason = models.CharField(max_length=255)
    at = models.DateTimeField()
    resolved = models.BooleanField(default=False)

    class Meta:
        db_table = "reconciliation_conflicts"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
