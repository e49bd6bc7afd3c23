# payments/models.py

import uuid
from django.db import models
from django.conf import settings
from order.models import Order


class Payment(models.Model):

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PROCESSING = "PROCESSING", "Processing"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"
        CANCELLED = "CANCELLED", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Ticket payments carry their target in metadata instead of an order link.
    order = models.ForeignKey(
        Order,
        on_delete=models.SET_NULL,
        related_name="payments",
        null=True,
        blank=True,
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=10, default="KES")

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )

    provider = models.CharField(max_length=50)
    invoice_id = models.CharField(max_length=150, unique=True)
    provider_reference = models.CharField(
        max_length=150,
        blank=True,
        null=True
    )

    customer_email = models.EmailField(blank=True)
    customer_phone = models.CharField(max_length=20, blank=True)

    # order_id / ticket_type_id / event_id targets, completion markers, email_attempts log.
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="payment_pay_status_124d3d_idx"),
            models.Index(fields=["provider_reference"], name="payment_pay_provide_fc468f_idx"),
        ]

    def __str__(self):
        return f"{self.invoice_id} - {self.status}"


class Payout(models.Model):
    """One settlement row per completed order."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        COMPLETED = "COMPLETED", "Completed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name="payout")
    shop = models.ForeignKey("shop.Shop", on_delete=models.CASCADE, related_name="payouts")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=30, default="wallet_credit")

    processed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="payment_pay_status_47a8a8_idx"),
        ]

    def __str__(self):
        return f"Payout {self.order_id} - {self.status}"


class WithdrawalRequest(models.Model):

    class Status(models.TextChoices):
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    class OwnerType(models.TextChoices):
        SELLER = "seller", "Seller"
        ORGANIZER = "organizer", "Organizer"
        EVENT = "event", "Event"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="withdrawal_requests",
        null=True,
        blank=True,
    )

    # Exactly one wallet owner is set.
    shop = models.ForeignKey("shop.Shop", on_delete=models.PROTECT, related_name="withdrawal_requests", null=True, blank=True)
    organizer = models.ForeignKey("event.Organizer", on_delete=models.PROTECT, related_name="withdrawal_requests", null=True, blank=True)
    event = models.ForeignKey("event.Event", on_delete=models.PROTECT, related_name="withdrawal_requests", null=True, blank=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    deducted_amount = models.DecimalField(max_digits=12, decimal_places=2)
    phone_number = models.CharField(max_length=20)
    account_name = models.CharField(max_length=255)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PROCESSING)
    provider = models.CharField(max_length=30, blank=True)
    provider_reference = models.CharField(max_length=150, blank=True, null=True)
    raw_response = models.JSONField(default=dict, blank=True)

    # api_error, reconciliation_flag, failure_reason
    metadata = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="payment_wit_status_8ef6f6_idx"),
            models.Index(fields=["provider_reference"], name="payment_wit_provide_ee8f2d_idx"),
        ]

    def __str__(self):
        return f"Withdrawal {self.id} - {self.status}"

    @property
    def owner_type(self) -> str:
        if self.event_id:
            return self.OwnerType.EVENT
        if self.organizer_id:
            return self.OwnerType.ORGANIZER
        return self.OwnerType.SELLER

    @property
    def owner_id(self):
        return self.event_id or self.organizer_id or self.shop_id


class WebhookLog(models.Model):

    provider = models.CharField(max_length=50)
    event_type = models.CharField(max_length=100)

    reference = models.CharField(max_length=150)
    payload = models.JSONField()

    processed = models.BooleanField(default=False)
    processing_attempts = models.IntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["reference"], name="payment_web_referen_56bbc2_idx"),
            models.Index(fields=["processed"], name="payment_web_process_534837_idx"),
        ]
