from decimal import Decimal

from django.conf import settings
from django.db import models

from catalog.models import Product
from shop.models import Shop


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        SERVICE_PENDING = "SERVICE_PENDING", "Service Pending"
        DELIVERY_PENDING = "DELIVERY_PENDING", "Delivery Pending"
        COLLECTION_PENDING = "COLLECTION_PENDING", "Collection Pending"
        DELIVERY_COMPLETE = "DELIVERY_COMPLETE", "Delivery Complete"
        CONFIRMED = "CONFIRMED", "Confirmed"
        COMPLETED = "COMPLETED", "Completed"
        CANCELLED = "CANCELLED", "Cancelled"
        FAILED = "FAILED", "Failed"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"
        FAILED = "failed", "Failed"

    order_number = models.CharField(max_length=20, unique=True)

    buyer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="orders")
    shop = models.ForeignKey(Shop, on_delete=models.CASCADE, related_name="orders")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    # Seller-side settlement: completed once escrow is released.
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    seller_payout_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    payment_reference = models.CharField(max_length=100, blank=True, null=True)
    # payout_processed / order_completed_at markers live here.
    metadata = models.JSONField(default=dict, blank=True)

    booking_date = models.DateTimeField(null=True, blank=True)
    seller_dropoff_deadline = models.DateTimeField(null=True, blank=True)
    ready_for_pickup_at = models.DateTimeField(null=True, blank=True)
    buyer_pickup_deadline = models.DateTimeField(null=True, blank=True)
    auto_cancelled_reason = models.CharField(max_length=255, blank=True)

    payment_completed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="order_order_status_2f1723_idx"),
            models.Index(fields=["payment_status"], name="order_order_payment_6d88a5_idx"),
            models.Index(fields=["status", "seller_dropoff_deadline"], name="order_order_status_fd591d_idx"),
            models.Index(fields=["status", "buyer_pickup_deadline"], name="order_order_status_060363_idx"),
        ]

    def __str__(self):
        return f"{self.order_number} - {self.status}"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, related_name="items", on_delete=models.CASCADE)
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, null=True)

    # Snapshot fields
    product_name = models.CharField(max_length=255)
    product_type = models.CharField(max_length=20, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField()
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)

    def __str__(self):
        return f"{self.product_name} x{self.quantity}"
