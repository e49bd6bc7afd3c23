import uuid
from django.conf import settings
from django.db import models


class DeviceToken(models.Model):
    class DeviceType(models.TextChoices):
        WEB = "web", "Web"
        ANDROID = "android", "Android"
        IOS = "ios", "iOS"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="device_tokens")
    token = models.TextField(unique=True)
    device_type = models.CharField(max_length=20, choices=DeviceType.choices)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["user", "is_active"], name="notificatio_user_id_f0e72c_idx"),
        ]


class Notification(models.Model):
    class Type(models.TextChoices):
        PAYMENT_CONFIRMED = "payment_confirmed", "Payment Confirmed"
        TICKET_ISSUED = "ticket_issued", "Ticket Issued"
        NEW_ORDER = "new_order", "New Order"
        ORDER_STATUS = "order_status", "Order Status"
        ORDER_CANCELLED = "order_cancelled", "Order Cancelled"
        PAYMENT_RELEASED = "payment_released", "Payment Released"
        WITHDRAWAL_PROCESSING = "withdrawal_processing", "Withdrawal Processing"
        WITHDRAWAL_COMPLETED = "withdrawal_completed", "Withdrawal Completed"
        WITHDRAWAL_FAILED = "withdrawal_failed", "Withdrawal Failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="notifications")
    type = models.CharField(max_length=50, choices=Type.choices)
    title = models.CharField(max_length=255)
    message = models.TextField()
    payload = models.JSONField(default=dict)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "is_read"], name="notificatio_user_id_427e4b_idx"),
            models.Index(fields=["type"], name="notificatio_type_ea918f_idx"),
        ]
