import uuid
from decimal import Decimal

from django.db import models


class Shop(models.Model):
    """Seller storefront. Holds the seller wallet credited by escrow release."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)

    owner = models.OneToOneField(
        "account.User",
        on_delete=models.CASCADE,
        related_name="owned_shop"
    )

    # Non-empty when buyers can collect orders in person.
    physical_address = models.CharField(max_length=255, blank=True)
    phone_number = models.CharField(max_length=20, blank=True)

    balance = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    net_revenue = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total_sales = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    @property
    def has_pickup_location(self) -> bool:
        return bool((self.physical_address or "").strip())
