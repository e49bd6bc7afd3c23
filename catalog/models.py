from django.db import models
from shop.models import Shop
import uuid
from django.utils.text import slugify


class Product(models.Model):
    class ProductType(models.TextChoices):
        PHYSICAL = "physical", "Physical"
        DIGITAL = "digital", "Digital"
        SERVICE = "service", "Service"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    shop = models.ForeignKey(Shop, on_delete=models.CASCADE, related_name="products")
    sku = models.CharField(max_length=100, unique=True, blank=True, null=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)

    # Blank on legacy listings; classification then falls back to the other hints.
    product_type = models.CharField(max_length=20, choices=ProductType.choices, blank=True)
    service_options = models.JSONField(blank=True, null=True)  # {"duration": ..., "location": ...}
    is_digital = models.BooleanField(default=False)

    track_inventory = models.BooleanField(default=False)
    quantity = models.PositiveIntegerField(default=0)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def save(self, *args, **kwargs):
        if not self.sku:
            base = slugify(self.name) if self.name else "product"
            base = (base or "product").upper().replace("-", "")
            base = base[:12] if base else "PRODUCT"
            candidate = f"{base}-{uuid.uuid4().hex[:6].upper()}"
            while Product.objects.filter(sku=candidate).exclude(pk=self.pk).exists():
                candidate = f"{base}-{uuid.uuid4().hex[:6].upper()}"
            self.sku = candidate
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
