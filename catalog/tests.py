from django.test import TestCase

from account.models import User
from catalog.models import Product
from catalog.services import catalog_product_type
from order.models import Order, OrderItem
from order.state_machine import classify_items
from shop.models import Shop


class CatalogProductTypeTests(TestCase):
    def setUp(self):
        owner = User.objects.create_user(
            email="owner-catalog@example.com",
            password="Pass123!",
            role=User.Role.SELLER,
        )
        self.shop = Shop.objects.create(name="Catalog Shop", owner=owner)
        self.buyer = User.objects.create_user(email="buyer-catalog@example.com", password="Pass123!")

    def _product(self, **fields):
        fields.setdefault("name", "Thing")
        fields.setdefault("price", "100.00")
        return Product.objects.create(shop=self.shop, **fields)

    def test_product_sku_is_auto_generated(self):
        product = self._product(name="Wireless Earbuds")
        self.assertTrue(product.sku.startswith("WIRELESSEARB-"))

    def test_explicit_type_wins(self):
        product = self._product(
            product_type=Product.ProductType.PHYSICAL,
            service_options={"duration": "1h"},
            is_digital=True,
        )
        self.assertEqual(catalog_product_type(product), Product.ProductType.PHYSICAL)

    def test_service_options_then_digital_flag(self):
        self.assertEqual(
            catalog_product_type(self._product(service_options={"location": "Westlands"}, is_digital=True)),
            Product.ProductType.SERVICE,
        )
        self.assertEqual(catalog_product_type(self._product(is_digital=True)), Product.ProductType.DIGITAL)
        self.assertIsNone(catalog_product_type(self._product()))
        self.assertIsNone(catalog_product_type(None))

    def test_deleted_product_falls_back_to_snapshot(self):
        order = Order.objects.create(
            order_number="ORD-SNAPSHOT",
            buyer=self.buyer,
            shop=self.shop,
            total_amount="100.00",
        )
        item = OrderItem.objects.create(
            order=order,
            product=None,
            product_name="Old Lamp",
            product_type=Product.ProductType.PHYSICAL,
            unit_price="100.00",
            quantity=1,
            subtotal="100.00",
        )

        composition = classify_items([item])

        self.assertTrue(composition.has_physical)

    def test_order_metadata_is_the_last_resort(self):
        product = self._product()
        order = Order.objects.create(
            order_number="ORD-META",
            buyer=self.buyer,
            shop=self.shop,
            total_amount="100.00",
        )
        item = OrderItem.objects.create(
            order=order,
            product=product,
            product_name=product.name,
            unit_price="100.00",
            quantity=1,
            subtotal="100.00",
        )

        self.assertFalse(classify_items([item]).has_service)
        self.assertTrue(classify_items([item], {"product_type": "service"}).has_service)
        self.assertTrue(classify_items([item], {"product_type": "physical"}).has_physical)
