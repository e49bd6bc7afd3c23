from datetime import timedelta
from decimal import Decimal
from itertools import product as pairs
from unittest.mock import patch

from django.db import transaction
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from account.models import User
from catalog.models import Product
from payment.models import Payout
from payment.services.errors import EscrowError, SettlementValidationError
from payment.services.escrow import EscrowService
from shop.models import Shop

from .deadlines import OrderDeadlineService
from .models import Order
from .services import OrderService
from .state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    InvalidTransitionError,
    ItemComposition,
    OrderNotPaidError,
    can_transition,
    resolve_post_payment_status,
)


def _make_parties(prefix, pickup=True):
    owner = User.objects.create_user(
        email=f"owner_{prefix}@example.com",
        password="pass1234",
        role=User.Role.SELLER,
    )
    buyer = User.objects.create_user(
        email=f"buyer_{prefix}@example.com",
        password="pass1234",
        role=User.Role.BUYER,
    )
    shop = Shop.objects.create(
        name=f"{prefix} shop",
        owner=owner,
        physical_address="Moi Avenue 12, Nairobi" if pickup else "",
    )
    return owner, buyer, shop


class OrderStateMachineTests(SimpleTestCase):
    def test_only_table_transitions_are_allowed(self):
        for current, target in pairs(Order.Status.values, repeat=2):
            expected = target in TRANSITIONS.get(current, frozenset())
            self.assertEqual(can_transition(current, target), expected, (current, target))

    def test_terminal_statuses_have_no_outgoing_transitions(self):
        for terminal in TERMINAL_STATUSES:
            for target in Order.Status.values:
                self.assertFalse(can_transition(terminal, target))

    def test_post_payment_resolution(self):
        physical = ItemComposition(has_physical=True, has_service=True)
        self.assertEqual(resolve_post_payment_status(physical, True), Order.Status.COLLECTION_PENDING)
        self.assertEqual(resolve_post_payment_status(physical, False), Order.Status.DELIVERY_PENDING)
        service = ItemComposition(has_service=True, has_other=True)
        self.assertEqual(resolve_post_payment_status(service, True), Order.Status.SERVICE_PENDING)
        self.assertEqual(resolve_post_payment_status(ItemComposition(has_other=True), True), Order.Status.COMPLETED)
        self.assertEqual(resolve_post_payment_status(ItemComposition(), False), Order.Status.COMPLETED)


class OrderServiceTests(TestCase):
    def setUp(self):
        self.owner, self.buyer, self.shop = _make_parties("order_service")
        self.physical = Product.objects.create(
            name="Leather Bag",
            shop=self.shop,
            price="333.33",
            product_type=Product.ProductType.PHYSICAL,
            track_inventory=True,
            quantity=5,
        )
        self.ebook = Product.objects.create(
            name="Recipe eBook",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.DIGITAL,
        )
        self.haircut = Product.objects.create(
            name="Haircut",
            shop=self.shop,
            price="500.00",
            service_options={"duration": "1h"},
        )

    def _pay(self, order):
        with transaction.atomic():
            return OrderService.complete_after_payment(order.pk)

    def test_create_order_splits_fee_and_payout(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 3}])

        self.assertEqual(order.total_amount, Decimal("999.99"))
        self.assertEqual(order.platform_fee_amount, Decimal("100.00"))
        self.assertEqual(order.seller_payout_amount, Decimal("899.99"))
        self.assertEqual(order.platform_fee_amount + order.seller_payout_amount, order.total_amount)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.items.get().product_type, Product.ProductType.PHYSICAL)

    def test_create_order_rejects_foreign_products_and_bad_quantities(self):
        _, _, other_shop = _make_parties("order_service_other")
        with self.assertRaises(SettlementValidationError):
            OrderService.create_order(self.buyer, other_shop, [{"product": self.physical, "quantity": 1}])
        with self.assertRaises(SettlementValidationError):
            OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 0}])
        with self.assertRaises(SettlementValidationError):
            OrderService.create_order(self.buyer, self.shop, [])
        self.assertFalse(Order.objects.exists())

    def test_service_only_order_starts_service_pending(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.haircut, "quantity": 1}])
        self.assertEqual(order.status, Order.Status.SERVICE_PENDING)

    def test_invalid_transition_is_rejected_and_status_unchanged(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])

        with self.assertRaises(InvalidTransitionError):
            OrderService.update_status(order.pk, Order.Status.DELIVERY_COMPLETE)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertIsNone(order.ready_for_pickup_at)

    def test_collection_order_releases_escrow_once_when_collected(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 3}])

        paid = self._pay(order)
        self.assertEqual(paid.status, Order.Status.COLLECTION_PENDING)
        self.assertIsNotNone(paid.payment_completed_at)
        self.shop.refresh_from_db()
        self.physical.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))
        self.assertEqual(self.physical.quantity, 2)

        completed = OrderService.mark_as_collected(order.pk, self.buyer)
        self.assertEqual(completed.status, Order.Status.COMPLETED)
        self.assertEqual(completed.payment_status, Order.PaymentStatus.COMPLETED)
        self.assertTrue(completed.metadata["payout_processed"])
        self.assertIn("order_completed_at", completed.metadata)

        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("899.99"))
        self.assertEqual(self.shop.net_revenue, Decimal("899.99"))
        self.assertEqual(self.shop.total_sales, Decimal("999.99"))

        payout = Payout.objects.get(order=order)
        self.assertEqual(payout.status, Payout.Status.COMPLETED)
        self.assertEqual(payout.amount, Decimal("899.99"))
        self.assertEqual(payout.metadata["processed_by"], "buyer_collection")

        with transaction.atomic():
            again = EscrowService().release_funds(completed, source="retry")
        self.assertTrue(again.already_released)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("899.99"))

    def test_shop_without_pickup_goes_to_delivery_with_deadline(self):
        self.shop.physical_address = ""
        self.shop.save()
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])

        paid = self._pay(order)

        self.assertEqual(paid.status, Order.Status.DELIVERY_PENDING)
        self.assertEqual(paid.seller_dropoff_deadline, paid.created_at + timedelta(hours=48))

    def test_digital_order_completes_on_payment(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.ebook, "quantity": 1}])

        paid = self._pay(order)

        self.assertEqual(paid.status, Order.Status.COMPLETED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("900.00"))
        self.assertEqual(Payout.objects.filter(order=order).count(), 1)

    def test_product_type_is_rederived_at_payment_time(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.ebook, "quantity": 1}])
        self.ebook.product_type = Product.ProductType.PHYSICAL
        self.ebook.save()

        paid = self._pay(order)

        self.assertEqual(paid.status, Order.Status.COLLECTION_PENDING)

    def test_insufficient_stock_rolls_back_payment(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 2}])
        Product.objects.filter(pk=self.physical.pk).update(quantity=1)

        with self.assertRaises(SettlementValidationError):
            self._pay(order)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertIsNone(order.payment_completed_at)

    def test_cancel_credits_buyer_refund_counter(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])

        cancelled = OrderService.cancel_order(order.pk, reason="Changed my mind", actor="buyer")

        self.assertEqual(cancelled.status, Order.Status.CANCELLED)
        self.assertEqual(cancelled.auto_cancelled_reason, "Changed my mind")
        self.buyer.refresh_from_db()
        self.assertEqual(self.buyer.refunds, Decimal("333.33"))
        with self.assertRaises(InvalidTransitionError):
            OrderService.cancel_order(order.pk)
        self.buyer.refresh_from_db()
        self.assertEqual(self.buyer.refunds, Decimal("333.33"))

    def test_seller_cannot_complete_delivered_order(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])
        Order.objects.filter(pk=order.pk).update(status=Order.Status.DELIVERY_COMPLETE, payment_completed_at=timezone.now())

        with self.assertRaises(InvalidTransitionError):
            OrderService.update_status(order.pk, Order.Status.COMPLETED)

        completed = OrderService.confirm_receipt(order.pk, self.buyer)
        self.assertEqual(completed.status, Order.Status.COMPLETED)

    def test_unpaid_service_order_cannot_be_confirmed_or_completed(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.haircut, "quantity": 1}])

        with self.assertRaises(OrderNotPaidError):
            OrderService.update_status(order.pk, Order.Status.CONFIRMED)

        Order.objects.filter(pk=order.pk).update(status=Order.Status.CONFIRMED)
        with self.assertRaises(OrderNotPaidError):
            OrderService.update_status(order.pk, Order.Status.COMPLETED)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertNotIn("payout_processed", order.metadata)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))
        self.assertFalse(Payout.objects.filter(order=order).exists())

    def test_paid_service_order_is_confirmed_then_completed(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.haircut, "quantity": 1}])
        self._pay(order)

        OrderService.update_status(order.pk, Order.Status.CONFIRMED)
        completed = OrderService.update_status(order.pk, Order.Status.COMPLETED)

        self.assertEqual(completed.status, Order.Status.COMPLETED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("450.00"))

    def test_unpaid_delivered_order_cannot_be_confirmed_by_buyer(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])
        Order.objects.filter(pk=order.pk).update(status=Order.Status.DELIVERY_COMPLETE)

        with self.assertRaises(OrderNotPaidError):
            OrderService.confirm_receipt(order.pk, self.buyer)

        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))

    def test_unpaid_order_can_still_be_cancelled(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.haircut, "quantity": 1}])

        cancelled = OrderService.cancel_order(order.pk, reason="No longer needed", actor="seller")

        self.assertEqual(cancelled.status, Order.Status.CANCELLED)

    def test_escrow_is_not_released_for_unpaid_order(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.ebook, "quantity": 1}])

        with self.assertRaises(EscrowError):
            with transaction.atomic():
                EscrowService().release_funds(order, source="manual")

        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))
        self.assertFalse(Payout.objects.filter(order=order).exists())

    def test_order_number_generation_gives_up_after_collisions(self):
        existing = OrderService.create_order(self.buyer, self.shop, [{"product": self.ebook, "quantity": 1}])
        colliding = existing.order_number[len("ORD-"):].lower()

        with patch("order.services.uuid.uuid4") as uuid4:
            uuid4.return_value.hex = colliding + "0" * 20
            with self.assertRaises(SettlementValidationError):
                OrderService.create_order(self.buyer, self.shop, [{"product": self.ebook, "quantity": 1}])

        self.assertEqual(uuid4.call_count, 5)
        self.assertEqual(Order.objects.count(), 1)

    def test_status_notifications_are_queued_after_commit(self):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": self.physical, "quantity": 1}])
        Order.objects.filter(pk=order.pk).update(status=Order.Status.DELIVERY_PENDING)

        with patch("notifications.tasks.deliver_notification.delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                OrderService.cancel_order(order.pk, reason="Out of stock", actor="seller")

        recipients = sorted(call.args[0] for call in delay.call_args_list)
        self.assertEqual(recipients, sorted([str(self.buyer.pk), str(self.owner.pk)]))
        self.assertTrue(all(call.args[1] == "order_cancelled" for call in delay.call_args_list))


class OrderDeadlineTests(TestCase):
    def setUp(self):
        self.owner, self.buyer, self.shop = _make_parties("deadlines", pickup=False)
        self.bag = Product.objects.create(
            name="Canvas Tote",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.PHYSICAL,
        )
        self.cleaning = Product.objects.create(
            name="Home Cleaning",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.SERVICE,
        )
        self.now = timezone.now()
        self.service = OrderDeadlineService()

    def _order(self, product, **fields):
        order = OrderService.create_order(self.buyer, self.shop, [{"product": product, "quantity": 1}])
        fields.setdefault("payment_completed_at", self.now)
        Order.objects.filter(pk=order.pk).update(**fields)
        order.refresh_from_db()
        return order

    def test_expired_seller_dropoff_cancels_and_refunds(self):
        late = self._order(
            self.bag,
            status=Order.Status.DELIVERY_PENDING,
            seller_dropoff_deadline=self.now - timedelta(minutes=1),
        )
        on_time = self._order(
            self.bag,
            status=Order.Status.DELIVERY_PENDING,
            seller_dropoff_deadline=self.now + timedelta(hours=1),
        )

        result = self.service.check_seller_dropoff_deadlines(self.now)

        self.assertEqual((result.processed, result.failed), (1, 0))
        late.refresh_from_db()
        on_time.refresh_from_db()
        self.assertEqual(late.status, Order.Status.CANCELLED)
        self.assertIn("Seller failed to drop off", late.auto_cancelled_reason)
        self.assertEqual(on_time.status, Order.Status.DELIVERY_PENDING)
        self.buyer.refresh_from_db()
        self.assertEqual(self.buyer.refunds, Decimal("1000.00"))

    def test_expired_buyer_pickup_cancels(self):
        order = self._order(
            self.bag,
            status=Order.Status.DELIVERY_COMPLETE,
            buyer_pickup_deadline=self.now - timedelta(minutes=1),
        )

        result = self.service.check_buyer_pickup_deadlines(self.now)

        self.assertEqual(result.processed, 1)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertIn("Buyer failed to pick up", order.auto_cancelled_reason)

    def test_service_booking_is_released_after_cooling_off(self):
        order = self._order(
            self.cleaning,
            status=Order.Status.DELIVERY_COMPLETE,
            booking_date=self.now - timedelta(hours=30),
            buyer_pickup_deadline=self.now - timedelta(hours=1),
        )

        pickup = self.service.check_buyer_pickup_deadlines(self.now)
        release = self.service.check_service_payment_release(self.now)
        second = self.service.check_service_payment_release(self.now)

        self.assertEqual(pickup.processed, 0)
        self.assertEqual(release.processed, 1)
        self.assertEqual(second.processed, 0)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.COMPLETED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("900.00"))

    def test_recent_booking_is_not_released(self):
        order = self._order(
            self.cleaning,
            status=Order.Status.DELIVERY_COMPLETE,
            booking_date=self.now - timedelta(hours=10),
        )

        result = self.service.check_service_payment_release(self.now)

        self.assertEqual(result.processed, 0)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.DELIVERY_COMPLETE)

    def test_unpaid_booking_is_not_released(self):
        order = self._order(
            self.cleaning,
            status=Order.Status.CONFIRMED,
            booking_date=self.now - timedelta(hours=30),
            payment_completed_at=None,
        )

        result = self.service.check_service_payment_release(self.now)

        self.assertEqual((result.processed, result.failed), (0, 0))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))

    def test_one_failing_order_does_not_block_the_sweep(self):
        first = self._order(
            self.bag,
            status=Order.Status.DELIVERY_PENDING,
            seller_dropoff_deadline=self.now - timedelta(hours=2),
        )
        second = self._order(
            self.bag,
            status=Order.Status.DELIVERY_PENDING,
            seller_dropoff_deadline=self.now - timedelta(hours=1),
        )
        original = OrderService.transition

        def flaky(order_id, *args, **kwargs):
            if order_id == first.pk:
                raise RuntimeError("database went away")
            return original(order_id, *args, **kwargs)

        with patch("order.deadlines.OrderService.transition", side_effect=flaky):
            result = self.service.check_seller_dropoff_deadlines(self.now)

        self.assertEqual((result.processed, result.failed), (1, 1))
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.status, Order.Status.DELIVERY_PENDING)
        self.assertEqual(second.status, Order.Status.CANCELLED)

    def test_run_all_checks_reports_each_rule(self):
        results = self.service.run_all_checks(self.now)
        self.assertEqual(set(results), {"seller_dropoff", "buyer_pickup", "service_release"})


class OrderViewsTests(APITestCase):
    def setUp(self):
        self.owner, self.buyer, self.shop = _make_parties("order_views")
        self.product = Product.objects.create(
            name="Order View Product",
            shop=self.shop,
            price="100.00",
            product_type=Product.ProductType.PHYSICAL,
        )
        self.order = OrderService.create_order(self.buyer, self.shop, [{"product": self.product, "quantity": 2}])

    def test_seller_marks_delivery_complete(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.DELIVERY_PENDING, payment_completed_at=timezone.now())
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            f"/order/{self.order.pk}/status/", {"status": Order.Status.DELIVERY_COMPLETE}, format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["status"], Order.Status.DELIVERY_COMPLETE)
        self.assertIsNotNone(response.data["buyer_pickup_deadline"])

    def test_invalid_transition_returns_conflict(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            f"/order/{self.order.pk}/status/", {"status": Order.Status.CONFIRMED}, format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_buyer_cannot_update_status_as_seller(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.post(
            f"/order/{self.order.pk}/status/", {"status": Order.Status.CANCELLED}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_buyer_marks_collected(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.COLLECTION_PENDING, payment_completed_at=timezone.now())
        self.client.force_authenticate(user=self.buyer)

        response = self.client.post(f"/order/{self.order.pk}/collected/")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["status"], Order.Status.COMPLETED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("180.00"))

    def test_other_user_cannot_confirm_receipt(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.DELIVERY_COMPLETE)
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(f"/order/{self.order.pk}/confirm-receipt/")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_buyer_cancels_with_reason(self):
        self.client.force_authenticate(user=self.buyer)

        response = self.client.post(f"/order/{self.order.pk}/cancel/", {"reason": "Wrong size"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["status"], Order.Status.CANCELLED)
        self.assertEqual(response.data["auto_cancelled_reason"], "Wrong size")

    def test_list_orders_returns_buyer_and_seller_orders(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.get("/order/orders/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["order_number"], self.order.order_number)
