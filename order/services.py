from collections import defaultdict
from decimal import Decimal
import uuid
import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from catalog.models import Product
from catalog.services import catalog_product_type
from core.config import get_settlement_config
from core.money import money
from notifications.services import NotificationTemplates, queue_notification
from payment.markers import CompletionMarker
from payment.services.errors import SettlementValidationError
from payment.services.escrow import EscrowService

from .models import Order, OrderItem
from .state_machine import (
    PAYABLE_STATUSES,
    InvalidTransitionError,
    OrderNotPaidError,
    classify_items,
    initial_status,
    resolve_post_payment_status,
    validate_transition,
)

logger = logging.getLogger(__name__)
User = get_user_model()

# Transitions a seller may request directly; payment and buyer driven moves go through their own entry points.
SELLER_TARGETS = frozenset({
    Order.Status.DELIVERY_COMPLETE,
    Order.Status.CONFIRMED,
    Order.Status.COMPLETED,
    Order.Status.CANCELLED,
})


class OrderService:

    @staticmethod
    def _generate_order_number():
        attempts = get_settlement_config().order_number_max_attempts
        for attempt in range(1, attempts + 1):
            candidate = f"ORD-{uuid.uuid4().hex[:12].upper()}"
            if not Order.objects.filter(order_number=candidate).exists():
                return candidate
            logger.warning("Order number collision on attempt %s: %s", attempt, candidate)
        raise SettlementValidationError(f"Failed to generate a unique order number after {attempts} attempts")

    @staticmethod
    @transaction.atomic
    def create_order(buyer, shop, items, metadata=None, booking_date=None):
        """
        items: list of dicts like:
        [{"product": Product obj, "quantity": 2}]
        """
        if not items:
            raise SettlementValidationError("Order must contain at least one item")

        config = get_settlement_config()
        line_items = []
        for item in items:
            product = item["product"]
            if product.shop_id != shop.id:
                raise SettlementValidationError(f"{product.name} is not sold by this shop")
            quantity = int(item.get("quantity", 1))
            if quantity <= 0:
                raise SettlementValidationError("Quantity must be greater than zero")
            unit_price = money(product.price)
            line_items.append(
                OrderItem(
                    product=product,
                    product_name=product.name,
                    product_type=catalog_product_type(product) or "",
                    unit_price=unit_price,
                    quantity=quantity,
                    subtotal=money(unit_price * quantity),
                )
            )

        total = money(sum((line.subtotal for line in line_items), Decimal("0.00")))
        if total <= Decimal("0.00"):
            raise SettlementValidationError("Order total must be greater than zero")
        platform_fee = money(total * config.platform_commission_rate)
        seller_payout = total - platform_fee

        order_metadata = dict(metadata or {})
        order = Order.objects.create(
            order_number=OrderService._generate_order_number(),
            buyer=buyer,
            shop=shop,
            status=initial_status(classify_items(line_items, order_metadata)),
            total_amount=total,
            platform_fee_amount=platform_fee,
            seller_payout_amount=seller_payout,
            metadata=order_metadata,
            booking_date=booking_date,
        )
        for line in line_items:
            line.order = order
        OrderItem.objects.bulk_create(line_items)

        logger.info(
            "Order created order=%s total=%s fee=%s payout=%s status=%s",
            order.order_number,
            total,
            platform_fee,
            seller_payout,
            order.status,
        )
        queue_notification(shop.owner, "new_order", NotificationTemplates.new_order(order))
        return order

    # -----------------------------
    # Transitions
    # -----------------------------
    @staticmethod
    def _apply_status(order, target, now, reason=""):
        """Set ``target`` and the fields bound to it on a locked order. Returns fields to save."""
        config = get_settlement_config()
        fields = ["status", "updated_at"]
        order.status = target

        if target == Order.Status.COMPLETED:
            order.completed_at = now
            if order.payment_status == Order.PaymentStatus.PENDING:
                order.payment_status = Order.PaymentStatus.COMPLETED
            order.metadata = CompletionMarker.from_metadata(order.metadata).mark(now).apply(order.metadata)
            fields += ["completed_at", "payment_status", "metadata"]
        elif target == Order.Status.CANCELLED:
            order.cancelled_at = now
            if order.payment_status == Order.PaymentStatus.PENDING:
                order.payment_status = Order.PaymentStatus.CANCELLED
            if reason:
                order.auto_cancelled_reason = reason[:255]
            fields += ["cancelled_at", "payment_status", "auto_cancelled_reason"]
        elif target == Order.Status.DELIVERY_PENDING:
            order.seller_dropoff_deadline = order.created_at + config.seller_dropoff_window
            fields.append("seller_dropoff_deadline")
        elif target == Order.Status.DELIVERY_COMPLETE:
            order.ready_for_pickup_at = now
            order.buyer_pickup_deadline = now + config.buyer_pickup_window
            fields += ["ready_for_pickup_at", "buyer_pickup_deadline"]
        return fields

    @staticmethod
    def _run_side_effects(order, target, actor):
        if target == Order.Status.COMPLETED:
            EscrowService().release_funds(order, source=actor)
        elif target == Order.Status.CANCELLED:
            User.objects.filter(pk=order.buyer_id).update(refunds=F("refunds") + order.total_amount)
            logger.info("Buyer refund counter credited order=%s amount=%s", order.order_number, order.total_amount)

    @staticmethod
    def transition(order_id, target, *, actor="system", reason="", expected_statuses=None, notify=True):
        """
        Validate and apply one transition under a row lock. The caller owns the
        transaction; escrow release and refund crediting commit with it.
        """
        order = Order.objects.select_for_update().select_related("buyer", "shop__owner").get(pk=order_id)
        if expected_statuses is not None and order.status not in expected_statuses:
            raise InvalidTransitionError(order.status, target)
        validate_transition(order.status, target)
        if target != Order.Status.CANCELLED and order.payment_completed_at is None:
            raise OrderNotPaidError(order.status, target)

        previous = order.status
        fields = OrderService._apply_status(order, target, timezone.now(), reason=reason)
        order.save(update_fields=fields)
        OrderService._run_side_effects(order, target, actor)

        logger.info("Order %s moved %s -> %s by %s", order.order_number, previous, target, actor)
        if notify:
            if target == Order.Status.CANCELLED:
                queue_notification(order.buyer, "order_cancelled", NotificationTemplates.order_cancelled(order, reason, for_buyer=True))
                queue_notification(order.shop.owner, "order_cancelled", NotificationTemplates.order_cancelled(order, reason, for_buyer=False))
            else:
                queue_notification(order.buyer, "order_status", NotificationTemplates.order_status(order))
        return order

    @staticmethod
    @transaction.atomic
    def update_status(order_id, target, actor="seller"):
        if target not in SELLER_TARGETS:
            current = Order.objects.filter(pk=order_id).values_list("status", flat=True).first()
            raise InvalidTransitionError(current or "", target)
        expected = None
        if target == Order.Status.COMPLETED:
            # Delivered and collected orders complete on the buyer's confirmation.
            expected = {Order.Status.CONFIRMED}
        return OrderService.transition(order_id, target, actor=actor, expected_statuses=expected)

    @staticmethod
    @transaction.atomic
    def cancel_order(order_id, reason="", actor="system"):
        return OrderService.transition(order_id, Order.Status.CANCELLED, actor=actor, reason=reason)

    @staticmethod
    @transaction.atomic
    def mark_as_collected(order_id, buyer):
        if not Order.objects.filter(pk=order_id, buyer=buyer).exists():
            raise Order.DoesNotExist("Order not found")
        return OrderService.transition(
            order_id,
            Order.Status.COMPLETED,
            actor="buyer_collection",
            expected_statuses={Order.Status.COLLECTION_PENDING},
        )

    @staticmethod
    @transaction.atomic
    def confirm_receipt(order_id, buyer):
        if not Order.objects.filter(pk=order_id, buyer=buyer).exists():
            raise Order.DoesNotExist("Order not found")
        return OrderService.transition(
            order_id,
            Order.Status.COMPLETED,
            actor="buyer_confirmation",
            expected_statuses={Order.Status.DELIVERY_COMPLETE, Order.Status.CONFIRMED},
        )

    # -----------------------------
    # Payment-driven completion
    # -----------------------------
    @staticmethod
    def _decrement_inventory(items):
        required = defaultdict(int)
        names = {}
        for item in items:
            product = item.product
            if product is None or not product.track_inventory:
                continue
            required[product.pk] += item.quantity
            names[product.pk] = product.name
        for product_id, quantity in required.items():
            updated = Product.objects.filter(pk=product_id, quantity__gte=quantity).update(
                quantity=F("quantity") - quantity
            )
            if not updated:
                raise SettlementValidationError(f"Insufficient stock for {names[product_id]}")

    @staticmethod
    def complete_after_payment(order_id, source="payment_completion"):
        """
        Apply a confirmed payment to an order inside the caller's transaction.

        The next status is re-derived from current catalog data and the
        seller's pickup location. Pure digital orders complete immediately and
        release escrow in the same transaction.
        """
        order = Order.objects.select_for_update().select_related("shop").get(pk=order_id)
        if order.status not in PAYABLE_STATUSES or order.payment_completed_at is not None:
            raise InvalidTransitionError(order.status, "payment confirmation")

        items = list(order.items.select_related("product"))
        composition = classify_items(items, order.metadata)
        target = resolve_post_payment_status(composition, order.shop.has_pickup_location)
        OrderService._decrement_inventory(items)

        now = timezone.now()
        order.payment_completed_at = now
        fields = ["payment_completed_at", "updated_at"]
        previous = order.status
        if target != order.status:
            fields += OrderService._apply_status(order, target, now)
        order.save(update_fields=list(dict.fromkeys(fields)))

        if target == Order.Status.COMPLETED:
            EscrowService().release_funds(order, source=source)

        logger.info(
            "Payment applied to order=%s %s -> %s (physical=%s service=%s pickup=%s)",
            order.order_number,
            previous,
            order.status,
            composition.has_physical,
            composition.has_service,
            order.shop.has_pickup_location,
        )
        return order
