from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from django.db import transaction
from django.utils import timezone

from core.config import SettlementConfig, get_settlement_config

from .models import Order
from .services import OrderService
from .state_machine import classify_items

logger = logging.getLogger(__name__)

# Service orders may sit in either status once the seller has done their part.
SERVICE_RELEASE_STATUSES = (Order.Status.DELIVERY_COMPLETE, Order.Status.CONFIRMED)


@dataclass(frozen=True)
class SweepResult:
    processed: int = 0
    failed: int = 0


def _hours(delta) -> int:
    return int(delta.total_seconds() // 3600)


class OrderDeadlineService:
    """
    Time-boxed buyer and seller obligations.

    Each rule selects its candidates and then handles every order in its own
    transaction; one failing order is logged and the sweep carries on.
    """

    def __init__(self, config: Optional[SettlementConfig] = None):
        self.config = config or get_settlement_config()

    @staticmethod
    def _is_service_booking(order: Order) -> bool:
        if order.booking_date is None:
            return False
        return classify_items(order.items.select_related("product"), order.metadata).has_service

    def _sweep(self, orders, target, *, actor, reason="", expected_statuses) -> SweepResult:
        processed = failed = 0
        for order in orders:
            try:
                with transaction.atomic():
                    OrderService.transition(
                        order.pk,
                        target,
                        actor=actor,
                        reason=reason,
                        expected_statuses=expected_statuses,
                    )
                processed += 1
            except Exception:
                failed += 1
                logger.exception("Deadline rule %s failed for order=%s", actor, order.order_number)
        return SweepResult(processed=processed, failed=failed)

    def check_seller_dropoff_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or timezone.now()
        expired = Order.objects.filter(
            status=Order.Status.DELIVERY_PENDING,
            seller_dropoff_deadline__lt=now,
            auto_cancelled_reason="",
        )
        reason = f"Seller failed to drop off items within {_hours(self.config.seller_dropoff_window)} hours"
        result = self._sweep(
            expired,
            Order.Status.CANCELLED,
            actor="seller_dropoff_deadline",
            reason=reason,
            expected_statuses={Order.Status.DELIVERY_PENDING},
        )
        logger.info("Seller drop-off sweep processed=%s failed=%s", result.processed, result.failed)
        return result

    def check_buyer_pickup_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or timezone.now()
        expired = [
            order
            for order in Order.objects.filter(
                status=Order.Status.DELIVERY_COMPLETE,
                buyer_pickup_deadline__lt=now,
                auto_cancelled_reason="",
            )
            # Bookings are settled by the service release rule instead.
            if not self._is_service_booking(order)
        ]
        reason = f"Buyer failed to pick up order within {_hours(self.config.buyer_pickup_window)} hours"
        result = self._sweep(
            expired,
            Order.Status.CANCELLED,
            actor="buyer_pickup_deadline",
            reason=reason,
            expected_statuses={Order.Status.DELIVERY_COMPLETE},
        )
        logger.info("Buyer pickup sweep processed=%s failed=%s", result.processed, result.failed)
        return result

    def check_service_payment_release(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or timezone.now()
        due = [
            order
            for order in Order.objects.filter(
                status__in=SERVICE_RELEASE_STATUSES,
                booking_date__lt=now - self.config.service_release_window,
                payment_completed_at__isnull=False,
            ).exclude(payment_status=Order.PaymentStatus.COMPLETED)
            if self._is_service_booking(order)
        ]
        result = self._sweep(
            due,
            Order.Status.COMPLETED,
            actor="service_auto_release",
            expected_statuses=set(SERVICE_RELEASE_STATUSES),
        )
        logger.info("Service release sweep processed=%s failed=%s", result.processed, result.failed)
        return result

    def run_all_checks(self, now: Optional[datetime] = None) -> Dict[str, SweepResult]:
        now = now or timezone.now()
        return {
            "seller_dropoff": self.check_seller_dropoff_deadlines(now),
            "buyer_pickup": self.check_buyer_pickup_deadlines(now),
            "service_release": self.check_service_payment_release(now),
        }
