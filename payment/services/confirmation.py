from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from core.config import SettlementConfig, get_settlement_config
from event.models import Ticket
from notifications.services import (
    Destination,
    NotificationDispatcher,
    NotificationTemplates,
    RenderedMessage,
    queue_notification,
)
from order.models import Order
from payment.markers import DeliveryLog
from payment.models import Payment

logger = logging.getLogger(__name__)


class PaymentConfirmationService:
    """
    Delivers the buyer confirmation for a completed payment.

    Runs after the completion transaction has committed. Every attempt is
    appended to the payment's ``email_attempts`` log; delivery failure is
    recorded, never raised.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None, config: Optional[SettlementConfig] = None):
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.config = config or get_settlement_config()

    def _render(self, payment: Payment) -> Optional[Tuple[Destination, RenderedMessage]]:
        ticket = Ticket.objects.select_related("event", "ticket_type").filter(payment=payment).first()
        if ticket is not None:
            return (
                Destination(user=payment.user, email=ticket.buyer_email),
                RenderedMessage.from_template("ticket_issued", NotificationTemplates.ticket_issued(ticket)),
            )
        order = payment.order
        if order is not None:
            return (
                Destination(user=order.buyer, email=payment.customer_email or order.buyer.email),
                RenderedMessage.from_template("payment_confirmed", NotificationTemplates.payment_confirmed(order)),
            )
        return None

    @staticmethod
    def _record(payment_id, attempt: int, success: bool, error: str = "") -> DeliveryLog:
        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=payment_id)
            log = DeliveryLog.from_metadata(payment.metadata).record(attempt, success, error=error)
            payment.metadata = log.apply(payment.metadata)
            payment.save(update_fields=["metadata", "updated_at"])
        return log

    @staticmethod
    def _notify_seller(order: Order) -> None:
        owner = order.shop.owner
        queue_notification(owner, "new_order", NotificationTemplates.paid_order_received(order))
        if order.status == Order.Status.COMPLETED:
            queue_notification(owner, "payment_released", NotificationTemplates.payment_released(order))

    def send(self, payment_id) -> bool:
        try:
            payment = (
                Payment.objects.select_related("user", "order__buyer", "order__shop__owner")
                .filter(pk=payment_id)
                .first()
            )
            if payment is None:
                logger.warning("Confirmation skipped: payment %s not found", payment_id)
                return False
            if payment.status != Payment.Status.COMPLETED:
                logger.warning("Confirmation skipped: payment %s is %s", payment_id, payment.status)
                return False

            log = DeliveryLog.from_metadata(payment.metadata)
            if log.sent:
                logger.info("Confirmation already sent for payment %s", payment_id)
                return True

            rendered = self._render(payment)
            if rendered is None:
                logger.info("Payment %s has nothing to confirm", payment_id)
                return False
            destination, message = rendered

            offset = len(log.attempts)
            max_attempts = self.config.notification_max_attempts
            for attempt in range(1, max_attempts + 1):
                success = self.dispatcher.send(destination, message)
                self._record(payment.pk, offset + attempt, success, error="" if success else "delivery failed")
                if success:
                    logger.info("Confirmation sent for payment %s on attempt %s", payment_id, attempt)
                    if payment.order is not None:
                        self._notify_seller(payment.order)
                    return True
                logger.warning("Confirmation attempt %s/%s failed for payment %s", attempt, max_attempts, payment_id)
                if attempt < max_attempts:
                    time.sleep(self.config.notification_retry_delay * attempt)

            logger.error("Confirmation for payment %s failed after %s attempts", payment_id, max_attempts)
            return False
        except Exception:
            logger.exception("Confirmation delivery crashed for payment %s", payment_id)
            return False

    def pending_confirmations(self, now: Optional[datetime] = None) -> List[Payment]:
        now = now or timezone.now()
        candidates = Payment.objects.filter(
            status=Payment.Status.COMPLETED,
            created_at__gte=now - self.config.pending_payment_lookback,
        ).order_by("-created_at")
        return [payment for payment in candidates if not DeliveryLog.from_metadata(payment.metadata).sent]
