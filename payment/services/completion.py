from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.config import SettlementConfig, get_settlement_config
from core.db import serializable_atomic, try_advisory_xact_lock
from core.money import money, to_decimal
from event.models import Event, Ticket, TicketType
from order.models import Order
from order.services import OrderService
from payment.markers import CompletionMarker, DeliveryLog
from payment.models import Payment

from .errors import AmountMismatchError, LockNotAcquiredError, SettlementValidationError
from .wallet import OWNER_EVENT, credit_wallet

logger = logging.getLogger(__name__)

KIND_ORDER = "order"
KIND_TICKET = "ticket"
KIND_NONE = "none"

ORDER_MARKER_KEY = "order_completed_at"
TICKET_MARKER_KEY = "ticket_issued_at"


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    already_processed: bool = False
    kind: str = KIND_NONE
    order_id: Optional[int] = None
    ticket_id: Optional[str] = None
    status: str = ""


def _lock_key(payment_id) -> str:
    return f"payment_{payment_id}"


class PaymentCompletionService:
    """
    Consumes a "payment succeeded" signal exactly once.

    Order payments are handed to the order service for post-payment status
    resolution; event payments issue a ticket and credit the event wallet.
    Confirmation delivery is queued only after the transaction commits.
    """

    def __init__(self, config: Optional[SettlementConfig] = None):
        self.config = config or get_settlement_config()

    # -----------------------------
    # Dispatch
    # -----------------------------
    @staticmethod
    def _order_id(payment: Payment):
        if payment.order_id:
            return payment.order_id
        return (payment.metadata or {}).get("order_id")

    @classmethod
    def _target_kind(cls, payment: Payment) -> str:
        metadata = payment.metadata or {}
        if cls._order_id(payment):
            return KIND_ORDER
        if metadata.get("ticket_type_id") and metadata.get("event_id"):
            return KIND_TICKET
        return KIND_NONE

    def _already_processed(self, payment: Payment, kind: str) -> bool:
        metadata = payment.metadata or {}
        if DeliveryLog.from_metadata(metadata).sent:
            return True
        if kind == KIND_ORDER:
            if CompletionMarker.from_metadata(metadata, ORDER_MARKER_KEY).completed:
                return True
            order = Order.objects.filter(pk=self._order_id(payment)).only("payment_completed_at", "metadata").first()
            if order is not None and (
                order.payment_completed_at is not None
                or CompletionMarker.from_metadata(order.metadata, ORDER_MARKER_KEY).completed
            ):
                return True
        if kind == KIND_TICKET:
            ticket_exists = Ticket.objects.filter(payment=payment).exists()
            if ticket_exists and payment.status == Payment.Status.COMPLETED:
                return True
        return False

    def process_successful_payment(self, payment_id) -> CompletionResult:
        with serializable_atomic():
            if not try_advisory_xact_lock(_lock_key(payment_id)):
                raise LockNotAcquiredError(f"Payment {payment_id} is already being processed")

            payment = Payment.objects.select_for_update().get(pk=payment_id)
            kind = self._target_kind(payment)

            if self._already_processed(payment, kind):
                transaction.set_rollback(True)
                logger.info("Payment %s already processed; skipping", payment.pk)
                return CompletionResult(success=True, already_processed=True, kind=kind, status=payment.status)

            if kind == KIND_NONE:
                logger.info("Payment %s has no order or ticket target; nothing to complete", payment.pk)
                return CompletionResult(success=True, kind=KIND_NONE, status=payment.status)

            now = timezone.now()
            if kind == KIND_ORDER:
                order = self._complete_order(payment)
                marker_key = ORDER_MARKER_KEY
                result = CompletionResult(success=True, kind=KIND_ORDER, order_id=order.pk, status=order.status)
            else:
                ticket = self._issue_ticket(payment)
                marker_key = TICKET_MARKER_KEY
                result = CompletionResult(success=True, kind=KIND_TICKET, ticket_id=str(ticket.pk), status=ticket.status)

            payment.status = Payment.Status.COMPLETED
            payment.metadata = CompletionMarker(key=marker_key).mark(now).apply(payment.metadata)
            payment.save(update_fields=["status", "metadata", "updated_at"])

            payment_pk = str(payment.pk)
            transaction.on_commit(lambda: _queue_confirmation(payment_pk))

        logger.info("Payment %s completed kind=%s", payment_id, result.kind)
        return result

    # -----------------------------
    # Order path
    # -----------------------------
    def _complete_order(self, payment: Payment) -> Order:
        order_id = self._order_id(payment)
        order = Order.objects.filter(pk=order_id).only("total_amount").first()
        if order is None:
            raise SettlementValidationError(f"Order {order_id} not found for payment {payment.pk}")
        if abs(money(payment.amount) - order.total_amount) > self.config.payment_amount_tolerance:
            raise AmountMismatchError(
                f"Payment {payment.pk} amount {payment.amount} does not match order total {order.total_amount}"
            )
        if payment.order_id is None:
            payment.order_id = order.pk
            payment.save(update_fields=["order", "updated_at"])
        return OrderService.complete_after_payment(order.pk, source="payment_completion")

    # -----------------------------
    # Ticket path
    # -----------------------------
    def _issue_ticket(self, payment: Payment) -> Ticket:
        existing = Ticket.objects.select_for_update().filter(payment=payment).first()
        if existing is not None:
            logger.info("Ticket %s already exists for payment %s", existing.ticket_number, payment.pk)
            return existing

        metadata = payment.metadata or {}
        ticket_type = (
            TicketType.objects.select_related("event__organizer")
            .filter(pk=metadata.get("ticket_type_id"), event_id=metadata.get("event_id"))
            .first()
        )
        if ticket_type is None:
            raise SettlementValidationError("Ticket type not found for this event")
        event: Event = ticket_type.event
        if event.organizer_id is None:
            raise SettlementValidationError("Event has no organizer")

        buyer_email = payment.customer_email or metadata.get("customer_email") or ""
        if not buyer_email:
            raise SettlementValidationError("Buyer email is required")
        if payment.amount is None or money(payment.amount) <= Decimal("0.00"):
            raise SettlementValidationError("Payment amount must be greater than zero")

        try:
            quantity = int(metadata.get("quantity") or 1)
            discount = money(metadata.get("discount_amount") or 0)
        except (TypeError, ValueError):
            raise SettlementValidationError("Invalid ticket quantity or discount") from None
        if quantity <= 0:
            raise SettlementValidationError("Ticket quantity must be greater than zero")

        paid = money(to_decimal(payment.amount))
        expected = money(ticket_type.price * quantity - discount)
        if abs(paid - expected) > self.config.payment_amount_tolerance:
            logger.warning(
                "Ticket amount mismatch payment=%s paid=%s expected=%s", payment.pk, paid, expected
            )
            raise AmountMismatchError(f"Paid amount {paid} does not match expected {expected}")

        ticket = self._create_ticket(
            payment=payment,
            event=event,
            ticket_type=ticket_type,
            buyer_email=buyer_email,
            buyer_name=metadata.get("customer_name") or "Guest",
            buyer_phone=payment.customer_phone or "",
            quantity=quantity,
            total_price=paid,
        )
        credit_wallet(OWNER_EVENT, event.pk, paid)
        logger.info("Ticket %s issued for payment %s event=%s", ticket.ticket_number, payment.pk, event.pk)
        return ticket

    @staticmethod
    def _ticket_number() -> str:
        return f"TKT-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"

    def _create_ticket(self, **fields) -> Ticket:
        attempts = self.config.ticket_number_max_attempts
        for attempt in range(1, attempts + 1):
            number = self._ticket_number()
            try:
                with transaction.atomic():
                    return Ticket.objects.create(ticket_number=number, **fields)
            except IntegrityError:
                if Ticket.objects.filter(payment=fields["payment"]).exists():
                    raise
                logger.warning("Ticket number collision on attempt %s: %s", attempt, number)
        raise SettlementValidationError(f"Failed to generate a unique ticket number after {attempts} attempts")


def _queue_confirmation(payment_id: str) -> None:
    from payment.tasks import send_payment_confirmation

    send_payment_confirmation.delay(payment_id)
