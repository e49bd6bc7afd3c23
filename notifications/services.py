import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

from .models import DeviceToken, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    _firebase_app_initialized = False

    @classmethod
    def _init_firebase(cls) -> bool:
        if cls._firebase_app_initialized:
            return True
        try:
            import firebase_admin
            from firebase_admin import credentials

            if firebase_admin._apps:
                cls._firebase_app_initialized = True
                return True

            service_account_path = getattr(settings, "FCM_SERVICE_ACCOUNT_FILE", "")
            service_account_json = getattr(settings, "FCM_SERVICE_ACCOUNT_JSON", "")
            project_id = getattr(settings, "FCM_PROJECT_ID", "")

            if service_account_json:
                cred = credentials.Certificate(json.loads(service_account_json))
            elif service_account_path:
                cred = credentials.Certificate(service_account_path)
            else:
                logger.debug("FCM credentials are not configured. Push sending is disabled.")
                return False
            firebase_admin.initialize_app(cred, {"projectId": project_id} if project_id else None)

            cls._firebase_app_initialized = True
            return True
        except Exception:
            logger.exception("Failed to initialize Firebase app")
            return False

    @classmethod
    @transaction.atomic
    def notify(
        cls,
        *,
        user,
        notification_type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        payload = payload or {}
        notification = Notification.objects.create(
            user=user,
            type=notification_type,
            title=title,
            message=message,
            payload=payload,
        )
        try:
            cls._send_push_to_user(user=user, title=title, message=message, payload=payload)
        except Exception:
            logger.exception("Push send failed for user=%s type=%s", user.id, notification_type)
        return notification

    @classmethod
    def _send_push_to_user(cls, *, user, title: str, message: str, payload: Dict[str, Any]) -> None:
        if not cls._init_firebase():
            return
        tokens = list(DeviceToken.objects.filter(user=user, is_active=True).values_list("token", flat=True))
        if not tokens:
            return

        from firebase_admin import messaging
        from firebase_admin.exceptions import FirebaseError

        for token in tokens:
            try:
                msg = messaging.Message(
                    notification=messaging.Notification(title=title, body=message),
                    data={k: str(v) for k, v in payload.items()},
                    token=token,
                )
                messaging.send(msg)
            except FirebaseError as exc:
                error_code = getattr(exc, "code", "") or str(exc)
                if "registration-token-not-registered" in error_code or "invalid-argument" in error_code:
                    DeviceToken.objects.filter(token=token).update(is_active=False)
                logger.warning("FCM send failed token=%s code=%s", token[:12], error_code)


@dataclass(frozen=True)
class Destination:
    user: Any = None
    email: str = ""


@dataclass(frozen=True)
class RenderedMessage:
    notification_type: str
    title: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_template(cls, notification_type: str, template: Tuple[str, str, Dict[str, Any]]) -> "RenderedMessage":
        title, body, payload = template
        return cls(notification_type=notification_type, title=title, body=body, payload=payload)


class NotificationDispatcher:
    """
    Best-effort delivery to a user (in-app + push) and/or an email address.

    ``send`` reports failure instead of raising so callers can retry and
    record the attempt.
    """

    def send(self, destination: Destination, message: RenderedMessage) -> bool:
        if destination.user is None and not destination.email:
            logger.warning("Notification %s has no destination", message.notification_type)
            return False
        try:
            if destination.user is not None:
                NotificationService.notify(
                    user=destination.user,
                    notification_type=message.notification_type,
                    title=message.title,
                    message=message.body,
                    payload=message.payload,
                )
            if destination.email:
                sent = send_mail(
                    message.title,
                    message.body,
                    settings.DEFAULT_FROM_EMAIL,
                    [destination.email],
                    fail_silently=False,
                )
                if not sent:
                    return False
        except Exception:
            logger.exception("Notification delivery failed type=%s", message.notification_type)
            return False
        return True


def queue_notification(user, notification_type: str, template: Tuple[str, str, Dict[str, Any]]) -> None:
    """Hand a user notification to the worker once the current transaction commits."""
    from .tasks import deliver_notification

    title, message, payload = template
    user_id = str(user.pk)
    transaction.on_commit(
        lambda: deliver_notification.delay(user_id, notification_type, title, message, payload)
    )


def _order_payload(order, notification_type: str) -> Dict[str, Any]:
    return {
        "type": notification_type,
        "entity_id": str(order.id),
        "entity_type": "order",
        "order_id": str(order.id),
        "status": order.status,
    }


def _withdrawal_payload(withdrawal, notification_type: str) -> Dict[str, Any]:
    return {
        "type": notification_type,
        "entity_id": str(withdrawal.id),
        "entity_type": "withdrawal",
        "withdrawal_id": str(withdrawal.id),
        "amount": str(withdrawal.amount),
    }


class NotificationTemplates:
    @staticmethod
    def new_order(order):
        return (
            "New Order",
            f"You received a new order #{order.order_number}.",
            _order_payload(order, "new_order"),
        )

    @staticmethod
    def order_status(order):
        label = order.get_status_display()
        return (
            "Order Update",
            f"Order #{order.order_number} is now {label}.",
            _order_payload(order, "order_status"),
        )

    @staticmethod
    def order_cancelled(order, reason: str, for_buyer: bool):
        if for_buyer:
            message = f"Order #{order.order_number} was cancelled. {order.total_amount} has been credited back to you."
        else:
            message = f"Order #{order.order_number} was cancelled."
        if reason:
            message = f"{message} Reason: {reason}"
        payload = _order_payload(order, "order_cancelled")
        payload["reason"] = reason
        return ("Order Cancelled", message, payload)

    @staticmethod
    def payment_confirmed(order):
        return (
            "Payment Confirmed",
            f"Payment received for order #{order.order_number}. Total {order.total_amount}.",
            _order_payload(order, "payment_confirmed"),
        )

    @staticmethod
    def paid_order_received(order):
        return (
            "Order Paid",
            f"Order #{order.order_number} has been paid and is ready for fulfilment.",
            _order_payload(order, "new_order"),
        )

    @staticmethod
    def payment_released(order):
        return (
            "Payment Released",
            f"{order.seller_payout_amount} for order #{order.order_number} has been added to your balance.",
            _order_payload(order, "payment_released"),
        )

    @staticmethod
    def ticket_issued(ticket):
        return (
            "Your Ticket",
            f"Ticket {ticket.ticket_number} for {ticket.event.name} ({ticket.ticket_type.name} x{ticket.quantity}).",
            {
                "type": "ticket_issued",
                "entity_id": str(ticket.id),
                "entity_type": "ticket",
                "ticket_number": ticket.ticket_number,
            },
        )

    @staticmethod
    def withdrawal_processing(withdrawal):
        return (
            "Withdrawal Processing",
            f"Your withdrawal of {withdrawal.amount} to {withdrawal.phone_number} is being processed.",
            _withdrawal_payload(withdrawal, "withdrawal_processing"),
        )

    @staticmethod
    def withdrawal_completed(withdrawal):
        return (
            "Withdrawal Completed",
            f"Your withdrawal of {withdrawal.amount} has been sent to {withdrawal.phone_number}.",
            _withdrawal_payload(withdrawal, "withdrawal_completed"),
        )

    @staticmethod
    def withdrawal_failed(withdrawal, new_balance):
        payload = _withdrawal_payload(withdrawal, "withdrawal_failed")
        payload["balance"] = str(new_balance)
        return (
            "Withdrawal Failed",
            f"Your withdrawal of {withdrawal.amount} failed. {withdrawal.deducted_amount} was returned; balance is now {new_balance}.",
            payload,
        )
