from unittest.mock import patch

from django.core import mail
from django.test import TestCase, override_settings

from account.models import User
from .models import Notification
from .services import (
    Destination,
    NotificationDispatcher,
    NotificationService,
    NotificationTemplates,
    RenderedMessage,
    queue_notification,
)
from .tasks import deliver_notification


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
class NotificationDispatcherTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="user@example.com", password="Pass123!")
        self.message = RenderedMessage(
            notification_type=Notification.Type.PAYMENT_CONFIRMED,
            title="Payment Confirmed",
            body="Payment received for order #ORD-1.",
            payload={"order_id": "1"},
        )

    def test_delivers_in_app_and_email(self):
        sent = NotificationDispatcher().send(Destination(user=self.user, email="buyer@example.com"), self.message)

        self.assertTrue(sent)
        notification = Notification.objects.get(user=self.user)
        self.assertEqual(notification.type, "payment_confirmed")
        self.assertEqual(notification.payload, {"order_id": "1"})
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])
        self.assertEqual(mail.outbox[0].subject, "Payment Confirmed")

    def test_email_only_destination(self):
        self.assertTrue(NotificationDispatcher().send(Destination(email="guest@example.com"), self.message))
        self.assertFalse(Notification.objects.exists())

    def test_failure_is_reported_not_raised(self):
        with patch("notifications.services.send_mail", side_effect=OSError("smtp down")):
            sent = NotificationDispatcher().send(Destination(email="buyer@example.com"), self.message)
        self.assertFalse(sent)

    def test_empty_destination(self):
        self.assertFalse(NotificationDispatcher().send(Destination(), self.message))

    def test_push_failure_still_stores_notification(self):
        with patch.object(NotificationService, "_send_push_to_user", side_effect=RuntimeError("fcm")):
            notification = NotificationService.notify(
                user=self.user,
                notification_type="order_status",
                title="Order Update",
                message="Order #ORD-1 is now Completed.",
            )
        self.assertTrue(Notification.objects.filter(pk=notification.pk).exists())


class NotificationQueueTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="queued@example.com", password="Pass123!")

    def test_queued_notification_waits_for_commit(self):
        template = ("Withdrawal Processing", "Your withdrawal is being processed.", {"type": "withdrawal_processing"})

        with patch("notifications.tasks.deliver_notification.delay") as delay:
            with self.captureOnCommitCallbacks() as callbacks:
                queue_notification(self.user, "withdrawal_processing", template)
            delay.assert_not_called()
            for callback in callbacks:
                callback()

        delay.assert_called_once_with(
            str(self.user.pk),
            "withdrawal_processing",
            "Withdrawal Processing",
            "Your withdrawal is being processed.",
            {"type": "withdrawal_processing"},
        )

    def test_task_creates_notification(self):
        notification_id = deliver_notification(
            str(self.user.pk), "order_cancelled", "Order Cancelled", "Order #ORD-9 was cancelled.", {}
        )
        self.assertEqual(str(Notification.objects.get(user=self.user).pk), notification_id)

    def test_task_skips_unknown_user(self):
        self.assertIsNone(
            deliver_notification(
                "00000000-0000-0000-0000-000000000000", "order_status", "Order Update", "x", {}
            )
        )


class NotificationTemplateTests(TestCase):
    def test_withdrawal_failed_reports_refund_and_balance(self):
        withdrawal = type("W", (), {"id": "w-1", "amount": "1000.00", "deducted_amount": "1063.83"})()

        title, message, payload = NotificationTemplates.withdrawal_failed(withdrawal, "2000.00")

        self.assertEqual(title, "Withdrawal Failed")
        self.assertIn("1063.83 was returned", message)
        self.assertEqual(payload["balance"], "2000.00")
        self.assertEqual(payload["entity_type"], "withdrawal")
