import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest import skipUnless
from unittest.mock import Mock, patch

import requests
from django.db import DatabaseError, close_old_connections, connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from account.models import User
from catalog.models import Product
from event.models import Event, Organizer, Ticket, TicketType
from order.models import Order
from order.services import OrderService
from shop.models import Shop

from .markers import DeliveryLog
from .models import Payment, Payout, WebhookLog, WithdrawalRequest
from .services.completion import PaymentCompletionService
from .services.confirmation import PaymentConfirmationService
from .services.errors import (
    AmountMismatchError,
    CompensationFailedError,
    InsufficientBalanceError,
    LockNotAcquiredError,
    PayoutProviderError,
    SettlementValidationError,
)
from .services.payout_providers import (
    BasePayoutProvider,
    PaydPayoutProvider,
    PayoutResult,
    SantimpayPayoutProvider,
    get_payout_provider,
    map_provider_status,
    normalize_phone_number,
)
from .services.withdrawal import WithdrawalService
from .webhook_security import ip_allowed


def _seller(prefix, balance="0.00", pickup=False):
    owner = User.objects.create_user(
        email=f"seller_{prefix}@example.com",
        password="pass1234",
        role=User.Role.SELLER,
    )
    shop = Shop.objects.create(
        name=f"{prefix} shop",
        owner=owner,
        balance=Decimal(balance),
        physical_address="Kimathi Street 4" if pickup else "",
    )
    return owner, shop


def _buyer(prefix):
    return User.objects.create_user(
        email=f"buyer_{prefix}@example.com",
        password="pass1234",
        role=User.Role.BUYER,
    )


def _order_payment(buyer, shop, product, amount=None, invoice_id="INV-1", metadata=None, **payment_fields):
    order = OrderService.create_order(buyer, shop, [{"product": product, "quantity": 1}])
    payment = Payment.objects.create(
        order=order,
        user=buyer,
        amount=amount if amount is not None else order.total_amount,
        provider="SANTIMPAY",
        invoice_id=invoice_id,
        customer_email=buyer.email,
        metadata={"order_id": order.pk, **(metadata or {})},
        **payment_fields,
    )
    return order, payment


def _fake_provider(**attrs):
    provider = Mock(spec=BasePayoutProvider)
    provider.code = "payd"
    provider.supports_status_check = False
    for name, value in attrs.items():
        setattr(provider, name, value)
    return provider


class PaymentCompletionOrderTests(TestCase):
    def setUp(self):
        self.owner, self.shop = _seller("completion")
        self.buyer = _buyer("completion")
        self.ebook = Product.objects.create(
            name="Budget Template",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.DIGITAL,
        )
        self.lamp = Product.objects.create(
            name="Desk Lamp",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.PHYSICAL,
        )
        self.service = PaymentCompletionService()

    def test_duplicate_signal_credits_seller_once(self):
        order, payment = _order_payment(self.buyer, self.shop, self.ebook, invoice_id="PAY-42")

        with patch("payment.tasks.send_payment_confirmation.delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                first = self.service.process_successful_payment(payment.pk)
            second = self.service.process_successful_payment(payment.pk)

        self.assertTrue(first.success)
        self.assertFalse(first.already_processed)
        self.assertEqual(first.status, Order.Status.COMPLETED)
        self.assertTrue(second.already_processed)
        delay.assert_called_once_with(str(payment.pk))

        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("900.00"))
        self.assertEqual(Payout.objects.filter(order=order).count(), 1)
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertIn("order_completed_at", payment.metadata)

    def test_physical_order_waits_for_fulfilment(self):
        order, payment = _order_payment(self.buyer, self.shop, self.lamp)

        result = self.service.process_successful_payment(payment.pk)

        self.assertEqual(result.status, Order.Status.DELIVERY_PENDING)
        order.refresh_from_db()
        self.assertIsNotNone(order.payment_completed_at)
        self.assertIsNotNone(order.seller_dropoff_deadline)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))
        self.assertTrue(self.service.process_successful_payment(payment.pk).already_processed)

    def test_underpaid_order_is_rejected_without_writes(self):
        order, payment = _order_payment(self.buyer, self.shop, self.ebook, amount=Decimal("900.00"))

        with self.assertRaises(AmountMismatchError):
            self.service.process_successful_payment(payment.pk)

        order.refresh_from_db()
        payment.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(payment.status, Payment.Status.PENDING)

    def test_lock_contention_fails_fast(self):
        order, payment = _order_payment(self.buyer, self.shop, self.ebook)

        with patch("payment.services.completion.try_advisory_xact_lock", return_value=False):
            with self.assertRaises(LockNotAcquiredError):
                self.service.process_successful_payment(payment.pk)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)

    def test_payment_without_target_is_a_no_op(self):
        payment = Payment.objects.create(amount="50.00", provider="SANTIMPAY", invoice_id="INV-TOPUP")

        result = self.service.process_successful_payment(payment.pk)

        self.assertTrue(result.success)
        self.assertEqual(result.kind, "none")
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.PENDING)


class PaymentCompletionTicketTests(TestCase):
    def setUp(self):
        self.organizer_user = User.objects.create_user(
            email="organizer_tickets@example.com",
            password="pass1234",
            role=User.Role.ORGANIZER,
        )
        self.organizer = Organizer.objects.create(user=self.organizer_user, name="Nairobi Live")
        self.event = Event.objects.create(organizer=self.organizer, name="Jazz Night", venue="Alliance Francaise")
        self.vip = TicketType.objects.create(event=self.event, name="VIP", price="500.00")
        self.service = PaymentCompletionService()

    def _payment(self, amount="900.00", invoice_id="INV-TKT-1", **metadata):
        data = {
            "ticket_type_id": str(self.vip.pk),
            "event_id": str(self.event.pk),
            "quantity": 2,
            "discount_amount": "100.00",
            "customer_name": "Wanjiku",
        }
        data.update(metadata)
        return Payment.objects.create(
            amount=amount,
            provider="SANTIMPAY",
            invoice_id=invoice_id,
            customer_email="wanjiku@example.com",
            metadata=data,
        )

    def test_ticket_is_issued_once_and_event_wallet_credited(self):
        payment = self._payment()

        first = self.service.process_successful_payment(payment.pk)
        second = self.service.process_successful_payment(payment.pk)

        self.assertEqual(first.kind, "ticket")
        self.assertTrue(second.already_processed)
        ticket = Ticket.objects.get(payment=payment)
        self.assertTrue(ticket.ticket_number.startswith("TKT-"))
        self.assertEqual(ticket.quantity, 2)
        self.assertEqual(ticket.total_price, Decimal("900.00"))
        self.assertEqual(ticket.buyer_name, "Wanjiku")
        self.event.refresh_from_db()
        self.assertEqual(self.event.balance, Decimal("900.00"))
        payment.refresh_from_db()
        self.assertIn("ticket_issued_at", payment.metadata)

    def test_tampered_amount_is_rejected(self):
        payment = self._payment(amount="500.00")

        with self.assertRaises(AmountMismatchError):
            self.service.process_successful_payment(payment.pk)

        self.assertFalse(Ticket.objects.exists())
        self.event.refresh_from_db()
        self.assertEqual(self.event.balance, Decimal("0.00"))

    def test_amount_within_rounding_tolerance_is_accepted(self):
        payment = self._payment(amount="900.01")
        result = self.service.process_successful_payment(payment.pk)
        self.assertEqual(result.kind, "ticket")

    def test_missing_buyer_email_is_rejected(self):
        payment = self._payment()
        Payment.objects.filter(pk=payment.pk).update(customer_email="")

        with self.assertRaises(SettlementValidationError):
            self.service.process_successful_payment(payment.pk)
        self.assertFalse(Ticket.objects.exists())

    def test_ticket_number_collision_is_retried(self):
        earlier = self._payment(invoice_id="INV-TKT-0")
        Ticket.objects.create(
            ticket_number="TKT-1-DUPLICATE",
            event=self.event,
            ticket_type=self.vip,
            payment=earlier,
            buyer_email="someone@example.com",
            total_price="900.00",
        )
        payment = self._payment()

        with patch.object(
            PaymentCompletionService, "_ticket_number", side_effect=["TKT-1-DUPLICATE", "TKT-2-FRESH"]
        ):
            self.service.process_successful_payment(payment.pk)

        self.assertEqual(Ticket.objects.get(payment=payment).ticket_number, "TKT-2-FRESH")

    @override_settings(TICKET_NUMBER_MAX_ATTEMPTS=2)
    def test_ticket_number_retries_are_bounded(self):
        earlier = self._payment(invoice_id="INV-TKT-0")
        Ticket.objects.create(
            ticket_number="TKT-1-DUPLICATE",
            event=self.event,
            ticket_type=self.vip,
            payment=earlier,
            buyer_email="someone@example.com",
            total_price="900.00",
        )
        payment = self._payment()

        with patch.object(PaymentCompletionService, "_ticket_number", return_value="TKT-1-DUPLICATE"):
            with self.assertRaises(SettlementValidationError):
                PaymentCompletionService().process_successful_payment(payment.pk)

        self.event.refresh_from_db()
        self.assertEqual(self.event.balance, Decimal("0.00"))


@skipUnless(connection.vendor == "postgresql", "advisory locks and row locks need PostgreSQL")
class PaymentCompletionRaceTests(TransactionTestCase):
    """
    Runs only against PostgreSQL (set DATABASE_NAME and friends); sqlite has
    no row or advisory locks. test_duplicate_signal_credits_seller_once covers
    the sequential redelivery case on every backend.
    """

    reset_sequences = True

    def setUp(self):
        self.owner, self.shop = _seller("race")
        self.buyer = _buyer("race")
        self.product = Product.objects.create(
            name="Race Product",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.DIGITAL,
        )
        self.order, self.payment = _order_payment(self.buyer, self.shop, self.product, invoice_id="PAY-42")

    def _attempt(self, barrier):
        close_old_connections()
        try:
            barrier.wait(timeout=5)
            with patch("payment.tasks.send_payment_confirmation.delay"):
                result = PaymentCompletionService().process_successful_payment(self.payment.pk)
            return ("already" if result.already_processed else "ok", "")
        except LockNotAcquiredError as exc:
            return ("locked", str(exc))
        except Exception as exc:
            return ("err", str(exc))
        finally:
            close_old_connections()

    def test_concurrent_webhooks_credit_seller_once(self):
        barrier = threading.Barrier(2)

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(self._attempt, barrier) for _ in range(2)]
            results = [f.result(timeout=20) for f in futures]

        outcomes = sorted(r[0] for r in results)
        self.assertEqual(outcomes.count("ok"), 1, results)
        self.assertNotIn("err", outcomes, results)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("900.00"))
        self.assertEqual(Payout.objects.filter(order=self.order).count(), 1)


@override_settings(NOTIFICATION_RETRY_DELAY_SECONDS=0)
class PaymentConfirmationTests(TestCase):
    def setUp(self):
        self.owner, self.shop = _seller("confirmation")
        self.buyer = _buyer("confirmation")
        self.product = Product.objects.create(
            name="Sticker Pack",
            shop=self.shop,
            price="200.00",
            product_type=Product.ProductType.DIGITAL,
        )
        self.order, self.payment = _order_payment(
            self.buyer, self.shop, self.product, status=Payment.Status.COMPLETED
        )

    def test_retries_until_delivery_succeeds(self):
        dispatcher = Mock()
        dispatcher.send.side_effect = [False, False, True]

        sent = PaymentConfirmationService(dispatcher=dispatcher).send(self.payment.pk)

        self.assertTrue(sent)
        self.assertEqual(dispatcher.send.call_count, 3)
        self.payment.refresh_from_db()
        log = DeliveryLog.from_metadata(self.payment.metadata)
        self.assertTrue(log.sent)
        self.assertEqual([a.success for a in log.attempts], [False, False, True])
        self.assertEqual([a.attempt for a in log.attempts], [1, 2, 3])
        self.assertEqual(log.failed_attempts, 2)

    def test_exhausted_retries_are_recorded_not_raised(self):
        dispatcher = Mock()
        dispatcher.send.return_value = False

        sent = PaymentConfirmationService(dispatcher=dispatcher).send(self.payment.pk)

        self.assertFalse(sent)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertFalse(self.payment.metadata["email_sent"])
        self.assertEqual(len(self.payment.metadata["email_attempts"]), 3)

    def test_crashing_dispatcher_never_raises(self):
        dispatcher = Mock()
        dispatcher.send.side_effect = RuntimeError("smtp down")

        self.assertFalse(PaymentConfirmationService(dispatcher=dispatcher).send(self.payment.pk))

    def test_already_sent_is_not_resent(self):
        self.payment.metadata = {**self.payment.metadata, "email_sent": True}
        self.payment.save()
        dispatcher = Mock()

        self.assertTrue(PaymentConfirmationService(dispatcher=dispatcher).send(self.payment.pk))
        dispatcher.send.assert_not_called()

    def test_seller_is_notified_once_buyer_confirmation_lands(self):
        dispatcher = Mock()
        dispatcher.send.return_value = True

        with patch("payment.services.confirmation.queue_notification") as queue:
            PaymentConfirmationService(dispatcher=dispatcher).send(self.payment.pk)

        self.assertEqual(queue.call_args_list[0].args[0], self.owner)
        self.assertEqual(queue.call_args_list[0].args[1], "new_order")

    def test_pending_confirmations_lists_unsent_recent_payments(self):
        _, sent = _order_payment(
            self.buyer,
            self.shop,
            self.product,
            invoice_id="INV-SENT",
            status=Payment.Status.COMPLETED,
            metadata={"email_sent": True},
        )
        _, stale = _order_payment(
            self.buyer, self.shop, self.product, invoice_id="INV-OLD", status=Payment.Status.COMPLETED
        )
        Payment.objects.filter(pk=stale.pk).update(created_at=timezone.now() - timedelta(hours=30))

        pending = PaymentConfirmationService().pending_confirmations()

        self.assertEqual([p.pk for p in pending], [self.payment.pk])
        self.assertNotIn(sent.pk, [p.pk for p in pending])

    def test_retry_task_requeues_pending(self):
        from payment.tasks import retry_pending_confirmations

        with patch("payment.tasks.send_payment_confirmation.delay") as delay:
            count = retry_pending_confirmations()

        self.assertEqual(count, 1)
        delay.assert_called_once_with(str(self.payment.pk))


class WithdrawalServiceTests(TestCase):
    def setUp(self):
        self.owner, self.shop = _seller("withdrawal", balance="1500.00")
        self.organizer_user = User.objects.create_user(
            email="organizer_withdrawal@example.com",
            password="pass1234",
            role=User.Role.ORGANIZER,
        )
        self.organizer = Organizer.objects.create(user=self.organizer_user, name="Savannah Events")
        self.event = Event.objects.create(organizer=self.organizer, name="Food Fest", balance=Decimal("2000.00"))

    def _reserve(self, service, owner_type="seller", owner_id=None, amount="1000", requested_by=None):
        data = service.validate(
            owner_type, owner_id or self.shop.pk, amount, "0712 345 678", "Achieng Otieno"
        )
        return service.reserve(requested_by or self.owner, data)

    def test_failed_payout_restores_seller_balance(self):
        provider = _fake_provider()
        provider.initiate.side_effect = PayoutProviderError("Payd returned HTTP 500", detail={"message": "down"})
        service = WithdrawalService(provider=provider)

        request = self._reserve(service)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))
        self.assertEqual(request.status, WithdrawalRequest.Status.PROCESSING)
        self.assertEqual(request.deducted_amount, Decimal("1000.00"))
        self.assertEqual(request.phone_number, "254712345678")

        result = service.execute(request.pk)

        self.assertEqual(result.status, WithdrawalRequest.Status.FAILED)
        self.assertEqual(result.metadata["api_error"], "Payd returned HTTP 500")
        self.assertIsNotNone(result.processed_at)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_unexpected_provider_exception_restores_balance(self):
        provider = _fake_provider()
        provider.initiate.side_effect = ValueError("bad json shape")
        service = WithdrawalService(provider=provider)
        request = self._reserve(service)

        result = service.execute(request.pk)

        self.assertEqual(result.status, WithdrawalRequest.Status.FAILED)
        self.assertEqual(result.metadata["api_error"], "ValueError: bad json shape")
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_provider_lookup_failure_restores_balance(self):
        service = WithdrawalService()
        request = self._reserve(service)

        with patch("payment.services.withdrawal.get_payout_provider", side_effect=KeyError("payd")):
            result = service.execute(request.pk)

        self.assertEqual(result.status, WithdrawalRequest.Status.FAILED)
        self.assertIn("KeyError", result.metadata["api_error"])
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_event_withdrawal_is_grossed_up_and_fully_refunded(self):
        provider = _fake_provider()
        provider.initiate.side_effect = PayoutProviderError("timeout")
        service = WithdrawalService(provider=provider)

        request = self._reserve(service, owner_type="event", owner_id=self.event.pk, requested_by=self.organizer_user)
        self.assertEqual(request.deducted_amount, Decimal("1063.83"))
        self.event.refresh_from_db()
        self.assertEqual(self.event.balance, Decimal("936.17"))

        service.execute(request.pk)

        self.event.refresh_from_db()
        self.assertEqual(self.event.balance, Decimal("2000.00"))

    def test_insufficient_balance_writes_nothing(self):
        Shop.objects.filter(pk=self.shop.pk).update(balance=Decimal("500.00"))
        service = WithdrawalService(provider=_fake_provider())

        with self.assertRaises(InsufficientBalanceError):
            self._reserve(service)

        self.assertFalse(WithdrawalRequest.objects.exists())
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))

    def test_gross_up_counts_against_balance(self):
        Event.objects.filter(pk=self.event.pk).update(balance=Decimal("1050.00"))
        service = WithdrawalService(provider=_fake_provider())

        with self.assertRaises(InsufficientBalanceError):
            self._reserve(service, owner_type="event", owner_id=self.event.pk, requested_by=self.organizer_user)

    def test_validation_rejects_bad_input(self):
        service = WithdrawalService(provider=_fake_provider())
        bad_inputs = [
            ("seller", self.shop.pk, "5", "0712345678", "Achieng"),
            ("seller", self.shop.pk, "200000", "0712345678", "Achieng"),
            ("seller", self.shop.pk, "abc", "0712345678", "Achieng"),
            ("seller", self.shop.pk, "-100", "0712345678", "Achieng"),
            ("seller", self.shop.pk, "100", "12345", "Achieng"),
            ("seller", self.shop.pk, "100", "0712345678", "   "),
            ("wallet", self.shop.pk, "100", "0712345678", "Achieng"),
        ]
        for args in bad_inputs:
            with self.assertRaises(SettlementValidationError, msg=args):
                service.validate(*args)

    def test_phone_numbers_are_normalized(self):
        for raw in ("0712345678", "712345678", "254712345678", "+254 712 345 678"):
            self.assertEqual(normalize_phone_number(raw), "254712345678")

    def test_cannot_withdraw_from_someone_elses_wallet(self):
        service = WithdrawalService(provider=_fake_provider())
        with self.assertRaises(SettlementValidationError):
            self._reserve(service, requested_by=self.organizer_user)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_create_request_queues_execution_after_commit(self):
        service = WithdrawalService(provider=_fake_provider())

        with patch("payment.tasks.execute_withdrawal.delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                request = service.create_withdrawal_request(
                    self.owner, "seller", self.shop.pk, "1000", "0712345678", "Achieng Otieno"
                )

        delay.assert_called_once_with(str(request.pk))

    def test_successful_call_stores_reference(self):
        provider = _fake_provider()
        provider.initiate.return_value = PayoutResult(
            provider_reference="CORR-123", status="pending", raw_response={"correlator_id": "CORR-123"}
        )
        service = WithdrawalService(provider=provider)
        request = self._reserve(service)

        result = service.execute(request.pk)

        self.assertEqual(result.status, WithdrawalRequest.Status.PROCESSING)
        self.assertEqual(result.provider_reference, "CORR-123")
        self.assertEqual(result.provider, "payd")
        self.assertEqual(result.raw_response, {"correlator_id": "CORR-123"})
        provider.initiate.assert_called_once_with("254712345678", Decimal("1000.00"), "Withdrawal for Achieng Otieno")
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))

        service.execute(request.pk)
        provider.initiate.assert_called_once()

    def test_callbacks_are_idempotent_on_terminal_states(self):
        service = WithdrawalService(provider=_fake_provider())
        request = self._reserve(service)
        WithdrawalRequest.objects.filter(pk=request.pk).update(provider_reference="CORR-7")

        completed = service.apply_provider_callback("CORR-7", "SUCCESS", {"status": "SUCCESS"})
        late_failure = service.apply_provider_callback("CORR-7", "FAILED", {"status": "FAILED"})

        self.assertEqual(completed.status, WithdrawalRequest.Status.COMPLETED)
        self.assertEqual(late_failure.status, WithdrawalRequest.Status.COMPLETED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))
        self.assertIsNone(service.apply_provider_callback("UNKNOWN", "SUCCESS"))

    def test_failed_callback_refunds(self):
        service = WithdrawalService(provider=_fake_provider())
        request = self._reserve(service)
        WithdrawalRequest.objects.filter(pk=request.pk).update(provider_reference="CORR-8")

        failed = service.apply_provider_callback("CORR-8", "REJECTED", {"status": "REJECTED"})

        self.assertEqual(failed.status, WithdrawalRequest.Status.FAILED)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_refund_failure_is_critical(self):
        service = WithdrawalService(provider=_fake_provider())
        request = self._reserve(service)

        with patch("payment.services.withdrawal.credit_wallet", side_effect=DatabaseError("connection lost")):
            with self.assertLogs("payment.services.withdrawal", level="CRITICAL"):
                with self.assertRaises(CompensationFailedError):
                    service.fail_and_refund(request.pk, "timeout")

        request.refresh_from_db()
        self.assertEqual(request.status, WithdrawalRequest.Status.PROCESSING)

    def test_reconciliation_sweep(self):
        provider = _fake_provider(supports_status_check=True)
        provider.check_status.side_effect = lambda ref: {"REF-OK": "SUCCESS", "REF-BAD": "FAILED", "REF-WAIT": "PENDING"}[ref]
        service = WithdrawalService(provider=provider)
        Shop.objects.filter(pk=self.shop.pk).update(balance=Decimal("100000.00"))
        now = timezone.now()

        def stuck(reference, age):
            request = self._reserve(service, amount="100")
            WithdrawalRequest.objects.filter(pk=request.pk).update(
                provider_reference=reference, created_at=now - age
            )
            return request

        no_ref = stuck(None, timedelta(hours=3))
        ok = stuck("REF-OK", timedelta(hours=3))
        bad = stuck("REF-BAD", timedelta(hours=5))
        waiting = stuck("REF-WAIT", timedelta(hours=4))
        too_old = stuck(None, timedelta(hours=60))
        too_new = stuck(None, timedelta(minutes=30))

        result = service.reconcile_stuck_withdrawals(now)

        self.assertEqual(
            (result.checked, result.completed, result.failed, result.flagged, result.pending), (4, 1, 1, 1, 1)
        )
        for request in (no_ref, ok, bad, waiting, too_old, too_new):
            request.refresh_from_db()
        self.assertEqual(no_ref.metadata["reconciliation_flag"], "needs_manual_review")
        self.assertEqual(no_ref.metadata["reconciliation_reason"], "no_provider_reference")
        self.assertEqual(no_ref.status, WithdrawalRequest.Status.PROCESSING)
        self.assertEqual(ok.status, WithdrawalRequest.Status.COMPLETED)
        self.assertEqual(bad.status, WithdrawalRequest.Status.FAILED)
        self.assertEqual(waiting.status, WithdrawalRequest.Status.PROCESSING)
        self.assertNotIn("reconciliation_flag", too_old.metadata)
        self.assertNotIn("reconciliation_flag", too_new.metadata)

    def test_reconciliation_flags_when_provider_cannot_query(self):
        service = WithdrawalService(provider=_fake_provider(supports_status_check=False))
        request = self._reserve(service)
        WithdrawalRequest.objects.filter(pk=request.pk).update(
            provider_reference="CORR-9", created_at=timezone.now() - timedelta(hours=3)
        )

        service.reconcile_stuck_withdrawals()

        request.refresh_from_db()
        self.assertEqual(request.metadata["reconciliation_flag"], "needs_manual_review")
        self.assertEqual(request.metadata["reconciliation_reason"], "status_check_unsupported")


@override_settings(PAYD_USERNAME="payd-user", PAYD_PASSWORD="payd-pass", PAYOUT_CALLBACK_URL="https://example.com/cb/")
class PayoutProviderTests(TestCase):
    def _response(self, ok=True, status_code=200, body=None):
        response = Mock(ok=ok, status_code=status_code, text=json.dumps(body or {}))
        response.json.return_value = body or {}
        return response

    @patch("payment.services.payout_providers.requests.post")
    def test_payd_posts_local_number_and_returns_correlator(self, mock_post):
        mock_post.return_value = self._response(body={"success": True, "correlator_id": "CORR-55", "status": "PENDING"})

        result = PaydPayoutProvider().initiate("254712345678", Decimal("1000.00"), "Withdrawal for Achieng")

        self.assertEqual(result.provider_reference, "CORR-55")
        self.assertEqual(result.status, "pending")
        kwargs = mock_post.call_args.kwargs
        self.assertEqual(kwargs["json"]["phone_number"], "0712345678")
        self.assertEqual(kwargs["json"]["amount"], 1000.0)
        self.assertEqual(kwargs["auth"], ("payd-user", "payd-pass"))
        self.assertEqual(kwargs["timeout"], 30)

    @patch("payment.services.payout_providers.requests.post")
    def test_payd_errors_surface_as_provider_errors(self, mock_post):
        mock_post.return_value = self._response(ok=False, status_code=502, body={"message": "upstream"})
        with self.assertRaises(PayoutProviderError) as ctx:
            PaydPayoutProvider().initiate("254712345678", Decimal("10.00"), "x")
        self.assertEqual(ctx.exception.detail, {"message": "upstream"})

        mock_post.return_value = self._response(body={"success": False, "message": "Invalid number"})
        with self.assertRaises(PayoutProviderError):
            PaydPayoutProvider().initiate("254712345678", Decimal("10.00"), "x")

        mock_post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(PayoutProviderError):
            PaydPayoutProvider().initiate("254712345678", Decimal("10.00"), "x")

    @patch("payment.services.payout_providers.requests.post")
    def test_payd_non_object_body_is_a_provider_error(self, mock_post):
        mock_post.return_value = self._response(body=["queued"])

        with self.assertRaises(PayoutProviderError) as ctx:
            PaydPayoutProvider().initiate("254712345678", Decimal("10.00"), "x")

        self.assertEqual(ctx.exception.detail, {"raw": ["queued"]})

    def test_santimpay_non_object_body_is_a_provider_error(self):
        sdk = Mock(merchant_id="MERCHANT", private_key="KEY")
        sdk.send_to_customer.return_value = "OK"

        with self.assertRaises(PayoutProviderError):
            SantimpayPayoutProvider(sdk=sdk).initiate("254712345678", Decimal("250.00"), "Withdrawal")

    def test_santimpay_payout_and_status(self):
        sdk = Mock(merchant_id="MERCHANT", private_key="KEY")
        sdk.send_to_customer.return_value = {"id": "SP-1", "status": "PENDING"}
        sdk.check_transaction_status.return_value = {"data": {"status": "COMPLETED"}}
        provider = SantimpayPayoutProvider(sdk=sdk)

        result = provider.initiate("254712345678", Decimal("250.00"), "Withdrawal")

        self.assertEqual(result.provider_reference, "SP-1")
        self.assertEqual(sdk.send_to_customer.call_args.kwargs["phone_number"], "+254712345678")
        self.assertEqual(map_provider_status(provider.check_status("SP-1")), "completed")

    def test_provider_selection(self):
        self.assertIsInstance(get_payout_provider(), PaydPayoutProvider)
        self.assertIsInstance(get_payout_provider("santimpay"), SantimpayPayoutProvider)
        with self.assertRaises(PayoutProviderError):
            get_payout_provider("carrier-pigeon")

    def test_status_mapping(self):
        self.assertEqual(map_provider_status("success"), "completed")
        self.assertEqual(map_provider_status("REVERSED"), "failed")
        self.assertEqual(map_provider_status(None), "pending")


class PayoutSignalTests(TestCase):
    def test_pending_payout_is_created_when_order_completes(self):
        _, shop = _seller("signal")
        buyer = _buyer("signal")
        product = Product.objects.create(name="Mug", shop=shop, price="300.00", product_type=Product.ProductType.PHYSICAL)
        order = OrderService.create_order(buyer, shop, [{"product": product, "quantity": 1}])

        order.status = Order.Status.COMPLETED
        order.save()

        payout = Payout.objects.get(order=order)
        self.assertEqual(payout.status, Payout.Status.PENDING)
        self.assertEqual(payout.amount, Decimal("270.00"))
        self.assertEqual(payout.platform_fee, Decimal("30.00"))


class WebhookSourceTests(SimpleTestCase):
    def test_exact_network_and_wildcard_entries(self):
        allowed = ["102.0.0.5", "41.90.0.0/16", "196.201.214.*", "197.248.x.x"]

        self.assertTrue(ip_allowed("102.0.0.5", allowed))
        self.assertTrue(ip_allowed("41.90.255.1", allowed))
        self.assertTrue(ip_allowed("196.201.214.200", allowed))
        self.assertTrue(ip_allowed("197.248.3.4", allowed))
        self.assertFalse(ip_allowed("102.0.0.6", allowed))
        self.assertFalse(ip_allowed("196.201.215.1", allowed))

    def test_ipv4_mapped_addresses_match_ipv4_entries(self):
        self.assertTrue(ip_allowed("::ffff:41.90.1.2", ["41.90.0.0/16"]))

    def test_malformed_input_never_matches(self):
        self.assertFalse(ip_allowed("", ["0.0.0.0/0"]))
        self.assertFalse(ip_allowed("not-an-ip", ["127.0.0.1"]))
        self.assertFalse(ip_allowed("127.0.0.1", ["localhost"]))


@override_settings(PAYMENT_WEBHOOK_ALLOWED_IPS="127.0.0.1")
class PaymentWebhookViewTests(TestCase):
    def setUp(self):
        self.owner, self.shop = _seller("webhook")
        self.buyer = _buyer("webhook")
        self.product = Product.objects.create(
            name="Webhook Product",
            shop=self.shop,
            price="1000.00",
            product_type=Product.ProductType.DIGITAL,
        )
        self.order, self.payment = _order_payment(
            self.buyer, self.shop, self.product, invoice_id="INV-WEB-1", provider_reference="SP-TX-1"
        )

    def _post(self, payload, **extra):
        return self.client.post(
            "/payment/webhook/", data=json.dumps(payload), content_type="application/json", **extra
        )

    def test_success_webhook_completes_payment_once(self):
        first = self._post({"id": "SP-TX-1", "status": "COMPLETED"})
        second = self._post({"id": "SP-TX-1", "status": "COMPLETED"})

        self.assertEqual(first.status_code, 200, first.content)
        self.assertFalse(first.json()["already_processed"])
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["already_processed"])
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("900.00"))
        self.assertEqual(WebhookLog.objects.filter(reference="SP-TX-1", processed=True).count(), 2)

    def test_invoice_id_is_accepted_as_reference(self):
        response = self._post({"id": "INV-WEB-1", "status": "SUCCESS"})
        self.assertEqual(response.status_code, 200, response.content)

    def test_failed_webhook_marks_payment_failed(self):
        response = self._post({"id": "SP-TX-1", "status": "FAILED"})

        self.assertEqual(response.status_code, 200)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)

    def test_concurrent_delivery_gets_conflict(self):
        with patch("payment.services.completion.try_advisory_xact_lock", return_value=False):
            response = self._post({"id": "SP-TX-1", "status": "COMPLETED"})
        self.assertEqual(response.status_code, 409)

    def test_unlisted_source_is_forbidden(self):
        response = self._post({"id": "SP-TX-1", "status": "COMPLETED"}, REMOTE_ADDR="10.0.0.9")

        self.assertEqual(response.status_code, 403)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("0.00"))
        self.assertFalse(WebhookLog.objects.exists())

    def test_forwarded_for_is_ignored_unless_trusted(self):
        payload = {"id": "SP-TX-1", "status": "FAILED"}
        spoofed = self._post(payload, REMOTE_ADDR="10.0.0.9", HTTP_X_FORWARDED_FOR="127.0.0.1")
        self.assertEqual(spoofed.status_code, 403)

        with override_settings(WEBHOOK_TRUST_FORWARDED_FOR=True):
            proxied = self._post(payload, REMOTE_ADDR="10.0.0.9", HTTP_X_FORWARDED_FOR="127.0.0.1, 10.0.0.9")
        self.assertEqual(proxied.status_code, 200, proxied.content)

    @override_settings(PAYMENT_WEBHOOK_ALLOWED_IPS="", WEBHOOK_IP_ALLOWLIST_REQUIRED=True)
    def test_missing_allow_list_is_refused_when_required(self):
        response = self._post({"id": "SP-TX-1", "status": "COMPLETED"})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "Webhook security not configured")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)

    @override_settings(PAYMENT_WEBHOOK_ALLOWED_IPS="", WEBHOOK_IP_ALLOWLIST_REQUIRED=False)
    def test_missing_allow_list_is_accepted_when_optional(self):
        response = self._post({"id": "SP-TX-1", "status": "COMPLETED"})
        self.assertEqual(response.status_code, 200, response.content)

    def test_bad_requests(self):
        self.assertEqual(
            self.client.post("/payment/webhook/", data="not json", content_type="application/json").status_code, 400
        )
        self.assertEqual(self._post({"status": "COMPLETED"}).status_code, 400)
        self.assertEqual(self._post({"id": "SP-UNKNOWN", "status": "COMPLETED"}).status_code, 404)
        self.assertTrue(WebhookLog.objects.filter(event_type="INVALID_JSON").exists())


@override_settings(PAYOUT_CALLBACK_ALLOWED_IPS="127.0.0.1")
class PayoutCallbackViewTests(TestCase):
    def setUp(self):
        self.owner, self.shop = _seller("callback", balance="1500.00")
        service = WithdrawalService(provider=_fake_provider())
        data = service.validate("seller", self.shop.pk, "1000", "0712345678", "Achieng")
        self.request = service.reserve(self.owner, data)
        WithdrawalRequest.objects.filter(pk=self.request.pk).update(provider_reference="CORR-CB-1")

    def _post(self, payload, **extra):
        return self.client.post(
            "/payment/payouts/callback/", data=json.dumps(payload), content_type="application/json", **extra
        )

    def test_failed_callback_refunds_wallet(self):
        response = self._post({"correlator_id": "CORR-CB-1", "status": "FAILED"})

        self.assertEqual(response.status_code, 200, response.content)
        self.assertEqual(response.json()["status"], "failed")
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("1500.00"))

    def test_success_callback_completes(self):
        response = self._post({"transaction_reference": "CORR-CB-1", "result_code": "0"})

        self.assertEqual(response.status_code, 200, response.content)
        self.request.refresh_from_db()
        self.assertEqual(self.request.status, WithdrawalRequest.Status.COMPLETED)

    def test_unlisted_source_cannot_fail_a_withdrawal(self):
        response = self._post({"correlator_id": "CORR-CB-1", "status": "FAILED"}, REMOTE_ADDR="10.0.0.9")

        self.assertEqual(response.status_code, 403)
        self.request.refresh_from_db()
        self.assertEqual(self.request.status, WithdrawalRequest.Status.PROCESSING)
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))

    @override_settings(PAYOUT_CALLBACK_ALLOWED_IPS="41.90.0.0/16, 196.201.214.*")
    def test_network_and_wildcard_entries_are_accepted(self):
        response = self._post({"transaction_reference": "CORR-CB-1", "result_code": "0"}, REMOTE_ADDR="41.90.12.7")

        self.assertEqual(response.status_code, 200, response.content)
        self.request.refresh_from_db()
        self.assertEqual(self.request.status, WithdrawalRequest.Status.COMPLETED)

    def test_unknown_reference(self):
        self.assertEqual(self._post({"correlator_id": "NOPE", "status": "SUCCESS"}).status_code, 404)
        self.assertEqual(self._post({"status": "SUCCESS"}).status_code, 400)


class WithdrawalApiTests(APITestCase):
    def setUp(self):
        self.owner, self.shop = _seller("withdrawal_api", balance="1500.00")
        self.client.force_authenticate(user=self.owner)

    def test_create_withdrawal_returns_processing_request(self):
        with patch("payment.tasks.execute_withdrawal.delay"):
            response = self.client.post(
                "/payment/withdrawals/",
                {
                    "owner_type": "seller",
                    "owner_id": str(self.shop.pk),
                    "amount": "1000.00",
                    "phone_number": "0712345678",
                    "account_name": "Achieng Otieno",
                },
                format="json",
            )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["status"], WithdrawalRequest.Status.PROCESSING)
        self.assertEqual(response.data["owner_type"], "seller")
        self.shop.refresh_from_db()
        self.assertEqual(self.shop.balance, Decimal("500.00"))

        listing = self.client.get("/payment/withdrawals/")
        self.assertEqual(listing.status_code, status.HTTP_200_OK)
        self.assertEqual(len(listing.data), 1)

    def test_insufficient_balance_is_bad_request(self):
        response = self.client.post(
            "/payment/withdrawals/",
            {
                "owner_type": "seller",
                "owner_id": str(self.shop.pk),
                "amount": "5000.00",
                "phone_number": "0712345678",
                "account_name": "Achieng Otieno",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(WithdrawalRequest.objects.exists())

    def test_payout_history_lists_own_payouts(self):
        buyer = _buyer("withdrawal_api")
        product = Product.objects.create(name="Poster", shop=self.shop, price="100.00", product_type=Product.ProductType.DIGITAL)
        order = OrderService.create_order(buyer, self.shop, [{"product": product, "quantity": 1}])
        with transaction.atomic():
            OrderService.complete_after_payment(order.pk)

        response = self.client.get("/payment/payouts/history/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["amount"], "90.00")
