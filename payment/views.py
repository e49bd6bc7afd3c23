import json
import logging

from django.http import HttpRequest, JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from payment.models import Payment, Payout, WebhookLog, WithdrawalRequest
from payment.services.completion import PaymentCompletionService
from payment.services.errors import (
    CompensationFailedError,
    InsufficientBalanceError,
    LockNotAcquiredError,
    SettlementValidationError,
)
from payment.services.payout_providers import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    extract_provider_status,
    map_provider_status,
)
from payment.services.withdrawal import WithdrawalService
from payment.webhook_security import reject_untrusted_source

from .serializers import PayoutSerializer, WithdrawalCreateSerializer, WithdrawalRequestSerializer

logger = logging.getLogger(__name__)


def _parse_body(request: HttpRequest, provider: str):
    try:
        return json.loads(request.body), None
    except json.JSONDecodeError:
        logger.error("%s webhook invalid JSON: %s", provider, request.body)
        WebhookLog.objects.create(
            provider=provider,
            event_type="INVALID_JSON",
            reference="INVALID_JSON",
            payload={"raw_body": request.body.decode("utf-8", errors="replace")},
            processed=False,
            processing_attempts=1,
        )
        return None, JsonResponse({"error": "Invalid JSON"}, status=400)


def _mark_log(webhook_log: WebhookLog, event_type: str, processed: bool = False) -> None:
    webhook_log.event_type = event_type
    webhook_log.processed = processed
    webhook_log.save(update_fields=["event_type", "processed"])


@method_decorator(csrf_exempt, name="dispatch")
class PaymentWebhookView(View):
    """
    Receives "payment succeeded" notifications from the payment gateway.

    Deliveries may repeat; completion is idempotent, and a concurrent
    duplicate is answered with 409 so the gateway retries later.
    """

    provider = "GATEWAY"
    allow_list_setting = "PAYMENT_WEBHOOK_ALLOWED_IPS"

    def get(self, request: HttpRequest):
        return JsonResponse({"info": "Payment webhook endpoint, POST only"})

    def post(self, request: HttpRequest):
        rejection = reject_untrusted_source(request, self.allow_list_setting)
        if rejection is not None:
            return rejection

        payload, error_response = _parse_body(request, self.provider)
        if error_response is not None:
            return error_response

        tx_id = payload.get("id") or payload.get("invoice_id") or payload.get("txnId")
        if not tx_id:
            logger.warning("Payment webhook missing transaction ID")
            WebhookLog.objects.create(
                provider=self.provider,
                event_type="MISSING_TX_ID",
                reference="MISSING_TX_ID",
                payload=payload,
                processed=False,
                processing_attempts=1,
            )
            return JsonResponse({"error": "Missing transaction ID"}, status=400)

        webhook_log = WebhookLog.objects.create(
            provider=self.provider,
            event_type="RECEIVED",
            reference=tx_id,
            payload=payload,
            processed=False,
            processing_attempts=1,
        )

        payment = (
            Payment.objects.filter(provider_reference=tx_id).first()
            or Payment.objects.filter(invoice_id=tx_id).first()
        )
        if payment is None:
            _mark_log(webhook_log, "NOT_FOUND")
            logger.warning("Payment webhook transaction not found: tx_id=%s", tx_id)
            return JsonResponse({"error": "Transaction not found"}, status=404)

        gateway_status = map_provider_status(extract_provider_status(payload))
        if gateway_status == STATUS_FAILED:
            Payment.objects.filter(
                pk=payment.pk,
                status__in=[Payment.Status.PENDING, Payment.Status.PROCESSING],
            ).update(status=Payment.Status.FAILED)
            _mark_log(webhook_log, "PAYMENT_FAILED", processed=True)
            return JsonResponse({"status": "payment failed"}, status=200)
        if gateway_status != STATUS_COMPLETED:
            _mark_log(webhook_log, "PAYMENT_PENDING", processed=True)
            return JsonResponse({"status": "payment pending"}, status=200)

        try:
            result = PaymentCompletionService().process_successful_payment(payment.pk)
        except LockNotAcquiredError as e:
            _mark_log(webhook_log, "PAYMENT_LOCKED")
            logger.warning("Payment %s is being processed concurrently: %s", payment.pk, e)
            return JsonResponse({"error": str(e)}, status=409)
        except SettlementValidationError as e:
            _mark_log(webhook_log, "PAYMENT_REJECTED")
            logger.exception("Payment completion rejected for tx_id=%s: %s", tx_id, str(e))
            return JsonResponse({"error": str(e)}, status=400)
        except Exception:
            _mark_log(webhook_log, "PAYMENT_SYNC_FAILED")
            logger.exception("Unexpected error completing payment tx_id=%s", tx_id)
            return JsonResponse({"error": "Unexpected payment completion error"}, status=500)

        _mark_log(webhook_log, "PAYMENT_COMPLETED", processed=True)
        return JsonResponse(
            {
                "success": result.success,
                "already_processed": result.already_processed,
                "kind": result.kind,
                "status": result.status,
            },
            status=200,
        )


@method_decorator(csrf_exempt, name="dispatch")
class PayoutCallbackView(View):
    """Result callback from the payout provider for a withdrawal."""

    provider = "PAYOUT"
    allow_list_setting = "PAYOUT_CALLBACK_ALLOWED_IPS"

    def post(self, request: HttpRequest):
        rejection = reject_untrusted_source(request, self.allow_list_setting)
        if rejection is not None:
            return rejection

        payload, error_response = _parse_body(request, self.provider)
        if error_response is not None:
            return error_response

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = (
            payload.get("correlator_id")
            or payload.get("transaction_reference")
            or data.get("correlator_id")
            or payload.get("id")
        )
        if not reference:
            WebhookLog.objects.create(
                provider=self.provider,
                event_type="MISSING_REFERENCE",
                reference="MISSING_REFERENCE",
                payload=payload,
                processed=False,
                processing_attempts=1,
            )
            return JsonResponse({"error": "Missing reference"}, status=400)

        webhook_log = WebhookLog.objects.create(
            provider=self.provider,
            event_type="RECEIVED",
            reference=reference,
            payload=payload,
            processed=False,
            processing_attempts=1,
        )
        raw_status = extract_provider_status(payload)
        try:
            withdrawal = WithdrawalService().apply_provider_callback(reference, raw_status, payload)
        except CompensationFailedError as e:
            _mark_log(webhook_log, "REFUND_FAILED")
            return JsonResponse({"error": str(e)}, status=500)

        if withdrawal is None:
            _mark_log(webhook_log, "NOT_FOUND")
            return JsonResponse({"error": "Withdrawal not found"}, status=404)

        _mark_log(webhook_log, f"WITHDRAWAL_{withdrawal.status.upper()}", processed=True)
        return JsonResponse({"status": withdrawal.status}, status=200)


class WithdrawalListCreateView(APIView):
    """List the requester's withdrawals (staff see all) and open new ones."""

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        queryset = WithdrawalRequest.objects.all().order_by("-created_at")
        if not request.user.is_staff:
            queryset = queryset.filter(requested_by=request.user)
        return Response(WithdrawalRequestSerializer(queryset, many=True).data)

    def post(self, request):
        serializer = WithdrawalCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            withdrawal = WithdrawalService().create_withdrawal_request(
                requested_by=request.user,
                owner_type=data["owner_type"],
                owner_id=data["owner_id"],
                amount=data["amount"],
                phone_number=data["phone_number"],
                account_name=data["account_name"],
            )
        except (SettlementValidationError, InsufficientBalanceError) as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        withdrawal.refresh_from_db()
        return Response(WithdrawalRequestSerializer(withdrawal).data, status=status.HTTP_201_CREATED)


class PayoutHistoryView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        if request.user.is_staff:
            queryset = Payout.objects.all()
        else:
            queryset = Payout.objects.filter(shop__owner=request.user)
        return Response(PayoutSerializer(queryset.order_by("-created_at"), many=True).data)
