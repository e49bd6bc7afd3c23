from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from core.config import SettlementConfig, get_settlement_config
from core.money import money, to_decimal
from notifications.services import NotificationTemplates, queue_notification
from payment.models import WithdrawalRequest

from .errors import CompensationFailedError, PayoutProviderError, SettlementValidationError
from .payout_providers import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BasePayoutProvider,
    get_payout_provider,
    map_provider_status,
    normalize_phone_number,
)
from .wallet import (
    OWNER_EVENT,
    OWNER_ORGANIZER,
    OWNER_SELLER,
    credit_wallet,
    debit_wallet,
    deduction_for,
    lock_wallet,
)

logger = logging.getLogger(__name__)

OWNER_TYPES = (OWNER_SELLER, OWNER_ORGANIZER, OWNER_EVENT)

FLAG_MANUAL_REVIEW = "needs_manual_review"


@dataclass(frozen=True)
class WithdrawalInput:
    owner_type: str
    owner_id: Any
    amount: Decimal
    phone_number: str
    account_name: str


@dataclass
class ReconcileResult:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    flagged: int = 0
    pending: int = 0


def _owner_user(request: WithdrawalRequest):
    if request.event_id:
        return request.event.organizer.user
    if request.organizer_id:
        return request.organizer.user
    return request.shop.owner


def _wallet_user_id(owner_type: str, wallet):
    if owner_type == OWNER_SELLER:
        return wallet.owner_id
    if owner_type == OWNER_ORGANIZER:
        return wallet.user_id
    return wallet.organizer.user_id


class WithdrawalService:
    """
    Wallet cash-outs in three phases: validate, reserve, execute.

    Funds are debited and the request row written in one transaction before
    the provider is called. A failed provider call is compensated by a
    separate transaction that credits back exactly what was deducted.
    """

    def __init__(self, provider: Optional[BasePayoutProvider] = None, config: Optional[SettlementConfig] = None):
        self._provider = provider
        self.config = config or get_settlement_config()

    def provider_for(self, request: Optional[WithdrawalRequest] = None) -> BasePayoutProvider:
        if self._provider is not None:
            return self._provider
        return get_payout_provider(request.provider if request is not None and request.provider else None)

    # -----------------------------
    # Phase 1: validate
    # -----------------------------
    def validate(self, owner_type, owner_id, amount, phone_number, account_name) -> WithdrawalInput:
        if owner_type not in OWNER_TYPES:
            raise SettlementValidationError(f"Unsupported wallet owner type '{owner_type}'")
        if not owner_id:
            raise SettlementValidationError("Wallet owner is required")
        try:
            amount = money(to_decimal(amount))
        except ValueError as exc:
            raise SettlementValidationError(str(exc)) from None
        if amount <= Decimal("0.00"):
            raise SettlementValidationError("Amount must be greater than zero")
        if amount < self.config.min_withdrawal_amount:
            raise SettlementValidationError(f"Minimum withdrawal is {self.config.min_withdrawal_amount}")
        if amount > self.config.max_withdrawal_amount:
            raise SettlementValidationError(f"Maximum withdrawal is {self.config.max_withdrawal_amount}")
        account_name = (account_name or "").strip()
        if not account_name:
            raise SettlementValidationError("Account name is required")
        return WithdrawalInput(
            owner_type=owner_type,
            owner_id=owner_id,
            amount=amount,
            phone_number=normalize_phone_number(phone_number),
            account_name=account_name,
        )

    # -----------------------------
    # Phase 2: reserve
    # -----------------------------
    @transaction.atomic
    def reserve(self, requested_by, data: WithdrawalInput) -> WithdrawalRequest:
        wallet = lock_wallet(data.owner_type, data.owner_id)
        if requested_by is not None and _wallet_user_id(data.owner_type, wallet) != requested_by.pk:
            raise SettlementValidationError("You can only withdraw from your own balance")

        deduction = deduction_for(data.owner_type, data.amount, self.config)
        balance = debit_wallet(data.owner_type, data.owner_id, deduction)

        owner_fields = {
            OWNER_SELLER: {"shop": wallet},
            OWNER_ORGANIZER: {"organizer": wallet},
            OWNER_EVENT: {"event": wallet},
        }[data.owner_type]
        request = WithdrawalRequest.objects.create(
            requested_by=requested_by,
            amount=data.amount,
            deducted_amount=deduction,
            phone_number=data.phone_number,
            account_name=data.account_name,
            status=WithdrawalRequest.Status.PROCESSING,
            **owner_fields,
        )
        logger.info(
            "Withdrawal %s reserved owner=%s:%s amount=%s deducted=%s balance=%s",
            request.pk,
            data.owner_type,
            data.owner_id,
            data.amount,
            deduction,
            balance,
        )
        return request

    def create_withdrawal_request(self, requested_by, owner_type, owner_id, amount, phone_number, account_name):
        """Validate and reserve, then hand the provider call to the worker once committed."""
        from payment.tasks import execute_withdrawal

        data = self.validate(owner_type, owner_id, amount, phone_number, account_name)
        with transaction.atomic():
            request = self.reserve(requested_by, data)
            request_id = str(request.pk)
            transaction.on_commit(lambda: execute_withdrawal.delay(request_id))
        return request

    # -----------------------------
    # Phase 3: execute
    # -----------------------------
    def execute(self, request_id) -> WithdrawalRequest:
        request = WithdrawalRequest.objects.select_related(
            "shop__owner", "organizer__user", "event__organizer__user"
        ).get(pk=request_id)
        if request.status != WithdrawalRequest.Status.PROCESSING or request.provider_reference:
            logger.info("Withdrawal %s already executed (status=%s)", request.pk, request.status)
            return request

        narration = f"Withdrawal for {request.account_name}"
        try:
            provider = self.provider_for(request)
            result = provider.initiate(request.phone_number, request.amount, narration)
        except PayoutProviderError as exc:
            logger.error("Payout provider failed for withdrawal %s: %s", request.pk, exc)
            return self.fail_and_refund(request.pk, str(exc), detail=exc.detail)
        except Exception as exc:
            logger.exception("Unexpected payout failure for withdrawal %s", request.pk)
            return self.fail_and_refund(request.pk, f"{type(exc).__name__}: {exc}")

        with transaction.atomic():
            locked = WithdrawalRequest.objects.select_for_update().get(pk=request.pk)
            locked.provider = provider.code
            locked.provider_reference = result.provider_reference
            locked.raw_response = result.raw_response
            locked.save(update_fields=["provider", "provider_reference", "raw_response", "updated_at"])
        if result.provider_reference:
            logger.info("Withdrawal %s accepted by %s ref=%s", request.pk, provider.code, result.provider_reference)
        else:
            logger.warning("Withdrawal %s accepted by %s without a reference", request.pk, provider.code)

        if result.status == STATUS_COMPLETED:
            return self.mark_completed(request.pk, payload=result.raw_response)

        queue_notification(
            _owner_user(request), "withdrawal_processing", NotificationTemplates.withdrawal_processing(request)
        )
        request.refresh_from_db()
        return request

    def fail_and_refund(self, request_id, error: str, detail: Optional[Dict[str, Any]] = None) -> WithdrawalRequest:
        """Compensating transaction: credit back the deducted amount and mark the request failed."""
        try:
            with transaction.atomic():
                request = (
                    WithdrawalRequest.objects.select_for_update()
                    .select_related("shop__owner", "organizer__user", "event__organizer__user")
                    .get(pk=request_id)
                )
                if request.status != WithdrawalRequest.Status.PROCESSING:
                    logger.info("Withdrawal %s is already %s; no refund", request.pk, request.status)
                    return request

                new_balance = credit_wallet(request.owner_type, request.owner_id, request.deducted_amount)
                metadata = dict(request.metadata or {})
                metadata["api_error"] = error
                if detail:
                    metadata["api_error_detail"] = detail
                request.status = WithdrawalRequest.Status.FAILED
                request.metadata = metadata
                request.processed_at = timezone.now()
                request.save(update_fields=["status", "metadata", "processed_at", "updated_at"])
                queue_notification(
                    _owner_user(request),
                    "withdrawal_failed",
                    NotificationTemplates.withdrawal_failed(request, new_balance),
                )
        except Exception as exc:
            logger.critical(
                "Refund failed for withdrawal %s; manual intervention required: %s", request_id, exc, exc_info=True
            )
            raise CompensationFailedError(f"Refund failed for withdrawal {request_id}") from exc

        logger.info("Withdrawal %s failed; refunded %s, balance now %s", request.pk, request.deducted_amount, new_balance)
        return request

    def mark_completed(self, request_id, payload: Optional[Dict[str, Any]] = None) -> WithdrawalRequest:
        with transaction.atomic():
            request = (
                WithdrawalRequest.objects.select_for_update()
                .select_related("shop__owner", "organizer__user", "event__organizer__user")
                .get(pk=request_id)
            )
            if request.status != WithdrawalRequest.Status.PROCESSING:
                return request
            metadata = dict(request.metadata or {})
            if payload:
                metadata["provider_result"] = payload
            metadata.pop("reconciliation_flag", None)
            request.status = WithdrawalRequest.Status.COMPLETED
            request.metadata = metadata
            request.processed_at = timezone.now()
            request.save(update_fields=["status", "metadata", "processed_at", "updated_at"])
            queue_notification(
                _owner_user(request), "withdrawal_completed", NotificationTemplates.withdrawal_completed(request)
            )
        logger.info("Withdrawal %s completed", request.pk)
        return request

    # -----------------------------
    # Provider callbacks and reconciliation
    # -----------------------------
    def apply_provider_callback(self, reference: str, raw_status, payload: Optional[Dict[str, Any]] = None):
        request = WithdrawalRequest.objects.filter(provider_reference=reference).first()
        if request is None:
            logger.warning("Payout callback for unknown reference %s", reference)
            return None

        status = map_provider_status(raw_status)
        if status == STATUS_COMPLETED:
            return self.mark_completed(request.pk, payload=payload)
        if status == STATUS_FAILED:
            return self.fail_and_refund(request.pk, f"Provider reported {raw_status}", detail=payload)
        logger.info("Payout callback for %s left withdrawal %s processing (status=%s)", reference, request.pk, raw_status)
        return request

    @staticmethod
    def _flag(request_id, reason: str) -> bool:
        with transaction.atomic():
            request = WithdrawalRequest.objects.select_for_update().get(pk=request_id)
            metadata = dict(request.metadata or {})
            if metadata.get("reconciliation_flag"):
                return False
            metadata["reconciliation_flag"] = FLAG_MANUAL_REVIEW
            metadata["reconciliation_reason"] = reason
            request.metadata = metadata
            request.save(update_fields=["metadata", "updated_at"])
        logger.warning("Withdrawal %s flagged for manual review: %s", request_id, reason)
        return True

    def reconcile_stuck_withdrawals(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or timezone.now()
        result = ReconcileResult()
        stuck = WithdrawalRequest.objects.filter(
            status=WithdrawalRequest.Status.PROCESSING,
            created_at__lt=now - self.config.withdrawal_stuck_after,
            created_at__gt=now - self.config.withdrawal_reconcile_ceiling,
        ).order_by("created_at")

        for request in stuck:
            result.checked += 1
            try:
                if not request.provider_reference:
                    self._flag(request.pk, "no_provider_reference")
                    result.flagged += 1
                    continue

                provider = self.provider_for(request)
                if not provider.supports_status_check:
                    self._flag(request.pk, "status_check_unsupported")
                    result.flagged += 1
                    continue

                try:
                    raw_status = provider.check_status(request.provider_reference)
                except PayoutProviderError:
                    logger.exception("Status check failed for withdrawal %s", request.pk)
                    result.pending += 1
                    continue

                status = map_provider_status(raw_status)
                if status == STATUS_COMPLETED:
                    self.mark_completed(request.pk, payload={"status": raw_status, "source": "reconciliation"})
                    result.completed += 1
                elif status == STATUS_FAILED:
                    self.fail_and_refund(request.pk, f"Provider reported {raw_status}")
                    result.failed += 1
                else:
                    result.pending += 1
            except Exception:
                logger.exception("Reconciliation failed for withdrawal %s", request.pk)

        logger.info(
            "Withdrawal reconciliation checked=%s completed=%s failed=%s flagged=%s pending=%s",
            result.checked,
            result.completed,
            result.failed,
            result.flagged,
            result.pending,
        )
        return result
