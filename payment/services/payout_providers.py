from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import jwt
import requests
from django.conf import settings

from .errors import PayoutProviderError, SettlementValidationError
from .santimpay_sdk import SantimpayError, SantimpaySDK

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"

SUCCESS_CODES = {"SUCCESS", "SUCCESSFUL", "COMPLETED", "COMPLETE", "PAID", "0"}
FAILURE_CODES = {"FAILED", "FAILURE", "REJECTED", "DECLINED", "CANCELLED", "ERROR", "REVERSED"}


def _get_setting(key: str, default: Any = "") -> Any:
    value = getattr(settings, key, None)
    if value is None or value == "":
        value = os.getenv(key, default)
    return value


def map_provider_status(raw_status: Any) -> str:
    code = str(raw_status if raw_status is not None else "").strip().upper()
    if code in SUCCESS_CODES:
        return STATUS_COMPLETED
    if code in FAILURE_CODES:
        return STATUS_FAILED
    return STATUS_PENDING


def extract_provider_status(data: Dict[str, Any]) -> str:
    candidates = [
        data.get("status"),
        data.get("transactionStatus"),
        data.get("result_code"),
    ]
    nested = data.get("data")
    if isinstance(nested, dict):
        candidates.extend([nested.get("status"), nested.get("transactionStatus")])
    for value in candidates:
        if value is not None and str(value) != "":
            return str(value).upper()
    return "UNKNOWN"


def normalize_phone_number(raw: Any, country_code: Optional[str] = None) -> str:
    """
    Normalize a mobile number to ``<country code><9 digits>``.

    Accepts local (``0712345678``), bare (``712345678``), and international
    (``254712345678``, ``+254 712 345 678``) forms.
    """
    country_code = str(country_code or _get_setting("PAYOUT_COUNTRY_CODE", "254"))
    digits = re.sub(r"\D", "", str(raw or ""))
    if digits.startswith(country_code) and len(digits) == len(country_code) + 9:
        local = digits[len(country_code):]
    elif digits.startswith("0") and len(digits) == 10:
        local = digits[1:]
    else:
        local = digits
    if len(local) != 9 or local[0] == "0":
        raise SettlementValidationError(f"Invalid mobile number '{raw}'")
    return f"{country_code}{local}"


def to_local_phone(normalized: str, country_code: Optional[str] = None) -> str:
    country_code = str(country_code or _get_setting("PAYOUT_COUNTRY_CODE", "254"))
    if normalized.startswith(country_code):
        return f"0{normalized[len(country_code):]}"
    return normalized


@dataclass(frozen=True)
class PayoutResult:
    provider_reference: Optional[str]
    status: str = STATUS_PENDING
    raw_response: Dict[str, Any] = field(default_factory=dict)


class BasePayoutProvider:
    code = "base"
    supports_status_check = False

    def initiate(self, phone_number: str, amount: Decimal, narration: str) -> PayoutResult:
        raise NotImplementedError

    def check_status(self, provider_reference: str) -> str:
        raise PayoutProviderError(f"{self.code} does not support payout status queries")


class PaydPayoutProvider(BasePayoutProvider):
    """M-Pesa withdrawals through Payd. Results arrive by callback."""

    code = "payd"

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.username = username or _get_setting("PAYD_USERNAME")
        self.password = password or _get_setting("PAYD_PASSWORD")
        self.base_url = (base_url or _get_setting("PAYD_BASE_URL", "https://api.mypayd.app/api/v2")).rstrip("/")
        self.callback_url = callback_url or _get_setting("PAYOUT_CALLBACK_URL")
        self.timeout = int(timeout or _get_setting("PAYOUT_TIMEOUT_SECONDS", 30))

    def initiate(self, phone_number: str, amount: Decimal, narration: str) -> PayoutResult:
        if not self.username or not self.password:
            raise PayoutProviderError("Payd credentials are not configured")

        payload = {
            "phone_number": to_local_phone(phone_number),
            "amount": float(amount),
            "narration": narration,
            "callback_url": self.callback_url,
            "channel": "MPESA",
            "currency": "KES",
        }
        try:
            response = requests.post(
                f"{self.base_url}/withdrawal",
                json=payload,
                auth=(self.username, self.password),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PayoutProviderError(f"Payd request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"raw": data}
            if response.ok:
                raise PayoutProviderError("Payd returned an unexpected response body", detail=data)

        if not response.ok:
            raise PayoutProviderError(f"Payd returned HTTP {response.status_code}", detail=data)
        if data.get("success") is False or map_provider_status(data.get("status")) == STATUS_FAILED:
            raise PayoutProviderError(data.get("message") or "Payd rejected the withdrawal", detail=data)

        reference = data.get("correlator_id") or data.get("transaction_id") or data.get("reference")
        return PayoutResult(
            provider_reference=str(reference) if reference else None,
            status=map_provider_status(data.get("status")),
            raw_response=data,
        )


class SantimpayPayoutProvider(BasePayoutProvider):
    code = "santimpay"
    supports_status_check = True

    def __init__(self, sdk: Optional[SantimpaySDK] = None, payment_method: Optional[str] = None) -> None:
        if sdk is None:
            test_bed = str(_get_setting("SANTIMPAY_TEST_BED", "true")).lower() in {"1", "true", "yes", "on"}
            sdk = SantimpaySDK(
                merchant_id=_get_setting("SANTIMPAY_MERCHANT_ID"),
                private_key=_get_setting("SANTIMPAY_PRIVATE_KEY"),
                test_bed=test_bed,
                timeout=int(_get_setting("PAYOUT_TIMEOUT_SECONDS", 30)),
            )
        self.sdk = sdk
        self.payment_method = payment_method or _get_setting("SANTIMPAY_PAYOUT_METHOD", "MPESA")
        self.notify_url = _get_setting("PAYOUT_CALLBACK_URL")

    @staticmethod
    def _call(func, **kwargs) -> Dict[str, Any]:
        try:
            data = func(**kwargs)
        except SantimpayError as exc:
            raise PayoutProviderError(str(exc), detail=exc.body) from exc
        except requests.RequestException as exc:
            raise PayoutProviderError(f"SantimPay request failed: {exc}") from exc
        except jwt.PyJWTError as exc:
            raise PayoutProviderError(f"SantimPay signing failed: {exc}") from exc
        if not isinstance(data, dict):
            raise PayoutProviderError("SantimPay returned an unexpected response body", detail={"raw": data})
        return data

    def initiate(self, phone_number: str, amount: Decimal, narration: str) -> PayoutResult:
        if not self.sdk.merchant_id or not self.sdk.private_key:
            raise PayoutProviderError("SantimPay credentials are not configured")
        tx_id = f"WDR-{uuid.uuid4().hex[:20].upper()}"
        data = self._call(
            self.sdk.send_to_customer,
            tx_id=tx_id,
            amount=float(amount),
            payment_reason=narration,
            phone_number=f"+{phone_number}",
            payment_method=self.payment_method,
            notify_url=self.notify_url,
        )
        status = map_provider_status(extract_provider_status(data))
        if status == STATUS_FAILED:
            raise PayoutProviderError(data.get("message") or "SantimPay rejected the payout", detail=data)
        reference = data.get("id") or data.get("txnId") or tx_id
        return PayoutResult(provider_reference=str(reference), status=status, raw_response=data)

    def check_status(self, provider_reference: str) -> str:
        data = self._call(self.sdk.check_transaction_status, tx_id=provider_reference)
        return extract_provider_status(data)


PROVIDERS = {
    PaydPayoutProvider.code: PaydPayoutProvider,
    SantimpayPayoutProvider.code: SantimpayPayoutProvider,
}


def get_payout_provider(code: Optional[str] = None) -> BasePayoutProvider:
    code = (code or _get_setting("PAYOUT_PROVIDER", "payd")).lower()
    try:
        return PROVIDERS[code]()
    except KeyError:
        raise PayoutProviderError(f"Unknown payout provider '{code}'") from None
