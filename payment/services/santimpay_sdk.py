import time
from typing import Any, Dict

import jwt
import requests


PRODUCTION_BASE_URL = "https://services.santimpay.com/api/v1/gateway"
TEST_BASE_URL = "https://testnet.santimpay.com/api/v1/gateway"


class SantimpayError(Exception):
    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body if body is not None else {}


class SantimpaySDK:
    """Payout (B2C) and status endpoints of the SantimPay gateway."""

    def __init__(self, merchant_id: str, private_key: str, test_bed: bool = False, timeout: int = 30) -> None:
        self.private_key = private_key
        self.merchant_id = merchant_id
        self.base_url = TEST_BASE_URL if test_bed else PRODUCTION_BASE_URL
        self.timeout = timeout

    def _sign_es256(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(payload, self.private_key, algorithm="ES256")

    def generate_signed_token_for_payout(
        self, amount: float, payment_reason: str, payment_method: str, phone_number: str
    ) -> str:
        payload = {
            "amount": amount,
            "paymentReason": payment_reason,
            "paymentMethod": payment_method,
            "phoneNumber": phone_number,
            "merchantId": self.merchant_id,
            "generated": int(time.time()),
        }
        return self._sign_es256(payload)

    def generate_signed_token_for_get_transaction(self, tx_id: str) -> str:
        payload = {
            "id": tx_id,
            # Gateway validators disagree on the key name; send both.
            "merId": self.merchant_id,
            "merchantId": self.merchant_id,
            "generated": int(time.time()),
        }
        return self._sign_es256(payload)

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = requests.post(f"{self.base_url}/{endpoint}", json=payload, timeout=self.timeout)
        if not response.ok:
            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text}
            raise SantimpayError(
                f"SantimPay {endpoint} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        return response.json()

    def send_to_customer(
        self,
        tx_id: str,
        amount: float,
        payment_reason: str,
        phone_number: str,
        payment_method: str,
        notify_url: str,
    ) -> Dict[str, Any]:
        token = self.generate_signed_token_for_payout(
            amount, payment_reason, payment_method, phone_number
        )
        payload = {
            "id": tx_id,
            "clientReference": tx_id,
            "amount": amount,
            "reason": payment_reason,
            "merchantId": self.merchant_id,
            "signedToken": token,
            "receiverAccountNumber": phone_number,
            "notifyUrl": notify_url,
            "paymentMethod": payment_method,
        }
        return self._post("payout-transfer", payload)

    def check_transaction_status(self, tx_id: str) -> Dict[str, Any]:
        token = self.generate_signed_token_for_get_transaction(tx_id)
        payload = {
            "id": tx_id,
            "merchantId": self.merchant_id,
            "signedToken": token,
        }
        return self._post("fetch-transaction-status", payload)
