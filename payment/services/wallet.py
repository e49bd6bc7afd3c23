from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from django.apps import apps
from django.db import transaction
from django.db.models import F

from core.config import SettlementConfig, get_settlement_config
from core.money import money

from .errors import InsufficientBalanceError, SettlementValidationError

logger = logging.getLogger(__name__)

OWNER_SELLER = "seller"
OWNER_ORGANIZER = "organizer"
OWNER_EVENT = "event"

_WALLET_MODELS = {
    OWNER_SELLER: "shop.Shop",
    OWNER_ORGANIZER: "event.Organizer",
    OWNER_EVENT: "event.Event",
}


def wallet_model(owner_type: str):
    try:
        return apps.get_model(_WALLET_MODELS[owner_type])
    except KeyError:
        raise SettlementValidationError(f"Unsupported wallet owner type '{owner_type}'") from None


def lock_wallet(owner_type: str, owner_id):
    """Fetch the wallet owner row under FOR UPDATE. Caller owns the transaction."""
    model = wallet_model(owner_type)
    wallet = model.objects.select_for_update().filter(pk=owner_id).first()
    if wallet is None:
        raise SettlementValidationError(f"{owner_type} {owner_id} not found")
    return wallet


def deduction_for(owner_type: str, amount: Decimal, config: Optional[SettlementConfig] = None) -> Decimal:
    """
    Amount taken from the wallet for a withdrawal of ``amount``.

    Event balances hold gross ticket revenue, so their deduction is grossed
    up to leave room for the platform fee taken downstream.
    """
    config = config or get_settlement_config()
    if owner_type == OWNER_EVENT:
        return money(amount / (Decimal("1") - config.event_withdrawal_fee_rate))
    return money(amount)


@transaction.atomic
def debit_wallet(owner_type: str, owner_id, amount: Decimal) -> Decimal:
    wallet = lock_wallet(owner_type, owner_id)
    amount = money(amount)
    if wallet.balance < amount:
        raise InsufficientBalanceError(
            f"Insufficient balance: available {wallet.balance}, required {amount}"
        )
    type(wallet).objects.filter(pk=wallet.pk).update(balance=F("balance") - amount)
    wallet.refresh_from_db(fields=["balance"])
    logger.info("Wallet debited owner=%s:%s amount=%s balance=%s", owner_type, owner_id, amount, wallet.balance)
    return wallet.balance


@transaction.atomic
def credit_wallet(owner_type: str, owner_id, amount: Decimal) -> Decimal:
    wallet = lock_wallet(owner_type, owner_id)
    amount = money(amount)
    type(wallet).objects.filter(pk=wallet.pk).update(balance=F("balance") + amount)
    wallet.refresh_from_db(fields=["balance"])
    logger.info("Wallet credited owner=%s:%s amount=%s balance=%s", owner_type, owner_id, amount, wallet.balance)
    return wallet.balance
