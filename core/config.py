from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.conf import settings


def _get_setting(key: str, default):
    value = getattr(settings, key, None)
    if value is None or value == "":
        value = os.getenv(key, default)
    return value


def _decimal_setting(key: str, default: str) -> Decimal:
    return Decimal(str(_get_setting(key, default)))


def _hours_setting(key: str, default: int) -> timedelta:
    return timedelta(hours=float(_get_setting(key, default)))


@dataclass(frozen=True)
class SettlementConfig:
    """Tunables for fees, withdrawal bounds, deadlines and retry policies."""

    platform_commission_rate: Decimal
    event_withdrawal_fee_rate: Decimal
    min_withdrawal_amount: Decimal
    max_withdrawal_amount: Decimal
    payment_amount_tolerance: Decimal
    seller_dropoff_window: timedelta
    buyer_pickup_window: timedelta
    service_release_window: timedelta
    withdrawal_stuck_after: timedelta
    withdrawal_reconcile_ceiling: timedelta
    notification_max_attempts: int
    notification_retry_delay: float
    ticket_number_max_attempts: int
    order_number_max_attempts: int
    pending_payment_lookback: timedelta

    @classmethod
    def from_settings(cls) -> "SettlementConfig":
        return cls(
            platform_commission_rate=_decimal_setting("PLATFORM_COMMISSION_RATE", "0.10"),
            event_withdrawal_fee_rate=_decimal_setting("EVENT_WITHDRAWAL_FEE_RATE", "0.06"),
            min_withdrawal_amount=_decimal_setting("MIN_WITHDRAWAL_AMOUNT", "10"),
            max_withdrawal_amount=_decimal_setting("MAX_WITHDRAWAL_AMOUNT", "150000"),
            payment_amount_tolerance=_decimal_setting("PAYMENT_AMOUNT_TOLERANCE", "0.01"),
            seller_dropoff_window=_hours_setting("SELLER_DROPOFF_WINDOW_HOURS", 48),
            buyer_pickup_window=_hours_setting("BUYER_PICKUP_WINDOW_HOURS", 24),
            service_release_window=_hours_setting("SERVICE_RELEASE_WINDOW_HOURS", 24),
            withdrawal_stuck_after=_hours_setting("WITHDRAWAL_STUCK_AFTER_HOURS", 2),
            withdrawal_reconcile_ceiling=_hours_setting("WITHDRAWAL_RECONCILE_CEILING_HOURS", 48),
            notification_max_attempts=int(_get_setting("NOTIFICATION_MAX_ATTEMPTS", 3)),
            notification_retry_delay=float(_get_setting("NOTIFICATION_RETRY_DELAY_SECONDS", 1)),
            ticket_number_max_attempts=int(_get_setting("TICKET_NUMBER_MAX_ATTEMPTS", 3)),
            order_number_max_attempts=int(_get_setting("ORDER_NUMBER_MAX_ATTEMPTS", 5)),
            pending_payment_lookback=_hours_setting("PENDING_PAYMENT_LOOKBACK_HOURS", 24),
        )


def get_settlement_config() -> SettlementConfig:
    # Built per call so settings overrides are honoured.
    return SettlementConfig.from_settings()
