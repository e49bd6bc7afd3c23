from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from order.models import Order
from payment.markers import EscrowMarker
from payment.models import Payout
from shop.models import Shop

from .errors import EscrowError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowReleaseResult:
    success: bool
    already_released: bool = False
    amount: Decimal = Decimal("0.00")


class EscrowService:
    """Credits a seller wallet once per order. Always runs inside the caller's transaction."""

    def release_funds(self, order: Order, source: str = "system") -> EscrowReleaseResult:
        if not transaction.get_connection().in_atomic_block:
            raise EscrowError("Escrow release must run inside an open transaction")

        locked = Order.objects.select_for_update().get(pk=order.pk)
        if locked.payment_completed_at is None:
            raise EscrowError(f"Order {locked.order_number} has no confirmed payment; escrow not released")
        if EscrowMarker.from_metadata(locked.metadata).processed:
            logger.info("Escrow already released for order=%s", locked.order_number)
            return EscrowReleaseResult(success=True, already_released=True)

        now = timezone.now()
        payout_amount = locked.seller_payout_amount
        Shop.objects.filter(pk=locked.shop_id).update(
            balance=F("balance") + payout_amount,
            net_revenue=F("net_revenue") + payout_amount,
            total_sales=F("total_sales") + locked.total_amount,
            updated_at=now,
        )

        payout = Payout.objects.select_for_update().filter(order=locked).first()
        if payout:
            metadata = dict(payout.metadata or {})
            metadata["processed_by"] = source
            payout.status = Payout.Status.COMPLETED
            payout.amount = payout_amount
            payout.platform_fee = locked.platform_fee_amount
            payout.processed_at = now
            payout.completed_at = now
            payout.metadata = metadata
            payout.save(update_fields=[
                "status", "amount", "platform_fee", "processed_at", "completed_at", "metadata", "updated_at",
            ])
        else:
            Payout.objects.create(
                order=locked,
                shop_id=locked.shop_id,
                amount=payout_amount,
                platform_fee=locked.platform_fee_amount,
                status=Payout.Status.COMPLETED,
                payment_method="wallet_credit",
                processed_at=now,
                completed_at=now,
                metadata={"processed_by": source, "auto_created": True},
            )

        locked.metadata = EscrowMarker(processed=True).apply(locked.metadata)
        locked.save(update_fields=["metadata", "updated_at"])
        # Keep the caller's instance in step so a later save cannot drop the marker.
        order.metadata = locked.metadata

        logger.info(
            "Escrow released order=%s shop=%s amount=%s source=%s",
            locked.order_number,
            locked.shop_id,
            payout_amount,
            source,
        )
        return EscrowReleaseResult(success=True, amount=payout_amount)
