"""Order status transitions and payment-driven status resolution."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from catalog.models import Product
from catalog.services import catalog_product_type
from payment.services.errors import SettlementValidationError

from .models import Order, OrderItem

Status = Order.Status

TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    Status.PENDING: frozenset({
        Status.DELIVERY_PENDING,
        Status.COLLECTION_PENDING,
        Status.SERVICE_PENDING,
        Status.CANCELLED,
    }),
    Status.SERVICE_PENDING: frozenset({Status.CONFIRMED, Status.CANCELLED}),
    Status.DELIVERY_PENDING: frozenset({Status.DELIVERY_COMPLETE, Status.CANCELLED}),
    Status.COLLECTION_PENDING: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.DELIVERY_COMPLETE: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.CONFIRMED: frozenset({Status.COMPLETED, Status.CANCELLED}),
}

TERMINAL_STATUSES: FrozenSet[str] = frozenset({Status.COMPLETED, Status.CANCELLED, Status.FAILED})

# Statuses an order may hold when a payment confirmation arrives.
PAYABLE_STATUSES: FrozenSet[str] = frozenset({Status.PENDING, Status.SERVICE_PENDING})


class InvalidTransitionError(SettlementValidationError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition from {current} to {target}")
        self.current = current
        self.target = target


class OrderNotPaidError(InvalidTransitionError):
    def __init__(self, current: str, target: str):
        super().__init__(current, target)
        self.args = (f"Order must be paid before moving from {current} to {target}",)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


@dataclass(frozen=True)
class ItemComposition:
    has_physical: bool = False
    has_service: bool = False
    has_other: bool = False

    @property
    def is_service_only(self) -> bool:
        return self.has_service and not self.has_physical and not self.has_other


def _item_product_type(item: OrderItem) -> Optional[str]:
    resolved = catalog_product_type(item.product)
    if resolved:
        return resolved
    if item.product_id is None and item.product_type:
        # Product row deleted since purchase; the snapshot is all that remains.
        return item.product_type
    return None


def classify_items(items: Iterable[OrderItem], order_metadata: Optional[Dict[str, Any]] = None) -> ItemComposition:
    """
    Classify line items by current catalog data.

    Precedence per item: catalog product type field, service inferred from
    service options, digital flag. When no item is physical or service the
    order metadata ``product_type`` is consulted, and anything still
    unresolved counts as digital/other.
    """
    has_physical = has_service = has_other = False
    for item in items:
        product_type = _item_product_type(item)
        if product_type == Product.ProductType.PHYSICAL:
            has_physical = True
        elif product_type == Product.ProductType.SERVICE:
            has_service = True
        else:
            has_other = True

    if not has_physical and not has_service:
        fallback = (order_metadata or {}).get("product_type")
        if fallback == Product.ProductType.PHYSICAL:
            has_physical = True
        elif fallback == Product.ProductType.SERVICE:
            has_service = True

    return ItemComposition(has_physical=has_physical, has_service=has_service, has_other=has_other)


def initial_status(composition: ItemComposition) -> str:
    if composition.is_service_only:
        return Status.SERVICE_PENDING
    return Status.PENDING


def resolve_post_payment_status(composition: ItemComposition, seller_has_pickup: bool) -> str:
    if composition.has_physical:
        return Status.COLLECTION_PENDING if seller_has_pickup else Status.DELIVERY_PENDING
    if composition.has_service:
        return Status.SERVICE_PENDING
    return Status.COMPLETED
