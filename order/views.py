from django.db.models import Q
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from payment.services.errors import SettlementValidationError

from .models import Order
from .serializers import OrderCancelSerializer, OrderSerializer, OrderStatusUpdateSerializer
from .services import OrderService
from .state_machine import InvalidTransitionError


def _run_transition(action):
    """Call an order service entry point and map its failures to responses."""
    try:
        order = action()
    except Order.DoesNotExist:
        return Response({"detail": "Order not found"}, status=status.HTTP_404_NOT_FOUND)
    except InvalidTransitionError as e:
        return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
    except SettlementValidationError as e:
        return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
    order.refresh_from_db()
    return Response(OrderSerializer(order).data, status=status.HTTP_200_OK)


class ListOrdersView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        orders = (
            Order.objects.filter(Q(buyer=request.user) | Q(shop__owner=request.user))
            .prefetch_related("items")
            .order_by("-created_at")
        )
        return Response(OrderSerializer(orders, many=True).data)


class OrderStatusUpdateView(APIView):
    """Seller-driven status change."""

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        if not Order.objects.filter(pk=pk, shop__owner=request.user).exists():
            return Response({"detail": "Order not found"}, status=status.HTTP_404_NOT_FOUND)
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        target = serializer.validated_data["status"]
        return _run_transition(lambda: OrderService.update_status(pk, target, actor="seller"))


class OrderCollectedView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        return _run_transition(lambda: OrderService.mark_as_collected(pk, request.user))


class OrderConfirmReceiptView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        return _run_transition(lambda: OrderService.confirm_receipt(pk, request.user))


class OrderCancelView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        order = Order.objects.filter(pk=pk).select_related("shop").first()
        if order is None or request.user.pk not in (order.buyer_id, order.shop.owner_id):
            return Response({"detail": "Order not found"}, status=status.HTTP_404_NOT_FOUND)
        serializer = OrderCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        actor = "buyer" if request.user.pk == order.buyer_id else "seller"
        reason = serializer.validated_data["reason"] or f"Cancelled by {actor}"
        return _run_transition(lambda: OrderService.cancel_order(pk, reason=reason, actor=actor))
