from django.urls import path

from .views import (
    ListOrdersView,
    OrderCancelView,
    OrderCollectedView,
    OrderConfirmReceiptView,
    OrderStatusUpdateView,
)

urlpatterns = [
    path('orders/', ListOrdersView.as_view(), name='user-orders'),
    path('<int:pk>/status/', OrderStatusUpdateView.as_view(), name='order-status-update'),
    path('<int:pk>/collected/', OrderCollectedView.as_view(), name='order-collected'),
    path('<int:pk>/confirm-receipt/', OrderConfirmReceiptView.as_view(), name='order-confirm-receipt'),
    path('<int:pk>/cancel/', OrderCancelView.as_view(), name='order-cancel'),
]
