from django.urls import path

from .views import PaymentWebhookView, PayoutCallbackView, PayoutHistoryView, WithdrawalListCreateView

urlpatterns = [
    path("webhook/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("payouts/callback/", PayoutCallbackView.as_view(), name="payout-callback"),
    path("payouts/history/", PayoutHistoryView.as_view(), name="payout-history"),
    path("withdrawals/", WithdrawalListCreateView.as_view(), name="withdrawal-list-create"),
]
