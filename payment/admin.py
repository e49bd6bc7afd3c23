from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from .models import Payment, Payout, WebhookLog, WithdrawalRequest
from .services.errors import SettlementError
from .services.withdrawal import WithdrawalService


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
	list_display = ("id", "invoice_id", "order", "user", "amount", "status", "provider", "provider_reference", "created_at")
	list_filter = ("status", "provider")
	search_fields = ("invoice_id", "provider_reference", "order__order_number", "user__email")


@admin.register(Payout)
class PayoutAdmin(admin.ModelAdmin):
	list_display = ("id", "order", "shop", "amount", "platform_fee", "status", "completed_at")
	list_filter = ("status",)
	search_fields = ("order__order_number", "shop__name")


@admin.register(WithdrawalRequest)
class WithdrawalRequestAdmin(admin.ModelAdmin):
	list_display = ("id", "owner_type", "amount", "deducted_amount", "phone_number", "status", "provider_reference", "created_at")
	list_filter = ("status", "provider")
	search_fields = ("provider_reference", "phone_number", "account_name", "requested_by__email")
	actions = ("mark_completed", "fail_and_refund")

	def mark_completed(self, request, queryset):
		"""Resolve flagged withdrawals the provider confirmed out of band."""
		service = WithdrawalService()
		done = 0
		for withdrawal in queryset.filter(status=WithdrawalRequest.Status.PROCESSING):
			service.mark_completed(withdrawal.pk, payload={"resolved_by": request.user.email})
			done += 1
		self.message_user(request, _("%d withdrawals marked as completed.") % done, messages.SUCCESS)

	mark_completed.short_description = "Mark selected withdrawals completed"

	def fail_and_refund(self, request, queryset):
		service = WithdrawalService()
		succeeded = 0
		failed = 0
		for withdrawal in queryset.filter(status=WithdrawalRequest.Status.PROCESSING):
			try:
				service.fail_and_refund(withdrawal.pk, f"Failed manually by {request.user.email}")
				succeeded += 1
			except SettlementError as exc:
				failed += 1
				self.message_user(request, _("Failed to refund withdrawal %(id)s: %(err)s") % {"id": withdrawal.id, "err": str(exc)}, messages.ERROR)

		self.message_user(request, _("Withdrawals refunded: %(ok)d, failed: %(bad)d") % {"ok": succeeded, "bad": failed}, messages.INFO)

	fail_and_refund.short_description = "Fail selected withdrawals and refund the wallet"


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
	list_display = ("id", "provider", "event_type", "reference", "processed", "created_at")
	list_filter = ("provider", "processed")
