import logging

from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver

from order.models import Order
from payment.models import Payout

logger = logging.getLogger(__name__)


@receiver(pre_save, sender=Order)
def _cache_previous_order_status(sender, instance: Order, **kwargs):
    if not instance.pk:
        instance._payment_previous_status = None
        return
    instance._payment_previous_status = (
        Order.objects.filter(pk=instance.pk).values_list("status", flat=True).first()
    )


@receiver(post_save, sender=Order)
def _create_pending_payout_on_completion(sender, instance: Order, **kwargs):
    """Pre-create the settlement row escrow release finalizes."""
    previous = getattr(instance, "_payment_previous_status", None)
    if previous == instance.status or instance.status != Order.Status.COMPLETED:
        return

    payout, created = Payout.objects.get_or_create(
        order=instance,
        defaults={
            "shop_id": instance.shop_id,
            "amount": instance.seller_payout_amount,
            "platform_fee": instance.platform_fee_amount,
            "status": Payout.Status.PENDING,
        },
    )
    if created:
        logger.info("Pending payout created for order=%s amount=%s", instance.order_number, payout.amount)
