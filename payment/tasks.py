import logging

from core.celery import app as celery_app

from .services.confirmation import PaymentConfirmationService
from .services.errors import CompensationFailedError
from .services.withdrawal import WithdrawalService

logger = logging.getLogger(__name__)


@celery_app.task(queue="settlement")
def execute_withdrawal(request_id: str):
    try:
        request = WithdrawalService().execute(request_id)
    except CompensationFailedError:
        # Already logged as critical; the request stays processing for manual handling.
        return None
    return request.status


@celery_app.task(queue="notifications")
def send_payment_confirmation(payment_id: str):
    return PaymentConfirmationService().send(payment_id)


@celery_app.task(queue="notifications")
def retry_pending_confirmations():
    service = PaymentConfirmationService()
    pending = service.pending_confirmations()
    if pending:
        logger.info("Re-queueing %s unsent payment confirmations", len(pending))
    for payment in pending:
        send_payment_confirmation.delay(str(payment.pk))
    return len(pending)


@celery_app.task(queue="settlement")
def reconcile_stuck_withdrawals():
    result = WithdrawalService().reconcile_stuck_withdrawals()
    return {
        "checked": result.checked,
        "completed": result.completed,
        "failed": result.failed,
        "flagged": result.flagged,
        "pending": result.pending,
    }
