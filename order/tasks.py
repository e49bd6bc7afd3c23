import logging

from core.celery import app as celery_app

from .deadlines import OrderDeadlineService

logger = logging.getLogger(__name__)


@celery_app.task(queue="settlement")
def run_deadline_checks():
    results = OrderDeadlineService().run_all_checks()
    summary = {name: {"processed": r.processed, "failed": r.failed} for name, r in results.items()}
    logger.info("Deadline checks finished: %s", summary)
    return summary
