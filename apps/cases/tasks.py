"""
Periodic case work (celery beat)
"""

import logging

from celery import shared_task
from django.apps import apps

from apps.core.exceptions import TransientStorageError

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def dispatch_due_reminders(self):
    """Deliver every due follow-up reminder to the ASHA worker channel, once"""
    config = apps.get_app_config('cases')
    if config.notifier is None:
        logger.info("Reminder scan skipped: no notification gateway configured")
        return {'sent': 0, 'failed': 0}
    try:
        report = config.engine.dispatch_due_reminders(config.notifier)
    except TransientStorageError as exc:
        raise self.retry(exc=exc)
    return {'sent': len(report.sent), 'failed': len(report.failed)}
