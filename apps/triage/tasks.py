"""
Periodic triage work (celery beat)
"""

import logging

from celery import shared_task
from django.apps import apps

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def expire_stale_sessions(self):
    """Expire silent intake sessions and escalate their partial data to manual review"""
    orchestrator = apps.get_app_config('triage').orchestrator
    expired = orchestrator.expire_stale_sessions()
    return [s.session_id for s in expired]
