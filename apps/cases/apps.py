import logging

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class CasesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.cases'
    label = 'cases'
    verbose_name = 'Cases'

    # Built once per process in ready(); views and tasks receive them from here
    engine = None
    notifier = None

    def ready(self):
        from apps.cases.services.case_engine import CaseEngine
        from apps.cases.stores import DjangoCaseStore
        from apps.cases.tools.audit_logging import AuditLogTool, DjangoAuditSink
        from apps.cases.tools.notification_dispatch import NotificationDispatchTool

        options = settings.ASHACARE

        self.engine = CaseEngine(
            store=DjangoCaseStore(),
            audit=AuditLogTool(DjangoAuditSink()),
            storage_retry_attempts=options['STORAGE_RETRY_ATTEMPTS'],
            retry_base_delay=options['RETRY_BASE_DELAY_SECONDS'],
        )

        gateways = options.get('CHANNEL_GATEWAYS') or {}
        if gateways:
            self.notifier = NotificationDispatchTool(
                gateways,
                worker_channel=options['WORKER_NOTIFICATION_CHANNEL'],
                api_key=options.get('GATEWAY_API_KEY'),
            )
        else:
            logger.info("No channel gateways configured; notifications disabled")
