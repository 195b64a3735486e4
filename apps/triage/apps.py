from django.apps import AppConfig, apps
from django.conf import settings


class TriageConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.triage'
    label = 'triage'
    verbose_name = 'Triage'

    orchestrator = None

    def ready(self):
        from apps.conversations.stores import DjangoSessionStore
        from apps.triage.ml_models import build_default_extractor
        from apps.triage.services.triage_orchestrator import TriageOrchestrator
        from apps.triage.tools.intake_queue import IntakeQueue
        from apps.triage.tools.red_flag_detection import RedFlagDetectionTool
        from apps.triage.tools.symptom_accumulator import SymptomAccumulator
        from apps.triage.tools.triage_classifier import TriageClassifier

        options = settings.ASHACARE
        cases = apps.get_app_config('cases')
        red_flags = RedFlagDetectionTool()

        accumulator = SymptomAccumulator(
            store=DjangoSessionStore(),
            extractor=build_default_extractor(token=options.get('HF_TOKEN'), model=options['HF_MODEL']),
            red_flags=red_flags,
            session_timeout_seconds=options['SESSION_TIMEOUT_SECONDS'],
            ack_budget_seconds=options['ACK_BUDGET_SECONDS'],
            retry_attempts=options['EXTRACTION_RETRY_ATTEMPTS'],
            retry_base_delay=options['RETRY_BASE_DELAY_SECONDS'],
        )
        classifier = TriageClassifier(
            red_flags=red_flags,
            confidence_threshold=options['CLASSIFIER_CONFIDENCE_THRESHOLD'],
        )

        self.orchestrator = TriageOrchestrator(
            accumulator=accumulator,
            classifier=classifier,
            engine=cases.engine,
            queue=IntakeQueue(options['INTAKE_CAPACITY'], options['INTAKE_MAX_PENDING']),
            notifier=cases.notifier,
            assessment_budget_seconds=options['ASSESSMENT_BUDGET_SECONDS'],
        )
