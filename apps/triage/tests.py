"""
Triage Tests
Symptom accumulation, classification, intake queue and the channel-facing pipeline
"""

from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from types import SimpleNamespace

import pytest
import requests
from django.urls import reverse
from rest_framework import status

from apps.cases.entities import FollowUpAction
from apps.cases.models import CaseRecord
from apps.cases.services.case_engine import CaseEngine
from apps.cases.stores import InMemoryCaseStore
from apps.conversations.models import Conversation
from apps.conversations.sessions import InMemorySessionStore, SessionState
from apps.core.exceptions import (
    CapacityExceeded,
    ExtractionError,
    ExtractionTimeout,
    IncompleteInputError,
    NotificationDeliveryError,
    SessionClosedError,
    SessionExpiredError,
    TransientStorageError,
)
from apps.triage.ml_models import (
    HuggingFaceSymptomExtractor,
    KeywordSymptomExtractor,
    build_default_extractor,
    duration_from_text,
    normalize_severity,
)
from apps.triage.services.triage_orchestrator import QUEUED_STATE, TriageOrchestrator
from apps.triage.symptoms import (
    CONFLICTING_EVIDENCE_KEY,
    RiskLevel,
    Severity,
    Symptom,
    SymptomData,
)
from apps.triage.tasks import expire_stale_sessions
from apps.triage.tools.decision_synthesis import DecisionSynthesisTool
from apps.triage.tools.intake_queue import InboundMessage, IntakeQueue
from apps.triage.tools.red_flag_detection import RedFlagDetectionTool
from apps.triage.tools.risk_classification import ModelScores, RiskModel, WeightedRiskModel
from apps.triage.tools.symptom_accumulator import SymptomAccumulator
from apps.triage.tools.triage_classifier import CONFLICTING_EVIDENCE_FACTOR, TriageClassifier


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=dt_timezone.utc)

SEVERITY_QUESTION = "How bad is the cough: mild, moderate or severe?"
DURATION_QUESTION = "How long have you had the cough? (for example: since today, 3 days, about a week)"


# ============================================================================
# HELPERS
# ============================================================================

class FakeClock:

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TimingOutExtractor:
    """Raises ExtractionTimeout for the first `failures` calls, then extracts by keywords"""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.keywords = KeywordSymptomExtractor()

    def extract(self, text):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExtractionTimeout('model endpoint too slow')
        return self.keywords.extract(text)


class UnreachableExtractor:
    """Model endpoint refuses every connection"""

    def __init__(self):
        self.calls = 0

    def extract(self, text):
        self.calls += 1
        raise requests.exceptions.ConnectionError('connection refused')


class CrashingClassifier(TriageClassifier):
    """Blows up on headaches, the way a broken model deployment would"""

    def classify(self, symptom_data):
        if symptom_data.has_symptom('headache'):
            raise RuntimeError('model weights missing')
        return super().classify(symptom_data)


class FixedScoreModel(RiskModel):
    name = 'fixed-scores'

    def __init__(self, home, phc, emergency):
        self.scores = {
            RiskLevel.HOME_CARE: home,
            RiskLevel.PHC_VISIT: phc,
            RiskLevel.EMERGENCY: emergency,
        }
        self.calls = 0

    def score(self, symptom_data):
        self.calls += 1
        return ModelScores(scores=dict(self.scores), features=('symptom:cough',), model_name=self.name)


class SpyClassifier(TriageClassifier):

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.classified = []

    def classify(self, symptom_data):
        self.classified.append(symptom_data)
        return super().classify(symptom_data)


class RecordingNotifier:
    worker_channel = 'dashboard'

    def __init__(self, fail=False):
        self.fail = fail
        self.assessments = []
        self.alerts = []
        self.replies = []

    def _deliver(self, channel):
        if self.fail:
            raise NotificationDeliveryError(f"{channel} gateway returned HTTP 503")

    def send_assessment(self, session_id, channel, assessment, recommendations, case_id=None):
        self._deliver(channel)
        self.assessments.append((session_id, case_id, assessment.risk_level))

    def send_reply(self, session_id, channel, text):
        self._deliver(channel)
        self.replies.append((session_id, text))

    def alert_worker(self, case):
        self._deliver(self.worker_channel)
        self.alerts.append(case.case_id)


class BusyNotifier(RecordingNotifier):
    """Delivers more messages while the first assessment is still holding its intake slot"""

    def __init__(self, arrivals):
        super().__init__()
        self.arrivals = list(arrivals)
        self.orchestrator = None
        self.arrival_replies = []

    def send_assessment(self, session_id, channel, assessment, recommendations, case_id=None):
        super().send_assessment(session_id, channel, assessment, recommendations, case_id=case_id)
        while self.arrivals:
            self.arrival_replies.append(self.orchestrator.handle(self.arrivals.pop(0)))


def make_accumulator(extractor=None, clock=None, **kwargs):
    kwargs.setdefault('sleep', lambda seconds: None)
    return SymptomAccumulator(
        store=InMemorySessionStore(),
        extractor=extractor or KeywordSymptomExtractor(),
        clock=clock or FakeClock(),
        **kwargs
    )


def make_orchestrator(extractor=None, clock=None, classifier=None, **kwargs):
    clock = clock or FakeClock()
    accumulator = make_accumulator(extractor=extractor, clock=clock)
    engine = CaseEngine(InMemoryCaseStore(), clock=clock, sleep=lambda seconds: None)
    return TriageOrchestrator(
        accumulator=accumulator,
        classifier=classifier or TriageClassifier(clock=clock),
        engine=engine,
        **kwargs
    )


def symptom_data(*names, severity=None, duration=None, characteristics=(), extensions=None, complete=False):
    return SymptomData(
        symptoms=tuple(Symptom(name=n, characteristics=characteristics) for n in names),
        severity=severity,
        duration=duration,
        extensions=extensions or {},
        is_complete=complete,
    )


# ============================================================================
# SYMPTOM EXTRACTION
# ============================================================================

class TestKeywordSymptomExtractor:
    """Test the rule-based extractor used when no model endpoint is configured"""

    def test_extracts_symptom_severity_and_duration(self):
        result = KeywordSymptomExtractor().extract("Mild cough for 2 days")

        assert [s.name for s in result.symptoms] == ['cough']
        assert result.severity is Severity.MILD
        assert result.duration == '1_3_days'

    def test_longest_severity_phrase_wins(self):
        result = KeywordSymptomExtractor().extract("my chest pain is very bad")

        assert result.severity is Severity.SEVERE
        assert result.symptoms[0].name == 'chest pain'
        assert result.symptoms[0].body_part == 'chest'

    def test_characteristics_and_onset(self):
        result = KeywordSymptomExtractor().extract("The headache came on suddenly and is getting worse")

        headache = result.symptoms[0]
        assert headache.name == 'headache'
        assert headache.onset == 'sudden'
        assert headache.characteristics == ('worsening',)

    def test_no_clinical_content(self):
        assert KeywordSymptomExtractor().extract("hello, is anyone there?").is_empty

    @pytest.mark.parametrize('text,bucket', [
        ('since this morning', 'less_than_1_day'),
        ('since yesterday', '1_3_days'),
        ('5 days', '4_7_days'),
        ('about a week', '4_7_days'),
        ('two weeks', 'more_than_1_week'),
        ('three months', 'more_than_1_month'),
        ('a while', None),
    ])
    def test_duration_buckets(self, text, bucket):
        assert duration_from_text(text) == bucket

    def test_slash_answers_keep_the_more_severe_reading(self):
        assert normalize_severity('mild/severe') is Severity.SEVERE
        assert normalize_severity('') is None


class TestHuggingFaceSymptomExtractor:
    """Test the model-backed extractor without calling the endpoint"""

    def test_parses_model_json(self):
        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor._call_llm = lambda text: (
            'Here you go: {"symptoms": [{"name": "chest_pain", "body_part": "chest", '
            '"onset": "sudden", "characteristics": ["crushing"]}], '
            '"severity": "severe", "duration": "today"}'
        )

        result = extractor.extract("my chest hurts")

        assert result.symptoms[0].name == 'chest pain'
        assert result.symptoms[0].characteristics == ('crushing',)
        assert result.severity is Severity.SEVERE
        assert result.duration == 'less_than_1_day'

    def test_unparseable_output_falls_back_to_keywords(self):
        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor._call_llm = lambda text: "Sorry, I cannot help with that."

        result = extractor.extract("I have a bad cough")

        assert [s.name for s in result.symptoms] == ['cough']
        assert result.severity is Severity.MODERATE

    def test_endpoint_timeout_becomes_extraction_timeout(self):
        def slow(**kwargs):
            raise TimeoutError('read timed out')

        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=slow)))

        with pytest.raises(ExtractionTimeout):
            extractor.extract("I have a cough")

    def test_json_that_is_not_an_object_falls_back_to_keywords(self):
        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor._call_llm = lambda text: '["cough"]'

        result = extractor.extract("I have a bad cough")

        assert [s.name for s in result.symptoms] == ['cough']
        assert result.severity is Severity.MODERATE

    def test_malformed_symptom_items_are_skipped(self):
        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor._call_llm = lambda text: (
            '{"symptoms": [42, null, "fever", {"name": "cough", "characteristics": "dry"}], "severity": "mild"}'
        )

        result = extractor.extract("fever and cough")

        assert [s.name for s in result.symptoms] == ['fever', 'cough']
        assert result.symptoms[1].characteristics == ('dry',)
        assert result.severity is Severity.MILD

    def test_unreachable_endpoint_becomes_extraction_error(self):
        def refused(**kwargs):
            raise requests.exceptions.ConnectionError('connection refused')

        extractor = HuggingFaceSymptomExtractor(token='hf_test_token')
        extractor.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=refused)))

        with pytest.raises(ExtractionError) as excinfo:
            extractor.extract("I have a cough")
        assert not isinstance(excinfo.value, ExtractionTimeout)

    def test_keyword_extractor_without_token(self):
        assert isinstance(build_default_extractor(token=''), KeywordSymptomExtractor)


# ============================================================================
# SYMPTOM ACCUMULATOR
# ============================================================================

class TestSymptomAccumulator:
    """Test merging of partial inputs and the clarification loop"""

    def test_one_question_per_missing_field_in_priority_order(self):
        accumulator = make_accumulator()

        first = accumulator.accumulate('s1', "I have a cough")
        assert first.needs_clarification
        assert first.question == SEVERITY_QUESTION
        assert first.symptom_data.pending_clarification == 'severity'
        assert not first.symptom_data.is_complete

        second = accumulator.accumulate('s1', "mild")
        assert second.question == DURATION_QUESTION
        assert second.symptom_data.pending_clarification == 'duration'

        third = accumulator.accumulate('s1', "for 2 days")
        assert not third.needs_clarification
        assert third.question is None
        assert third.state is SessionState.COMPLETE
        assert third.symptom_data.is_complete
        assert third.symptom_data.pending_clarification is None
        assert third.symptom_data.severity is Severity.MILD
        assert third.symptom_data.duration == '1_3_days'

    def test_symptom_identity_is_asked_before_severity(self):
        accumulator = make_accumulator()

        result = accumulator.accumulate('s1', "it is very bad")

        assert result.symptom_data.severity is Severity.SEVERE
        assert result.symptom_data.pending_clarification == 'symptoms'
        assert result.question.startswith("What symptoms are you having?")

    def test_history_records_patient_and_agent_turns(self):
        accumulator = make_accumulator()
        accumulator.accumulate('s1', "I have a cough", user_id='patient-7', channel='sms')

        session = accumulator.get_session('s1')
        assert session.user_id == 'patient-7'
        assert session.channel == 'sms'
        assert session.turn_number == 1
        assert [(t['role'], t['content']) for t in session.history] == [
            ('patient', "I have a cough"),
            ('agent', SEVERITY_QUESTION),
        ]

    def test_user_id_defaults_to_session_id(self):
        accumulator = make_accumulator()
        accumulator.accumulate('wa-9876', "I have a cough")

        assert accumulator.get_session('wa-9876').user_id == 'wa-9876'

    def test_characteristics_are_unioned(self):
        accumulator = make_accumulator()
        accumulator.accumulate('s1', "I have a cough")
        accumulator.accumulate('s1', "the cough is dry and getting worse")
        result = accumulator.accumulate('s1', "it is a persistent cough")

        cough = result.symptom_data.get_symptom('cough')
        assert len(result.symptom_data.symptoms) == 1
        assert set(cough.characteristics) == {'worsening', 'dry', 'persistent'}
        assert cough.characteristics[-1] == 'persistent'

    def test_conflicting_severity_keeps_higher_and_is_flagged(self):
        accumulator = make_accumulator()
        accumulator.accumulate('s1', "bad headache")
        result = accumulator.accumulate('s1', "actually it is mild")

        assert result.symptom_data.severity is Severity.MODERATE
        assert result.symptom_data.has_conflicting_evidence
        assert result.symptom_data.extensions[CONFLICTING_EVIDENCE_KEY] == [
            {'field': 'severity', 'values': ['MODERATE', 'MILD'], 'kept': 'MODERATE'},
        ]

    def test_emergency_pattern_skips_duration(self):
        accumulator = make_accumulator()

        result = accumulator.accumulate('s1', "my chest pain is very bad")

        assert result.state is SessionState.COMPLETE
        assert result.symptom_data.is_complete
        assert result.symptom_data.duration is None

    def test_emergency_pattern_still_needs_severity(self):
        accumulator = make_accumulator()

        first = accumulator.accumulate('s1', "I can't breathe")
        assert first.symptom_data.pending_clarification == 'severity'

        second = accumulator.accumulate('s1', "severe")
        assert second.symptom_data.is_complete

    def test_input_after_completion_is_rejected(self):
        accumulator = make_accumulator()
        accumulator.accumulate('s1', "my chest pain is very bad")

        with pytest.raises(SessionClosedError):
            accumulator.accumulate('s1', "also a cough")

        session = accumulator.get_session('s1')
        assert session.state is SessionState.COMPLETE
        assert [t['content'] for t in session.history if t['role'] == 'patient'] == [
            "my chest pain is very bad", "also a cough",
        ]

    def test_extraction_is_retried_with_backoff(self):
        delays = []
        extractor = TimingOutExtractor(failures=1)
        accumulator = make_accumulator(extractor=extractor, sleep=delays.append)

        result = accumulator.accumulate('s1', "I have a cough")

        assert extractor.calls == 2
        assert delays == [0.5]
        assert result.question == SEVERITY_QUESTION

    def test_failing_extractor_is_retried_and_keeps_raw_input(self):
        delays = []
        extractor = UnreachableExtractor()
        accumulator = make_accumulator(extractor=extractor, sleep=delays.append, retry_attempts=3)

        with pytest.raises(ExtractionError):
            accumulator.accumulate('s1', "I have a cough")

        session = accumulator.get_session('s1')
        assert extractor.calls == 3
        assert delays == [0.5, 1.0]
        assert session.state is SessionState.ACTIVE
        assert [t['content'] for t in session.history] == ["I have a cough"]

    def test_extraction_timeout_keeps_raw_input(self):
        delays = []
        extractor = TimingOutExtractor(failures=10)
        accumulator = make_accumulator(extractor=extractor, sleep=delays.append, retry_attempts=3)

        with pytest.raises(ExtractionTimeout):
            accumulator.accumulate('s1', "I have a cough")

        session = accumulator.get_session('s1')
        assert extractor.calls == 3
        assert delays == [0.5, 1.0]
        assert session.state is SessionState.ACTIVE
        assert session.history == [{
            'role': 'patient',
            'content': "I have a cough",
            'turn': 1,
            'timestamp': T0.isoformat(),
        }]

    def test_slow_extraction_over_ack_budget(self):
        ticks = iter([0.0, 45.0])
        accumulator = make_accumulator(monotonic=lambda: next(ticks), ack_budget_seconds=30)

        with pytest.raises(ExtractionTimeout):
            accumulator.accumulate('s1', "I have a cough")

        assert len(accumulator.get_session('s1').history) == 1

    def test_input_after_timeout_expires_session(self):
        clock = FakeClock()
        expired = []
        accumulator = make_accumulator(clock=clock, on_expired=expired.append)
        accumulator.accumulate('s1', "I have a cough")

        clock.advance(minutes=31)
        with pytest.raises(SessionExpiredError):
            accumulator.accumulate('s1', "mild")

        session = accumulator.get_session('s1')
        assert session.state is SessionState.EXPIRED
        assert session.closed_reason == 'timeout'
        assert [s.session_id for s in expired] == ['s1']
        assert [t['content'] for t in session.history if t['role'] == 'patient'] == ["I have a cough", "mild"]
        assert session.symptom_data.severity is None

    def test_input_within_timeout_continues(self):
        clock = FakeClock()
        accumulator = make_accumulator(clock=clock)
        accumulator.accumulate('s1', "I have a cough")

        clock.advance(minutes=29)
        result = accumulator.accumulate('s1', "mild")

        assert result.state is SessionState.ACTIVE
        assert result.question == DURATION_QUESTION

    def test_expire_stale_only_touches_silent_sessions(self):
        clock = FakeClock()
        accumulator = make_accumulator(clock=clock)
        accumulator.accumulate('quiet', "I have a cough")
        clock.advance(minutes=20)
        accumulator.accumulate('chatty', "I have a fever")
        clock.advance(minutes=15)

        expired = accumulator.expire_stale()

        assert [s.session_id for s in expired] == ['quiet']
        assert accumulator.get_session('quiet').state is SessionState.EXPIRED
        assert accumulator.get_session('chatty').state is SessionState.ACTIVE

    def test_failed_escalation_is_retried_by_the_next_sweep(self):
        clock = FakeClock()
        attempts = []

        def escalate(session):
            attempts.append(session.session_id)
            if attempts.count(session.session_id) == 1 and session.session_id == 'first':
                raise TransientStorageError('database is locked')

        accumulator = make_accumulator(clock=clock, on_expired=escalate)
        accumulator.accumulate('first', "I have a cough")
        accumulator.accumulate('second', "I have a fever")
        clock.advance(minutes=31)

        swept = accumulator.expire_stale()

        assert [s.session_id for s in swept] == ['second']
        assert accumulator.get_session('first').state is SessionState.ACTIVE

        retried = accumulator.expire_stale()

        assert [s.session_id for s in retried] == ['first']
        assert accumulator.get_session('first').state is SessionState.EXPIRED
        assert attempts == ['first', 'second', 'first']


# ============================================================================
# RED FLAGS / CLASSIFIER
# ============================================================================

class TestRedFlagDetectionTool:
    """Test the ordered emergency rule table"""

    @pytest.mark.parametrize('data,rule_name', [
        (symptom_data('unconscious'), 'unconsciousness rule'),
        (symptom_data('shortness of breath'), 'difficulty breathing rule'),
        (symptom_data('chest pain', severity=Severity.SEVERE), 'severe chest pain rule'),
        (symptom_data('bleeding', characteristics=('heavy',)), 'severe bleeding rule'),
        (symptom_data('seizure'), 'convulsions rule'),
        (symptom_data('slurred speech'), 'stroke signs rule'),
    ])
    def test_emergency_patterns(self, data, rule_name):
        assert RedFlagDetectionTool().match(data).name == rule_name

    def test_no_red_flags(self):
        tool = RedFlagDetectionTool()

        assert tool.match(symptom_data('chest pain', severity=Severity.MILD)) is None
        assert tool.match(symptom_data('bleeding', severity=Severity.MODERATE)) is None
        assert tool.match(symptom_data('headache', severity=Severity.SEVERE)) is None

    def test_first_match_wins(self):
        data = symptom_data('difficulty breathing', 'unconsciousness')
        tool = RedFlagDetectionTool()

        assert tool.match(data).name == 'unconsciousness rule'
        assert [r.name for r in tool.detect_all(data)] == ['unconsciousness rule', 'difficulty breathing rule']


class TestTriageClassifier:
    """Test rule stage, model stage and the escalation policy"""

    def test_incomplete_input_is_rejected(self):
        with pytest.raises(IncompleteInputError):
            TriageClassifier().classify(symptom_data('cough', severity=Severity.MILD))

    def test_emergency_rule_overrides_model(self):
        model = FixedScoreModel(home=0.99, phc=0.005, emergency=0.005)
        classifier = TriageClassifier(model=model)

        assessment = classifier.classify(
            symptom_data('chest pain', severity=Severity.SEVERE, complete=True)
        )

        assert assessment.risk_level is RiskLevel.EMERGENCY
        assert assessment.confidence == 1.0
        assert assessment.contributing_factors == ('severe chest pain rule',)
        assert model.calls == 0

    def test_low_confidence_escalates_one_tier(self):
        classifier = TriageClassifier(
            model=FixedScoreModel(home=0.4, phc=0.35, emergency=0.25),
            confidence_threshold=0.6,
        )

        assessment = classifier.classify(
            symptom_data('cough', severity=Severity.MILD, duration='1_3_days', complete=True)
        )

        assert assessment.risk_level is RiskLevel.PHC_VISIT
        assert assessment.model_risk_level is RiskLevel.HOME_CARE
        assert assessment.confidence == 0.4
        assert assessment.escalation.from_level is RiskLevel.HOME_CARE
        assert assessment.escalation.to_level is RiskLevel.PHC_VISIT
        assert assessment.contributing_factors[-1] == assessment.escalation.describe()
        assert not assessment.needs_manual_review

    def test_low_confidence_phc_becomes_emergency(self):
        classifier = TriageClassifier(model=FixedScoreModel(home=0.3, phc=0.45, emergency=0.25))

        assessment = classifier.classify(
            symptom_data('fever', severity=Severity.MODERATE, duration='1_3_days', complete=True)
        )

        assert assessment.risk_level is RiskLevel.EMERGENCY

    def test_emergency_is_a_fixed_point(self):
        classifier = TriageClassifier(model=FixedScoreModel(home=0.25, phc=0.35, emergency=0.4))

        assessment = classifier.classify(
            symptom_data('fever', severity=Severity.SEVERE, duration='1_3_days', complete=True)
        )

        assert assessment.risk_level is RiskLevel.EMERGENCY
        assert assessment.escalation is None

    def test_confident_model_is_kept(self):
        classifier = TriageClassifier(model=FixedScoreModel(home=0.8, phc=0.15, emergency=0.05))

        assessment = classifier.classify(
            symptom_data('cough', severity=Severity.MILD, duration='1_3_days', complete=True)
        )

        assert assessment.risk_level is RiskLevel.HOME_CARE
        assert assessment.escalation is None
        assert assessment.contributing_factors == ('symptom:cough',)

    def test_conflicting_evidence_escalates_and_flags_review(self):
        classifier = TriageClassifier(model=FixedScoreModel(home=0.9, phc=0.08, emergency=0.02))
        data = symptom_data(
            'headache', severity=Severity.MODERATE, duration='1_3_days', complete=True,
            extensions={CONFLICTING_EVIDENCE_KEY: [{'field': 'severity', 'values': ['MODERATE', 'MILD'],
                                                    'kept': 'MODERATE'}]},
        )

        assessment = classifier.classify(data)

        assert assessment.risk_level is RiskLevel.PHC_VISIT
        assert assessment.needs_manual_review
        assert CONFLICTING_EVIDENCE_FACTOR in assessment.contributing_factors

    def test_tied_scores_go_to_the_more_urgent_tier(self):
        scores = ModelScores(scores={
            RiskLevel.HOME_CARE: 0.4,
            RiskLevel.PHC_VISIT: 0.4,
            RiskLevel.EMERGENCY: 0.2,
        })

        assert scores.winner() == (RiskLevel.PHC_VISIT, 0.4)

    def test_default_model_is_deterministic(self):
        data = symptom_data('cough', severity=Severity.MILD, duration='1_3_days', complete=True)
        model = WeightedRiskModel()

        first = model.score(data)
        second = model.score(data)

        assert first == second
        assert abs(sum(first.scores.values()) - 1.0) < 1e-9
        assert first.winner()[0] is RiskLevel.HOME_CARE

    def test_provisional_assessment_for_partial_data(self):
        classifier = TriageClassifier()

        provisional = classifier.provisional_assessment(symptom_data('cough'), 'session expired')
        assert provisional.risk_level is RiskLevel.PHC_VISIT
        assert provisional.confidence == 0.0
        assert provisional.needs_manual_review
        assert provisional.contributing_factors == ('manual review: session expired',)

        urgent = classifier.provisional_assessment(symptom_data('difficulty breathing'), 'session expired')
        assert urgent.risk_level is RiskLevel.EMERGENCY
        assert urgent.needs_manual_review


class TestDecisionSynthesisTool:

    def test_emergency_advice(self):
        assessment = TriageClassifier().classify(
            symptom_data('unconsciousness', severity=Severity.SEVERE, complete=True)
        )

        advice = DecisionSynthesisTool().recommend(assessment)

        assert 'EMERGENCY' in advice.headline
        assert advice.follow_up_timeframe == 'Immediately'

    def test_manual_review_is_announced(self):
        assessment = TriageClassifier().provisional_assessment(symptom_data('cough'), 'timeout')

        advice = DecisionSynthesisTool().recommend(assessment)

        assert advice.follow_up_timeframe == 'Within 24 hours'
        assert "A health worker will review your answers personally" in advice.actions


# ============================================================================
# INTAKE QUEUE
# ============================================================================

class TestIntakeQueue:
    """Test bounded admission and FIFO backlog"""

    def test_backlog_drains_in_arrival_order(self):
        queue = IntakeQueue(capacity=1, max_pending=5)
        assert queue.try_admit(InboundMessage('R0', 'busy'))

        for n in range(1, 6):
            assert queue.try_admit(InboundMessage(f'R{n}', 'hello')) is False
        assert len(queue) == 5

        queue.release()
        handled = queue.drain(lambda message: message.session_id)

        assert handled == ['R1', 'R2', 'R3', 'R4', 'R5']
        assert len(queue) == 0
        assert queue.in_flight == 0

    def test_full_backlog_is_rejected(self):
        queue = IntakeQueue(capacity=1, max_pending=1)
        queue.try_admit(InboundMessage('R0', 'busy'))
        queue.try_admit(InboundMessage('R1', 'wait'))

        with pytest.raises(CapacityExceeded):
            queue.try_admit(InboundMessage('R2', 'no room'))

    def test_newcomers_do_not_overtake_the_backlog(self):
        queue = IntakeQueue(capacity=2, max_pending=5)
        queue.try_admit(InboundMessage('R0', 'busy'))
        queue.try_admit(InboundMessage('R1', 'busy'))
        queue.try_admit(InboundMessage('R2', 'wait'))
        queue.release()

        assert queue.try_admit(InboundMessage('R3', 'late')) is False
        assert [m.session_id for m in queue.pending()] == ['R2', 'R3']

    def test_release_without_admission(self):
        with pytest.raises(RuntimeError):
            IntakeQueue().release()

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            IntakeQueue(capacity=0)


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class TestTriageOrchestrator:
    """Test the message pipeline end to end with in-memory stores"""

    def test_clarification_loop_then_case(self):
        clock = FakeClock()
        classifier = SpyClassifier(clock=clock)
        notifier = RecordingNotifier()
        orchestrator = make_orchestrator(clock=clock, classifier=classifier, notifier=notifier)

        first = orchestrator.handle(InboundMessage('s1', "I have a cough", channel='whatsapp', user_id='patient-1'))
        assert first.clarification == SEVERITY_QUESTION
        assert first.case_id is None
        second = orchestrator.handle(InboundMessage('s1', "mild", channel='whatsapp'))
        assert second.clarification == DURATION_QUESTION
        assert classifier.classified == []

        final = orchestrator.handle(InboundMessage('s1', "for 2 days", channel='whatsapp'))

        assert final.session_state == 'COMPLETE'
        assert final.risk_level is RiskLevel.HOME_CARE
        assert final.recommendations.follow_up_timeframe == 'Within 3-7 days if symptoms persist'
        assert len(classifier.classified) == 1
        assert classifier.classified[0].is_complete

        case = orchestrator.engine.get_case(final.case_id)
        assert case.user_id == 'patient-1'
        assert case.channel == 'whatsapp'
        assert orchestrator.accumulator.get_session('s1').case_id == case.case_id
        assert notifier.assessments == [('s1', case.case_id, RiskLevel.HOME_CARE)]
        assert notifier.alerts == [case.case_id]

    def test_emergency_in_one_message(self):
        orchestrator = make_orchestrator()

        reply = orchestrator.handle(InboundMessage('s1', "my chest pain is very bad"))

        case = orchestrator.engine.get_case(reply.case_id)
        assert reply.risk_level is RiskLevel.EMERGENCY
        assert case.assessment.contributing_factors == ('severe chest pain rule',)
        assert case.assessment.confidence == 1.0

    def test_failed_notifications_are_recorded_on_the_case(self):
        orchestrator = make_orchestrator(notifier=RecordingNotifier(fail=True))

        reply = orchestrator.handle(InboundMessage('s1', "my chest pain is very bad", channel='sms'))

        case = orchestrator.engine.get_case(reply.case_id)
        failures = [f for f in case.follow_ups if f.action is FollowUpAction.NOTIFICATION_FAILED]
        assert [f.details['channel'] for f in failures] == ['sms', 'dashboard']

    def test_extraction_timeout_opens_manual_review_case(self):
        orchestrator = make_orchestrator(extractor=TimingOutExtractor(failures=10))

        reply = orchestrator.handle(InboundMessage('s1', "I have a cough"))

        assert reply.session_state == 'EXPIRED'
        assert reply.risk_level is RiskLevel.PHC_VISIT
        assert reply.needs_manual_review
        case = orchestrator.engine.get_case(reply.case_id)
        assert case.assessment.contributing_factors == ('manual review: extraction timeout',)
        session = orchestrator.accumulator.get_session('s1')
        assert session.state is SessionState.EXPIRED
        assert session.case_id == case.case_id
        assert session.history[0]['content'] == "I have a cough"

        with pytest.raises(SessionClosedError):
            orchestrator.handle(InboundMessage('s1', "mild"))

    def test_extraction_failure_opens_manual_review_case(self):
        orchestrator = make_orchestrator(extractor=UnreachableExtractor())

        reply = orchestrator.handle(InboundMessage('s1', "I have a cough"))

        assert reply.needs_manual_review
        case = orchestrator.engine.get_case(reply.case_id)
        assert case.assessment.contributing_factors == ('manual review: extraction failed',)
        session = orchestrator.accumulator.get_session('s1')
        assert session.case_id == case.case_id
        assert session.history[0]['content'] == "I have a cough"

    def test_assessment_over_budget_is_provisional(self):
        ticks = iter([0.0, 200.0])
        orchestrator = make_orchestrator(monotonic=lambda: next(ticks), assessment_budget_seconds=120)

        reply = orchestrator.handle(InboundMessage('s1', "mild cough for 2 days"))

        case = orchestrator.engine.get_case(reply.case_id)
        assert case.risk_level is RiskLevel.PHC_VISIT
        assert case.needs_manual_review
        assert case.assessment.contributing_factors == ('manual review: classification timeout',)

    def test_silent_session_is_escalated_not_dropped(self):
        clock = FakeClock()
        orchestrator = make_orchestrator(clock=clock)
        orchestrator.handle(InboundMessage('s1', "I have a cough"))

        clock.advance(minutes=45)
        expired = orchestrator.expire_stale_sessions()

        assert [s.session_id for s in expired] == ['s1']
        cases = orchestrator.engine.list_cases()
        assert len(cases) == 1
        assert cases[0].needs_manual_review
        assert cases[0].symptom_data.symptom_names == ['cough']
        assert orchestrator.accumulator.get_session('s1').case_id == cases[0].case_id

    def test_late_input_escalates_once(self):
        clock = FakeClock()
        orchestrator = make_orchestrator(clock=clock)
        orchestrator.handle(InboundMessage('s1', "I have a cough"))

        clock.advance(minutes=45)
        with pytest.raises(SessionExpiredError):
            orchestrator.handle(InboundMessage('s1', "mild"))
        orchestrator.escalate_session('s1', 'session expired')

        assert len(orchestrator.engine.list_cases()) == 1

    def test_backlog_is_served_in_arrival_order_whatever_the_risk(self):
        notifier = RecordingNotifier()
        queue = IntakeQueue(capacity=1, max_pending=5)
        orchestrator = make_orchestrator(queue=queue, notifier=notifier)
        messages = [
            InboundMessage('R1', "mild cough for 2 days"),
            InboundMessage('R2', "my chest pain is very bad"),
            InboundMessage('R3', "moderate fever since 3 days"),
            InboundMessage('R4', "he is unconscious, it is severe"),
            InboundMessage('R5', "slight rash for a week"),
        ]

        assert queue.try_admit(InboundMessage('R0', 'in progress'))
        for message in messages:
            reply = orchestrator.handle(message)
            assert reply.queued
            assert reply.session_state == QUEUED_STATE

        queue.release()
        replies = orchestrator.drain_queue()

        assert [r.session_id for r in replies] == ['R1', 'R2', 'R3', 'R4', 'R5']
        assert [a[0] for a in notifier.assessments] == ['R1', 'R2', 'R3', 'R4', 'R5']
        assert [c.risk_level for c in orchestrator.engine.list_cases()] == [
            RiskLevel.EMERGENCY, RiskLevel.EMERGENCY, RiskLevel.PHC_VISIT,
            RiskLevel.HOME_CARE, RiskLevel.HOME_CARE,
        ]

    def test_queued_clarification_is_sent_through_the_channel(self):
        notifier = RecordingNotifier()
        queue = IntakeQueue(capacity=1, max_pending=5)
        orchestrator = make_orchestrator(queue=queue, notifier=notifier)

        queue.try_admit(InboundMessage('R0', 'in progress'))
        orchestrator.handle(InboundMessage('s1', "I have a cough"))
        queue.release()
        orchestrator.drain_queue()

        assert notifier.replies == [('s1', SEVERITY_QUESTION)]

    def test_crash_in_the_backlog_neither_fails_the_caller_nor_strands_the_rest(self):
        queue = IntakeQueue(capacity=1, max_pending=5)
        notifier = BusyNotifier(arrivals=[
            InboundMessage('B', "severe headache for 2 days"),
            InboundMessage('C', "mild cough for 2 days"),
        ])
        orchestrator = make_orchestrator(
            queue=queue, notifier=notifier, classifier=CrashingClassifier(clock=FakeClock()),
        )
        notifier.orchestrator = orchestrator

        reply = orchestrator.handle(InboundMessage('A', "my chest pain is very bad"))

        assert reply.risk_level is RiskLevel.EMERGENCY
        assert [r.queued for r in notifier.arrival_replies] == [True, True]
        assert len(queue) == 0
        assert queue.in_flight == 0
        [crashed] = orchestrator.engine.cases_for_user('B')
        assert crashed.needs_manual_review
        assert crashed.assessment.contributing_factors == ('manual review: processing failed',)
        assert [c.risk_level for c in orchestrator.engine.cases_for_user('C')] == [RiskLevel.HOME_CARE]

        later = orchestrator.handle(InboundMessage('D', "mild cough for 2 days"))
        assert not later.queued
        assert later.case_id is not None

    def test_idle_slots_serve_a_leftover_backlog(self):
        notifier = RecordingNotifier()
        queue = IntakeQueue(capacity=1, max_pending=5)
        orchestrator = make_orchestrator(queue=queue, notifier=notifier)
        queue.try_admit(InboundMessage('R0', 'in progress'))
        orchestrator.handle(InboundMessage('s1', "I have a cough"))
        queue.release()

        reply = orchestrator.handle(InboundMessage('s2', "mild cough for 2 days"))

        assert reply.queued
        assert notifier.replies == [('s1', SEVERITY_QUESTION)]
        assert [a[0] for a in notifier.assessments] == ['s2']
        assert len(queue) == 0
        assert queue.in_flight == 0

    def test_full_backlog_surfaces_capacity_exceeded(self):
        queue = IntakeQueue(capacity=1, max_pending=0)
        orchestrator = make_orchestrator(queue=queue)
        queue.try_admit(InboundMessage('R0', 'in progress'))

        with pytest.raises(CapacityExceeded):
            orchestrator.handle(InboundMessage('s1', "I have a cough"))

    def test_delete_user_data(self):
        orchestrator = make_orchestrator()
        orchestrator.handle(InboundMessage('s1', "my chest pain is very bad", user_id='patient-1'))
        orchestrator.handle(InboundMessage('s2', "I have a cough", user_id='patient-1'))
        orchestrator.handle(InboundMessage('s3', "I have a cough", user_id='patient-2'))

        result = orchestrator.delete_user_data('patient-1', 'supervisor')

        assert len(result['deleted_case_ids']) == 1
        assert result['deleted_sessions'] == 2
        assert orchestrator.engine.cases_for_user('patient-1') == []
        assert orchestrator.accumulator.get_session('s1') is None
        assert orchestrator.accumulator.get_session('s3') is not None


# ============================================================================
# API
# ============================================================================

@pytest.mark.django_db
class TestTriageAPIEndpoints:
    """Test the channel adapter endpoints with the Django-backed pipeline"""

    def intake(self, api_client, message, session_id='wa-1', **extra):
        payload = {'session_id': session_id, 'message': message, 'channel': 'whatsapp'}
        payload.update(extra)
        return api_client.post(reverse('triage:intake'), payload, format='json')

    def test_clarification_question(self, api_client):
        response = self.intake(api_client, "I have a cough", user_id='patient-1')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['ack'] is True
        assert response.data['session_state'] == 'ACTIVE'
        assert response.data['clarification'] == SEVERITY_QUESTION
        assert response.data['case_id'] is None

    def test_conversation_to_case(self, api_client):
        self.intake(api_client, "I have a cough", user_id='patient-1')
        self.intake(api_client, "mild")
        response = self.intake(api_client, "for 2 days")

        assert response.status_code == status.HTTP_200_OK
        assert response.data['risk_level'] == 'HOME_CARE'
        record = CaseRecord.objects.get(case_id=response.data['case_id'])
        assert record.user_id == 'patient-1'
        assert record.channel == 'whatsapp'

        conversation = Conversation.objects.get(session_id='wa-1')
        assert conversation.state == 'COMPLETE'
        assert conversation.case_id == record.case_id
        assert conversation.messages.filter(role='patient').count() == 3

    def test_emergency_message(self, api_client):
        response = self.intake(api_client, "My father is unconscious, it is very bad", session_id='sms-7')

        assert response.data['risk_level'] == 'EMERGENCY'
        assert 'EMERGENCY' in response.data['recommendations']['headline']

    def test_closed_session_is_rejected(self, api_client):
        self.intake(api_client, "my chest pain is very bad")
        response = self.intake(api_client, "hello?")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data['error_code'] == 'SESSION_CLOSED'
        assert set(response.data) >= {'error_code', 'user_message', 'technical_detail', 'timestamp', 'request_id'}

    def test_request_id_is_echoed(self, api_client):
        self.intake(api_client, "my chest pain is very bad")
        response = api_client.post(
            reverse('triage:intake'),
            {'session_id': 'wa-1', 'message': 'again'},
            format='json',
            HTTP_X_REQUEST_ID='req-42',
        )

        assert response.data['request_id'] == 'req-42'

    def test_invalid_payload(self, api_client):
        response = api_client.post(reverse('triage:intake'), {'session_id': 'wa-1'}, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['error_code'] == 'VALIDATION_ERROR'
        assert 'message' in response.data['errors']

    def test_session_status(self, api_client, asha_client):
        self.intake(api_client, "I have a cough")
        url = reverse('triage:session-status', kwargs={'session_id': 'wa-1'})

        response = asha_client.get(url)

        assert response.status_code == status.HTTP_200_OK
        assert response.data['state'] == 'ACTIVE'
        assert response.data['pending_question'] == SEVERITY_QUESTION
        assert response.data['symptom_data']['symptoms'][0]['name'] == 'cough'

    def test_anonymous_session_status_hides_case_data(self, api_client):
        self.intake(api_client, "my chest pain is very bad")

        response = api_client.get(reverse('triage:session-status', kwargs={'session_id': 'wa-1'}))

        assert response.status_code == status.HTTP_200_OK
        assert response.data['state'] == 'COMPLETE'
        assert set(response.data) == {'session_id', 'state', 'turn_number', 'last_input_at'}
        assert 'chest' not in str(response.data)

    def test_unknown_session(self, api_client):
        response = api_client.get(reverse('triage:session-status', kwargs={'session_id': 'nope'}))

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_health_check(self, api_client):
        response = api_client.get(reverse('triage:health'))

        assert response.status_code == status.HTTP_200_OK
        assert response.data['status'] == 'healthy'
        assert response.data['extractor'] == 'KeywordSymptomExtractor'
        assert response.data['risk_model'] == WeightedRiskModel.name


@pytest.mark.django_db
class TestTriageTasks:

    def test_expire_stale_sessions_task(self, api_client):
        two_hours_ago = datetime.now(dt_timezone.utc) - timedelta(hours=2)
        api_client.post(
            reverse('triage:intake'),
            {'session_id': 'ussd-3', 'message': 'I have a fever', 'timestamp': two_hours_ago.isoformat()},
            format='json',
        )

        expired = expire_stale_sessions.apply().get()

        assert expired == ['ussd-3']
        conversation = Conversation.objects.get(session_id='ussd-3')
        assert conversation.state == 'EXPIRED'
        record = CaseRecord.objects.get(case_id=conversation.case_id)
        assert record.needs_manual_review
        assert record.risk_level == 'PHC_VISIT'
