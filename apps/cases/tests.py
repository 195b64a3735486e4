"""
Case Tests
Lifecycle state machine, priority ordering, reminders, concurrency and the dashboard API
"""

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from types import SimpleNamespace

import pytest
import requests
from django.apps import apps
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from apps.cases.entities import Case, CaseStatus, FollowUpAction
from apps.cases.models import AuditLogEntry, CaseRecord, FollowUpRecord
from apps.cases.services.case_engine import CaseEngine
from apps.cases.stores import DjangoCaseStore, InMemoryCaseStore
from apps.cases.tasks import dispatch_due_reminders
from apps.cases.tools.audit_logging import AuditLogTool, InMemoryAuditSink
from apps.cases.tools.notification_dispatch import NotificationDispatchTool
from apps.cases.tools.prioritization import CaseFilters, prioritize
from apps.core.exceptions import (
    CaseNotFound,
    ConcurrencyConflict,
    InvalidTransitionError,
    NotificationDeliveryError,
    PastReminderError,
    TransientStorageError,
)
from apps.triage.symptoms import Assessment, RiskLevel, Severity, Symptom, SymptomData


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=dt_timezone.utc)

COUGH = SymptomData(
    symptoms=(Symptom(name='cough'),),
    severity=Severity.MILD,
    duration='1_3_days',
    is_complete=True,
)


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


class ReminderNotifier:
    worker_channel = 'dashboard'

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self._lock = threading.Lock()

    def send_reminder(self, reminder, case):
        if self.fail:
            raise NotificationDeliveryError('dashboard gateway returned HTTP 503')
        with self._lock:
            self.sent.append(reminder.follow_up_id)


class RacingStore(InMemoryCaseStore):
    """Another writer wins the first `races` saves"""

    def __init__(self, races):
        super().__init__()
        self.races = races

    def save(self, case, expected_version):
        if self.races > 0:
            self.races -= 1
            raise ConcurrencyConflict(f"case {case.case_id} changed since version {expected_version}")
        return super().save(case, expected_version)


class InterleavingStore(InMemoryCaseStore):
    """Runs `interleave` once, on the next read, as if another writer got the case lock first"""

    def __init__(self):
        super().__init__()
        self.interleave = None

    def get(self, case_id):
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            interleave()
        return super().get(case_id)


class FlakyStore(InMemoryCaseStore):
    """First `failures` reads hit a transient storage error"""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def get(self, case_id):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStorageError('database is locked')
        return super().get(case_id)


def make_assessment(level=RiskLevel.HOME_CARE, review=False):
    return Assessment(
        risk_level=level,
        confidence=0.9,
        contributing_factors=('symptom:cough',),
        timestamp=T0,
        needs_manual_review=review,
    )


def make_engine(clock=None, store=None, **kwargs):
    clock = clock or FakeClock()
    return CaseEngine(
        store if store is not None else InMemoryCaseStore(),
        audit=AuditLogTool(InMemoryAuditSink(), clock=clock),
        clock=clock,
        sleep=lambda seconds: None,
        **kwargs
    )


def open_case(engine, level=RiskLevel.HOME_CARE, user_id='patient-1', session_id='s1', review=False):
    return engine.create_case(
        COUGH,
        make_assessment(level, review),
        user_id=user_id,
        session_id=session_id,
        channel='whatsapp',
    )


def make_case(case_id, level, created_at):
    return Case(
        case_id=case_id,
        user_id='patient-1',
        session_id=f"s-{case_id}",
        channel='web',
        symptom_data=COUGH,
        assessment=make_assessment(level),
        created_at=created_at,
        updated_at=created_at,
    )


# ============================================================================
# CASE CREATION
# ============================================================================

class TestCaseCreation:

    def test_new_case(self):
        engine = make_engine()

        case = open_case(engine, RiskLevel.PHC_VISIT, review=True)

        assert re.fullmatch(r'CASE-[0-9A-F]{16}', case.case_id)
        assert case.status is CaseStatus.NEW
        assert case.risk_level is RiskLevel.PHC_VISIT
        assert case.needs_manual_review
        assert case.created_at == case.updated_at == T0
        assert case.follow_ups == []
        assert engine.audit.sink.events[0].action == 'case_created'

    def test_colliding_id_is_regenerated(self):
        ids = iter(['CASE-AAAAAAAAAAAAAAAA', 'CASE-AAAAAAAAAAAAAAAA', 'CASE-BBBBBBBBBBBBBBBB'])
        engine = make_engine(id_factory=lambda: next(ids))

        first = open_case(engine)
        second = open_case(engine, session_id='s2')

        assert first.case_id == 'CASE-AAAAAAAAAAAAAAAA'
        assert second.case_id == 'CASE-BBBBBBBBBBBBBBBB'
        assert engine.get_case(first.case_id).session_id == 's1'

    def test_id_allocation_gives_up(self):
        engine = make_engine(id_factory=lambda: 'CASE-AAAAAAAAAAAAAAAA')
        open_case(engine)

        with pytest.raises(ConcurrencyConflict):
            open_case(engine, session_id='s2')

    def test_concurrent_creation_never_shares_an_id(self):
        engine = make_engine()

        with ThreadPoolExecutor(max_workers=32) as pool:
            cases = list(pool.map(lambda n: open_case(engine, session_id=f"s{n}"), range(150)))

        assert len({c.case_id for c in cases}) == 150
        assert len(engine.store) == 150


# ============================================================================
# STATUS STATE MACHINE
# ============================================================================

class TestCaseTransitions:

    def test_allowed_transitions(self):
        assert CaseStatus.NEW.allowed_transitions == {CaseStatus.CONTACTED, CaseStatus.RESOLVED}
        assert CaseStatus.CONTACTED.allowed_transitions == {CaseStatus.IN_PROGRESS, CaseStatus.RESOLVED}
        assert CaseStatus.IN_PROGRESS.allowed_transitions == {CaseStatus.RESOLVED}
        assert CaseStatus.RESOLVED.is_terminal

    def test_full_lifecycle(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)

        for minutes, target in ((5, CaseStatus.CONTACTED), (10, CaseStatus.IN_PROGRESS), (15, CaseStatus.RESOLVED)):
            clock.advance(minutes=minutes)
            case = engine.transition(case.case_id, target, 'asha-001', notes=f"moved to {target.value}")

        assert case.status is CaseStatus.RESOLVED
        assert [(f.details['from'], f.details['to']) for f in case.follow_ups] == [
            ('NEW', 'CONTACTED'),
            ('CONTACTED', 'IN_PROGRESS'),
            ('IN_PROGRESS', 'RESOLVED'),
        ]
        assert all(f.action is FollowUpAction.STATUS_CHANGE for f in case.follow_ups)
        assert case.updated_at == T0 + timedelta(minutes=30)
        assert case.version == 3

    def test_new_case_can_be_resolved_directly(self):
        engine = make_engine()
        case = open_case(engine)

        assert engine.transition(case.case_id, CaseStatus.RESOLVED, 'asha-001').status is CaseStatus.RESOLVED

    def test_illegal_transition_changes_nothing(self):
        engine = make_engine()
        case = open_case(engine)

        with pytest.raises(InvalidTransitionError):
            engine.transition(case.case_id, CaseStatus.IN_PROGRESS, 'asha-001')

        stored = engine.get_case(case.case_id)
        assert stored.status is CaseStatus.NEW
        assert stored.follow_ups == []
        assert stored.version == case.version

    def test_resolved_is_terminal(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)
        resolved = engine.transition(case.case_id, CaseStatus.RESOLVED, 'asha-001')

        clock.advance(hours=1)
        for target in CaseStatus:
            with pytest.raises(InvalidTransitionError):
                engine.transition(case.case_id, target, 'asha-001')

        stored = engine.get_case(case.case_id)
        assert stored.status is CaseStatus.RESOLVED
        assert stored.updated_at == resolved.updated_at
        assert stored.version == resolved.version

    def test_missing_case(self):
        with pytest.raises(CaseNotFound):
            make_engine().transition('CASE-0000000000000000', CaseStatus.CONTACTED, 'asha-001')

    def test_notes_and_assignment(self):
        engine = make_engine()
        case = open_case(engine)

        engine.add_follow_up(case.case_id, 'asha-001', 'Called the family, no answer')
        case = engine.assign(case.case_id, 'asha-002', 'supervisor')

        assert case.assigned_asha_id == 'asha-002'
        assert [f.action for f in case.follow_ups] == [FollowUpAction.NOTE, FollowUpAction.ASSIGNMENT]
        assert case.follow_ups[1].details == {'from': None, 'to': 'asha-002'}

    def test_resolved_case_cannot_be_reassigned(self):
        engine = make_engine()
        case = open_case(engine)
        engine.transition(case.case_id, CaseStatus.RESOLVED, 'asha-001')

        with pytest.raises(InvalidTransitionError):
            engine.assign(case.case_id, 'asha-002', 'supervisor')

    def test_reassessment_keeps_history(self):
        engine = make_engine()
        case = open_case(engine, RiskLevel.HOME_CARE)

        case = engine.reassess(case.case_id, make_assessment(RiskLevel.EMERGENCY), 'asha-001')

        assert case.risk_level is RiskLevel.EMERGENCY
        assert [a.risk_level for a in case.assessment_history] == [RiskLevel.HOME_CARE]
        assert case.follow_ups[-1].details == {'from': 'HOME_CARE', 'to': 'EMERGENCY'}


# ============================================================================
# PRIORITY ORDER
# ============================================================================

class TestPrioritization:

    def test_tier_then_newest_then_case_id(self):
        cases = [
            make_case('CASE-3', RiskLevel.HOME_CARE, T0),
            make_case('CASE-1', RiskLevel.EMERGENCY, T0 - timedelta(hours=1)),
            make_case('CASE-2', RiskLevel.EMERGENCY, T0),
            make_case('CASE-5', RiskLevel.PHC_VISIT, T0),
            make_case('CASE-4', RiskLevel.PHC_VISIT, T0),
        ]
        expected = ['CASE-2', 'CASE-1', 'CASE-4', 'CASE-5', 'CASE-3']

        assert [c.case_id for c in prioritize(cases)] == expected
        assert [c.case_id for c in prioritize(reversed(cases))] == expected

    def test_filters_apply_before_ordering(self):
        cases = [
            make_case('CASE-1', RiskLevel.HOME_CARE, T0),
            make_case('CASE-2', RiskLevel.EMERGENCY, T0),
            make_case('CASE-3', RiskLevel.PHC_VISIT, T0),
        ]
        filters = CaseFilters(risk_levels=frozenset({RiskLevel.HOME_CARE, RiskLevel.PHC_VISIT}))

        assert [c.case_id for c in prioritize(cases, filters)] == ['CASE-3', 'CASE-1']

    def test_engine_listing_with_paging(self):
        clock = FakeClock()
        engine = make_engine(clock)
        for level in (RiskLevel.HOME_CARE, RiskLevel.EMERGENCY, RiskLevel.PHC_VISIT, RiskLevel.EMERGENCY):
            open_case(engine, level)
            clock.advance(minutes=1)

        listed = engine.list_cases(actor_id='asha-001')
        page = engine.list_cases(offset=1, limit=2)

        assert [c.risk_level for c in listed] == [
            RiskLevel.EMERGENCY, RiskLevel.EMERGENCY, RiskLevel.PHC_VISIT, RiskLevel.HOME_CARE,
        ]
        assert listed[0].created_at > listed[1].created_at
        assert [c.case_id for c in page] == [c.case_id for c in listed[1:3]]
        views = [e for e in engine.audit.sink.events if e.action == 'case_viewed']
        assert [e.case_id for e in views] == [c.case_id for c in listed]
        assert all(e.actor_id == 'asha-001' and e.details == {'via': 'case_list'} for e in views)
        assert engine.count_cases() == 4


# ============================================================================
# REMINDERS
# ============================================================================

class TestReminders:

    def test_reminder_must_be_in_the_future(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)

        with pytest.raises(PastReminderError):
            engine.schedule_follow_up(case.case_id, 'asha-001', T0 - timedelta(minutes=1))
        with pytest.raises(PastReminderError):
            engine.schedule_follow_up(case.case_id, 'asha-001', T0)

        assert engine.get_case(case.case_id).follow_ups == []

    def test_reminder_is_stamped_after_a_concurrent_write(self):
        clock = FakeClock()
        store = InterleavingStore()
        engine = make_engine(clock, store=store)
        case = open_case(engine)

        def other_writer():
            clock.advance(minutes=5)
            engine.add_follow_up(case.case_id, 'asha-002', 'Called the family')

        store.interleave = other_writer
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(days=1), 'Revisit')

        stored = engine.get_case(case.case_id)
        stamps = [f.timestamp for f in stored.follow_ups]
        assert [f.action for f in stored.follow_ups] == [FollowUpAction.NOTE, FollowUpAction.REMINDER]
        assert stamps == sorted(stamps)
        assert stored.updated_at == T0 + timedelta(minutes=5)

    def test_listing_due_reminders_is_read_only(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(hours=1), 'Check fever')

        assert engine.due_reminders() == []
        clock.advance(hours=2)
        first = engine.due_reminders()
        second = engine.due_reminders()

        assert first == second
        assert [(r.case_id, r.notes) for r in first] == [(case.case_id, 'Check fever')]
        assert engine.get_case(case.case_id).notified_follow_up_ids == []

    def test_dispatch_sends_each_reminder_once(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(hours=1))
        clock.advance(hours=2)
        notifier = ReminderNotifier()

        report = engine.dispatch_due_reminders(notifier)
        again = engine.dispatch_due_reminders(notifier)

        assert len(report.sent) == 1
        assert again.sent == []
        assert len(notifier.sent) == 1
        assert engine.due_reminders() == []

    def test_failed_send_releases_the_reminder(self):
        clock = FakeClock()
        engine = make_engine(clock)
        case = open_case(engine)
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(hours=1))
        clock.advance(hours=2)

        report = engine.dispatch_due_reminders(ReminderNotifier(fail=True))

        assert len(report.failed) == 1
        stored = engine.get_case(case.case_id)
        assert stored.follow_ups[-1].action is FollowUpAction.NOTIFICATION_FAILED
        assert stored.follow_ups[-1].details == {'follow_up_id': report.failed[0].follow_up_id}
        assert len(engine.due_reminders()) == 1

        retry = engine.dispatch_due_reminders(ReminderNotifier())
        assert len(retry.sent) == 1

    def test_concurrent_dispatchers_send_exactly_once(self):
        clock = FakeClock()
        engine = make_engine(clock)
        for n in range(20):
            case = open_case(engine, session_id=f"s{n}")
            engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(minutes=n + 1))
        clock.advance(hours=1)
        notifier = ReminderNotifier()

        with ThreadPoolExecutor(max_workers=4) as pool:
            reports = list(pool.map(lambda _: engine.dispatch_due_reminders(notifier), range(4)))

        assert sum(len(r.sent) for r in reports) == 20
        assert len(notifier.sent) == len(set(notifier.sent)) == 20

    def test_reminder_on_resolved_case(self):
        engine = make_engine()
        case = open_case(engine)
        engine.transition(case.case_id, CaseStatus.RESOLVED, 'asha-001')

        case = engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(days=7), 'Check recovery')

        assert case.follow_ups[-1].action is FollowUpAction.REMINDER


# ============================================================================
# CONCURRENCY / STORAGE FAILURES
# ============================================================================

class TestConcurrency:

    def test_parallel_follow_ups_are_all_kept(self):
        engine = make_engine()
        case = open_case(engine)

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda n: engine.add_follow_up(case.case_id, f"asha-{n:03d}", f"note {n}"), range(50)))

        stored = engine.get_case(case.case_id)
        assert len(stored.follow_ups) == 50
        assert {f.notes for f in stored.follow_ups} == {f"note {n}" for n in range(50)}
        assert stored.version == 50

    def test_lost_race_is_retried_once(self):
        store = RacingStore(races=0)
        engine = make_engine(store=store)
        case = open_case(engine)
        store.races = 1

        updated = engine.transition(case.case_id, CaseStatus.CONTACTED, 'asha-001')

        assert updated.status is CaseStatus.CONTACTED
        assert engine.get_case(case.case_id).status is CaseStatus.CONTACTED

    def test_second_lost_race_surfaces(self):
        store = RacingStore(races=0)
        engine = make_engine(store=store)
        case = open_case(engine)
        store.races = 2

        with pytest.raises(ConcurrencyConflict):
            engine.transition(case.case_id, CaseStatus.CONTACTED, 'asha-001')

        assert engine.get_case(case.case_id).status is CaseStatus.NEW

    def test_transient_storage_errors_are_retried(self):
        store = FlakyStore(failures=0)
        delays = []
        clock = FakeClock()
        engine = CaseEngine(store, clock=clock, sleep=delays.append, retry_base_delay=0.1)
        case = open_case(engine)
        store.failures = 2

        assert engine.get_case(case.case_id).case_id == case.case_id
        assert delays == [0.1, 0.2]

    def test_persistent_storage_failure_surfaces(self):
        store = FlakyStore(failures=0)
        engine = make_engine(store=store)
        case = open_case(engine)
        store.failures = 10

        with pytest.raises(TransientStorageError):
            engine.get_case(case.case_id)


# ============================================================================
# AUDIT / DELETION
# ============================================================================

class TestAuditAndDeletion:

    def test_reads_and_writes_are_audited(self):
        engine = make_engine()
        case = open_case(engine)

        engine.get_case(case.case_id, actor_id='asha-001')
        engine.transition(case.case_id, CaseStatus.CONTACTED, 'asha-001')

        events = engine.audit.sink.for_case(case.case_id)
        assert [(e.actor_id, e.action) for e in events] == [
            ('system', 'case_created'),
            ('asha-001', 'case_viewed'),
            ('asha-001', 'status_changed'),
        ]

    def test_delete_user_data(self):
        engine = make_engine()
        mine = open_case(engine, user_id='patient-1')
        other = open_case(engine, user_id='patient-2', session_id='s2')

        deleted = engine.delete_user_data('patient-1', 'supervisor')

        assert deleted == [mine.case_id]
        with pytest.raises(CaseNotFound):
            engine.get_case(mine.case_id)
        assert engine.get_case(other.case_id).user_id == 'patient-2'
        assert engine.audit.sink.for_case(mine.case_id)[-1].action == 'case_deleted'


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class FakeHTTPSession:

    def __init__(self, status_code=202, error=None):
        self.status_code = status_code
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.posts.append((url, json, headers))
        return SimpleNamespace(status_code=self.status_code, text='', json=lambda: {'accepted': True})


class TestNotificationDispatchTool:

    def make_tool(self, session):
        return NotificationDispatchTool(
            {'whatsapp': 'https://gateway.test/whatsapp', 'dashboard': 'https://gateway.test/asha'},
            api_key='secret',
            session=session,
        )

    def test_worker_alert(self):
        session = FakeHTTPSession()
        case = make_case('CASE-1', RiskLevel.EMERGENCY, T0)

        self.make_tool(session).alert_worker(case)

        url, body, headers = session.posts[0]
        assert url == 'https://gateway.test/asha'
        assert body['type'] == 'new_case'
        assert body['subject'].startswith('URGENT')
        assert headers['Authorization'] == 'Bearer secret'

    def test_unknown_channel(self):
        with pytest.raises(NotificationDeliveryError):
            self.make_tool(FakeHTTPSession()).send_reply('s1', 'ussd', 'hello')

    def test_gateway_error_status(self):
        with pytest.raises(NotificationDeliveryError):
            self.make_tool(FakeHTTPSession(status_code=500)).send_reply('s1', 'whatsapp', 'hello')

    def test_gateway_unreachable(self):
        session = FakeHTTPSession(error=requests.exceptions.ConnectionError('refused'))

        with pytest.raises(NotificationDeliveryError):
            self.make_tool(session).send_reply('s1', 'whatsapp', 'hello')


# ============================================================================
# DJANGO STORE
# ============================================================================

@pytest.mark.django_db
class TestDjangoCaseStore:

    def test_round_trip(self):
        clock = FakeClock()
        engine = make_engine(clock, store=DjangoCaseStore())
        case = open_case(engine, RiskLevel.PHC_VISIT, review=True)
        clock.advance(minutes=5)
        engine.transition(case.case_id, CaseStatus.CONTACTED, 'asha-001', 'Spoke to mother')
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(days=1), 'Revisit')

        stored = engine.get_case(case.case_id)

        assert stored.symptom_data == COUGH
        assert stored.assessment == case.assessment
        assert stored.status is CaseStatus.CONTACTED
        assert stored.needs_manual_review
        assert stored.version == 2
        assert [f.action for f in stored.follow_ups] == [FollowUpAction.STATUS_CHANGE, FollowUpAction.REMINDER]
        assert FollowUpRecord.objects.filter(case_id=case.case_id).count() == 2
        assert CaseRecord.objects.get(case_id=case.case_id).risk_tier_rank == 1

    def test_stale_version_is_rejected(self):
        store = DjangoCaseStore()
        engine = make_engine(store=store)
        case = open_case(engine)
        mine = store.get(case.case_id)
        theirs = store.get(case.case_id)

        theirs.status = CaseStatus.CONTACTED
        store.save(theirs, theirs.version)

        mine.status = CaseStatus.RESOLVED
        with pytest.raises(ConcurrencyConflict):
            store.save(mine, mine.version)
        assert store.get(case.case_id).status is CaseStatus.CONTACTED

    def test_duplicate_id_is_not_overwritten(self):
        store = DjangoCaseStore()
        case = make_case('CASE-AAAAAAAAAAAAAAAA', RiskLevel.HOME_CARE, T0)

        assert store.add(case)
        assert not store.add(make_case('CASE-AAAAAAAAAAAAAAAA', RiskLevel.EMERGENCY, T0))
        assert store.get(case.case_id).risk_level is RiskLevel.HOME_CARE

    def test_priority_query(self):
        clock = FakeClock()
        engine = make_engine(clock, store=DjangoCaseStore())
        created = []
        for level in (RiskLevel.HOME_CARE, RiskLevel.EMERGENCY, RiskLevel.PHC_VISIT):
            created.append(open_case(engine, level))
            clock.advance(minutes=1)

        listed = engine.list_cases()
        emergencies = engine.list_cases(CaseFilters(risk_levels=frozenset({RiskLevel.EMERGENCY})))

        assert [c.risk_level for c in listed] == [RiskLevel.EMERGENCY, RiskLevel.PHC_VISIT, RiskLevel.HOME_CARE]
        assert [c.case_id for c in emergencies] == [created[1].case_id]

    def test_claimed_reminders_leave_the_due_scan(self):
        clock = FakeClock()
        store = DjangoCaseStore()
        engine = make_engine(clock, store=store)
        case = open_case(engine)
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(hours=1))
        clock.advance(hours=2)
        [reminder] = engine.due_reminders()

        assert engine.mark_reminder_notified(case.case_id, reminder.follow_up_id)
        assert FollowUpRecord.objects.get(follow_up_id=reminder.follow_up_id).notified
        assert store.with_due_reminders(clock()) == []

        engine.release_reminder(case.case_id, reminder.follow_up_id, 'gateway down')
        assert not FollowUpRecord.objects.get(follow_up_id=reminder.follow_up_id).notified
        assert [c.case_id for c in store.with_due_reminders(clock())] == [case.case_id]

    def test_count_ignores_paging(self):
        engine = make_engine(store=DjangoCaseStore())
        for level in (RiskLevel.HOME_CARE, RiskLevel.EMERGENCY, RiskLevel.EMERGENCY):
            open_case(engine, level)

        assert len(engine.list_cases(limit=1)) == 1
        assert engine.count_cases() == 3
        assert engine.count_cases(CaseFilters(risk_levels=frozenset({RiskLevel.EMERGENCY}))) == 2

    def test_due_reminders_and_deletion(self):
        clock = FakeClock()
        engine = make_engine(clock, store=DjangoCaseStore())
        case = open_case(engine)
        engine.schedule_follow_up(case.case_id, 'asha-001', T0 + timedelta(hours=1))
        clock.advance(hours=2)

        assert len(engine.due_reminders()) == 1

        assert engine.delete_user_data('patient-1', 'supervisor') == [case.case_id]
        assert not FollowUpRecord.objects.exists()


# ============================================================================
# API
# ============================================================================

@pytest.mark.django_db
class TestCaseAPIEndpoints:
    """Test the ASHA dashboard endpoints"""

    @pytest.fixture
    def engine(self):
        return apps.get_app_config('cases').engine

    def test_authentication_required(self, api_client, engine):
        open_case(engine)

        response = api_client.get(reverse('cases:list'))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.data['error_code'] == 'AUTHENTICATION_FAILED'
        assert response.data['technical_detail'] == ''
        assert 'results' not in response.data

    def test_list_in_priority_order(self, asha_client, engine):
        open_case(engine, RiskLevel.HOME_CARE)
        open_case(engine, RiskLevel.EMERGENCY, session_id='s2')
        open_case(engine, RiskLevel.PHC_VISIT, session_id='s3')

        response = asha_client.get(reverse('cases:list'))

        assert response.status_code == status.HTTP_200_OK
        assert response.data['count'] == 3
        assert [c['risk_level'] for c in response.data['results']] == ['EMERGENCY', 'PHC_VISIT', 'HOME_CARE']
        viewed = AuditLogEntry.objects.filter(actor_id='asha-001', action='case_viewed')
        assert sorted(viewed.values_list('case_id', flat=True)) == sorted(c['case_id'] for c in response.data['results'])

    def test_count_is_the_total_not_the_page(self, asha_client, engine):
        open_case(engine, RiskLevel.HOME_CARE)
        open_case(engine, RiskLevel.EMERGENCY, session_id='s2')
        open_case(engine, RiskLevel.PHC_VISIT, session_id='s3')

        response = asha_client.get(reverse('cases:list'), {'limit': 1})

        assert response.data['count'] == 3
        assert len(response.data['results']) == 1
        assert AuditLogEntry.objects.filter(action='case_viewed').count() == 1

    def test_list_filters(self, asha_client, engine):
        open_case(engine, RiskLevel.HOME_CARE)
        open_case(engine, RiskLevel.EMERGENCY, session_id='s2')
        open_case(engine, RiskLevel.PHC_VISIT, session_id='s3', review=True)

        by_level = asha_client.get(reverse('cases:list'), {'risk_level': ['EMERGENCY', 'PHC_VISIT']})
        by_review = asha_client.get(reverse('cases:list'), {'needs_manual_review': 'true'})
        paged = asha_client.get(reverse('cases:list'), {'offset': 1, 'limit': 1})

        assert [c['risk_level'] for c in by_level.data['results']] == ['EMERGENCY', 'PHC_VISIT']
        assert [c['risk_level'] for c in by_review.data['results']] == ['PHC_VISIT']
        assert [c['risk_level'] for c in paged.data['results']] == ['PHC_VISIT']

    def test_invalid_filter(self, asha_client):
        response = asha_client.get(reverse('cases:list'), {'risk_level': 'CRITICAL'})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['error_code'] == 'VALIDATION_ERROR'

    def test_case_detail_is_audited(self, asha_client, engine):
        case = open_case(engine)

        response = asha_client.get(reverse('cases:detail', kwargs={'case_id': case.case_id}))

        assert response.status_code == status.HTTP_200_OK
        assert response.data['case_id'] == case.case_id
        assert response.data['symptom_data']['symptoms'][0]['name'] == 'cough'
        assert AuditLogEntry.objects.filter(
            actor_id='asha-001', case_id=case.case_id, action='case_viewed'
        ).exists()

    def test_unknown_case(self, asha_client):
        response = asha_client.get(reverse('cases:detail', kwargs={'case_id': 'CASE-0000000000000000'}))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data['error_code'] == 'CASE_NOT_FOUND'

    def test_status_change(self, asha_client, engine):
        case = open_case(engine)

        response = asha_client.post(
            reverse('cases:status', kwargs={'case_id': case.case_id}),
            {'status': 'CONTACTED', 'notes': 'Reached by phone'},
            format='json',
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data['status'] == 'CONTACTED'
        assert response.data['follow_ups'][-1]['action'] == 'STATUS_CHANGE'
        assert response.data['follow_ups'][-1]['asha_id'] == 'asha-001'

    def test_illegal_status_change(self, asha_client, engine):
        case = open_case(engine)

        response = asha_client.post(
            reverse('cases:status', kwargs={'case_id': case.case_id}),
            {'status': 'IN_PROGRESS'},
            format='json',
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data['error_code'] == 'INVALID_TRANSITION'
        assert CaseRecord.objects.get(case_id=case.case_id).status == 'NEW'

    def test_follow_up_note_and_assignment(self, asha_client, engine):
        case = open_case(engine)

        note = asha_client.post(
            reverse('cases:follow-ups', kwargs={'case_id': case.case_id}),
            {'notes': 'Visited, fever down'},
            format='json',
        )
        assigned = asha_client.post(
            reverse('cases:assign', kwargs={'case_id': case.case_id}),
            {'asha_id': 'asha-007'},
            format='json',
        )

        assert note.status_code == status.HTTP_201_CREATED
        assert note.data['follow_ups'][-1]['notes'] == 'Visited, fever down'
        assert assigned.data['assigned_asha_id'] == 'asha-007'

    def test_reminders(self, asha_client, engine):
        case = open_case(engine)
        url = reverse('cases:reminders', kwargs={'case_id': case.case_id})

        past = asha_client.post(url, {'reminder_time': (timezone.now() - timedelta(hours=1)).isoformat()}, format='json')
        future = asha_client.post(
            url,
            {'reminder_time': (timezone.now() + timedelta(days=1)).isoformat(), 'notes': 'Check recovery'},
            format='json',
        )

        assert past.status_code == status.HTTP_400_BAD_REQUEST
        assert past.data['error_code'] == 'PAST_REMINDER'
        assert future.status_code == status.HTTP_201_CREATED
        assert future.data['follow_ups'][-1]['action'] == 'REMINDER'

    def test_due_reminders(self, asha_client, engine, monkeypatch):
        case = open_case(engine)
        monkeypatch.setattr(engine, 'clock', lambda: timezone.now() - timedelta(hours=2))
        engine.schedule_follow_up(case.case_id, 'asha-001', timezone.now() - timedelta(hours=1), 'Overdue')
        monkeypatch.undo()

        response = asha_client.get(reverse('cases:due-reminders'))
        again = asha_client.get(reverse('cases:due-reminders'))

        assert response.status_code == status.HTTP_200_OK
        assert [r['notes'] for r in response.data] == ['Overdue']
        assert again.data == response.data
        viewed = AuditLogEntry.objects.filter(actor_id='asha-001', action='reminder_viewed')
        assert list(viewed.values_list('case_id', flat=True)) == [case.case_id, case.case_id]

    def test_user_history(self, asha_client, engine):
        open_case(engine, user_id='patient-1')
        open_case(engine, user_id='patient-2', session_id='s2')

        response = asha_client.get(reverse('cases:user-cases', kwargs={'user_id': 'patient-1'}))

        assert [c['user_id'] for c in response.data] == ['patient-1']

    def test_data_deletion_requires_staff(self, asha_client, engine):
        open_case(engine, user_id='patient-1')

        response = asha_client.delete(reverse('cases:user-cases', kwargs={'user_id': 'patient-1'}))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data['error_code'] == 'NOT_AUTHORIZED'
        assert CaseRecord.objects.filter(user_id='patient-1').exists()

    def test_data_deletion(self, staff_user, engine):
        case = open_case(engine, user_id='patient-1')
        client = APIClient()
        client.force_authenticate(user=staff_user)

        response = client.delete(reverse('cases:user-cases', kwargs={'user_id': 'patient-1'}))

        assert response.status_code == status.HTTP_200_OK
        assert response.data['deleted_case_ids'] == [case.case_id]
        assert not CaseRecord.objects.filter(user_id='patient-1').exists()
        assert AuditLogEntry.objects.filter(actor_id='supervisor', action='case_deleted').exists()


@pytest.mark.django_db
class TestCaseTasks:

    def test_reminders_skipped_without_gateways(self):
        assert dispatch_due_reminders.apply().get() == {'sent': 0, 'failed': 0}

    def test_due_reminders_dispatched(self, monkeypatch):
        config = apps.get_app_config('cases')
        notifier = ReminderNotifier()
        case = open_case(config.engine)
        monkeypatch.setattr(config.engine, 'clock', lambda: timezone.now() - timedelta(hours=2))
        config.engine.schedule_follow_up(case.case_id, 'asha-001', timezone.now() - timedelta(hours=1))
        monkeypatch.undo()
        monkeypatch.setattr(config, 'notifier', notifier)

        assert dispatch_due_reminders.apply().get() == {'sent': 1, 'failed': 0}
        assert dispatch_due_reminders.apply().get() == {'sent': 0, 'failed': 0}
        assert len(notifier.sent) == 1
