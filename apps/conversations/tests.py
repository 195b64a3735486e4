"""
Conversation Tests
Intake session persistence
"""

from datetime import datetime, timedelta
from datetime import timezone as dt_timezone

import pytest

from apps.conversations.models import Conversation, Message
from apps.conversations.sessions import InMemorySessionStore, IntakeSession, SessionState
from apps.conversations.stores import DjangoSessionStore
from apps.triage.symptoms import Severity, Symptom, SymptomData


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=dt_timezone.utc)


def make_session(session_id='s1', user_id='patient-1', last_input_at=T0):
    session = IntakeSession(
        session_id=session_id,
        user_id=user_id,
        channel='ussd',
        created_at=T0,
        last_input_at=last_input_at,
    )
    session.turn_number = 1
    session.record_turn('patient', 'I have a cough', last_input_at)
    session.symptom_data = SymptomData(symptoms=(Symptom(name='cough'),), pending_clarification='severity')
    session.pending_question = 'How bad is the cough: mild, moderate or severe?'
    session.record_turn('agent', session.pending_question, last_input_at)
    return session


class TestIntakeSession:

    def test_staleness(self):
        session = make_session()

        assert not session.is_stale(T0 + timedelta(minutes=30), 1800)
        assert session.is_stale(T0 + timedelta(minutes=31), 1800)

        session.close(SessionState.COMPLETE, 'complete')
        assert not session.is_stale(T0 + timedelta(days=1), 1800)

    def test_in_memory_store_copies(self):
        store = InMemorySessionStore()
        session = make_session()
        store.save(session)

        session.history.append({'role': 'patient', 'content': 'not saved'})

        assert len(store.get('s1').history) == 2


@pytest.mark.django_db
class TestDjangoSessionStore:

    def test_round_trip(self):
        store = DjangoSessionStore()
        store.save(make_session())

        session = store.get('s1')

        assert session.user_id == 'patient-1'
        assert session.channel == 'ussd'
        assert session.state is SessionState.ACTIVE
        assert session.symptom_data.symptom_names == ['cough']
        assert session.symptom_data.pending_clarification == 'severity'
        assert [t['role'] for t in session.history] == ['patient', 'agent']

    def test_history_is_append_only(self):
        store = DjangoSessionStore()
        session = make_session()
        store.save(session)

        session.turn_number = 2
        session.record_turn('patient', 'mild', T0 + timedelta(minutes=1))
        session.symptom_data = SymptomData(
            symptoms=session.symptom_data.symptoms,
            severity=Severity.MILD,
            pending_clarification='duration',
        )
        store.save(session)
        store.save(session)

        assert Message.objects.filter(conversation__session_id='s1').count() == 3
        assert store.get('s1').symptom_data.severity is Severity.MILD

    def test_stale_sessions(self):
        store = DjangoSessionStore()
        store.save(make_session('old', last_input_at=T0))
        store.save(make_session('recent', last_input_at=T0 + timedelta(minutes=40)))
        closed = make_session('closed', last_input_at=T0)
        closed.close(SessionState.EXPIRED, 'timeout')
        store.save(closed)

        stale = store.stale_sessions(T0 + timedelta(minutes=30))

        assert [s.session_id for s in stale] == ['old']

    def test_delete_for_user(self):
        store = DjangoSessionStore()
        store.save(make_session('s1', user_id='patient-1'))
        store.save(make_session('s2', user_id='patient-1'))
        store.save(make_session('s3', user_id='patient-2'))

        assert store.delete_for_user('patient-1') == 2
        assert list(Conversation.objects.values_list('session_id', flat=True)) == ['s3']
        assert not Message.objects.filter(conversation__user_id='patient-1').exists()
