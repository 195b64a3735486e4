"""
Django-backed intake session store
"""

from datetime import datetime
from typing import List, Optional

from django.db import transaction
from django.utils.dateparse import parse_datetime

from apps.conversations.models import Conversation, Message
from apps.conversations.sessions import IntakeSession, SessionState, SessionStore
from apps.triage.symptoms import SymptomData


class DjangoSessionStore(SessionStore):

    def get(self, session_id: str) -> Optional[IntakeSession]:
        try:
            conversation = Conversation.objects.get(session_id=session_id)
        except Conversation.DoesNotExist:
            return None
        return self._to_session(conversation)

    @transaction.atomic
    def save(self, session: IntakeSession) -> None:
        conversation, _ = Conversation.objects.update_or_create(
            session_id=session.session_id,
            defaults={
                'user_id': session.user_id,
                'channel': session.channel,
                'state': session.state.value,
                'turn_number': session.turn_number,
                'pending_question': session.pending_question,
                'closed_reason': session.closed_reason,
                'case_id': session.case_id,
                'symptom_state': session.symptom_data.to_dict(),
                'last_input_at': session.last_input_at,
            },
        )

        # History is append-only: only persist turns we have not stored yet
        stored = conversation.messages.count()
        new_turns = session.history[stored:]
        if new_turns:
            Message.objects.bulk_create([
                Message(
                    conversation=conversation,
                    role=turn['role'],
                    content=turn['content'],
                    turn=turn['turn'],
                    sent_at=parse_datetime(turn['timestamp']),
                )
                for turn in new_turns
            ])

    def stale_sessions(self, cutoff: datetime) -> List[IntakeSession]:
        conversations = Conversation.objects.filter(
            state=SessionState.ACTIVE.value,
            last_input_at__lt=cutoff,
        ).prefetch_related('messages')
        return [self._to_session(c) for c in conversations]

    def delete_for_user(self, user_id: str) -> int:
        conversations = Conversation.objects.filter(user_id=user_id)
        count = conversations.count()
        conversations.delete()
        return count

    def _to_session(self, conversation: Conversation) -> IntakeSession:
        return IntakeSession(
            session_id=conversation.session_id,
            user_id=conversation.user_id,
            channel=conversation.channel,
            created_at=conversation.created_at,
            last_input_at=conversation.last_input_at,
            state=SessionState(conversation.state),
            symptom_data=SymptomData.from_dict(conversation.symptom_state),
            history=[
                {
                    'role': m.role,
                    'content': m.content,
                    'turn': m.turn,
                    'timestamp': m.sent_at.isoformat(),
                }
                for m in conversation.messages.all()
            ],
            pending_question=conversation.pending_question,
            turn_number=conversation.turn_number,
            closed_reason=conversation.closed_reason,
            case_id=conversation.case_id,
        )
