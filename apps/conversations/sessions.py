"""
Intake session state
Each channel session is an explicit finite-state record (ACTIVE / COMPLETE /
EXPIRED) persisted between messages; nothing else survives between calls.
"""

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from apps.triage.symptoms import SymptomData


class SessionState(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETE = 'COMPLETE'
    EXPIRED = 'EXPIRED'


@dataclass
class IntakeSession:
    session_id: str
    user_id: str
    channel: str
    created_at: datetime
    last_input_at: datetime
    state: SessionState = SessionState.ACTIVE
    symptom_data: SymptomData = field(default_factory=SymptomData)
    history: List[Dict[str, str]] = field(default_factory=list)
    pending_question: Optional[str] = None
    turn_number: int = 0
    closed_reason: Optional[str] = None
    case_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def is_stale(self, now: datetime, timeout_seconds: float) -> bool:
        return self.is_active and (now - self.last_input_at).total_seconds() > timeout_seconds

    def record_turn(self, role: str, content: str, timestamp: datetime) -> None:
        self.history.append({
            'role': role,
            'content': content,
            'turn': self.turn_number,
            'timestamp': timestamp.isoformat(),
        })

    def close(self, state: SessionState, reason: str) -> None:
        self.state = state
        self.closed_reason = reason


class SessionStore:
    """Persistence contract for intake sessions"""

    def get(self, session_id: str) -> Optional[IntakeSession]:
        raise NotImplementedError

    def save(self, session: IntakeSession) -> None:
        raise NotImplementedError

    def stale_sessions(self, cutoff: datetime) -> List[IntakeSession]:
        """Active sessions whose last input is older than cutoff"""
        raise NotImplementedError

    def delete_for_user(self, user_id: str) -> int:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Process-local store, copies on the way in and out like a real backend"""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, IntakeSession] = {}

    def get(self, session_id: str) -> Optional[IntakeSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def save(self, session: IntakeSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session)

    def stale_sessions(self, cutoff: datetime) -> List[IntakeSession]:
        with self._lock:
            return [
                copy.deepcopy(s) for s in self._sessions.values()
                if s.state is SessionState.ACTIVE and s.last_input_at < cutoff
            ]

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)
