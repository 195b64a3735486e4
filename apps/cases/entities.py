"""
Case lifecycle value types
A Case tracks one Assessment through ASHA worker follow-up to resolution.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from apps.triage.symptoms import Assessment, RiskLevel, SymptomData


class CaseStatus(str, Enum):
    NEW = 'NEW'
    CONTACTED = 'CONTACTED'
    IN_PROGRESS = 'IN_PROGRESS'
    RESOLVED = 'RESOLVED'

    @property
    def allowed_transitions(self) -> FrozenSet['CaseStatus']:
        if self is CaseStatus.NEW:
            return frozenset({CaseStatus.CONTACTED, CaseStatus.RESOLVED})
        if self is CaseStatus.CONTACTED:
            return frozenset({CaseStatus.IN_PROGRESS, CaseStatus.RESOLVED})
        if self is CaseStatus.IN_PROGRESS:
            return frozenset({CaseStatus.RESOLVED})
        if self is CaseStatus.RESOLVED:
            return frozenset()
        raise ValueError(f"Unknown case status: {self}")

    @property
    def is_terminal(self) -> bool:
        return not self.allowed_transitions

    def can_transition_to(self, other: 'CaseStatus') -> bool:
        return other in self.allowed_transitions


class FollowUpAction(str, Enum):
    STATUS_CHANGE = 'STATUS_CHANGE'
    NOTE = 'NOTE'
    REMINDER = 'REMINDER'
    ASSIGNMENT = 'ASSIGNMENT'
    REASSESSMENT = 'REASSESSMENT'
    NOTIFICATION_FAILED = 'NOTIFICATION_FAILED'


SYSTEM_ACTOR = 'system'


def new_case_id() -> str:
    return f"CASE-{uuid.uuid4().hex[:16].upper()}"


def new_follow_up_id() -> str:
    return f"FU-{uuid.uuid4().hex[:16].upper()}"


@dataclass(frozen=True)
class FollowUp:
    asha_id: str
    action: FollowUpAction
    timestamp: datetime
    notes: str = ''
    reminder_time: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)
    follow_up_id: str = field(default_factory=new_follow_up_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'follow_up_id': self.follow_up_id,
            'asha_id': self.asha_id,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat(),
            'notes': self.notes,
            'reminder_time': self.reminder_time.isoformat() if self.reminder_time else None,
            'details': dict(self.details),
        }


@dataclass(frozen=True)
class Reminder:
    """Derived view of a REMINDER follow-up"""
    case_id: str
    follow_up_id: str
    asha_id: str
    reminder_time: datetime
    notes: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case_id': self.case_id,
            'follow_up_id': self.follow_up_id,
            'asha_id': self.asha_id,
            'reminder_time': self.reminder_time.isoformat(),
            'notes': self.notes,
        }


@dataclass
class Case:
    """
    Mutable aggregate, only changed by the case engine under the case lock.
    user_id is a lookup key, never a link to a user object.
    """
    case_id: str
    user_id: str
    session_id: str
    channel: str
    symptom_data: SymptomData
    assessment: Assessment
    created_at: datetime
    updated_at: datetime
    status: CaseStatus = CaseStatus.NEW
    assigned_asha_id: Optional[str] = None
    follow_ups: List[FollowUp] = field(default_factory=list)
    assessment_history: List[Assessment] = field(default_factory=list)
    notified_follow_up_ids: List[str] = field(default_factory=list)
    needs_manual_review: bool = False
    version: int = 0

    @property
    def risk_level(self) -> RiskLevel:
        return self.assessment.risk_level

    @property
    def risk_tier_rank(self) -> int:
        return self.assessment.risk_level.rank

    def reminders(self) -> List[Reminder]:
        return [
            Reminder(
                case_id=self.case_id,
                follow_up_id=f.follow_up_id,
                asha_id=f.asha_id,
                reminder_time=f.reminder_time,
                notes=f.notes,
            )
            for f in self.follow_ups
            if f.action is FollowUpAction.REMINDER
        ]

    def due_reminders(self, now: datetime) -> List[Reminder]:
        return [
            r for r in self.reminders()
            if r.reminder_time <= now and r.follow_up_id not in self.notified_follow_up_ids
        ]

