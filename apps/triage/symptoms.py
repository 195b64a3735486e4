"""
Symptom & Assessment value types
SymptomData is the snapshot handed from the accumulator to the classifier and
the case engine; Assessment is the classifier's immutable verdict.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from django.utils.dateparse import parse_datetime


# ============================================================================
# ENUMS
# ============================================================================

class Severity(str, Enum):
    MILD = 'MILD'
    MODERATE = 'MODERATE'
    SEVERE = 'SEVERE'

    @property
    def weight(self) -> int:
        return {Severity.MILD: 0, Severity.MODERATE: 1, Severity.SEVERE: 2}[self]

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.weight >= other.weight

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.weight > other.weight

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.weight <= other.weight

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.weight < other.weight


class RiskLevel(str, Enum):
    """Risk tiers, most urgent first"""
    EMERGENCY = 'EMERGENCY'
    PHC_VISIT = 'PHC_VISIT'
    HOME_CARE = 'HOME_CARE'

    @property
    def rank(self) -> int:
        """Sort rank: EMERGENCY=0 < PHC_VISIT=1 < HOME_CARE=2"""
        if self is RiskLevel.EMERGENCY:
            return 0
        if self is RiskLevel.PHC_VISIT:
            return 1
        if self is RiskLevel.HOME_CARE:
            return 2
        raise ValueError(f"Unknown risk level: {self}")

    def escalate(self) -> 'RiskLevel':
        """One tier more urgent; EMERGENCY is a fixed point"""
        if self is RiskLevel.HOME_CARE:
            return RiskLevel.PHC_VISIT
        if self is RiskLevel.PHC_VISIT:
            return RiskLevel.EMERGENCY
        if self is RiskLevel.EMERGENCY:
            return RiskLevel.EMERGENCY
        raise ValueError(f"Unknown risk level: {self}")


DURATION_BUCKETS = (
    'less_than_1_day',
    '1_3_days',
    '4_7_days',
    'more_than_1_week',
    'more_than_1_month',
)

# Required fields, highest priority first
SYMPTOMS_FIELD = 'symptoms'
SEVERITY_FIELD = 'severity'
DURATION_FIELD = 'duration'
FIELD_PRIORITY = (SYMPTOMS_FIELD, SEVERITY_FIELD, DURATION_FIELD)

CONFLICTING_EVIDENCE_KEY = 'conflicting_evidence'


# ============================================================================
# SYMPTOM NAMES
# ============================================================================

SYMPTOM_SYNONYMS = {
    'chest_pain': 'chest pain',
    'chest ache': 'chest pain',
    'pain in chest': 'chest pain',
    'difficulty_breathing': 'difficulty breathing',
    'breathing difficulty': 'difficulty breathing',
    'shortness of breath': 'difficulty breathing',
    'breathlessness': 'difficulty breathing',
    'cannot breathe': 'difficulty breathing',
    "can't breathe": 'difficulty breathing',
    'loss_of_consciousness': 'unconsciousness',
    'loss of consciousness': 'unconsciousness',
    'unconscious': 'unconsciousness',
    'fainted': 'unconsciousness',
    'unresponsive': 'unconsciousness',
    'severe_bleeding': 'bleeding',
    'heavy bleeding': 'bleeding',
    'seizure': 'convulsions',
    'seizures': 'convulsions',
    'fits': 'convulsions',
    'abdominal_pain': 'abdominal pain',
    'stomach pain': 'abdominal pain',
    'stomach ache': 'abdominal pain',
    'loose motions': 'diarrhea',
    'diarrhoea': 'diarrhea',
    'high temperature': 'fever',
    'slurred_speech': 'slurred speech',
}


def normalize_symptom_name(name: str) -> str:
    cleaned = ' '.join(str(name).strip().lower().replace('_', ' ').split())
    return SYMPTOM_SYNONYMS.get(cleaned, SYMPTOM_SYNONYMS.get(str(name).strip().lower(), cleaned))


# ============================================================================
# SYMPTOM DATA
# ============================================================================

@dataclass(frozen=True)
class Symptom:
    name: str
    body_part: Optional[str] = None
    onset: Optional[str] = None
    characteristics: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'name', normalize_symptom_name(self.name))
        object.__setattr__(self, 'characteristics', tuple(self.characteristics))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'body_part': self.body_part,
            'onset': self.onset,
            'characteristics': list(self.characteristics),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Symptom':
        return cls(
            name=data['name'],
            body_part=data.get('body_part'),
            onset=data.get('onset'),
            characteristics=tuple(data.get('characteristics') or ()),
        )


@dataclass(frozen=True)
class SymptomData:
    """
    Snapshot of everything collected for one session.

    is_complete is derived by the accumulator; it may only be True when at
    least one symptom is present, severity is set and no clarification
    question is still open.
    """
    symptoms: Tuple[Symptom, ...] = ()
    duration: Optional[str] = None
    severity: Optional[Severity] = None
    extensions: Dict[str, Any] = field(default_factory=dict)
    is_complete: bool = False
    pending_clarification: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'symptoms', tuple(self.symptoms))
        if self.severity is not None and not isinstance(self.severity, Severity):
            object.__setattr__(self, 'severity', Severity(str(self.severity).upper()))
        if self.is_complete:
            if not self.symptoms:
                raise ValueError('SymptomData cannot be complete without symptoms')
            if self.severity is None:
                raise ValueError('SymptomData cannot be complete without severity')
            if self.pending_clarification:
                raise ValueError('SymptomData cannot be complete while a clarification is open')

    @property
    def symptom_names(self) -> List[str]:
        return [s.name for s in self.symptoms]

    def get_symptom(self, name: str) -> Optional[Symptom]:
        wanted = normalize_symptom_name(name)
        for symptom in self.symptoms:
            if symptom.name == wanted:
                return symptom
        return None

    def has_symptom(self, *names: str) -> bool:
        return any(self.get_symptom(n) is not None for n in names)

    @property
    def has_conflicting_evidence(self) -> bool:
        return bool(self.extensions.get(CONFLICTING_EVIDENCE_KEY))

    def missing_fields(self, required=FIELD_PRIORITY) -> List[str]:
        """Missing required fields in priority order"""
        missing = []
        for name in FIELD_PRIORITY:
            if name not in required:
                continue
            if name == SYMPTOMS_FIELD and not self.symptoms:
                missing.append(name)
            elif name == SEVERITY_FIELD and self.severity is None:
                missing.append(name)
            elif name == DURATION_FIELD and not self.duration:
                missing.append(name)
        return missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symptoms': [s.to_dict() for s in self.symptoms],
            'duration': self.duration,
            'severity': self.severity.value if self.severity else None,
            'extensions': dict(self.extensions),
            'is_complete': self.is_complete,
            'pending_clarification': self.pending_clarification,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SymptomData':
        if not data:
            return cls()
        return cls(
            symptoms=tuple(Symptom.from_dict(s) for s in data.get('symptoms', [])),
            duration=data.get('duration'),
            severity=Severity(data['severity']) if data.get('severity') else None,
            extensions=dict(data.get('extensions') or {}),
            is_complete=bool(data.get('is_complete', False)),
            pending_clarification=data.get('pending_clarification'),
        )


# ============================================================================
# ASSESSMENT
# ============================================================================

@dataclass(frozen=True)
class LowConfidenceEscalation:
    """
    Informational annotation (not a failure): the model's winning tier was
    raised one level because its confidence was under the threshold
    """
    from_level: RiskLevel
    to_level: RiskLevel
    confidence: float
    threshold: float

    def describe(self) -> str:
        return (
            f"low confidence escalation: {self.from_level.value} -> {self.to_level.value} "
            f"(confidence {self.confidence:.2f} < threshold {self.threshold:.2f})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from_level': self.from_level.value,
            'to_level': self.to_level.value,
            'confidence': self.confidence,
            'threshold': self.threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LowConfidenceEscalation':
        return cls(
            from_level=RiskLevel(data['from_level']),
            to_level=RiskLevel(data['to_level']),
            confidence=float(data['confidence']),
            threshold=float(data['threshold']),
        )


@dataclass(frozen=True)
class Assessment:
    risk_level: RiskLevel
    confidence: float
    contributing_factors: Tuple[str, ...]
    timestamp: datetime
    assessment_id: str = field(default_factory=lambda: f"AS-{uuid.uuid4().hex[:16].upper()}")
    model_risk_level: Optional[RiskLevel] = None
    escalation: Optional[LowConfidenceEscalation] = None
    needs_manual_review: bool = False

    def __post_init__(self):
        if not isinstance(self.risk_level, RiskLevel):
            object.__setattr__(self, 'risk_level', RiskLevel(self.risk_level))
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, 'contributing_factors', tuple(self.contributing_factors))

    @property
    def is_emergency(self) -> bool:
        return self.risk_level is RiskLevel.EMERGENCY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'assessment_id': self.assessment_id,
            'risk_level': self.risk_level.value,
            'confidence': self.confidence,
            'contributing_factors': list(self.contributing_factors),
            'timestamp': self.timestamp.isoformat(),
            'model_risk_level': self.model_risk_level.value if self.model_risk_level else None,
            'escalation': self.escalation.to_dict() if self.escalation else None,
            'needs_manual_review': self.needs_manual_review,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Assessment':
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = parse_datetime(timestamp)
        return cls(
            assessment_id=data['assessment_id'],
            risk_level=RiskLevel(data['risk_level']),
            confidence=float(data['confidence']),
            contributing_factors=tuple(data.get('contributing_factors') or ()),
            timestamp=timestamp,
            model_risk_level=RiskLevel(data['model_risk_level']) if data.get('model_risk_level') else None,
            escalation=LowConfidenceEscalation.from_dict(data['escalation']) if data.get('escalation') else None,
            needs_manual_review=bool(data.get('needs_manual_review', False)),
        )
