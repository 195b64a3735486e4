"""
Red-Flag Detection Tool
Ordered table of emergency patterns checked before any model runs.
A match always means EMERGENCY; no model output can downgrade it.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from apps.triage.symptoms import Severity, SymptomData


@dataclass(frozen=True)
class EmergencyRule:
    """Red flag pattern definition"""
    name: str
    description: str
    matches: Callable[[SymptomData], bool]


def _any_symptom(*names: str) -> Callable[[SymptomData], bool]:
    def check(data: SymptomData) -> bool:
        return data.has_symptom(*names)
    return check


def _severe_symptom(name: str, *qualifiers: str) -> Callable[[SymptomData], bool]:
    """Symptom reported as SEVERE, or described with one of the qualifying characteristics"""
    def check(data: SymptomData) -> bool:
        symptom = data.get_symptom(name)
        if symptom is None:
            return False
        if data.severity is Severity.SEVERE:
            return True
        return any(q in symptom.characteristics for q in qualifiers)
    return check


EMERGENCY_RULES: Sequence[EmergencyRule] = (
    EmergencyRule(
        name='unconsciousness rule',
        description='Loss of consciousness or unresponsive patient',
        matches=_any_symptom('unconsciousness'),
    ),
    EmergencyRule(
        name='difficulty breathing rule',
        description='Respiratory distress',
        matches=_any_symptom('difficulty breathing'),
    ),
    EmergencyRule(
        name='severe chest pain rule',
        description='Severe chest pain (possible cardiac event)',
        matches=_severe_symptom('chest pain'),
    ),
    EmergencyRule(
        name='severe bleeding rule',
        description='Uncontrolled or severe bleeding',
        matches=_severe_symptom('bleeding', 'heavy'),
    ),
    EmergencyRule(
        name='convulsions rule',
        description='Seizures or convulsions',
        matches=_any_symptom('convulsions'),
    ),
    EmergencyRule(
        name='stroke signs rule',
        description='Slurred speech or one-sided weakness (possible stroke)',
        matches=_any_symptom('slurred speech', 'one-sided weakness'),
    ),
)


class RedFlagDetectionTool:
    """
    Detects emergency red-flag patterns that require immediate escalation
    Rules are evaluated in table order; the first match wins
    """

    def __init__(self, rules: Optional[Sequence[EmergencyRule]] = None):
        self.rules = tuple(rules) if rules is not None else tuple(EMERGENCY_RULES)

    def match(self, symptom_data: SymptomData) -> Optional[EmergencyRule]:
        """First matching rule, or None. Works on partial data too."""
        for rule in self.rules:
            if rule.matches(symptom_data):
                return rule
        return None

    def detect_all(self, symptom_data: SymptomData) -> List[EmergencyRule]:
        """Every matching rule, in table order (for audit / display)"""
        return [rule for rule in self.rules if rule.matches(symptom_data)]
