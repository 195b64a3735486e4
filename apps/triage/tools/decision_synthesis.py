"""
Decision Synthesis Tool
Turns an Assessment into the patient-facing recommendation sent back on the channel
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from apps.triage.symptoms import Assessment, RiskLevel


@dataclass(frozen=True)
class Recommendations:
    headline: str
    actions: Tuple[str, ...]
    follow_up_timeframe: str
    disclaimers: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'headline': self.headline,
            'actions': list(self.actions),
            'follow_up_timeframe': self.follow_up_timeframe,
            'disclaimers': list(self.disclaimers),
        }


class DecisionSynthesisTool:
    """
    Patient-facing advice per risk tier
    Conservative: manual review never softens the advice of the tier
    """

    HEADLINES = {
        RiskLevel.EMERGENCY: (
            "SEEK IMMEDIATE EMERGENCY CARE. Your symptoms indicate a potentially "
            "serious condition. Go to the nearest emergency facility now."
        ),
        RiskLevel.PHC_VISIT: (
            "Visit your Primary Health Centre within 24-48 hours. "
            "Your symptoms should be checked by a health worker."
        ),
        RiskLevel.HOME_CARE: (
            "Your symptoms can be managed at home. "
            "Rest, drink plenty of fluids and watch for changes."
        ),
    }

    ACTIONS = {
        RiskLevel.EMERGENCY: (
            "Call emergency services (108) or go to the nearest hospital now",
            "Do not travel alone if you can avoid it",
            "Your ASHA worker has been alerted",
        ),
        RiskLevel.PHC_VISIT: (
            "Visit the Primary Health Centre within 24-48 hours",
            "Go sooner if your symptoms get worse",
            "Your ASHA worker will contact you",
        ),
        RiskLevel.HOME_CARE: (
            "Rest and drink plenty of fluids",
            "Seek care if symptoms get worse or last more than a few days",
            "Your ASHA worker may check on you",
        ),
    }

    FOLLOW_UP_TIMEFRAMES = {
        RiskLevel.EMERGENCY: 'Immediately',
        RiskLevel.PHC_VISIT: 'Within 24 hours',
        RiskLevel.HOME_CARE: 'Within 3-7 days if symptoms persist',
    }

    BASE_DISCLAIMERS = (
        "This is NOT a medical diagnosis - it is a preliminary assessment only.",
        "This assessment is based on the information you provided.",
        "Seek immediate medical care if your condition worsens at any time.",
    )

    def recommend(self, assessment: Assessment) -> Recommendations:
        level = assessment.risk_level
        actions = list(self.ACTIONS[level])
        disclaimers = list(self.BASE_DISCLAIMERS)

        if assessment.needs_manual_review:
            actions.append("A health worker will review your answers personally")

        if level is RiskLevel.HOME_CARE:
            disclaimers.append(
                "Even mild symptoms can sometimes indicate serious conditions. "
                "Trust your judgment and seek care if concerned."
            )

        disclaimers.append(
            "This triage system is a decision support tool and does not replace "
            "professional medical judgment."
        )

        return Recommendations(
            headline=self.HEADLINES[level],
            actions=tuple(actions),
            follow_up_timeframe=self.FOLLOW_UP_TIMEFRAMES[level],
            disclaimers=tuple(disclaimers),
        )
