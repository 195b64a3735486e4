"""
Triage Classifier
Pure function SymptomData -> Assessment:
  1. emergency rule table (deterministic, always wins)
  2. pluggable risk model
  3. escalation policy: low confidence or conflicting evidence moves one tier up
No I/O happens here.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from django.utils import timezone

from apps.core.exceptions import IncompleteInputError
from apps.triage.symptoms import (
    Assessment,
    LowConfidenceEscalation,
    RiskLevel,
    SymptomData,
)
from apps.triage.tools.red_flag_detection import RedFlagDetectionTool
from apps.triage.tools.risk_classification import RiskModel, WeightedRiskModel

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6
CONFLICTING_EVIDENCE_FACTOR = 'conflicting evidence: flagged for manual review'


class TriageClassifier:

    def __init__(
            self,
            red_flags: Optional[RedFlagDetectionTool] = None,
            model: Optional[RiskModel] = None,
            confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
            max_features: int = 3,
            clock: Callable[[], datetime] = timezone.now,
    ):
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError('confidence_threshold must be within [0, 1]')
        self.red_flags = red_flags or RedFlagDetectionTool()
        self.model = model or WeightedRiskModel()
        self.confidence_threshold = confidence_threshold
        self.max_features = max_features
        self.clock = clock

    def classify(self, symptom_data: SymptomData) -> Assessment:
        """
        Classify a complete SymptomData snapshot

        Raises:
            IncompleteInputError: symptom_data.is_complete is False
        """
        if not symptom_data.is_complete:
            raise IncompleteInputError(
                f"classify() called with incomplete data (missing: {symptom_data.missing_fields()}, "
                f"pending clarification: {symptom_data.pending_clarification})"
            )

        # ====================================================================
        # STAGE 1: RULES
        # ====================================================================
        rule = self.red_flags.match(symptom_data)
        if rule is not None:
            logger.info(f"Emergency rule matched: {rule.name}")
            return Assessment(
                risk_level=RiskLevel.EMERGENCY,
                confidence=1.0,
                contributing_factors=(rule.name,),
                timestamp=self.clock(),
            )

        # ====================================================================
        # STAGE 2: MODEL
        # ====================================================================
        scores = self.model.score(symptom_data)
        model_level, confidence = scores.winner()
        factors = list(scores.features[:self.max_features])
        risk_level = model_level
        escalation = None
        needs_review = False

        # ====================================================================
        # ESCALATION POLICY
        # ====================================================================
        if confidence < self.confidence_threshold and model_level is not RiskLevel.EMERGENCY:
            escalation = LowConfidenceEscalation(
                from_level=model_level,
                to_level=model_level.escalate(),
                confidence=confidence,
                threshold=self.confidence_threshold,
            )
            risk_level = escalation.to_level
            factors.append(escalation.describe())

        if symptom_data.has_conflicting_evidence:
            needs_review = True
            if escalation is None:
                risk_level = risk_level.escalate()
            factors.append(CONFLICTING_EVIDENCE_FACTOR)

        logger.info(
            f"Model {scores.model_name}: {model_level.value} ({confidence:.2f}) -> {risk_level.value}"
        )
        return Assessment(
            risk_level=risk_level,
            confidence=confidence,
            contributing_factors=tuple(factors),
            timestamp=self.clock(),
            model_risk_level=model_level,
            escalation=escalation,
            needs_manual_review=needs_review,
        )

    def provisional_assessment(self, symptom_data: SymptomData, reason: str) -> Assessment:
        """
        Assessment for data that could not finish the normal path
        (expired session, extraction or classification timeout).
        Emergency rules still apply to partial data; otherwise PHC_VISIT for manual review.
        """
        rule = self.red_flags.match(symptom_data)
        if rule is not None:
            return Assessment(
                risk_level=RiskLevel.EMERGENCY,
                confidence=1.0,
                contributing_factors=(rule.name, f"manual review: {reason}"),
                timestamp=self.clock(),
                needs_manual_review=True,
            )
        return Assessment(
            risk_level=RiskLevel.PHC_VISIT,
            confidence=0.0,
            contributing_factors=(f"manual review: {reason}",),
            timestamp=self.clock(),
            needs_manual_review=True,
        )
