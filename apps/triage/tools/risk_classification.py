"""
Risk Classification Tool (model stage)
Scores the three risk tiers from symptom features.
The model is pluggable: anything with score(symptom_data) -> ModelScores works.
The default WeightedRiskModel is a deterministic weighted-feature scorer.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from apps.triage.symptoms import RiskLevel, Severity, SymptomData


@dataclass(frozen=True)
class ModelScores:
    """Per-tier scores in [0, 1] plus features ranked by contribution"""
    scores: Dict[RiskLevel, float]
    features: Tuple[str, ...] = ()
    model_name: str = 'unknown'

    def __post_init__(self):
        missing = [level for level in RiskLevel if level not in self.scores]
        if missing:
            raise ValueError(f"Model scores missing tiers: {[m.value for m in missing]}")
        for level, score in self.scores.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Score for {level.value} out of range: {score}")

    def winner(self) -> Tuple[RiskLevel, float]:
        """Highest-scoring tier; ties go to the more urgent tier"""
        level = min(self.scores, key=lambda lvl: (-self.scores[lvl], lvl.rank))
        return level, self.scores[level]


class RiskModel:
    """Interface for model-stage classifiers"""

    name = 'risk-model'

    def score(self, symptom_data: SymptomData) -> ModelScores:
        raise NotImplementedError


class WeightedRiskModel(RiskModel):
    """
    Weighted-feature risk scorer
    Raw score from symptom base risk + severity + duration + characteristics,
    then spread over the three tiers by distance to each tier's centre.
    """

    name = 'weighted-features-v1'

    # ====================================================================
    # Base risk by symptom
    # ====================================================================
    SYMPTOM_BASE_RISK = {
        'chest pain': 0.55,
        'difficulty breathing': 0.65,
        'bleeding': 0.5,
        'abdominal pain': 0.35,
        'headache': 0.25,
        'fever': 0.25,
        'vomiting': 0.25,
        'diarrhea': 0.25,
        'dizziness': 0.3,
        'injury': 0.3,
        'cough': 0.1,
        'sore throat': 0.05,
        'rash': 0.1,
        'body ache': 0.1,
    }
    DEFAULT_BASE_RISK = 0.15

    SEVERITY_WEIGHTS = {
        Severity.MILD: 0.0,
        Severity.MODERATE: 0.15,
        Severity.SEVERE: 0.3,
    }

    DURATION_WEIGHTS = {
        'less_than_1_day': 0.0,
        '1_3_days': 0.0,
        '4_7_days': 0.05,
        'more_than_1_week': 0.1,
        'more_than_1_month': 0.15,
    }

    CHARACTERISTIC_WEIGHTS = {
        'worsening': 0.15,
        'with blood': 0.2,
        'heavy': 0.15,
        'high': 0.1,
        'persistent': 0.05,
        'sudden': 0.05,
    }

    EXTRA_SYMPTOM_WEIGHT = 0.05
    MAX_EXTRA_SYMPTOMS = 3

    # Tier centres on the raw score axis and spread of each tier
    TIER_CENTRES = {
        RiskLevel.HOME_CARE: 0.15,
        RiskLevel.PHC_VISIT: 0.5,
        RiskLevel.EMERGENCY: 0.85,
    }
    TIER_WIDTH = 0.15

    def score(self, symptom_data: SymptomData) -> ModelScores:
        contributions = self._contributions(symptom_data)
        raw = sum(contributions.values())
        raw = max(0.05, min(raw, 1.0))

        weights = {
            level: math.exp(-((raw - centre) / self.TIER_WIDTH) ** 2)
            for level, centre in self.TIER_CENTRES.items()
        }
        total = sum(weights.values())
        scores = {level: w / total for level, w in weights.items()}

        return ModelScores(
            scores=scores,
            features=self._rank_features(contributions),
            model_name=self.name,
        )

    def _contributions(self, data: SymptomData) -> Dict[str, float]:
        contributions: Dict[str, float] = {}

        if data.symptoms:
            base = {s.name: self.SYMPTOM_BASE_RISK.get(s.name, self.DEFAULT_BASE_RISK) for s in data.symptoms}
            leading = max(base, key=lambda name: (base[name], name))
            contributions[f"symptom:{leading}"] = base[leading]

            extra = min(len(data.symptoms) - 1, self.MAX_EXTRA_SYMPTOMS)
            if extra > 0:
                contributions['multiple symptoms'] = extra * self.EXTRA_SYMPTOM_WEIGHT

        if data.severity is not None:
            contributions[f"severity:{data.severity.value}"] = self.SEVERITY_WEIGHTS[data.severity]

        if data.duration:
            contributions[f"duration:{data.duration}"] = self.DURATION_WEIGHTS.get(data.duration, 0.0)

        seen = set()
        for symptom in data.symptoms:
            for characteristic in symptom.characteristics:
                weight = self.CHARACTERISTIC_WEIGHTS.get(characteristic)
                if weight and characteristic not in seen:
                    seen.add(characteristic)
                    contributions[f"characteristic:{characteristic}"] = weight

        return contributions

    def _rank_features(self, contributions: Dict[str, float]) -> Tuple[str, ...]:
        ranked: List[Tuple[str, float]] = sorted(
            ((name, value) for name, value in contributions.items() if value > 0),
            key=lambda item: (-item[1], item[0]),
        )
        return tuple(name for name, _ in ranked)
