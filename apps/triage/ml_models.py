"""
ML Models
Symptom extraction collaborators
The extraction model is a black box that turns a raw message into candidate
symptom tokens. HuggingFace-backed when HF_TOKEN is set, keyword rules otherwise.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from huggingface_hub import InferenceClient, InferenceTimeoutError
from huggingface_hub.errors import HfHubHTTPError
import requests

from apps.core.exceptions import ExtractionError, ExtractionTimeout
from apps.triage.symptoms import DURATION_BUCKETS, Severity, Symptom, normalize_symptom_name

load_dotenv()
logger = logging.getLogger(__name__)

HF_TOKEN = os.getenv("HF_TOKEN")
DEFAULT_HF_MODEL = "Qwen/Qwen2.5-7B-Instruct"


# ============================================================================
# DATA STRUCTURE
# ============================================================================

@dataclass
class ExtractionResult:
    symptoms: List[Symptom] = field(default_factory=list)
    severity: Optional[Severity] = None
    duration: Optional[str] = None
    extensions: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.symptoms or self.severity or self.duration or self.extensions)


# ============================================================================
# NORMALIZATION
# ============================================================================

SEVERITY_WORDS = {
    "mild": Severity.MILD,
    "slight": Severity.MILD,
    "little": Severity.MILD,
    "not bad": Severity.MILD,
    "moderate": Severity.MODERATE,
    "medium": Severity.MODERATE,
    "quite bad": Severity.MODERATE,
    "bad": Severity.MODERATE,
    "severe": Severity.SEVERE,
    "very bad": Severity.SEVERE,
    "very severe": Severity.SEVERE,
    "terrible": Severity.SEVERE,
    "unbearable": Severity.SEVERE,
    "extreme": Severity.SEVERE,
}


def normalize_severity(value: Optional[str]) -> Optional[Severity]:
    if not value:
        return None
    text = str(value).strip().lower().replace("_", " ")
    if "/" in text:
        # "mild/severe" style answers: keep the more severe reading
        candidates = [normalize_severity(part) for part in text.split("/")]
        candidates = [c for c in candidates if c]
        return max(candidates, key=lambda s: s.weight) if candidates else None
    return SEVERITY_WORDS.get(text)


def normalize_duration(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = str(value).strip().lower()
    if text in DURATION_BUCKETS:
        return text
    legacy = {
        "today": "less_than_1_day",
        "0_1_days": "less_than_1_day",
        "over_1_week": "more_than_1_week",
    }
    if text in legacy:
        return legacy[text]
    return duration_from_text(text)


def duration_from_text(text: str) -> Optional[str]:
    """Map free text such as '3 days', 'since yesterday', 'two weeks' onto a duration bucket"""
    t = text.lower()
    if re.search(r"\b(today|this morning|tonight|few hours|an hour|\d+\s*hours?)\b", t):
        return "less_than_1_day"
    if re.search(r"\b(yesterday|since last night)\b", t):
        return "1_3_days"

    words = {"a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
             "six": 6, "seven": 7, "few": 3, "couple of": 2}
    match = re.search(r"\b(\d+|a|an|one|two|three|four|five|six|seven|few|couple of)\s+(day|week|month|year)s?\b", t)
    if not match:
        return None
    amount = match.group(1)
    count = int(amount) if amount.isdigit() else words[amount]
    unit = match.group(2)

    if unit == "day":
        if count <= 0:
            return "less_than_1_day"
        if count <= 3:
            return "1_3_days"
        if count <= 7:
            return "4_7_days"
        return "more_than_1_week" if count < 30 else "more_than_1_month"
    if unit == "week":
        if count == 1:
            return "4_7_days" if "about" in t or "almost" in t else "more_than_1_week"
        return "more_than_1_week" if count < 4 else "more_than_1_month"
    return "more_than_1_month"


# ============================================================================
# KEYWORD EXTRACTOR
# ============================================================================

SYMPTOM_PATTERNS: List[Tuple[str, str]] = [
    ("chest pain", r"\bchest\s*(pain|ache|tightness|pressure)|pain in (my |the )?chest\b"),
    ("difficulty breathing", r"\b(difficulty breathing|hard to breathe|can'?t breathe|cannot breathe|short(ness)? of breath|breathless)"),
    ("unconsciousness", r"\b(unconscious|fainted|passed out|unresponsive|not waking)\b"),
    ("bleeding", r"\b(bleeding|blood loss|haemorrhage|hemorrhage)\b"),
    ("convulsions", r"\b(convulsions?|seizures?|fits)\b"),
    ("slurred speech", r"\bslurred speech\b"),
    ("one-sided weakness", r"\b(weakness on one side|one side weak|face drooping|drooping face)\b"),
    ("fever", r"\b(fever|feverish|high temperature|hot body)\b"),
    ("cough", r"\bcough(ing)?\b"),
    ("headache", r"\bhead\s*ache|headache\b"),
    ("vomiting", r"\b(vomit(ing)?|throwing up)\b"),
    ("diarrhea", r"\b(diarrh(o)?ea|loose motions?)\b"),
    ("abdominal pain", r"\b(stomach|abdominal|belly)\s*(pain|ache)\b"),
    ("rash", r"\brash\b"),
    ("dizziness", r"\b(dizzy|dizziness)\b"),
    ("body ache", r"\bbody\s*(ache|pain)s?\b"),
    ("sore throat", r"\bsore throat\b"),
    ("injury", r"\b(injur(y|ed)|wound|cut myself|fell down)\b"),
]

CHARACTERISTIC_PATTERNS: List[Tuple[str, str]] = [
    ("worsening", r"\b(getting worse|worsening|worse)\b"),
    ("sudden", r"\b(sudden(ly)?|all of a sudden)\b"),
    ("persistent", r"\b(persistent|constant|won'?t stop|continuous)\b"),
    ("heavy", r"\b(heavy|a lot of blood|soaking)\b"),
    ("high", r"\bhigh\b"),
    ("dry", r"\bdry\b"),
    ("with blood", r"\b(with blood|bloody)\b"),
]

BODY_PARTS = ("chest", "head", "stomach", "abdomen", "back", "leg", "arm", "throat", "neck")


class KeywordSymptomExtractor:
    """
    Deterministic rule-based extractor
    Used when no model endpoint is configured, and as the fallback for empty model output
    """

    def extract(self, text: str) -> ExtractionResult:
        t = (text or "").lower()
        characteristics = [name for name, pattern in CHARACTERISTIC_PATTERNS if re.search(pattern, t)]
        onset = "sudden" if "sudden" in characteristics else None

        symptoms = []
        for name, pattern in SYMPTOM_PATTERNS:
            if re.search(pattern, t):
                symptoms.append(Symptom(
                    name=name,
                    body_part=next((p for p in BODY_PARTS if p in name), None),
                    onset=onset,
                    characteristics=tuple(c for c in characteristics if c != "sudden"),
                ))

        return ExtractionResult(
            symptoms=symptoms,
            severity=self._severity_rules(t),
            duration=duration_from_text(t),
        )

    def _severity_rules(self, t: str) -> Optional[Severity]:
        # Longest phrases first so "very bad" wins over "bad"
        for phrase in sorted(SEVERITY_WORDS, key=len, reverse=True):
            if re.search(rf"\b{re.escape(phrase)}\b", t):
                return SEVERITY_WORDS[phrase]
        return None


# ============================================================================
# HUGGINGFACE EXTRACTOR
# ============================================================================

_EXTRACTION_SYSTEM = """You are a medical triage assistant for community health workers.
Extract clinical data from the patient message.
Return ONLY a raw JSON object. No explanation. No markdown. No code blocks.

Use this exact format:
{
  "symptoms": [{"name": "", "body_part": "", "onset": "", "characteristics": []}],
  "severity": "mild/moderate/severe",
  "duration": "less_than_1_day/1_3_days/4_7_days/more_than_1_week/more_than_1_month"
}
Leave a field empty when the message does not mention it."""


def _extract_json(text: str) -> Optional[Dict]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        try:
            start = text.index("{")
            end = text.rindex("}") + 1
            return json.loads(text[start:end])
        except ValueError:
            return None


class HuggingFaceSymptomExtractor:
    """
    HuggingFace-backed extractor
    Timeouts and endpoint errors (model loading, connection refused) surface as
    ExtractionTimeout / ExtractionError so the accumulator can retry with backoff
    """

    def __init__(self, token: str = HF_TOKEN, model: str = DEFAULT_HF_MODEL, timeout: float = 20.0):
        self.client = InferenceClient(model=model, token=token, timeout=timeout)
        self.fallback = KeywordSymptomExtractor()

    def _call_llm(self, text: str) -> str:
        try:
            response = self.client.chat.completions.create(
                messages=[
                    {"role": "system", "content": _EXTRACTION_SYSTEM},
                    {"role": "user", "content": f"Patient message: {text}"},
                ],
                temperature=0.0,
                max_tokens=300,
            )
        except (InferenceTimeoutError, requests.exceptions.Timeout, TimeoutError) as exc:
            raise ExtractionTimeout(f"extraction model timed out: {exc}") from exc
        except (HfHubHTTPError, requests.exceptions.RequestException) as exc:
            raise ExtractionError(f"extraction model unavailable: {exc}") from exc
        return (response.choices[0].message.content or "").strip()

    def extract(self, text: str) -> ExtractionResult:
        raw = self._call_llm(text)
        data = _extract_json(raw) if raw else None
        if not data or not isinstance(data, dict):
            logger.warning(f"Could not parse extraction JSON: {raw[:200]!r}")
            return self.fallback.extract(text)

        items = data.get("symptoms") or []
        if not isinstance(items, list):
            items = [items]

        symptoms = []
        for item in items:
            if isinstance(item, str):
                item = {"name": item}
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            characteristics = item.get("characteristics") or []
            if not isinstance(characteristics, list):
                characteristics = [characteristics]
            symptoms.append(Symptom(
                name=normalize_symptom_name(name),
                body_part=item.get("body_part") or None,
                onset=item.get("onset") or None,
                characteristics=tuple(str(c) for c in characteristics if c),
            ))

        result = ExtractionResult(
            symptoms=symptoms,
            severity=normalize_severity(data.get("severity")),
            duration=normalize_duration(data.get("duration")),
        )
        if result.is_empty:
            return self.fallback.extract(text)
        return result


def build_default_extractor(token: Optional[str] = None, model: Optional[str] = None):
    """HuggingFace extractor when a token is configured, keyword rules otherwise"""
    token = token if token is not None else HF_TOKEN
    if token:
        return HuggingFaceSymptomExtractor(token=token, model=model or DEFAULT_HF_MODEL)
    logger.info("HF_TOKEN not set, using keyword symptom extractor")
    return KeywordSymptomExtractor()
