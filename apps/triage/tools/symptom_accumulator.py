"""
Symptom Accumulator
Merges successive partial inputs of one session into a single SymptomData
and decides when it is complete enough to classify.

Rules:
- every raw input is appended to the session history, whatever extraction does
- symptoms merge by name; characteristics are unioned, never overwritten
- at most one clarification question is open at a time, chosen by
  symptom identity > severity > duration
- conflicting severities keep the higher one and are flagged for review
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from django.utils import timezone

from apps.conversations.sessions import IntakeSession, SessionState, SessionStore
from apps.core.exceptions import ExtractionError, ExtractionTimeout, SessionClosedError, SessionExpiredError
from apps.core.locks import KeyedLocks
from apps.core.retry import retry_with_backoff
from apps.triage.ml_models import ExtractionResult
from apps.triage.symptoms import (
    CONFLICTING_EVIDENCE_KEY,
    DURATION_FIELD,
    FIELD_PRIORITY,
    SEVERITY_FIELD,
    SYMPTOMS_FIELD,
    Symptom,
    SymptomData,
)
from apps.triage.tools.red_flag_detection import RedFlagDetectionTool

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# With an emergency pattern already present, duration is not worth waiting for
EMERGENCY_REQUIRED = (SYMPTOMS_FIELD, SEVERITY_FIELD)

CLARIFICATION_QUESTIONS = {
    SYMPTOMS_FIELD: "What symptoms are you having? Please describe what is bothering you.",
    SEVERITY_FIELD: "How bad is the {symptom}: mild, moderate or severe?",
    DURATION_FIELD: "How long have you had the {symptom}? (for example: since today, 3 days, about a week)",
}


@dataclass(frozen=True)
class AccumulationResult:
    session_id: str
    symptom_data: SymptomData
    needs_clarification: bool
    question: Optional[str]
    state: SessionState


class SymptomAccumulator:

    def __init__(
            self,
            store: SessionStore,
            extractor,
            red_flags: Optional[RedFlagDetectionTool] = None,
            session_timeout_seconds: float = 1800,
            ack_budget_seconds: float = 30,
            retry_attempts: int = 3,
            retry_base_delay: float = 0.5,
            on_expired: Optional[Callable[[IntakeSession], None]] = None,
            clock: Callable[[], datetime] = timezone.now,
            sleep: Callable[[float], None] = time.sleep,
            monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.extractor = extractor
        self.red_flags = red_flags or RedFlagDetectionTool()
        self.session_timeout_seconds = session_timeout_seconds
        self.ack_budget_seconds = ack_budget_seconds
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.on_expired = on_expired
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic
        self.locks = KeyedLocks()

    # ------------------------------------------------------------------ #
    # PUBLIC ENTRY POINTS
    # ------------------------------------------------------------------ #

    def accumulate(
            self,
            session_id: str,
            raw_input: str,
            *,
            user_id: Optional[str] = None,
            channel: str = 'web',
            timestamp: Optional[datetime] = None,
    ) -> AccumulationResult:
        """
        Merge one raw input into the session's running SymptomData

        Raises:
            SessionClosedError: session already COMPLETE / EXPIRED
            SessionExpiredError: session timed out before this input (it is escalated)
            ExtractionError: extraction failed or timed out within the retry budget (input still recorded)
        """
        with self.locks.hold(session_id):
            now = timestamp or self.clock()
            session = self.store.get(session_id)

            if session is None:
                session = IntakeSession(
                    session_id=session_id,
                    user_id=user_id or session_id,
                    channel=channel,
                    created_at=now,
                    last_input_at=now,
                )
                logger.info(f"New intake session {session_id} via {channel}")
            elif session.is_stale(now, self.session_timeout_seconds):
                # Recorded for audit, but it does not revive the session
                self._record_late_input(session, raw_input, now)
                self._expire(session)
                raise SessionExpiredError(f"session {session_id} expired before input at {now.isoformat()}")
            elif not session.is_active:
                self._record_late_input(session, raw_input, now)
                raise SessionClosedError(f"session {session_id} is {session.state.value}")

            session.turn_number += 1
            session.last_input_at = now
            session.record_turn('patient', raw_input, now)

            try:
                extraction = self._extract(raw_input)
            except Exception:
                self.store.save(session)
                raise

            data = self.merge(session.symptom_data, extraction)
            question = self._evaluate(session, data)
            self.store.save(session)

            return AccumulationResult(
                session_id=session_id,
                symptom_data=session.symptom_data,
                needs_clarification=question is not None,
                question=question,
                state=session.state,
            )

    def get_session(self, session_id: str) -> Optional[IntakeSession]:
        return self.store.get(session_id)

    def expire_stale(self, now: Optional[datetime] = None) -> List[IntakeSession]:
        """Expire every ACTIVE session without input for longer than the timeout"""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.session_timeout_seconds)
        expired = []
        for candidate in self.store.stale_sessions(cutoff):
            try:
                with self.locks.hold(candidate.session_id):
                    session = self.store.get(candidate.session_id)
                    if session is None or not session.is_stale(now, self.session_timeout_seconds):
                        continue
                    expired.append(self._expire(session))
            except Exception:
                # Left ACTIVE, so the next sweep retries it
                logger.exception(f"Could not expire session {candidate.session_id}")
        if expired:
            logger.info(f"Expired {len(expired)} stale intake sessions")
        return expired

    def close_session(self, session_id: str, reason: str, case_id: Optional[str] = None,
                      state: SessionState = SessionState.EXPIRED) -> Optional[IntakeSession]:
        """Close a session out of band (manual review escalation) and link its case"""
        with self.locks.hold(session_id):
            session = self.store.get(session_id)
            if session is None:
                return None
            if session.is_active:
                session.close(state, reason)
            if case_id:
                session.case_id = case_id
            self.store.save(session)
            return session

    # ------------------------------------------------------------------ #
    # EXTRACTION
    # ------------------------------------------------------------------ #

    def _extract(self, raw_input: str) -> ExtractionResult:
        started = self.monotonic()
        result = retry_with_backoff(
            lambda: self._extract_once(raw_input),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            retry_on=(ExtractionError,),
            sleep=self.sleep,
            description='symptom extraction',
        )
        elapsed = self.monotonic() - started
        if elapsed > self.ack_budget_seconds:
            raise ExtractionTimeout(
                f"extraction took {elapsed:.1f}s, budget is {self.ack_budget_seconds:.0f}s"
            )
        return result

    def _extract_once(self, raw_input: str) -> ExtractionResult:
        try:
            return self.extractor.extract(raw_input)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"extractor raised {type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # MERGING
    # ------------------------------------------------------------------ #

    def merge(self, current: SymptomData, extraction: ExtractionResult) -> SymptomData:
        """New snapshot with the extraction folded in; any open clarification is closed"""
        symptoms: List[Symptom] = list(current.symptoms)
        positions = {s.name: i for i, s in enumerate(symptoms)}

        for new in extraction.symptoms:
            if new.name in positions:
                i = positions[new.name]
                old = symptoms[i]
                characteristics = list(old.characteristics)
                for c in new.characteristics:
                    if c not in characteristics:
                        characteristics.append(c)
                symptoms[i] = Symptom(
                    name=old.name,
                    body_part=old.body_part or new.body_part,
                    onset=old.onset or new.onset,
                    characteristics=tuple(characteristics),
                )
            else:
                positions[new.name] = len(symptoms)
                symptoms.append(Symptom(
                    name=new.name,
                    body_part=new.body_part,
                    onset=new.onset,
                    characteristics=tuple(dict.fromkeys(new.characteristics)),
                ))

        extensions = dict(current.extensions)
        extensions.update(extraction.extensions)

        severity = current.severity
        if extraction.severity is not None:
            if severity is None:
                severity = extraction.severity
            elif extraction.severity is not severity:
                kept = max(severity, extraction.severity, key=lambda s: s.weight)
                conflicts = list(extensions.get(CONFLICTING_EVIDENCE_KEY, []))
                conflicts.append({
                    'field': SEVERITY_FIELD,
                    'values': [severity.value, extraction.severity.value],
                    'kept': kept.value,
                })
                extensions[CONFLICTING_EVIDENCE_KEY] = conflicts
                logger.info(f"Conflicting severity {severity.value} vs {extraction.severity.value}, keeping {kept.value}")
                severity = kept

        return SymptomData(
            symptoms=tuple(symptoms),
            duration=current.duration or extraction.duration,
            severity=severity,
            extensions=extensions,
        )

    # ------------------------------------------------------------------ #
    # COMPLETENESS
    # ------------------------------------------------------------------ #

    def required_fields(self, data: SymptomData):
        if self.red_flags.match(data) is not None:
            return EMERGENCY_REQUIRED
        return FIELD_PRIORITY

    def _evaluate(self, session: IntakeSession, data: SymptomData) -> Optional[str]:
        """Update the session with data; return the clarification question, if any"""
        missing = data.missing_fields(self.required_fields(data))

        if not missing:
            session.symptom_data = replace(data, is_complete=True, pending_clarification=None)
            session.pending_question = None
            session.close(SessionState.COMPLETE, 'complete')
            logger.info(f"Session {session.session_id} complete after {session.turn_number} turns")
            return None

        field_name = missing[0]
        question = self.question_for(field_name, data)
        session.symptom_data = replace(data, is_complete=False, pending_clarification=field_name)
        session.pending_question = question
        session.record_turn('agent', question, session.last_input_at)
        return question

    def question_for(self, field_name: str, data: SymptomData) -> str:
        symptom = data.symptoms[0].name if data.symptoms else 'problem'
        return CLARIFICATION_QUESTIONS[field_name].format(symptom=symptom)

    def _record_late_input(self, session: IntakeSession, raw_input: str, now: datetime) -> None:
        session.turn_number += 1
        session.record_turn('patient', raw_input, now)
        self.store.save(session)

    def _expire(self, session: IntakeSession) -> IntakeSession:
        """
        Escalate first, then mark EXPIRED: if escalation fails the session stays
        ACTIVE and stale, so the next sweep (or input) picks it up again
        """
        logger.warning(f"Session {session.session_id} expired with partial data, escalating to manual review")
        if self.on_expired is not None:
            self.on_expired(session)
        current = self.store.get(session.session_id) or session
        if current.is_active:
            current.close(SessionState.EXPIRED, 'timeout')
            self.store.save(current)
        return current
