"""
Triage Orchestrator
Coordinates one inbound channel message through the pipeline:

    intake queue -> symptom accumulator -> triage classifier -> case engine
                                                             -> notifications

Anything that cannot finish the normal path (extraction failure or timeout,
assessment budget overrun, expired session, a crash while draining the
backlog) is escalated to a manual-review case instead of being dropped.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from apps.cases.entities import Case
from apps.cases.services.case_engine import CaseEngine
from apps.conversations.sessions import IntakeSession, SessionState
from apps.core.exceptions import (
    ClassificationTimeout,
    ExtractionError,
    ExtractionTimeout,
    NotificationDeliveryError,
    TriageError,
)
from apps.triage.symptoms import Assessment, RiskLevel, SymptomData
from apps.triage.tools.decision_synthesis import DecisionSynthesisTool, Recommendations
from apps.triage.tools.intake_queue import InboundMessage, IntakeQueue
from apps.triage.tools.symptom_accumulator import SymptomAccumulator
from apps.triage.tools.triage_classifier import TriageClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelReply:
    """What the channel adapter gets back for one message"""
    session_id: str
    ack: bool
    session_state: str
    clarification: Optional[str] = None
    case_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    needs_manual_review: bool = False
    queued: bool = False
    recommendations: Optional[Recommendations] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'ack': self.ack,
            'session_state': self.session_state,
            'clarification': self.clarification,
            'case_id': self.case_id,
            'risk_level': self.risk_level.value if self.risk_level else None,
            'needs_manual_review': self.needs_manual_review,
            'queued': self.queued,
            'recommendations': self.recommendations.to_dict() if self.recommendations else None,
        }


QUEUED_STATE = 'QUEUED'


class TriageOrchestrator:

    def __init__(
            self,
            accumulator: SymptomAccumulator,
            classifier: TriageClassifier,
            engine: CaseEngine,
            queue: Optional[IntakeQueue] = None,
            synthesis: Optional[DecisionSynthesisTool] = None,
            notifier=None,
            assessment_budget_seconds: float = 120,
            monotonic: Callable[[], float] = time.monotonic,
    ):
        self.accumulator = accumulator
        self.classifier = classifier
        self.engine = engine
        self.queue = queue
        self.synthesis = synthesis or DecisionSynthesisTool()
        self.notifier = notifier
        self.assessment_budget_seconds = assessment_budget_seconds
        self.monotonic = monotonic

        if self.accumulator.on_expired is None:
            self.accumulator.on_expired = self.escalate_expired

    # ====================================================================
    # INBOUND
    # ====================================================================

    def handle(self, message: InboundMessage) -> ChannelReply:
        """
        Entry point for channel adapters. Under load the message is queued
        and acknowledged; its answer is then delivered through the notifier.

        Raises:
            CapacityExceeded: backlog full, caller must back off
            SessionClosedError / SessionExpiredError: session no longer accepts input
        """
        if self.queue is None:
            return self.process(message)

        if not self.queue.try_admit(message):
            # Slots may have freed up without anyone left to serve the backlog
            self.drain_queue()
            return ChannelReply(
                session_id=message.session_id,
                ack=True,
                session_state=QUEUED_STATE,
                queued=True,
            )
        try:
            return self.process(message)
        finally:
            self.queue.release()
            # The thread that frees a slot serves the backlog in arrival order
            self.drain_queue()

    def drain_queue(self) -> List[ChannelReply]:
        """Serve the backlog; never raises, so it cannot replace the caller's own reply"""
        if self.queue is None:
            return []
        return [reply for reply in self.queue.drain(self._process_queued) if reply is not None]

    def _process_queued(self, message: InboundMessage) -> Optional[ChannelReply]:
        try:
            reply = self.process(message)
        except TriageError as exc:
            logger.warning(f"Queued message for {message.session_id} failed: {exc.error_code}")
            self._send_text(message.session_id, message.channel, exc.user_message)
            return None
        except Exception:
            logger.exception(f"Queued message for {message.session_id} crashed, escalating to manual review")
            self._escalate_after_crash(message)
            return None
        if reply.clarification:
            self._send_text(message.session_id, message.channel, reply.clarification)
        return reply

    def process(self, message: InboundMessage) -> ChannelReply:
        try:
            result = self.accumulator.accumulate(
                message.session_id,
                message.raw_input,
                user_id=message.user_id,
                channel=message.channel,
                timestamp=message.timestamp,
            )
        except ExtractionError as exc:
            reason = 'extraction timeout' if isinstance(exc, ExtractionTimeout) else 'extraction failed'
            logger.warning(f"{exc.error_code} for {message.session_id}: {exc.technical_detail}")
            case = self.escalate_session(message.session_id, reason)
            return self._reply_for_case(message.session_id, SessionState.EXPIRED, case)

        if result.needs_clarification:
            return ChannelReply(
                session_id=message.session_id,
                ack=True,
                session_state=result.state.value,
                clarification=result.question,
            )

        session = self.accumulator.get_session(message.session_id)
        case = self._assess(session, result.symptom_data)
        return self._reply_for_case(message.session_id, result.state, case)

    # ====================================================================
    # ASSESSMENT
    # ====================================================================

    def _assess(self, session: IntakeSession, symptom_data: SymptomData) -> Case:
        started = self.monotonic()
        assessment = self.classifier.classify(symptom_data)
        elapsed = self.monotonic() - started

        if elapsed > self.assessment_budget_seconds:
            timeout = ClassificationTimeout(
                f"assessment took {elapsed:.1f}s, budget is {self.assessment_budget_seconds:.0f}s"
            )
            logger.warning(f"{timeout.error_code} for {session.session_id}: {timeout.technical_detail}")
            assessment = self.classifier.provisional_assessment(symptom_data, 'classification timeout')

        return self._open_case(session, symptom_data, assessment, reason='complete')

    def escalate_session(self, session_id: str, reason: str) -> Case:
        """Close a session that cannot finish normally and open a manual-review case"""
        session = self.accumulator.get_session(session_id)
        if session.case_id:
            return self.engine.get_case(session.case_id)
        assessment = self.classifier.provisional_assessment(session.symptom_data, reason)
        return self._open_case(session, session.symptom_data, assessment, reason=reason)

    def escalate_expired(self, session: IntakeSession) -> None:
        """on_expired hook of the accumulator"""
        self.escalate_session(session.session_id, 'session expired')

    def _escalate_after_crash(self, message: InboundMessage) -> None:
        if self.accumulator.get_session(message.session_id) is None:
            return
        try:
            self.escalate_session(message.session_id, 'processing failed')
        except Exception:
            logger.exception(f"Could not escalate session {message.session_id}")

    def expire_stale_sessions(self, now=None) -> List[IntakeSession]:
        return self.accumulator.expire_stale(now)

    def _open_case(self, session: IntakeSession, symptom_data: SymptomData,
                   assessment: Assessment, reason: str) -> Case:
        case = self.engine.create_case(
            symptom_data,
            assessment,
            user_id=session.user_id,
            session_id=session.session_id,
            channel=session.channel,
        )
        self.accumulator.close_session(session.session_id, reason, case_id=case.case_id)
        if assessment.needs_manual_review:
            logger.warning(f"Case {case.case_id} flagged for manual review ({reason})")
        self._notify(case)
        return case

    # ====================================================================
    # NOTIFICATION
    # ====================================================================

    def _notify(self, case: Case) -> None:
        if self.notifier is None:
            logger.debug(f"No notifier configured, skipping notifications for {case.case_id}")
            return

        recommendations = self.synthesis.recommend(case.assessment)
        try:
            self.notifier.send_assessment(
                case.session_id, case.channel, case.assessment, recommendations, case_id=case.case_id
            )
        except NotificationDeliveryError as exc:
            self.engine.record_notification_failure(case.case_id, case.channel, exc.technical_detail)

        try:
            self.notifier.alert_worker(case)
        except NotificationDeliveryError as exc:
            self.engine.record_notification_failure(
                case.case_id, self.notifier.worker_channel, exc.technical_detail
            )

    def _send_text(self, session_id: str, channel: str, text: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_reply(session_id, channel, text)
        except NotificationDeliveryError as exc:
            logger.error(f"Reply to {session_id} via {channel} failed: {exc.technical_detail}")

    def _reply_for_case(self, session_id: str, state: SessionState, case: Case) -> ChannelReply:
        return ChannelReply(
            session_id=session_id,
            ack=True,
            session_state=state.value,
            case_id=case.case_id,
            risk_level=case.risk_level,
            needs_manual_review=case.needs_manual_review,
            recommendations=self.synthesis.recommend(case.assessment),
        )

    # ====================================================================
    # DATA DELETION
    # ====================================================================

    def delete_user_data(self, user_id: str, actor_id: str) -> Dict[str, Any]:
        case_ids = self.engine.delete_user_data(user_id, actor_id)
        sessions = self.accumulator.store.delete_for_user(user_id)
        logger.info(f"Purged user {user_id}: {len(case_ids)} cases, {sessions} sessions")
        return {'user_id': user_id, 'deleted_case_ids': case_ids, 'deleted_sessions': sessions}
