"""
Case Lifecycle & Priority Engine
Creates cases from assessments and owns every mutation after that:
status state machine, follow-ups, assignment, reassessment, reminders.

Concurrency:
- at most one mutation in flight per case (keyed lock), distinct cases run in parallel
- every save is a version compare-and-swap; a lost race is retried once
  on fresh state, then surfaced as ConcurrencyConflict
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from django.utils import timezone

from apps.cases.entities import (
    SYSTEM_ACTOR,
    Case,
    CaseStatus,
    FollowUp,
    FollowUpAction,
    Reminder,
    new_case_id,
)
from apps.cases.stores import CaseStore
from apps.cases.tools.audit_logging import AuditLogTool
from apps.cases.tools.prioritization import CaseFilters
from apps.core.exceptions import (
    CaseNotFound,
    ConcurrencyConflict,
    InvalidTransitionError,
    NotificationDeliveryError,
    PastReminderError,
    TransientStorageError,
)
from apps.core.locks import KeyedLocks
from apps.core.retry import retry_with_backoff
from apps.triage.symptoms import Assessment, SymptomData

logger = logging.getLogger(__name__)


@dataclass
class ReminderDispatchReport:
    sent: List[Reminder] = field(default_factory=list)
    failed: List[Reminder] = field(default_factory=list)


class CaseEngine:

    MAX_ID_ATTEMPTS = 5

    def __init__(
            self,
            store: CaseStore,
            audit: Optional[AuditLogTool] = None,
            clock: Callable[[], datetime] = timezone.now,
            id_factory: Callable[[], str] = new_case_id,
            storage_retry_attempts: int = 3,
            retry_base_delay: float = 0.1,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.audit = audit or AuditLogTool(clock=clock)
        self.clock = clock
        self.id_factory = id_factory
        self.storage_retry_attempts = storage_retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep
        self.locks = KeyedLocks()

    # ====================================================================
    # CREATION
    # ====================================================================

    def create_case(
            self,
            symptom_data: SymptomData,
            assessment: Assessment,
            *,
            user_id: str,
            session_id: str,
            channel: str,
    ) -> Case:
        now = self.clock()
        for _ in range(self.MAX_ID_ATTEMPTS):
            case = Case(
                case_id=self.id_factory(),
                user_id=user_id,
                session_id=session_id,
                channel=channel,
                symptom_data=symptom_data,
                assessment=assessment,
                created_at=now,
                updated_at=now,
                needs_manual_review=assessment.needs_manual_review,
            )
            if self._storage(lambda: self.store.add(case), 'case insert'):
                self.audit.record(SYSTEM_ACTOR, 'case_created', case.case_id, {
                    'risk_level': case.risk_level.value,
                    'session_id': session_id,
                })
                logger.info(f"Created case {case.case_id} ({case.risk_level.value}) for session {session_id}")
                return case
            logger.warning(f"Case id {case.case_id} already taken, generating a new one")
        raise ConcurrencyConflict(f"could not allocate a unique case id in {self.MAX_ID_ATTEMPTS} attempts")

    # ====================================================================
    # READS
    # ====================================================================

    def get_case(self, case_id: str, actor_id: Optional[str] = None) -> Case:
        case = self._load(case_id)
        if actor_id:
            self.audit.record(actor_id, 'case_viewed', case_id)
        return case

    def list_cases(self, filters: Optional[CaseFilters] = None, offset: int = 0,
                   limit: Optional[int] = None, actor_id: Optional[str] = None) -> List[Case]:
        """Filtered cases in priority order: tier, newest first, case_id"""
        cases = self._storage(lambda: self.store.query(filters, offset, limit), 'case query')
        if actor_id:
            for case in cases:
                self.audit.record(actor_id, 'case_viewed', case.case_id, {'via': 'case_list'})
        return cases

    def count_cases(self, filters: Optional[CaseFilters] = None) -> int:
        return self._storage(lambda: self.store.count(filters), 'case count')

    def cases_for_user(self, user_id: str, actor_id: Optional[str] = None) -> List[Case]:
        cases = self._storage(lambda: self.store.for_user(user_id), 'user case query')
        if actor_id:
            for case in cases:
                self.audit.record(actor_id, 'case_viewed', case.case_id, {'via': 'user_history'})
        return cases

    def due_reminders(self, now: Optional[datetime] = None, actor_id: Optional[str] = None) -> List[Reminder]:
        """Reminders due at now and not yet notified. Read-only; calling it twice changes nothing."""
        now = now or self.clock()
        cases = self._storage(lambda: self.store.with_due_reminders(now), 'reminder query')
        reminders = [r for case in cases for r in case.due_reminders(now)]
        reminders.sort(key=lambda r: (r.reminder_time, r.case_id, r.follow_up_id))
        if actor_id:
            for reminder in reminders:
                self.audit.record(actor_id, 'reminder_viewed', reminder.case_id,
                                  {'follow_up_id': reminder.follow_up_id})
        return reminders

    # ====================================================================
    # STATUS / FOLLOW-UPS
    # ====================================================================

    def transition(self, case_id: str, new_status: CaseStatus, asha_id: str, notes: str = '') -> Case:
        """
        Raises:
            InvalidTransitionError: not an allowed edge (nothing is changed)
        """
        new_status = CaseStatus(new_status)

        def apply(case: Case) -> bool:
            if not case.status.can_transition_to(new_status):
                raise InvalidTransitionError(
                    f"{case.case_id}: {case.status.value} -> {new_status.value} is not allowed"
                )
            previous = case.status
            case.status = new_status
            self._append(case, FollowUp(
                asha_id=asha_id,
                action=FollowUpAction.STATUS_CHANGE,
                timestamp=self.clock(),
                notes=notes,
                details={'from': previous.value, 'to': new_status.value},
            ))
            return True

        case = self._mutate(case_id, apply)
        self.audit.record(asha_id, 'status_changed', case_id, {'to': new_status.value})
        logger.info(f"Case {case_id} -> {new_status.value} by {asha_id}")
        return case

    def add_follow_up(self, case_id: str, asha_id: str, notes: str) -> Case:
        def apply(case: Case) -> bool:
            self._append(case, FollowUp(
                asha_id=asha_id,
                action=FollowUpAction.NOTE,
                timestamp=self.clock(),
                notes=notes,
            ))
            return True

        case = self._mutate(case_id, apply)
        self.audit.record(asha_id, 'follow_up_added', case_id)
        return case

    def assign(self, case_id: str, asha_id: str, assigned_by: str) -> Case:
        def apply(case: Case) -> bool:
            if case.status.is_terminal:
                raise InvalidTransitionError(f"{case.case_id} is {case.status.value}; cannot reassign")
            previous = case.assigned_asha_id
            case.assigned_asha_id = asha_id
            self._append(case, FollowUp(
                asha_id=assigned_by,
                action=FollowUpAction.ASSIGNMENT,
                timestamp=self.clock(),
                details={'from': previous, 'to': asha_id},
            ))
            return True

        case = self._mutate(case_id, apply)
        self.audit.record(assigned_by, 'case_assigned', case_id, {'asha_id': asha_id})
        return case

    def reassess(self, case_id: str, assessment: Assessment, asha_id: str = SYSTEM_ACTOR, notes: str = '') -> Case:
        """Replace the current assessment; the previous one moves to assessment_history"""
        def apply(case: Case) -> bool:
            if case.status.is_terminal:
                raise InvalidTransitionError(f"{case.case_id} is {case.status.value}; cannot reassess")
            previous = case.assessment
            case.assessment_history.append(previous)
            case.assessment = assessment
            case.needs_manual_review = assessment.needs_manual_review
            self._append(case, FollowUp(
                asha_id=asha_id,
                action=FollowUpAction.REASSESSMENT,
                timestamp=self.clock(),
                notes=notes,
                details={'from': previous.risk_level.value, 'to': assessment.risk_level.value},
            ))
            return True

        case = self._mutate(case_id, apply)
        self.audit.record(asha_id, 'case_reassessed', case_id, {'risk_level': assessment.risk_level.value})
        return case

    def record_notification_failure(self, case_id: str, channel: str, detail: str) -> Case:
        def apply(case: Case) -> bool:
            self._append(case, FollowUp(
                asha_id=SYSTEM_ACTOR,
                action=FollowUpAction.NOTIFICATION_FAILED,
                timestamp=self.clock(),
                notes=detail,
                details={'channel': channel},
            ))
            return True

        logger.warning(f"Notification for case {case_id} via {channel} failed: {detail}")
        return self._mutate(case_id, apply)

    # ====================================================================
    # REMINDERS
    # ====================================================================

    def schedule_follow_up(self, case_id: str, asha_id: str, reminder_time: datetime, notes: str = '') -> Case:
        """
        Raises:
            PastReminderError: reminder_time is not strictly in the future (nothing appended)
        """
        def apply(case: Case) -> bool:
            # Stamped under the case lock so follow-ups stay in timestamp order
            now = self.clock()
            if reminder_time <= now:
                raise PastReminderError(
                    f"reminder_time {reminder_time.isoformat()} is not after now ({now.isoformat()})"
                )
            self._append(case, FollowUp(
                asha_id=asha_id,
                action=FollowUpAction.REMINDER,
                timestamp=now,
                notes=notes,
                reminder_time=reminder_time,
            ))
            return True

        case = self._mutate(case_id, apply)
        self.audit.record(asha_id, 'reminder_scheduled', case_id, {'reminder_time': reminder_time.isoformat()})
        return case

    def mark_reminder_notified(self, case_id: str, follow_up_id: str) -> bool:
        """Claim a reminder for delivery. True only for the first caller."""
        claimed = []

        def apply(case: Case) -> bool:
            if follow_up_id in case.notified_follow_up_ids:
                return False
            case.notified_follow_up_ids.append(follow_up_id)
            claimed.append(follow_up_id)
            return True

        self._mutate(case_id, apply)
        return bool(claimed)

    def release_reminder(self, case_id: str, follow_up_id: str, detail: str) -> Case:
        """Undo a claim after a failed send so the next scan picks the reminder up again"""
        def apply(case: Case) -> bool:
            if follow_up_id in case.notified_follow_up_ids:
                case.notified_follow_up_ids.remove(follow_up_id)
            self._append(case, FollowUp(
                asha_id=SYSTEM_ACTOR,
                action=FollowUpAction.NOTIFICATION_FAILED,
                timestamp=self.clock(),
                notes=detail,
                details={'follow_up_id': follow_up_id},
            ))
            return True

        return self._mutate(case_id, apply)

    def dispatch_due_reminders(self, notifier, now: Optional[datetime] = None) -> ReminderDispatchReport:
        """Send every due reminder exactly once, even with several schedulers running"""
        report = ReminderDispatchReport()
        for reminder in self.due_reminders(now):
            try:
                claimed = self.mark_reminder_notified(reminder.case_id, reminder.follow_up_id)
            except CaseNotFound:
                continue
            if not claimed:
                continue
            case = self._load(reminder.case_id)
            try:
                notifier.send_reminder(reminder, case)
            except NotificationDeliveryError as exc:
                self.release_reminder(reminder.case_id, reminder.follow_up_id, exc.technical_detail)
                report.failed.append(reminder)
                continue
            report.sent.append(reminder)
        if report.sent or report.failed:
            logger.info(f"Reminders dispatched: {len(report.sent)} sent, {len(report.failed)} failed")
        return report

    # ====================================================================
    # DATA DELETION
    # ====================================================================

    def delete_user_data(self, user_id: str, actor_id: str) -> List[str]:
        case_ids = self._storage(lambda: self.store.delete_for_user(user_id), 'user data deletion')
        for case_id in case_ids:
            self.audit.record(actor_id, 'case_deleted', case_id, {'user_id': user_id})
        logger.info(f"Deleted {len(case_ids)} cases of user {user_id} on request of {actor_id}")
        return case_ids

    # ====================================================================
    # INTERNALS
    # ====================================================================

    def _append(self, case: Case, follow_up: FollowUp) -> None:
        case.follow_ups.append(follow_up)
        case.updated_at = follow_up.timestamp

    def _load(self, case_id: str) -> Case:
        case = self._storage(lambda: self.store.get(case_id), 'case read')
        if case is None:
            raise CaseNotFound(f"case {case_id} does not exist")
        return case

    def _mutate(self, case_id: str, apply: Callable[[Case], bool]) -> Case:
        """
        Load, apply and save under the case lock.
        apply() returns False for a no-op (nothing saved) and raises to reject.
        """
        with self.locks.hold(case_id):
            for attempt in (1, 2):
                case = self._load(case_id)
                expected = case.version
                if not apply(case):
                    return case
                try:
                    return self._storage(lambda: self.store.save(case, expected), 'case save')
                except ConcurrencyConflict:
                    if attempt == 2:
                        raise
                    logger.warning(f"Version conflict on {case_id}, retrying on fresh state")

    def _storage(self, func, description: str):
        return retry_with_backoff(
            func,
            attempts=self.storage_retry_attempts,
            base_delay=self.retry_base_delay,
            retry_on=(TransientStorageError,),
            sleep=self.sleep,
            description=description,
        )
