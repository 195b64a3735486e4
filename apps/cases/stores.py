"""
Case stores
CaseStore is the persistence contract the case engine relies on:
- add() is an atomic insert-if-absent (case_id collisions are detected, not overwritten)
- save() is a compare-and-swap on Case.version
InMemoryCaseStore backs the pure tests; DjangoCaseStore backs the deployed service.
"""

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional

from django.db import DatabaseError, IntegrityError, OperationalError, transaction

from apps.cases.entities import Case, CaseStatus, FollowUp, FollowUpAction
from apps.cases.models import CaseRecord, FollowUpRecord
from apps.cases.tools.prioritization import CaseFilters, paginate, prioritize
from apps.core.exceptions import ConcurrencyConflict, TransientStorageError
from apps.triage.symptoms import Assessment, SymptomData


class CaseStore:

    def add(self, case: Case) -> bool:
        """Insert a new case; False when case_id is already taken"""
        raise NotImplementedError

    def get(self, case_id: str) -> Optional[Case]:
        raise NotImplementedError

    def save(self, case: Case, expected_version: int) -> Case:
        """
        Persist case if the stored version still equals expected_version.
        Returns the case with its version bumped.

        Raises:
            ConcurrencyConflict: another writer saved first
        """
        raise NotImplementedError

    def query(self, filters: Optional[CaseFilters] = None, offset: int = 0,
              limit: Optional[int] = None) -> List[Case]:
        """Filtered cases in canonical priority order"""
        raise NotImplementedError

    def count(self, filters: Optional[CaseFilters] = None) -> int:
        """Number of cases matching filters, ignoring paging"""
        raise NotImplementedError

    def with_due_reminders(self, now: datetime) -> List[Case]:
        """Cases holding at least one reminder due at now and not yet claimed"""
        raise NotImplementedError

    def delete_for_user(self, user_id: str) -> List[str]:
        raise NotImplementedError

    def for_user(self, user_id: str) -> List[Case]:
        return self.query(CaseFilters(user_id=user_id))


class InMemoryCaseStore(CaseStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._cases: Dict[str, Case] = {}

    def __len__(self):
        return len(self._cases)

    def add(self, case: Case) -> bool:
        with self._lock:
            if case.case_id in self._cases:
                return False
            self._cases[case.case_id] = copy.deepcopy(case)
            return True

    def get(self, case_id: str) -> Optional[Case]:
        with self._lock:
            case = self._cases.get(case_id)
            return copy.deepcopy(case) if case else None

    def save(self, case: Case, expected_version: int) -> Case:
        with self._lock:
            stored = self._cases.get(case.case_id)
            if stored is None or stored.version != expected_version:
                raise ConcurrencyConflict(
                    f"case {case.case_id} changed since version {expected_version}"
                )
            case.version = expected_version + 1
            self._cases[case.case_id] = copy.deepcopy(case)
            return case

    def query(self, filters: Optional[CaseFilters] = None, offset: int = 0,
              limit: Optional[int] = None) -> List[Case]:
        with self._lock:
            snapshot = [copy.deepcopy(c) for c in self._cases.values()]
        return paginate(prioritize(snapshot, filters), offset, limit)

    def count(self, filters: Optional[CaseFilters] = None) -> int:
        with self._lock:
            snapshot = [copy.deepcopy(c) for c in self._cases.values()]
        return len(prioritize(snapshot, filters))

    def with_due_reminders(self, now: datetime) -> List[Case]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._cases.values() if c.due_reminders(now)]

    def delete_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            doomed = sorted(cid for cid, c in self._cases.items() if c.user_id == user_id)
            for cid in doomed:
                del self._cases[cid]
            return doomed


class DjangoCaseStore(CaseStore):
    """
    ORM-backed store. Database errors that are worth retrying surface as
    TransientStorageError; the engine retries those with backoff.
    """

    def add(self, case: Case) -> bool:
        try:
            with transaction.atomic():
                if CaseRecord.objects.filter(case_id=case.case_id).exists():
                    return False
                CaseRecord.objects.create(case_id=case.case_id, **self._fields(case))
                self._store_follow_ups(case, set())
        except IntegrityError:
            return False
        except OperationalError as exc:
            raise TransientStorageError(f"insert of {case.case_id} failed: {exc}") from exc
        return True

    def get(self, case_id: str) -> Optional[Case]:
        try:
            record = CaseRecord.objects.prefetch_related('follow_ups').get(case_id=case_id)
        except CaseRecord.DoesNotExist:
            return None
        except OperationalError as exc:
            raise TransientStorageError(f"read of {case_id} failed: {exc}") from exc
        return self._to_case(record)

    def save(self, case: Case, expected_version: int) -> Case:
        try:
            with transaction.atomic():
                updated = CaseRecord.objects.filter(
                    case_id=case.case_id,
                    version=expected_version,
                ).update(version=expected_version + 1, **self._fields(case))
                if not updated:
                    raise ConcurrencyConflict(
                        f"case {case.case_id} changed since version {expected_version}"
                    )
                stored = set(
                    FollowUpRecord.objects.filter(case_id=case.case_id).values_list('follow_up_id', flat=True)
                )
                self._store_follow_ups(case, stored)
                self._sync_notified(case)
        except OperationalError as exc:
            raise TransientStorageError(f"save of {case.case_id} failed: {exc}") from exc
        case.version = expected_version + 1
        return case

    def query(self, filters: Optional[CaseFilters] = None, offset: int = 0,
              limit: Optional[int] = None) -> List[Case]:
        queryset = self._filtered(filters).prefetch_related('follow_ups').order_by(
            'risk_tier_rank', '-created_at', 'case_id'
        )

        if offset:
            queryset = queryset[offset:offset + limit] if limit is not None else queryset[offset:]
        elif limit is not None:
            queryset = queryset[:limit]

        try:
            return [self._to_case(r) for r in queryset]
        except OperationalError as exc:
            raise TransientStorageError(f"case query failed: {exc}") from exc

    def count(self, filters: Optional[CaseFilters] = None) -> int:
        try:
            return self._filtered(filters).count()
        except OperationalError as exc:
            raise TransientStorageError(f"case count failed: {exc}") from exc

    def _filtered(self, filters: Optional[CaseFilters]):
        queryset = CaseRecord.objects.all()
        if filters is not None:
            if filters.risk_levels:
                queryset = queryset.filter(risk_level__in=[r.value for r in filters.risk_levels])
            if filters.statuses:
                queryset = queryset.filter(status__in=[s.value for s in filters.statuses])
            if filters.created_after:
                queryset = queryset.filter(created_at__gte=filters.created_after)
            if filters.created_before:
                queryset = queryset.filter(created_at__lte=filters.created_before)
            if filters.user_id is not None:
                queryset = queryset.filter(user_id=filters.user_id)
            if filters.assigned_asha_id is not None:
                queryset = queryset.filter(assigned_asha_id=filters.assigned_asha_id)
            if filters.needs_manual_review is not None:
                queryset = queryset.filter(needs_manual_review=filters.needs_manual_review)
        return queryset

    def with_due_reminders(self, now: datetime) -> List[Case]:
        due = FollowUpRecord.objects.filter(
            action=FollowUpAction.REMINDER.value,
            reminder_time__lte=now,
            notified=False,
        ).values('case_id')
        records = CaseRecord.objects.filter(case_id__in=due).prefetch_related('follow_ups')
        try:
            cases = [self._to_case(r) for r in records]
        except OperationalError as exc:
            raise TransientStorageError(f"reminder query failed: {exc}") from exc
        return [c for c in cases if c.due_reminders(now)]

    def delete_for_user(self, user_id: str) -> List[str]:
        try:
            with transaction.atomic():
                records = CaseRecord.objects.filter(user_id=user_id)
                case_ids = sorted(records.values_list('case_id', flat=True))
                records.delete()
        except DatabaseError as exc:
            raise TransientStorageError(f"deleting cases of {user_id} failed: {exc}") from exc
        return case_ids

    # ------------------------------------------------------------------ #
    # MAPPING
    # ------------------------------------------------------------------ #

    def _fields(self, case: Case) -> dict:
        return {
            'user_id': case.user_id,
            'session_id': case.session_id,
            'channel': case.channel,
            'status': case.status.value,
            'risk_level': case.risk_level.value,
            'risk_tier_rank': case.risk_tier_rank,
            'assigned_asha_id': case.assigned_asha_id,
            'needs_manual_review': case.needs_manual_review,
            'symptom_data': case.symptom_data.to_dict(),
            'assessment': case.assessment.to_dict(),
            'assessment_history': [a.to_dict() for a in case.assessment_history],
            'notified_follow_up_ids': list(case.notified_follow_up_ids),
            'created_at': case.created_at,
            'updated_at': case.updated_at,
        }

    def _store_follow_ups(self, case: Case, stored_ids: set) -> None:
        new = [f for f in case.follow_ups if f.follow_up_id not in stored_ids]
        notified = set(case.notified_follow_up_ids)
        if new:
            FollowUpRecord.objects.bulk_create([
                FollowUpRecord(
                    follow_up_id=f.follow_up_id,
                    case_id=case.case_id,
                    asha_id=f.asha_id,
                    action=f.action.value,
                    notes=f.notes,
                    timestamp=f.timestamp,
                    reminder_time=f.reminder_time,
                    notified=f.follow_up_id in notified,
                    details=f.details,
                )
                for f in new
            ])

    def _sync_notified(self, case: Case) -> None:
        """Mirror claims and released claims onto the follow-up rows the reminder scan filters on"""
        notified = list(case.notified_follow_up_ids)
        rows = FollowUpRecord.objects.filter(case_id=case.case_id)
        rows.filter(notified=False, follow_up_id__in=notified).update(notified=True)
        rows.filter(notified=True).exclude(follow_up_id__in=notified).update(notified=False)

    def _to_case(self, record: CaseRecord) -> Case:
        return Case(
            case_id=record.case_id,
            user_id=record.user_id,
            session_id=record.session_id,
            channel=record.channel,
            symptom_data=SymptomData.from_dict(record.symptom_data),
            assessment=Assessment.from_dict(record.assessment),
            created_at=record.created_at,
            updated_at=record.updated_at,
            status=CaseStatus(record.status),
            assigned_asha_id=record.assigned_asha_id,
            follow_ups=[self._to_follow_up(f) for f in record.follow_ups.all()],
            assessment_history=[Assessment.from_dict(a) for a in record.assessment_history],
            notified_follow_up_ids=list(record.notified_follow_up_ids),
            needs_manual_review=record.needs_manual_review,
            version=record.version,
        )

    def _to_follow_up(self, record: FollowUpRecord) -> FollowUp:
        return FollowUp(
            follow_up_id=record.follow_up_id,
            asha_id=record.asha_id,
            action=FollowUpAction(record.action),
            timestamp=record.timestamp,
            notes=record.notes,
            reminder_time=record.reminder_time,
            details=dict(record.details or {}),
        )
