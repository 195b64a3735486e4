"""
Prioritization Tool
Canonical priority order for the ASHA worker queue and dashboard:
risk tier (EMERGENCY first), then newest first, then case_id ascending.
Filters are applied before ordering.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional

from apps.cases.entities import Case, CaseStatus
from apps.triage.symptoms import RiskLevel


@dataclass(frozen=True)
class CaseFilters:
    risk_levels: FrozenSet[RiskLevel] = field(default_factory=frozenset)
    statuses: FrozenSet[CaseStatus] = field(default_factory=frozenset)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    user_id: Optional[str] = None
    assigned_asha_id: Optional[str] = None
    needs_manual_review: Optional[bool] = None

    def matches(self, case: Case) -> bool:
        if self.risk_levels and case.risk_level not in self.risk_levels:
            return False
        if self.statuses and case.status not in self.statuses:
            return False
        if self.created_after and case.created_at < self.created_after:
            return False
        if self.created_before and case.created_at > self.created_before:
            return False
        if self.user_id is not None and case.user_id != self.user_id:
            return False
        if self.assigned_asha_id is not None and case.assigned_asha_id != self.assigned_asha_id:
            return False
        if self.needs_manual_review is not None and case.needs_manual_review != self.needs_manual_review:
            return False
        return True


def prioritize(cases: Iterable[Case], filters: Optional[CaseFilters] = None) -> List[Case]:
    """
    Filter then order cases by (risk tier rank, created_at desc, case_id asc).
    Python's sort is stable, so sorting by the least significant key first
    gives the full ordering without mixing ascending and descending keys.
    """
    selected = [c for c in cases if filters is None or filters.matches(c)]
    selected.sort(key=lambda c: c.case_id)
    selected.sort(key=lambda c: c.created_at, reverse=True)
    selected.sort(key=lambda c: c.risk_tier_rank)
    return selected


def paginate(cases: List[Case], offset: int = 0, limit: Optional[int] = None) -> List[Case]:
    if offset < 0:
        raise ValueError('offset cannot be negative')
    if limit is None:
        return cases[offset:]
    return cases[offset:offset + limit]
