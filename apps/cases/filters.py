"""
Dashboard query filters
django-filter validates the query string; the result becomes a CaseFilters
that both case stores understand.
"""

import django_filters

from apps.cases.entities import CaseStatus
from apps.cases.models import CaseRecord
from apps.cases.tools.prioritization import CaseFilters
from apps.triage.symptoms import RiskLevel


class CaseFilterSet(django_filters.FilterSet):
    risk_level = django_filters.MultipleChoiceFilter(choices=CaseRecord.RISK_LEVEL_CHOICES)
    status = django_filters.MultipleChoiceFilter(choices=CaseRecord.STATUS_CHOICES)
    created_after = django_filters.IsoDateTimeFilter(field_name='created_at', lookup_expr='gte')
    created_before = django_filters.IsoDateTimeFilter(field_name='created_at', lookup_expr='lte')
    user_id = django_filters.CharFilter()
    assigned_asha_id = django_filters.CharFilter()
    needs_manual_review = django_filters.BooleanFilter()

    class Meta:
        model = CaseRecord
        fields = [
            'risk_level', 'status', 'created_after', 'created_before',
            'user_id', 'assigned_asha_id', 'needs_manual_review',
        ]

    def to_case_filters(self) -> CaseFilters:
        """Call after is_valid()"""
        data = self.form.cleaned_data
        return CaseFilters(
            risk_levels=frozenset(RiskLevel(v) for v in data.get('risk_level') or ()),
            statuses=frozenset(CaseStatus(v) for v in data.get('status') or ()),
            created_after=data.get('created_after'),
            created_before=data.get('created_before'),
            user_id=data.get('user_id') or None,
            assigned_asha_id=data.get('assigned_asha_id') or None,
            needs_manual_review=data.get('needs_manual_review'),
        )
