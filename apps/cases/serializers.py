"""
Case API Serializers
Read serializers render engine entities; write serializers validate dashboard actions
"""

from rest_framework import serializers

from apps.cases.entities import CaseStatus


class FollowUpSerializer(serializers.Serializer):
    follow_up_id = serializers.CharField()
    asha_id = serializers.CharField()
    action = serializers.CharField(source='action.value')
    notes = serializers.CharField()
    timestamp = serializers.DateTimeField()
    reminder_time = serializers.DateTimeField(allow_null=True)
    details = serializers.DictField()


class ReminderSerializer(serializers.Serializer):
    case_id = serializers.CharField()
    follow_up_id = serializers.CharField()
    asha_id = serializers.CharField()
    reminder_time = serializers.DateTimeField()
    notes = serializers.CharField()


class CaseSerializer(serializers.Serializer):
    """Full case view for the ASHA dashboard"""

    case_id = serializers.CharField()
    user_id = serializers.CharField()
    session_id = serializers.CharField()
    channel = serializers.CharField()
    status = serializers.CharField(source='status.value')
    risk_level = serializers.CharField(source='risk_level.value')
    risk_tier_rank = serializers.IntegerField()
    assigned_asha_id = serializers.CharField(allow_null=True)
    needs_manual_review = serializers.BooleanField()
    symptom_data = serializers.SerializerMethodField()
    assessment = serializers.SerializerMethodField()
    assessment_history = serializers.SerializerMethodField()
    follow_ups = FollowUpSerializer(many=True)
    created_at = serializers.DateTimeField()
    updated_at = serializers.DateTimeField()
    version = serializers.IntegerField()

    def get_symptom_data(self, case) -> dict:
        return case.symptom_data.to_dict()

    def get_assessment(self, case) -> dict:
        return case.assessment.to_dict()

    def get_assessment_history(self, case) -> list:
        return [a.to_dict() for a in case.assessment_history]


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[s.value for s in CaseStatus])
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class FollowUpCreateSerializer(serializers.Serializer):
    notes = serializers.CharField(max_length=4000)


class ReminderCreateSerializer(serializers.Serializer):
    reminder_time = serializers.DateTimeField()
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class AssignSerializer(serializers.Serializer):
    asha_id = serializers.CharField(max_length=100)


class PaginationSerializer(serializers.Serializer):
    offset = serializers.IntegerField(min_value=0, default=0)
    limit = serializers.IntegerField(min_value=1, max_value=500, default=50)
