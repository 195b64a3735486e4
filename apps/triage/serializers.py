"""
Triage API Serializers
Channel adapter payloads in and out of the intake endpoint
"""

from rest_framework import serializers


CHANNEL_CHOICES = ['whatsapp', 'sms', 'ussd', 'voice', 'web']


class IntakeMessageSerializer(serializers.Serializer):
    """One message delivered by a channel adapter"""

    session_id = serializers.CharField(max_length=100)
    user_id = serializers.CharField(max_length=100, required=False, allow_null=True)
    message = serializers.CharField(max_length=2000, trim_whitespace=True)
    channel = serializers.ChoiceField(choices=CHANNEL_CHOICES, default='web')
    timestamp = serializers.DateTimeField(required=False, allow_null=True)


class RecommendationsSerializer(serializers.Serializer):
    headline = serializers.CharField()
    actions = serializers.ListField(child=serializers.CharField())
    follow_up_timeframe = serializers.CharField()
    disclaimers = serializers.ListField(child=serializers.CharField())


class ChannelReplySerializer(serializers.Serializer):
    session_id = serializers.CharField()
    ack = serializers.BooleanField()
    session_state = serializers.CharField()
    clarification = serializers.CharField(allow_null=True)
    case_id = serializers.CharField(allow_null=True)
    risk_level = serializers.CharField(allow_null=True)
    needs_manual_review = serializers.BooleanField()
    queued = serializers.BooleanField()
    recommendations = RecommendationsSerializer(allow_null=True)


class SessionAckSerializer(serializers.Serializer):
    """What an unauthenticated channel adapter may see: no symptoms, no case link"""
    session_id = serializers.CharField()
    state = serializers.CharField(source='state.value')
    turn_number = serializers.IntegerField()
    last_input_at = serializers.DateTimeField()


class SessionStatusSerializer(serializers.Serializer):
    session_id = serializers.CharField()
    user_id = serializers.CharField()
    channel = serializers.CharField()
    state = serializers.CharField(source='state.value')
    turn_number = serializers.IntegerField()
    pending_question = serializers.CharField(allow_null=True)
    closed_reason = serializers.CharField(allow_null=True)
    case_id = serializers.CharField(allow_null=True)
    created_at = serializers.DateTimeField()
    last_input_at = serializers.DateTimeField()
    symptom_data = serializers.SerializerMethodField()

    def get_symptom_data(self, session) -> dict:
        return session.symptom_data.to_dict()
