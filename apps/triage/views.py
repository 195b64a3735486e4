"""
Triage API Views
Channel adapter endpoints: deliver a message, check a session
"""

import logging

from django.apps import apps
from django.utils import timezone
from drf_spectacular.utils import extend_schema
from rest_framework import status, views
from rest_framework.exceptions import NotFound
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from apps.core.exceptions import get_request_id
from apps.triage.serializers import (
    ChannelReplySerializer,
    IntakeMessageSerializer,
    SessionAckSerializer,
    SessionStatusSerializer,
)
from apps.triage.tools.intake_queue import InboundMessage

logger = logging.getLogger(__name__)


class OrchestratorMixin:
    """Views take the orchestrator built in TriageConfig.ready(), or one passed to as_view()"""

    orchestrator = None

    def get_orchestrator(self):
        return self.orchestrator or apps.get_app_config('triage').orchestrator


class IntakeView(OrchestratorMixin, views.APIView):
    """
    POST /api/v1/triage/intake/
    One inbound message from a channel adapter.
    200 with a clarification question or an assessment, 202 when queued.
    """
    permission_classes = [AllowAny]

    @extend_schema(
        request=IntakeMessageSerializer,
        responses={200: ChannelReplySerializer, 202: ChannelReplySerializer},
        description="Deliver one patient message; returns ack plus clarification or assessment"
    )
    def post(self, request):
        serializer = IntakeMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        message = InboundMessage(
            session_id=data['session_id'],
            raw_input=data['message'],
            channel=data['channel'],
            user_id=data.get('user_id'),
            timestamp=data.get('timestamp') or timezone.now(),
            request_id=get_request_id(request),
        )
        reply = self.get_orchestrator().handle(message)

        logger.info(f"Intake {message.session_id}: state={reply.session_state} queued={reply.queued}")
        return Response(
            reply.to_dict(),
            status=status.HTTP_202_ACCEPTED if reply.queued else status.HTTP_200_OK,
        )


class SessionStatusView(OrchestratorMixin, views.APIView):
    """
    GET /api/v1/triage/sessions/<session_id>/
    Session ids are often phone numbers, so anonymous callers only get the
    state and ack fields; symptoms and the case link need a dashboard login.
    """
    permission_classes = [AllowAny]

    @extend_schema(responses={200: SessionStatusSerializer})
    def get(self, request, session_id):
        session = self.get_orchestrator().accumulator.get_session(session_id)
        if session is None:
            raise NotFound(f"session {session_id} does not exist")
        if request.user and request.user.is_authenticated:
            return Response(SessionStatusSerializer(session).data)
        return Response(SessionAckSerializer(session).data)


class TriageHealthCheckView(OrchestratorMixin, views.APIView):
    """
    GET /api/v1/triage/health/
    """
    permission_classes = [AllowAny]

    @extend_schema(responses={200: dict})
    def get(self, request):
        orchestrator = self.get_orchestrator()
        queue = orchestrator.queue
        return Response({
            'status': 'healthy',
            'timestamp': timezone.now().isoformat(),
            'extractor': type(orchestrator.accumulator.extractor).__name__,
            'risk_model': orchestrator.classifier.model.name,
            'intake_in_flight': queue.in_flight if queue else 0,
            'intake_pending': len(queue) if queue else 0,
        })
