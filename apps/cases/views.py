"""
Case API Views
Dashboard read and write paths for ASHA workers. Every call is audited by the engine.
"""

import logging

from django.apps import apps
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, views
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from apps.cases.entities import CaseStatus
from apps.cases.filters import CaseFilterSet
from apps.cases.models import CaseRecord
from apps.cases.serializers import (
    AssignSerializer,
    CaseSerializer,
    FollowUpCreateSerializer,
    PaginationSerializer,
    ReminderCreateSerializer,
    ReminderSerializer,
    StatusUpdateSerializer,
)

logger = logging.getLogger(__name__)


class CaseEngineMixin:
    """Views take the engine built in CasesConfig.ready(), or one passed to as_view()"""

    engine = None
    permission_classes = [IsAuthenticated]

    def get_engine(self):
        return self.engine or apps.get_app_config('cases').engine

    def actor_id(self, request) -> str:
        return request.user.get_username()


class CaseListView(CaseEngineMixin, views.APIView):
    """
    GET /api/v1/cases/
    Filtered cases in priority order: EMERGENCY first, newest first, then case_id
    """

    @extend_schema(
        parameters=[
            OpenApiParameter('risk_level', str, many=True),
            OpenApiParameter('status', str, many=True),
            OpenApiParameter('created_after', str),
            OpenApiParameter('created_before', str),
            OpenApiParameter('user_id', str),
            OpenApiParameter('assigned_asha_id', str),
            OpenApiParameter('needs_manual_review', bool),
            OpenApiParameter('offset', int),
            OpenApiParameter('limit', int),
        ],
        responses={200: CaseSerializer(many=True)},
    )
    def get(self, request):
        filterset = CaseFilterSet(request.query_params, queryset=CaseRecord.objects.none())
        if not filterset.is_valid():
            raise ValidationError(filterset.errors)
        page = PaginationSerializer(data=request.query_params)
        page.is_valid(raise_exception=True)

        engine = self.get_engine()
        filters = filterset.to_case_filters()
        cases = engine.list_cases(
            filters,
            offset=page.validated_data['offset'],
            limit=page.validated_data['limit'],
            actor_id=self.actor_id(request),
        )
        return Response({
            'count': engine.count_cases(filters),
            'offset': page.validated_data['offset'],
            'limit': page.validated_data['limit'],
            'results': CaseSerializer(cases, many=True).data,
        })


class CaseDetailView(CaseEngineMixin, views.APIView):
    """
    GET /api/v1/cases/<case_id>/
    """

    @extend_schema(responses={200: CaseSerializer})
    def get(self, request, case_id):
        case = self.get_engine().get_case(case_id, actor_id=self.actor_id(request))
        return Response(CaseSerializer(case).data)


class CaseStatusView(CaseEngineMixin, views.APIView):
    """
    POST /api/v1/cases/<case_id>/status/
    """

    @extend_schema(request=StatusUpdateSerializer, responses={200: CaseSerializer})
    def post(self, request, case_id):
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        case = self.get_engine().transition(
            case_id,
            CaseStatus(serializer.validated_data['status']),
            self.actor_id(request),
            serializer.validated_data['notes'],
        )
        return Response(CaseSerializer(case).data)


class CaseFollowUpView(CaseEngineMixin, views.APIView):
    """
    POST /api/v1/cases/<case_id>/follow-ups/
    """

    @extend_schema(request=FollowUpCreateSerializer, responses={201: CaseSerializer})
    def post(self, request, case_id):
        serializer = FollowUpCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        case = self.get_engine().add_follow_up(
            case_id, self.actor_id(request), serializer.validated_data['notes']
        )
        return Response(CaseSerializer(case).data, status=status.HTTP_201_CREATED)


class CaseReminderView(CaseEngineMixin, views.APIView):
    """
    POST /api/v1/cases/<case_id>/reminders/
    """

    @extend_schema(request=ReminderCreateSerializer, responses={201: CaseSerializer})
    def post(self, request, case_id):
        serializer = ReminderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        case = self.get_engine().schedule_follow_up(
            case_id,
            self.actor_id(request),
            serializer.validated_data['reminder_time'],
            serializer.validated_data['notes'],
        )
        return Response(CaseSerializer(case).data, status=status.HTTP_201_CREATED)


class CaseAssignView(CaseEngineMixin, views.APIView):
    """
    POST /api/v1/cases/<case_id>/assign/
    """

    @extend_schema(request=AssignSerializer, responses={200: CaseSerializer})
    def post(self, request, case_id):
        serializer = AssignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        case = self.get_engine().assign(
            case_id, serializer.validated_data['asha_id'], self.actor_id(request)
        )
        return Response(CaseSerializer(case).data)


class DueRemindersView(CaseEngineMixin, views.APIView):
    """
    GET /api/v1/cases/reminders/due/
    Read-only: listing reminders never marks them as notified
    """

    @extend_schema(responses={200: ReminderSerializer(many=True)})
    def get(self, request):
        reminders = self.get_engine().due_reminders(actor_id=self.actor_id(request))
        return Response(ReminderSerializer(reminders, many=True).data)


class UserCasesView(CaseEngineMixin, views.APIView):
    """
    GET    /api/v1/cases/users/<user_id>/   case history of one user
    DELETE /api/v1/cases/users/<user_id>/   purge the user's cases and intake sessions (staff only)
    """

    orchestrator = None

    def get_permissions(self):
        if self.request.method == 'DELETE':
            return [IsAdminUser()]
        return [IsAuthenticated()]

    def get_orchestrator(self):
        return self.orchestrator or apps.get_app_config('triage').orchestrator

    @extend_schema(responses={200: CaseSerializer(many=True)})
    def get(self, request, user_id):
        cases = self.get_engine().cases_for_user(user_id, actor_id=self.actor_id(request))
        return Response(CaseSerializer(cases, many=True).data)

    @extend_schema(responses={200: dict})
    def delete(self, request, user_id):
        result = self.get_orchestrator().delete_user_data(user_id, self.actor_id(request))
        logger.info(f"User data of {user_id} deleted by {self.actor_id(request)}")
        return Response(result)
