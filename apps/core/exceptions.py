"""
Core Exceptions
Error taxonomy shared by the triage, conversation and case apps, plus the
DRF exception handler that renders every failure in one stable shape:

    {error_code, user_message, technical_detail, timestamp, request_id}
"""

import logging
import uuid

from django.http import Http404
from django.utils import timezone
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)


class TriageError(Exception):
    """Base class for every error raised by the triage core"""

    error_code = 'TRIAGE_ERROR'
    user_message = 'Something went wrong while processing your request.'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, technical_detail: str = '', user_message: str = None):
        super().__init__(technical_detail or self.user_message)
        self.technical_detail = technical_detail
        if user_message:
            self.user_message = user_message


# ============================================================================
# INPUT / CLASSIFICATION
# ============================================================================

class IncompleteInputError(TriageError):
    """Classification attempted on incomplete symptom data (programming error)"""
    error_code = 'INCOMPLETE_INPUT'
    user_message = 'More information is needed before an assessment can be made.'
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ExtractionError(TriageError):
    """The extraction model failed or answered with something unusable (retryable)"""
    error_code = 'EXTRACTION_FAILED'
    user_message = 'We could not read your message. A health worker will follow up.'
    status_code = status.HTTP_502_BAD_GATEWAY


class ExtractionTimeout(ExtractionError):
    error_code = 'EXTRACTION_TIMEOUT'
    user_message = 'We could not read your message in time. A health worker will follow up.'
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ClassificationTimeout(TriageError):
    error_code = 'CLASSIFICATION_TIMEOUT'
    user_message = 'Your assessment is taking longer than expected. A health worker will follow up.'
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class SessionClosedError(TriageError):
    """Input arrived for a session that is no longer accepting messages"""
    error_code = 'SESSION_CLOSED'
    user_message = 'This conversation has already been handed to a health worker. Please start a new one.'
    status_code = status.HTTP_409_CONFLICT


class SessionExpiredError(SessionClosedError):
    error_code = 'SESSION_EXPIRED'
    user_message = 'This conversation timed out and was passed to a health worker for review.'


class CapacityExceeded(TriageError):
    """Intake backlog is full; the caller must back off and retry later"""
    error_code = 'CAPACITY_EXCEEDED'
    user_message = 'We are receiving many requests right now. Please try again shortly.'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# ============================================================================
# CASE LIFECYCLE
# ============================================================================

class CaseNotFound(TriageError):
    error_code = 'CASE_NOT_FOUND'
    user_message = 'The requested case does not exist.'
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransitionError(TriageError):
    """Illegal status change; the case is left untouched"""
    error_code = 'INVALID_TRANSITION'
    user_message = 'That status change is not allowed for this case.'
    status_code = status.HTTP_409_CONFLICT


class PastReminderError(TriageError):
    error_code = 'PAST_REMINDER'
    user_message = 'Reminders must be scheduled in the future.'
    status_code = status.HTTP_400_BAD_REQUEST


class ConcurrencyConflict(TriageError):
    """Two mutations raced on the same case and the internal retry also lost"""
    error_code = 'CONCURRENCY_CONFLICT'
    user_message = 'This case was updated by someone else. Please refresh and try again.'
    status_code = status.HTTP_409_CONFLICT


class TransientStorageError(TriageError):
    error_code = 'STORAGE_UNAVAILABLE'
    user_message = 'The service is temporarily unavailable. Please try again.'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class NotificationDeliveryError(TriageError):
    error_code = 'NOTIFICATION_FAILED'
    user_message = 'The message could not be delivered.'
    status_code = status.HTTP_502_BAD_GATEWAY


# ============================================================================
# ACCESS (opaque: never carries case data)
# ============================================================================

class AuthenticationError(TriageError):
    error_code = 'AUTHENTICATION_FAILED'
    user_message = 'Authentication required.'
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, technical_detail: str = '', user_message: str = None):
        super().__init__('', user_message)


class AuthorizationError(TriageError):
    error_code = 'NOT_AUTHORIZED'
    user_message = 'You are not allowed to perform this action.'
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, technical_detail: str = '', user_message: str = None):
        super().__init__('', user_message)


# ============================================================================
# ERROR PAYLOAD
# ============================================================================

def get_request_id(request) -> str:
    """Reuse the caller's X-Request-ID when present so failures can be correlated"""
    if request is not None:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
        if request_id:
            return request_id
    return uuid.uuid4().hex


def build_error_payload(error_code: str, user_message: str, technical_detail: str = '',
                        request_id: str = None) -> dict:
    return {
        'error_code': error_code,
        'user_message': user_message,
        'technical_detail': technical_detail,
        'timestamp': timezone.now().isoformat(),
        'request_id': request_id or uuid.uuid4().hex,
    }


def error_payload_for(exc: TriageError, request_id: str = None) -> dict:
    return build_error_payload(exc.error_code, exc.user_message, exc.technical_detail, request_id)


def api_exception_handler(exc, context):
    """
    REST_FRAMEWORK['EXCEPTION_HANDLER']
    Maps domain errors and DRF errors onto the stable error payload
    """
    request = context.get('request')
    request_id = get_request_id(request)

    if isinstance(exc, TriageError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} [{request_id}]: {exc.technical_detail}")
        else:
            logger.info(f"{exc.error_code} [{request_id}]: {exc.technical_detail}")
        return Response(error_payload_for(exc, request_id), status=exc.status_code)

    if isinstance(exc, (drf_exceptions.NotAuthenticated, drf_exceptions.AuthenticationFailed)):
        return Response(error_payload_for(AuthenticationError(), request_id),
                        status=AuthenticationError.status_code)

    if isinstance(exc, drf_exceptions.PermissionDenied):
        return Response(error_payload_for(AuthorizationError(), request_id),
                        status=AuthorizationError.status_code)

    if isinstance(exc, Http404):
        return Response(error_payload_for(CaseNotFound(str(exc)), request_id),
                        status=status.HTTP_404_NOT_FOUND)

    if isinstance(exc, drf_exceptions.ValidationError):
        payload = build_error_payload(
            'VALIDATION_ERROR',
            'Some of the submitted data is invalid.',
            str(exc.detail),
            request_id,
        )
        payload['errors'] = exc.detail
        return Response(payload, status=status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, drf_exceptions.APIException):
        payload = build_error_payload(
            str(exc.default_code).upper(),
            str(exc.default_detail),
            str(exc.detail),
            request_id,
        )
        return Response(payload, status=exc.status_code)

    # Unhandled errors propagate to Django (500 + traceback in the logs)
    return None
