import logging

from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler, set_rollback

logger = logging.getLogger(__name__)


class VisitsError(Exception):
    """Base error for the visits app"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationFailed(VisitsError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details or {}


class NotFound(VisitsError):
    status_code = status.HTTP_404_NOT_FOUND


def error_response(message, status_code, details=None):
    payload = {'success': False, 'error': message}
    if details:
        payload['details'] = details
    return Response(payload, status=status_code)


def envelope_exception_handler(exc, context):
    """
    Wrap every error DRF produces in the ``{success, error}`` envelope used by
    the visits API, and map the app's own exceptions onto status codes.
    """
    if isinstance(exc, ValidationFailed):
        return error_response(str(exc), exc.status_code, exc.details)
    if isinstance(exc, VisitsError):
        return error_response(str(exc), exc.status_code)

    response = exception_handler(exc, context)
    if response is None:
        view = context.get('view')
        logger.exception(f"Unhandled error in {type(view).__name__ if view else 'view'}: {exc}")
        set_rollback()
        return error_response('Internal server error', status.HTTP_500_INTERNAL_SERVER_ERROR)

    if isinstance(exc, ValidationError):
        response.data = {
            'success': False,
            'error': 'Validation failed',
            'details': response.data,
        }
    else:
        detail = response.data.get('detail') if isinstance(response.data, dict) else None
        response.data = {
            'success': False,
            'error': str(detail) if detail else 'Request failed',
        }
    return response
