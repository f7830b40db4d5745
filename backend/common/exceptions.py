"""REST framework exception handler for typed dispatch errors."""

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from services.ride_management.exceptions import DispatchError

logger = logging.getLogger(__name__)


def dispatch_exception_handler(exc, context):
    """Render DispatchError subclasses as JSON; defer everything else to DRF."""
    if isinstance(exc, DispatchError):
        if exc.status_code >= 500:
            logger.warning("Dispatch failure in %s: %s", context.get("view"), exc)
        return Response(
            {"error": exc.message, "code": exc.code},
            status=exc.status_code,
        )
    return exception_handler(exc, context)
