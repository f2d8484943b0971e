"""
Infrastructure views: the health check and the DRF exception handler.
"""

import logging

from django.db import connection
from django.http import JsonResponse
from rest_framework.response import Response
from rest_framework.views import exception_handler

from core.exceptions import BaseApplicationError

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Report database and cache reachability.

    Answers 503 only when the database is down. An unreachable cache is
    reported in the body but does not fail the check.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    # Cache failure is not critical - the settlement lock reports its own errors
    try:
        from django.core.cache import cache

        cache.set("health_check", "ok", timeout=1)
        if cache.get("health_check") == "ok":
            health_status["cache"] = "connected"
        else:
            health_status["cache"] = "disconnected"
    except Exception:
        health_status["cache"] = "disconnected"

    status_code = 200 if is_healthy else 503
    return JsonResponse(health_status, status=status_code)


def api_exception_handler(exc, context):
    """
    DRF exception handler that understands BaseApplicationError.

    Domain errors are rendered with to_dict() and the class's http_status.
    Server-side kinds (5xx) keep their error code but drop details, which
    may carry processor references meant for operators only.
    """
    if isinstance(exc, BaseApplicationError):
        payload = exc.to_dict()
        if exc.http_status >= 500:
            payload.pop("details", None)
            logger.error(
                "Server-side application error",
                extra={"error_code": exc.error_code, "view": str(context.get("view"))},
            )
        return Response(payload, status=exc.http_status)

    return exception_handler(exc, context)
