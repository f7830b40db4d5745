import redis
from django.conf import settings
from django.core.cache import cache
from django.db import connection
from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework import status
from channels.layers import get_channel_layer


def _check_database():
    with connection.cursor() as cursor:
        cursor.execute("SELECT 1")


def _check_redis():
    redis.Redis.from_url(settings.REDIS_URL, socket_timeout=3).ping()


def _check_cache():
    cache.set("health:ping", "pong", 5)
    if cache.get("health:ping") != "pong":
        raise RuntimeError("cache did not return the value just written")


def _check_channels():
    if get_channel_layer() is None:
        raise RuntimeError("no channel layer configured")


# Redis also backs presence; a dead Redis degrades realtime but not rides
CHECKS = {
    "database": (_check_database, True),
    "cache": (_check_cache, True),
    "channels": (_check_channels, True),
    "redis": (_check_redis, False),
}


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """Health check endpoint for monitoring system status"""
    services = {}
    healthy = True
    degraded = False

    for name, (check, critical) in CHECKS.items():
        try:
            check()
            services[name] = "healthy"
        except Exception as e:
            services[name] = f"unhealthy: {e}"
            if critical:
                healthy = False
            else:
                degraded = True

    overall = "unhealthy" if not healthy else ("degraded" if degraded else "healthy")
    return Response(
        {"status": overall, "timestamp": timezone.now().isoformat(), "services": services},
        status=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
