"""WebSocket authentication middleware: JWT access tokens on top of session auth."""

import logging
from typing import Optional
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

User = get_user_model()
logger = logging.getLogger(__name__)


def _token_from_scope(scope) -> Optional[str]:
    """
    Mobile clients pass ?token=<access>; other clients may send an
    `Authorization: Bearer <access>` header on the upgrade request.
    """
    params = parse_qs(scope.get("query_string", b"").decode())
    token_list = params.get("token")
    if token_list and token_list[0]:
        return token_list[0]

    for name, value in scope.get("headers", []):
        if name.lower() == b"authorization":
            scheme, _, credentials = value.decode().partition(" ")
            if scheme.lower() == "bearer" and credentials:
                return credentials.strip()
    return None


@database_sync_to_async
def _user_for_token(raw_token: str):
    try:
        user_id = AccessToken(raw_token)["user_id"]
        user = User.objects.get(id=user_id)
    except (TokenError, KeyError, User.DoesNotExist) as e:
        logger.debug("JWT auth failed: %s", e)
        return AnonymousUser()
    return user if user.is_active else AnonymousUser()


class JWTAuthMiddleware(BaseMiddleware):
    """
    Resolve scope["user"] from a JWT access token when one is supplied.

    Without a token the user set by the inner session stack (browser
    cookies) is kept, or AnonymousUser when there is none.
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        raw_token = _token_from_scope(scope)
        if raw_token:
            scope["user"] = await _user_for_token(raw_token)
        else:
            scope.setdefault("user", AnonymousUser())
        return await super().__call__(scope, receive, send)


def JWTAuthMiddlewareStack(inner):
    """Session/cookie auth first, then JWT on top."""
    from channels.auth import AuthMiddlewareStack

    return AuthMiddlewareStack(JWTAuthMiddleware(inner))
