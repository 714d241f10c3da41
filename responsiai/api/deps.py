"""Shared FastAPI dependencies."""
from typing import Optional

from fastapi import Header, Request

from responsiai.core.container import Container
from responsiai.core.errors import AuthenticationError, ServiceUnavailableError


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise ServiceUnavailableError("Application is starting up")
    return container


def get_current_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """
    Resolve the caller's user id.

    Upstream auth sets request.state.user_id. Outside production the
    X-User-Id header is accepted as well, for local development and tests.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id and x_user_id:
        if get_container(request).config.env.lower() != "production":
            user_id = x_user_id
    if not user_id:
        raise AuthenticationError("Unauthorized")
    return user_id
