"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". The refresh token
cookie is never accepted here: it is scoped to /api/v1/auth and only the
refresh/logout routes read it.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import User
from auth.sessions import SessionOrchestrator


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def try_get_current_user(request: Request) -> User | None:
    """Resolve the Bearer access token to a live user, or None.

    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = bearer_token(request)
    if not token:
        return None
    sessions: SessionOrchestrator = request.app.state.sessions
    try:
        return await sessions.authenticate(token)
    except AuthError:
        return None


async def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = await try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
