"""
api/routes/v1/users.py -- Profile endpoints for the signed-in user.

Routes:
  GET    /api/v1/users/me  -- profile and linked providers
  PATCH  /api/v1/users/me  -- change display name
  DELETE /api/v1/users/me  -- soft delete the account and revoke its sessions

Deletion is a soft delete: the row keeps its id so owned content still
resolves, the email becomes free for a new registration, and every refresh
session is revoked immediately.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from api.models import UserPatch, UserResponse
from auth.dependencies import get_current_user
from auth.errors import NotFound
from auth.models import User
from auth.store import UserStore
from auth.tokens import clear_refresh_cookie

logger = logging.getLogger("tokengate.api.users")

# Auth policy: every route requires auth (get_current_user).
router = APIRouter()


@router.get("/users/me", response_model=UserResponse)
async def read_me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    identities = await run_in_threadpool(user_store.get_identities, current_user.id)
    return UserResponse.from_user(current_user, [i.provider for i in identities])


@router.patch("/users/me", response_model=UserResponse)
async def update_me(
    request: Request,
    body: UserPatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update the display name."""
    user_store: UserStore = request.app.state.user_store
    if not await run_in_threadpool(user_store.update_name, current_user.id, body.name):
        raise NotFound("User not found.")
    updated = await run_in_threadpool(user_store.find_by_id, current_user.id)
    if updated is None:
        raise NotFound("User not found.")
    identities = await run_in_threadpool(user_store.get_identities, updated.id)
    return UserResponse.from_user(updated, [i.provider for i in identities])


@router.delete("/users/me", status_code=204)
async def delete_me(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Soft delete the account. Outstanding access tokens stop resolving at once."""
    user_store: UserStore = request.app.state.user_store
    if not await run_in_threadpool(user_store.soft_delete, current_user.id):
        raise NotFound("User not found.")
    await request.app.state.sessions.logout_all(current_user.id)
    logger.info("User %s deleted their account", current_user.id)
    resp = Response(status_code=204)
    clear_refresh_cookie(resp, request.app.state.settings)
    return resp
