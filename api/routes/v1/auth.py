"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register            -- create account, email confirmation link
  POST /api/v1/auth/confirm             -- confirm email with the emailed token
  POST /api/v1/auth/login               -- password login; session or 2FA pending
  POST /api/v1/auth/2fa/verify          -- finish a 2FA login with the emailed code
  POST /api/v1/auth/refresh             -- rotate the refresh token
  POST /api/v1/auth/logout              -- revoke the presented refresh token
  POST /api/v1/auth/logout-all          -- revoke every session (requires auth)
  POST /api/v1/auth/forgot-password     -- email a reset link (always 202)
  POST /api/v1/auth/reset-password      -- set a new password from a reset token
  POST /api/v1/auth/update-password     -- change password (requires auth)
  POST /api/v1/auth/update-two-factor   -- toggle 2FA (requires auth)
  GET  /api/v1/auth/me                  -- current user (requires auth)
  GET  /api/v1/auth/providers           -- list enabled OAuth providers (public)
  GET  /api/v1/auth/{provider}/authorize -- 302 to the provider consent page
  GET  /api/v1/auth/{provider}/callback  -- provider redirect target

Domain failures propagate as AuthError and are rendered by the handler in
api/main.py. The only exception is /refresh, which answers 401 for every
failure and clears the refresh cookie.

Security:
  [H2] Login and the endpoints taking emailed secrets are rate-limited per IP.
  [C1] Login errors are identical for unknown email and wrong password.
  [M5] Cache-Control: no-store on every response carrying tokens.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import SENSITIVE_LIMIT, limiter, login_limit
from api.models import (
    ChangePasswordRequest,
    ErrorDetail,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenRequest,
    TwoFactorPendingResponse,
    TwoFactorUpdateRequest,
    TwoFactorVerifyRequest,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.errors import AuthError, InvalidToken, ProviderError
from auth.models import SessionTokens, TwoFactorPending, User
from auth.oauth import get_enabled_providers
from auth.tokens import clear_refresh_cookie, set_refresh_cookie

# Auth policy:
# - register, confirm, login, 2fa/verify, refresh, logout, forgot-password,
#   reset-password, providers, {provider}/authorize, {provider}/callback:
#   public -- these establish or end the session
# - logout-all, update-password, update-two-factor, me: require auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_response(request: Request, session: SessionTokens) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=SessionResponse.from_session(session).model_dump())
    set_refresh_cookie(resp, request.app.state.settings, session.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_result(request: Request, result: SessionTokens | TwoFactorPending) -> JSONResponse:
    if isinstance(result, TwoFactorPending):
        resp = JSONResponse(status_code=202, content=TwoFactorPendingResponse.from_pending(result).model_dump())
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _session_response(request, result)


def _refresh_token_from(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    """Prefer the httpOnly cookie; fall back to the JSON body for non-browser clients."""
    token = request.cookies.get(request.app.state.settings.refresh_cookie_name)
    if not token and body is not None:
        token = body.refresh_token
    return token or None


async def _user_response(request: Request, user: User) -> UserResponse:
    identities = await run_in_threadpool(request.app.state.user_store.get_identities, user.id)
    return UserResponse.from_user(user, [i.provider for i in identities])


# ---------------------------------------------------------------------------
# Registration and confirmation
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an unconfirmed account and email the confirmation link.

    No session is issued; the client logs in separately.
    """
    user = await request.app.state.local_auth.register(body.email, body.password, body.name)
    return UserResponse.from_user(user)


@limiter.limit(SENSITIVE_LIMIT)
@router.post("/auth/confirm", response_model=UserResponse)
async def confirm(request: Request, body: TokenRequest) -> UserResponse:
    """Confirm an email address. Replaying a used link is a no-op success."""
    user = await request.app.state.local_auth.confirm_email(body.token)
    return await _user_response(request, user)


# ---------------------------------------------------------------------------
# Login, 2FA, refresh, logout
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/auth/login",
    response_model=SessionResponse,
    responses={202: {"model": TwoFactorPendingResponse}, 401: {"model": ErrorResponse}},
)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password [C1].

    200 with tokens (refresh token also set as cookie), or 202 when the
    account has two-factor enabled and a code has been emailed.
    """
    result = await request.app.state.local_auth.login(body.email, body.password)
    return _login_result(request, result)


@limiter.limit(SENSITIVE_LIMIT)
@router.post("/auth/2fa/verify", response_model=SessionResponse)
async def verify_two_factor(request: Request, body: TwoFactorVerifyRequest) -> JSONResponse:
    """Exchange a valid emailed code for a session."""
    session = await request.app.state.two_factor.verify_challenge(body.user_id, body.code)
    return _session_response(request, session)


@router.post("/auth/refresh", response_model=SessionResponse, responses={401: {"model": ErrorResponse}})
async def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Rotate the refresh token. Every failure is a 401 and clears the cookie."""
    settings = request.app.state.settings
    token = _refresh_token_from(request, body)
    error: Optional[ErrorDetail] = None
    if token is None:
        error = ErrorDetail(code="unauthorized", message="Refresh token missing.")
    else:
        try:
            session = await request.app.state.sessions.refresh(token)
        except AuthError as exc:
            error = ErrorDetail(code=exc.code, message=exc.message)
        else:
            return _session_response(request, session)

    resp = JSONResponse(status_code=401, content=ErrorResponse(error=error).model_dump())
    clear_refresh_cookie(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", status_code=204)
async def logout(request: Request, body: Optional[RefreshRequest] = None) -> Response:
    """Revoke the presented refresh token. Always 204, even for unusable tokens."""
    token = _refresh_token_from(request, body)
    if token:
        await request.app.state.sessions.logout(token)
    resp = Response(status_code=204)
    clear_refresh_cookie(resp, request.app.state.settings)
    return resp


@router.post("/auth/logout-all", status_code=204)
async def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Revoke every refresh session of the current user."""
    await request.app.state.sessions.logout_all(current_user.id)
    resp = Response(status_code=204)
    clear_refresh_cookie(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(SENSITIVE_LIMIT)
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
async def forgot_password(
    request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Email a reset link. The response never reveals whether the account exists.

    The email goes out after the response is sent, so known and unknown
    addresses answer in the same time.
    """
    await request.app.state.local_auth.request_password_reset(body.email, background_tasks)
    return MessageResponse(message="If an account exists for that email, a reset link has been sent.")


@limiter.limit(SENSITIVE_LIMIT)
@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password. Every existing session of the account is revoked."""
    await request.app.state.local_auth.reset_password(body.token, body.password)
    return MessageResponse(message="Password updated. Please sign in again.")


# ---------------------------------------------------------------------------
# Authenticated account endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/update-password", response_model=SessionResponse)
async def update_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change the password; other sessions are revoked and a new one is returned."""
    session = await request.app.state.local_auth.change_password(current_user, body.old_password, body.password)
    return _session_response(request, session)


@router.post("/auth/update-two-factor", response_model=UserResponse)
async def update_two_factor(
    request: Request,
    body: TwoFactorUpdateRequest,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Enable or disable emailed two-factor codes for the current user."""
    user = await request.app.state.local_auth.set_two_factor(current_user, body.enabled, body.password)
    return await _user_response(request, user)


@router.get("/auth/me", response_model=UserResponse)
async def me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return await _user_response(request, current_user)


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider is configured.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.providers)]


@router.get("/auth/{provider}/authorize", status_code=302)
async def authorize(request: Request, provider: str) -> RedirectResponse:
    """Redirect to the provider consent page with a signed, single-use state."""
    url = await request.app.state.external_auth.begin_authorization(provider)
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get(
    "/auth/{provider}/callback",
    response_model=SessionResponse,
    responses={202: {"model": TwoFactorPendingResponse}, 502: {"model": ErrorResponse}},
)
async def callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> JSONResponse:
    """Complete the provider login.

    The provider sends ?error=... instead of a code when the user declines
    consent; that is reported as a provider error.
    """
    external = request.app.state.external_auth
    external.provider(provider)
    if error or not code:
        raise ProviderError("Sign-in was cancelled or rejected by the identity provider.")
    if not state:
        raise InvalidToken("Missing state parameter.")
    result = await external.complete_authorization(provider, code, state)
    return _login_result(request, result)
