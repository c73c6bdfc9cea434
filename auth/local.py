"""
auth/local.py -- Local Auth Flow: email + password accounts.

Operations:
  register               create an unconfirmed user, email a confirmation link
  confirm_email          mark the account confirmed (replay is a no-op)
  login                  verify the password, then session or 2FA challenge
  request_password_reset email a reset link (always "succeeds")
  reset_password         set a new password, revoke every session
  change_password        authenticated password change, fresh session
  set_two_factor         authenticated 2FA toggle

Security:
  [C1] login never reveals whether an email exists. Unknown, deleted and
       external-only accounts fail with the same InvalidCredentials after a
       full argon2 verification against a dummy hash, so timing matches the
       wrong-password path.

  [C2] request_password_reset returns normally whether or not an account
       exists. The email is handed to a background task so the response
       never waits on SMTP, and dispatch failures are logged, not raised.

  External-only accounts set their first password through the reset email.
  An access token alone cannot add a password or switch two-factor off.

  Confirmation and reset tokens carry the user's version ("ver"). A reset
  token is only accepted while the version still matches, so it stops
  working after it has been used once or after any other credential change.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from starlette.background import BackgroundTasks
from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AuthError,
    Conflict,
    EmailNotConfirmed,
    EmailTaken,
    InvalidCredentials,
    InvalidToken,
    PasswordNotSet,
)
from auth.mailer import EmailDispatcher, EmailKind, redact_email
from auth.models import SessionTokens, TokenKind, TwoFactorPending, User
from auth.sessions import SessionOrchestrator
from auth.store import UserStore, normalize_email
from auth.tokens import TokenCodec, burn_password_check, hash_password, password_needs_rehash, verify_password
from auth.two_factor import TwoFactorFlow
from core.config import Settings

logger = logging.getLogger("tokengate.auth.local")


class LocalAuthFlow:
    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        store: UserStore,
        mailer: EmailDispatcher,
        sessions: SessionOrchestrator,
        two_factor: TwoFactorFlow,
    ) -> None:
        self.codec = codec
        self.store = store
        self.mailer = mailer
        self.sessions = sessions
        self.two_factor = two_factor
        self.require_confirmation = settings.require_email_confirmation

    # ------------------------------------------------------------------
    # Registration and confirmation
    # ------------------------------------------------------------------

    async def register(self, email: str, password: str, name: str) -> User:
        """Create an unconfirmed account and email its confirmation link.

        No session is issued. Raises EmailTaken for a live duplicate and
        EmailDispatchError when the confirmation email cannot be sent (the
        account stays; the link can be re-sent by logging in).
        """
        email = normalize_email(email)
        if await run_in_threadpool(self.store.find_by_email, email) is not None:
            raise EmailTaken()

        hashed = await run_in_threadpool(hash_password, password)
        user = User(email=email, name=name.strip(), hashed_password=hashed)
        try:
            user_id = await run_in_threadpool(self.store.create, user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise EmailTaken() from exc

        user = await self._user_from_subject(str(user_id))
        logger.info("Registered user %s (%s)", user.id, redact_email(email))
        await self._send_confirmation(user)
        return user

    async def confirm_email(self, token: str) -> User:
        """Mark the token's user confirmed.

        Raises InvalidToken / TokenExpired for a bad token. Confirming an
        account that is already confirmed succeeds without changing it.
        """
        claims = self.codec.verify(token, TokenKind.CONFIRMATION)
        user = await self._user_from_subject(claims.subject)
        if user.confirmed:
            return user
        if await run_in_threadpool(self.store.set_confirmed, user.id):
            logger.info("User %s confirmed their email", user.id)
        return await self._user_from_subject(claims.subject)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> SessionTokens | TwoFactorPending:
        """Authenticate with email and password [C1].

        Returns SessionTokens, or TwoFactorPending when the account has
        two-factor enabled (a code has been emailed).
        """
        user = await run_in_threadpool(self.store.find_by_email, email)
        if user is None or user.hashed_password is None:
            await run_in_threadpool(burn_password_check, password)
            raise InvalidCredentials()
        if not await run_in_threadpool(verify_password, password, user.hashed_password):
            logger.info("Failed login for user %s", user.id)
            raise InvalidCredentials()
        if password_needs_rehash(user.hashed_password):
            user = await self._rehash(user, password)

        if self.require_confirmation and not user.confirmed:
            await self._send_confirmation(user)
            raise EmailNotConfirmed()

        if user.two_factor:
            return await self.two_factor.issue_challenge(user)
        return await self.sessions.issue_session(user.id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str, background: BackgroundTasks) -> None:
        """Queue a reset link for a live account [C2].

        The email is added to background, which the caller runs after the
        response has been sent. External-only accounts get a link too; it
        is how they set a first password.
        """
        user = await run_in_threadpool(self.store.find_by_email, email)
        if user is None:
            logger.info("Password reset requested for unknown account %s", redact_email(normalize_email(email)))
            return

        reset = self.codec.issue(TokenKind.RESET, str(user.id), version=user.version)
        background.add_task(self._send_reset, user, reset.token)

    async def _send_reset(self, user: User, token: str) -> None:
        try:
            await self.mailer.send(user.email, EmailKind.RESET, {"name": user.name, "token": token})
        except AuthError as exc:
            logger.error("Password reset email for user %s not sent: %s", user.id, exc.code)

    async def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password from a reset token and revoke every session.

        Raises InvalidToken when the token was already used or the
        credentials changed since it was issued, TokenExpired past its TTL.
        """
        claims = self.codec.verify(token, TokenKind.RESET)
        user = await self._user_from_subject(claims.subject)
        if claims.version is None or claims.version != user.version:
            raise InvalidToken("Reset link has already been used.")

        hashed = await run_in_threadpool(hash_password, new_password)
        if not await run_in_threadpool(self.store.update_password_hash, user.id, hashed, user.version):
            raise InvalidToken("Reset link has already been used.")
        await self.sessions.logout_all(user.id)
        logger.info("Password reset for user %s", user.id)

    # ------------------------------------------------------------------
    # Authenticated account changes
    # ------------------------------------------------------------------

    async def change_password(self, user: User, old_password: str | None, new_password: str) -> SessionTokens:
        """Replace the password of a signed-in user.

        Every existing session is revoked and a new one is returned for the
        caller. External-only accounts get PasswordNotSet: a first password
        needs the proof of mailbox ownership a reset link gives.
        """
        if user.hashed_password is None:
            raise PasswordNotSet()
        await self._check_password(user, old_password)
        hashed = await run_in_threadpool(hash_password, new_password)
        if not await run_in_threadpool(self.store.update_password_hash, user.id, hashed, user.version):
            raise Conflict("The account was modified concurrently. Please retry.")
        await self.sessions.logout_all(user.id)
        logger.info("Password changed for user %s", user.id)
        return await self.sessions.issue_session(user.id)

    async def set_two_factor(self, user: User, enabled: bool, password: str | None) -> User:
        """Toggle emailed 2FA codes.

        Accounts without a password may switch it on but not off.
        """
        if user.hashed_password is None:
            if not enabled and user.two_factor:
                raise PasswordNotSet()
        else:
            await self._check_password(user, password)
        if user.two_factor != enabled:
            if not await run_in_threadpool(self.store.set_two_factor, user.id, enabled, user.version):
                raise Conflict("The account was modified concurrently. Please retry.")
            logger.info("Two-factor %s for user %s", "enabled" if enabled else "disabled", user.id)
        return await self._user_from_subject(str(user.id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _rehash(self, user: User, password: str) -> User:
        """Upgrade a hash made with older argon2 parameters after a good login."""
        hashed = await run_in_threadpool(hash_password, password)
        if not await run_in_threadpool(self.store.update_password_hash, user.id, hashed, user.version):
            # A concurrent credential change won; keep the old hash for now.
            return user
        logger.info("Upgraded password hash for user %s", user.id)
        return await self._user_from_subject(str(user.id))

    async def _check_password(self, user: User, password: str | None) -> None:
        if not password or not await run_in_threadpool(verify_password, password, user.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")

    async def _send_confirmation(self, user: User) -> None:
        confirmation = self.codec.issue(TokenKind.CONFIRMATION, str(user.id), version=user.version)
        await self.mailer.send(user.email, EmailKind.CONFIRMATION, {"name": user.name, "token": confirmation.token})

    async def _user_from_subject(self, subject: str) -> User:
        try:
            user_id = int(subject)
        except ValueError as exc:
            raise InvalidToken() from exc
        user = await run_in_threadpool(self.store.find_by_id, user_id)
        if user is None:
            raise InvalidToken()
        return user
