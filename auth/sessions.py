"""
auth/sessions.py -- Session Orchestrator: issue, rotate and revoke sessions.

A session is one Access token plus one Refresh token. The Refresh token id
is registered in the session cache at issue time; from then on the token is
accepted only while that record is live and not revoked.

Rotation: refresh() registers the new pair, then atomically consumes the
presented token's record. A captured refresh token therefore works at most once,
and of two concurrent refreshes with the same token exactly one succeeds.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool

from auth.errors import AuthError, InvalidToken, Revoked
from auth.models import SessionTokens, TokenKind, User
from auth.store import UserStore
from auth.tokens import TokenCodec
from cache.store import SessionCache

logger = logging.getLogger("tokengate.auth.sessions")


def _user_id(subject: str) -> int:
    try:
        return int(subject)
    except ValueError as exc:
        raise InvalidToken() from exc


class SessionOrchestrator:
    """The only entry point other subsystems use to obtain or end a session."""

    def __init__(self, codec: TokenCodec, cache: SessionCache, store: UserStore) -> None:
        self.codec = codec
        self.cache = cache
        self.store = store

    async def issue_session(self, user_id: int) -> SessionTokens:
        """Issue an Access + Refresh pair and register the refresh record."""
        session, _ = await self._issue(user_id)
        return session

    async def _issue(self, user_id: int) -> tuple[SessionTokens, str]:
        access = self.codec.issue(TokenKind.ACCESS, str(user_id))
        refresh = self.codec.issue(TokenKind.REFRESH, str(user_id))
        refresh_ttl = self.codec.ttl(TokenKind.REFRESH)
        await self.cache.put_refresh_record(refresh.token_id, user_id, refresh_ttl)
        logger.info("Session issued for user %s", user_id)
        session = SessionTokens(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_in=self.codec.ttl(TokenKind.ACCESS),
            refresh_expires_in=refresh_ttl,
            user_id=user_id,
        )
        return session, refresh.token_id

    async def refresh(self, refresh_token: str) -> SessionTokens:
        """Rotate a refresh token into a new session.

        The replacement record is registered before the presented one is
        consumed. A revoke-all that lands anywhere in between either makes
        the consume fail or revokes the replacement through the user index,
        so rotation can never outlive a logout-all or password reset.

        Raises:
            InvalidToken / TokenExpired: the token itself does not verify.
            Revoked: the token verified but its record is gone or revoked,
                or the account has since been deleted.
        """
        claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        user_id = _user_id(claims.subject)
        if not await self.cache.is_refresh_valid(claims.token_id):
            logger.warning("Rejected refresh with revoked token for user %s", user_id)
            raise Revoked()

        user = await run_in_threadpool(self.store.find_by_id, user_id)
        if user is None:
            raise Revoked()

        session, new_token_id = await self._issue(user.id)
        if not await self.cache.consume_refresh_record(claims.token_id):
            await self.cache.revoke(new_token_id)
            logger.warning("Rejected refresh with revoked token for user %s", user_id)
            raise Revoked()
        return session

    async def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token. Invalid or expired tokens are ignored."""
        try:
            claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except AuthError as exc:
            logger.debug("Logout with unusable refresh token: %s", exc.code)
            return
        await self.cache.revoke(claims.token_id)

    async def logout_all(self, user_id: int) -> int:
        """Revoke every live refresh record of a user. Returns the count revoked."""
        count = await self.cache.revoke_all_for_user(user_id)
        logger.info("Revoked %d sessions for user %s", count, user_id)
        return count

    async def authenticate(self, access_token: str) -> User:
        """Resolve an Access token to its live user.

        Raises InvalidToken / TokenExpired for bad tokens and InvalidToken
        when the user no longer exists.
        """
        claims = self.codec.verify(access_token, TokenKind.ACCESS)
        user = await run_in_threadpool(self.store.find_by_id, _user_id(claims.subject))
        if user is None:
            raise InvalidToken()
        return user
