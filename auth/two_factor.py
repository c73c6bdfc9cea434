"""
auth/two_factor.py -- Two-Factor Flow: emailed one-time access codes.

A challenge is a 6-digit numeric code, stored in the session cache only as a
bcrypt hash with a short TTL and an attempt counter. One live challenge per
user: issuing a new one replaces the previous.

Failure outcomes:
  wrong code            -> InvalidCode (attempt counted)
  missing / expired     -> TokenExpired
  attempt cap reached   -> AttemptsExhausted; the challenge is deleted, so
                           even the correct code no longer works and the
                           user must sign in again.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets

import bcrypt
from starlette.concurrency import run_in_threadpool

from auth.errors import AttemptsExhausted, InvalidCode, TokenExpired
from auth.mailer import EmailDispatcher, EmailKind
from auth.models import ChallengeOutcome, SessionTokens, TwoFactorPending, User
from auth.sessions import SessionOrchestrator
from auth.store import UserStore
from cache.store import SessionCache
from core.config import Settings

logger = logging.getLogger("tokengate.auth.two_factor")

CODE_LENGTH = 6
# Codes live for minutes and are attempt-capped; a low cost keeps verification cheap.
_CODE_HASH_ROUNDS = 5


def generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))


def hash_code(code: str) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=_CODE_HASH_ROUNDS)).decode("utf-8")


class TwoFactorFlow:
    def __init__(
        self,
        settings: Settings,
        cache: SessionCache,
        store: UserStore,
        mailer: EmailDispatcher,
        sessions: SessionOrchestrator,
    ) -> None:
        self.cache = cache
        self.store = store
        self.mailer = mailer
        self.sessions = sessions
        self.code_ttl = settings.two_factor_code_ttl
        self.max_attempts = settings.two_factor_max_attempts

    async def issue_challenge(self, user: User) -> TwoFactorPending:
        """Create a fresh challenge for the user and email the code.

        Raises EmailDispatchError if the code cannot be delivered; the stored
        challenge is dropped in that case so no undeliverable code lingers.
        """
        code = generate_code()
        code_hash = await run_in_threadpool(hash_code, code)
        await self.cache.put_challenge(user.id, code_hash, self.code_ttl)
        try:
            await self.mailer.send(user.email, EmailKind.TWO_FACTOR, {"name": user.name, "code": code})
        except Exception:
            await self.cache.delete_challenge(user.id)
            raise
        logger.info("Two-factor challenge issued for user %s", user.id)
        return TwoFactorPending(user_id=user.id, expires_in=self.code_ttl)

    async def verify_challenge(self, user_id: int, code: str) -> SessionTokens:
        outcome = await self.cache.check_challenge(user_id, code, self.max_attempts)
        if outcome is ChallengeOutcome.EXPIRED:
            raise TokenExpired("Access code has expired. Please sign in again.")
        if outcome is ChallengeOutcome.ATTEMPTS_EXHAUSTED:
            logger.warning("Two-factor attempts exhausted for user %s", user_id)
            raise AttemptsExhausted()
        if outcome is ChallengeOutcome.INVALID:
            raise InvalidCode()

        user = await run_in_threadpool(self.store.find_by_id, user_id)
        if user is None:
            raise TokenExpired("Access code has expired. Please sign in again.")
        return await self.sessions.issue_session(user.id)
