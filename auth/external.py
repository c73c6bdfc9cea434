"""
auth/external.py -- External Auth Flow: OAuth2 authorization-code login.

begin_authorization:
  1. Random nonce + PKCE code verifier stored in the session cache under
     the nonce, TTL = state lifetime.
  2. State parameter = signed OAUTH_STATE token (sub = provider,
     jti = nonce). The raw nonce never leaves the server unsigned.

complete_authorization:
  1. Verify the state token (signature, expiry, kind), check it was minted
     for this provider, then pop the cached nonce record. Popping makes
     every state single use: a replayed callback finds nothing.
  2. Exchange the code and fetch the profile; any failure -> ProviderError.
  3. Resolve the local user:
       a. (provider, subject) already linked   -> that user
       b. live user with the same verified email -> link it, unless that
          user already holds a different subject for this provider
          (Conflict)
       c. otherwise create the user and its link in one transaction, confirmed
          only when the provider reports the email verified
     A concurrent callback for the same subject that wins the insert race
     surfaces as IntegrityError; the loser re-reads the link so both end up
     on the same user id.
  4. Gate on two-factor when enabled and the policy flag says so, else
     issue the session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets

from authlib.common.security import generate_token
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from auth.errors import Conflict, InvalidCredentials, InvalidToken, ProviderError, UnknownProvider
from auth.mailer import redact_email
from auth.models import ExternalProfile, ProviderName, SessionTokens, TokenKind, TwoFactorPending, User
from auth.oauth import OAuthProvider
from auth.sessions import SessionOrchestrator
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.two_factor import TwoFactorFlow
from cache.store import SessionCache
from core.config import Settings

logger = logging.getLogger("tokengate.auth.external")


class ExternalAuthFlow:
    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        cache: SessionCache,
        store: UserStore,
        providers: dict[ProviderName, OAuthProvider],
        sessions: SessionOrchestrator,
        two_factor: TwoFactorFlow,
    ) -> None:
        self.codec = codec
        self.cache = cache
        self.store = store
        self.providers = providers
        self.sessions = sessions
        self.two_factor = two_factor
        self.gate_on_two_factor = settings.two_factor_on_external_login

    def provider(self, name: str) -> OAuthProvider:
        """Return the configured provider for a path segment like "google"."""
        try:
            return self.providers[ProviderName(name)]
        except (ValueError, KeyError) as exc:
            raise UnknownProvider() from exc

    async def begin_authorization(self, provider_name: str) -> str:
        """Return the provider consent URL carrying a signed state."""
        provider = self.provider(provider_name)
        nonce = secrets.token_urlsafe(24)
        code_verifier = generate_token(64)
        ttl = self.codec.ttl(TokenKind.OAUTH_STATE)
        await self.cache.put_oauth_state(
            nonce, {"provider": provider.name.value, "code_verifier": code_verifier}, ttl
        )
        state = self.codec.issue(TokenKind.OAUTH_STATE, provider.name.value, token_id=nonce)
        return provider.authorization_url(state.token, code_verifier)

    async def complete_authorization(
        self, provider_name: str, code: str, state: str
    ) -> SessionTokens | TwoFactorPending:
        provider = self.provider(provider_name)
        code_verifier = await self._consume_state(provider, state)

        token = await provider.exchange_code(code, code_verifier)
        profile = await provider.fetch_profile(token)
        user = await self._resolve_user(provider, profile)

        if self.gate_on_two_factor and user.two_factor:
            return await self.two_factor.issue_challenge(user)
        return await self.sessions.issue_session(user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _consume_state(self, provider: OAuthProvider, state: str) -> str:
        claims = self.codec.verify(state, TokenKind.OAUTH_STATE)
        if claims.subject != provider.name.value:
            raise InvalidToken("State does not belong to this provider.")
        record = await self.cache.pop_oauth_state(claims.token_id)
        if record is None or record.get("provider") != provider.name.value:
            logger.warning("Rejected unknown or replayed OAuth state for %s", provider.name.value)
            raise InvalidToken("State has already been used.")
        return record["code_verifier"]

    async def _resolve_user(self, provider: OAuthProvider, profile: ExternalProfile) -> User:
        name = provider.name.value
        user = await run_in_threadpool(self.store.find_by_provider_subject, name, profile.subject)
        if user is not None:
            if user.is_deleted:
                raise InvalidCredentials("This account has been deleted.")
            return user

        existing = await run_in_threadpool(self.store.find_by_email, profile.email)
        try:
            if existing is not None:
                return await self._link_existing(provider, profile, existing)
            new_user = User(email=profile.email, name=profile.name, confirmed=profile.email_verified)
            new_user.id = await run_in_threadpool(self.store.create_with_identity, new_user, name, profile.subject)
            logger.info("Created user %s from %s (%s)", new_user.id, name, redact_email(profile.email))
            return new_user
        except IntegrityError as exc:
            winner = await run_in_threadpool(self.store.find_by_provider_subject, name, profile.subject)
            if winner is None or winner.is_deleted:
                raise Conflict() from exc
            return winner

    async def _link_existing(self, provider: OAuthProvider, profile: ExternalProfile, user: User) -> User:
        if not profile.email_verified:
            # Linking on an unverified address would let anyone claim the account.
            raise ProviderError("The identity provider has not verified this email address.")
        name = provider.name.value
        for identity in await run_in_threadpool(self.store.get_identities, user.id):
            if identity.provider == name and identity.subject != profile.subject:
                raise Conflict(f"This account is already linked to a different {provider.label} account.")
        await run_in_threadpool(self.store.link_external_identity, user.id, name, profile.subject)
        if not user.confirmed:
            await run_in_threadpool(self.store.set_confirmed, user.id)
        logger.info("Linked %s identity to user %s", name, user.id)
        return user
