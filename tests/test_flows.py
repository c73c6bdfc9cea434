"""
tests/test_flows.py -- Async tests for the local, two-factor, external and
session flows, wired over an in-memory store and cache (see conftest.py).

Covers:
  - register -> confirm -> login -> refresh -> logout lifecycle
  - confirmation replay and expiry
  - refresh rotation and revocation
  - two-factor gating, wrong codes and exhaustion
  - password reset single use and session revocation
  - external login resolution, linking, conflicts and state replay
"""

from __future__ import annotations

import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest
from starlette.background import BackgroundTasks

from auth.errors import (
    AttemptsExhausted,
    Conflict,
    EmailDispatchError,
    EmailNotConfirmed,
    EmailTaken,
    InvalidCode,
    InvalidCredentials,
    InvalidToken,
    PasswordNotSet,
    ProviderError,
    Revoked,
    TokenExpired,
    UnknownProvider,
)
from auth.mailer import EmailKind
from auth.models import ExternalProfile, SessionTokens, TokenKind, TwoFactorPending, User

EMAIL = "alice@example.com"
PASSWORD = "Secret123!"


async def _register(c, email: str = EMAIL, password: str = PASSWORD, name: str = "Alice"):
    return await c.local.register(email, password, name)


async def _enable_two_factor(c, email: str = EMAIL) -> None:
    user = c.store.find_by_email(email)
    assert c.store.set_two_factor(user.id, True, user.version)


async def _request_reset(c, email: str) -> BackgroundTasks:
    """Request a reset and run the queued email the way the response would."""
    background = BackgroundTasks()
    await c.local.request_password_reset(email, background)
    await background()
    return background


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


# ---------------------------------------------------------------------------
# Local auth
# ---------------------------------------------------------------------------


class TestRegisterAndLogin:
    async def test_register_then_login_yields_session(self, components):
        user = await _register(components)
        assert user.id is not None
        assert user.confirmed is False
        assert components.mailer.last(EmailKind.CONFIRMATION, EMAIL)["token"]

        session = await components.local.login(EMAIL, PASSWORD)
        assert isinstance(session, SessionTokens)
        assert session.user_id == user.id
        claims = components.codec.verify(session.refresh_token, TokenKind.REFRESH)
        assert await components.cache.is_refresh_valid(claims.token_id)

    async def test_register_duplicate_email(self, components):
        await _register(components)
        with pytest.raises(EmailTaken):
            await _register(components, email="ALICE@example.com")

    async def test_register_surfaces_dispatch_failure(self, components):
        components.mailer.fail = True
        with pytest.raises(EmailDispatchError):
            await _register(components)

    @pytest.mark.parametrize("email, password", [(EMAIL, "wrong-pass1"), ("nobody@example.com", PASSWORD)])
    async def test_bad_credentials_are_indistinguishable(self, components, email, password):
        await _register(components)
        with pytest.raises(InvalidCredentials) as excinfo:
            await components.local.login(email, password)
        assert excinfo.value.code == "invalid_credentials"
        assert excinfo.value.message == "Invalid email or password."

    async def test_external_only_account_cannot_password_login(self, components):
        components.store.create_with_identity(User(email=EMAIL, name="Alice", confirmed=True), "google", "sub-1")
        with pytest.raises(InvalidCredentials):
            await components.local.login(EMAIL, PASSWORD)

    async def test_deleted_account_cannot_login(self, components):
        user = await _register(components)
        components.store.soft_delete(user.id)
        with pytest.raises(InvalidCredentials):
            await components.local.login(EMAIL, PASSWORD)

    async def test_confirmation_required_by_policy(self, make_components):
        c = make_components(require_email_confirmation=True)
        await _register(c)
        with pytest.raises(EmailNotConfirmed):
            await c.local.login(EMAIL, PASSWORD)
        assert len([m for m in c.mailer.sent if m[1] is EmailKind.CONFIRMATION]) == 2


class TestConfirmation:
    async def test_confirm_then_replay_is_noop(self, components):
        await _register(components)
        token = components.mailer.last(EmailKind.CONFIRMATION)["token"]
        first = await components.local.confirm_email(token)
        assert first.confirmed is True
        version = first.version
        second = await components.local.confirm_email(token)
        assert second.confirmed is True
        assert second.version == version

    async def test_expired_confirmation(self, components):
        user = await _register(components)
        expired = components.codec.issue(TokenKind.CONFIRMATION, str(user.id), ttl=-60)
        with pytest.raises(TokenExpired):
            await components.local.confirm_email(expired.token)

    async def test_access_token_is_not_a_confirmation(self, components):
        user = await _register(components)
        access = components.codec.issue(TokenKind.ACCESS, str(user.id))
        with pytest.raises(InvalidToken):
            await components.local.confirm_email(access.token)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    async def test_rotation_revokes_previous_token(self, components):
        await _register(components)
        first = await components.local.login(EMAIL, PASSWORD)
        second = await components.sessions.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        with pytest.raises(Revoked):
            await components.sessions.refresh(first.refresh_token)
        assert isinstance(await components.sessions.refresh(second.refresh_token), SessionTokens)

    async def test_concurrent_refresh_has_one_winner(self, components):
        await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        results = await asyncio.gather(
            *(components.sessions.refresh(session.refresh_token) for _ in range(5)), return_exceptions=True
        )
        assert sum(isinstance(r, SessionTokens) for r in results) == 1
        assert all(isinstance(r, Revoked) for r in results if not isinstance(r, SessionTokens))

    async def test_revoke_all_during_rotation_revokes_the_replacement(self, components, monkeypatch):
        user = await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        issued = []
        original_put = components.cache.put_refresh_record
        original_consume = components.cache.consume_refresh_record

        async def recording_put(token_id, user_id, ttl):
            issued.append(token_id)
            await original_put(token_id, user_id, ttl)

        async def consume_after_reset(token_id):
            # A password reset lands between issuing the new pair and
            # consuming the presented token.
            await components.sessions.logout_all(user.id)
            return await original_consume(token_id)

        monkeypatch.setattr(components.cache, "put_refresh_record", recording_put)
        monkeypatch.setattr(components.cache, "consume_refresh_record", consume_after_reset)
        with pytest.raises(Revoked):
            await components.sessions.refresh(session.refresh_token)
        assert issued
        assert not await components.cache.is_refresh_valid(issued[-1])

    async def test_access_token_cannot_refresh(self, components):
        await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidToken):
            await components.sessions.refresh(session.access_token)

    async def test_logout_is_best_effort(self, components):
        await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        await components.sessions.logout("garbage")
        await components.sessions.logout(session.refresh_token)
        await components.sessions.logout(session.refresh_token)
        with pytest.raises(Revoked):
            await components.sessions.refresh(session.refresh_token)

    async def test_logout_all_revokes_every_session(self, components):
        user = await _register(components)
        sessions = [await components.local.login(EMAIL, PASSWORD) for _ in range(3)]
        assert await components.sessions.logout_all(user.id) == 3
        for session in sessions:
            with pytest.raises(Revoked):
                await components.sessions.refresh(session.refresh_token)

    async def test_deleted_user_cannot_refresh(self, components):
        user = await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        components.store.soft_delete(user.id)
        with pytest.raises(Revoked):
            await components.sessions.refresh(session.refresh_token)

    async def test_authenticate_resolves_access_token(self, components):
        user = await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        assert (await components.sessions.authenticate(session.access_token)).id == user.id
        components.store.soft_delete(user.id)
        with pytest.raises(InvalidToken):
            await components.sessions.authenticate(session.access_token)

    async def test_alice_lifecycle(self, components):
        await _register(components)
        token = components.mailer.last(EmailKind.CONFIRMATION, EMAIL)["token"]
        assert (await components.local.confirm_email(token)).confirmed is True

        session = await components.local.login(EMAIL, PASSWORD)
        rotated = await components.sessions.refresh(session.refresh_token)
        await components.sessions.logout(rotated.refresh_token)
        with pytest.raises(Revoked):
            await components.sessions.refresh(rotated.refresh_token)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TestTwoFactor:
    async def test_login_with_two_factor_is_pending(self, components):
        user = await _register(components)
        await _enable_two_factor(components)
        pending = await components.local.login(EMAIL, PASSWORD)
        assert isinstance(pending, TwoFactorPending)
        assert pending.user_id == user.id
        assert pending.expires_in == components.settings.two_factor_code_ttl

        code = components.mailer.last(EmailKind.TWO_FACTOR, EMAIL)["code"]
        assert len(code) == 6 and code.isdigit()
        session = await components.two_factor.verify_challenge(user.id, code)
        assert session.user_id == user.id

    async def test_wrong_code_then_right_code(self, components):
        user = await _register(components)
        await _enable_two_factor(components)
        await components.local.login(EMAIL, PASSWORD)
        code = components.mailer.last(EmailKind.TWO_FACTOR)["code"]
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidCode):
            await components.two_factor.verify_challenge(user.id, wrong)
        assert isinstance(await components.two_factor.verify_challenge(user.id, code), SessionTokens)

    async def test_exhaustion_kills_the_correct_code(self, components):
        user = await _register(components)
        await _enable_two_factor(components)
        await components.local.login(EMAIL, PASSWORD)
        code = components.mailer.last(EmailKind.TWO_FACTOR)["code"]
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(components.settings.two_factor_max_attempts - 1):
            with pytest.raises(InvalidCode):
                await components.two_factor.verify_challenge(user.id, wrong)
        with pytest.raises(AttemptsExhausted):
            await components.two_factor.verify_challenge(user.id, wrong)
        with pytest.raises(TokenExpired):
            await components.two_factor.verify_challenge(user.id, code)

    async def test_code_is_single_use(self, components):
        user = await _register(components)
        await _enable_two_factor(components)
        await components.local.login(EMAIL, PASSWORD)
        code = components.mailer.last(EmailKind.TWO_FACTOR)["code"]
        await components.two_factor.verify_challenge(user.id, code)
        with pytest.raises(TokenExpired):
            await components.two_factor.verify_challenge(user.id, code)

    async def test_undeliverable_code_is_dropped(self, components):
        user = await _register(components)
        await _enable_two_factor(components)
        components.mailer.fail = True
        with pytest.raises(EmailDispatchError):
            await components.local.login(EMAIL, PASSWORD)
        with pytest.raises(TokenExpired):
            await components.two_factor.verify_challenge(user.id, "123456")

    async def test_toggle_requires_password(self, components):
        user = await _register(components)
        with pytest.raises(InvalidCredentials):
            await components.local.set_two_factor(user, True, "wrong-pass1")
        updated = await components.local.set_two_factor(user, True, PASSWORD)
        assert updated.two_factor is True

    async def test_external_only_account_can_enable_but_not_disable(self, components):
        uid = components.store.create_with_identity(User(email="bob@example.com", name="Bob"), "google", "g-1")
        user = await components.local.set_two_factor(components.store.find_by_id(uid), True, None)
        assert user.two_factor is True
        with pytest.raises(PasswordNotSet):
            await components.local.set_two_factor(user, False, None)
        assert components.store.find_by_id(uid).two_factor is True


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


class TestPasswordReset:
    async def test_reset_revokes_prior_sessions(self, components):
        await _register(components)
        session = await components.local.login(EMAIL, PASSWORD)
        await _request_reset(components, EMAIL)
        token = components.mailer.last(EmailKind.RESET, EMAIL)["token"]

        await components.local.reset_password(token, "NewSecret456!")
        with pytest.raises(Revoked):
            await components.sessions.refresh(session.refresh_token)
        with pytest.raises(InvalidCredentials):
            await components.local.login(EMAIL, PASSWORD)
        assert isinstance(await components.local.login(EMAIL, "NewSecret456!"), SessionTokens)

    async def test_reset_token_is_single_use(self, components):
        await _register(components)
        await _request_reset(components, EMAIL)
        token = components.mailer.last(EmailKind.RESET)["token"]
        await components.local.reset_password(token, "NewSecret456!")
        with pytest.raises(InvalidToken):
            await components.local.reset_password(token, "Another789!")

    async def test_unknown_email_sends_nothing(self, components):
        background = await _request_reset(components, "nobody@example.com")
        assert background.tasks == []
        assert components.mailer.sent == []

    async def test_dispatch_failure_is_not_surfaced(self, components):
        await _register(components)
        components.mailer.fail = True
        await _request_reset(components, EMAIL)

    async def test_known_and_unknown_email_return_in_the_same_time(self, components, monkeypatch):
        await _register(components)
        original_send = components.mailer.send

        async def slow_send(address, kind, payload):
            await asyncio.sleep(0.5)
            await original_send(address, kind, payload)

        monkeypatch.setattr(components.mailer, "send", slow_send)
        timings = {}
        pending = BackgroundTasks()
        for email in (EMAIL, "nobody@example.com"):
            started = time.perf_counter()
            await components.local.request_password_reset(email, pending)
            timings[email] = time.perf_counter() - started

        assert abs(timings[EMAIL] - timings["nobody@example.com"]) < 0.1
        assert not any(kind is EmailKind.RESET for _, kind, _ in components.mailer.sent)
        await pending()
        assert components.mailer.last(EmailKind.RESET, EMAIL)["token"]

    async def test_expired_reset_token(self, components):
        user = await _register(components)
        expired = components.codec.issue(TokenKind.RESET, str(user.id), ttl=-60, version=user.version)
        with pytest.raises(TokenExpired):
            await components.local.reset_password(expired.token, "NewSecret456!")

    async def test_change_password_returns_fresh_session(self, components):
        user = await _register(components)
        old = await components.local.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentials):
            await components.local.change_password(user, "wrong-pass1", "NewSecret456!")
        fresh = await components.local.change_password(user, PASSWORD, "NewSecret456!")
        with pytest.raises(Revoked):
            await components.sessions.refresh(old.refresh_token)
        assert isinstance(await components.sessions.refresh(fresh.refresh_token), SessionTokens)

    async def test_external_only_account_cannot_set_password_directly(self, components):
        uid = components.store.create_with_identity(User(email="bob@example.com", name="Bob"), "google", "g-1")
        user = components.store.find_by_id(uid)
        session = await components.sessions.issue_session(uid)
        with pytest.raises(PasswordNotSet):
            await components.local.change_password(user, None, "Hijack123!")
        assert components.store.find_by_id(uid).hashed_password is None
        assert isinstance(await components.sessions.refresh(session.refresh_token), SessionTokens)

    async def test_external_only_account_sets_password_through_reset(self, components):
        uid = components.store.create_with_identity(User(email="bob@example.com", name="Bob"), "google", "g-1")
        await _request_reset(components, "bob@example.com")
        token = components.mailer.last(EmailKind.RESET, "bob@example.com")["token"]
        await components.local.reset_password(token, "Chosen123!")
        assert components.store.find_by_id(uid).hashed_password is not None
        assert isinstance(await components.local.login("bob@example.com", "Chosen123!"), SessionTokens)

    async def test_outdated_hash_is_upgraded_on_login(self, components, monkeypatch):
        user = await _register(components)
        original_hash = components.store.find_by_id(user.id).hashed_password
        monkeypatch.setattr("auth.local.password_needs_rehash", lambda hashed: hashed == original_hash)

        await components.local.login(EMAIL, PASSWORD)
        upgraded = components.store.find_by_id(user.id)
        assert upgraded.hashed_password != original_hash
        assert upgraded.version == user.version + 1
        assert isinstance(await components.local.login(EMAIL, PASSWORD), SessionTokens)


# ---------------------------------------------------------------------------
# External auth
# ---------------------------------------------------------------------------


class TestExternalAuth:
    async def _login(self, c, code: str, profile: ExternalProfile):
        c.provider.profiles[code] = profile
        url = await c.external.begin_authorization("google")
        return await c.external.complete_authorization("google", code, _state_from(url))

    async def test_authorization_url_carries_pkce_and_state(self, components):
        url = await components.external.begin_authorization("google")
        query = parse_qs(urlparse(url).query)
        assert query["code_challenge_method"] == ["S256"]
        assert query["client_id"] == ["stub-client"]
        claims = components.codec.verify(query["state"][0], TokenKind.OAUTH_STATE)
        assert claims.subject == "google"

    async def test_unknown_provider(self, components):
        with pytest.raises(UnknownProvider):
            await components.external.begin_authorization("facebook")
        with pytest.raises(UnknownProvider):
            await components.external.begin_authorization("myspace")

    async def test_first_login_creates_confirmed_user(self, components):
        session = await self._login(components, "c1", ExternalProfile("g-1", "bob@example.com", "Bob"))
        user = components.store.find_by_id(session.user_id)
        assert user.confirmed is True
        assert user.hashed_password is None

    async def test_unverified_email_creates_unconfirmed_user(self, components):
        profile = ExternalProfile("g-9", "carol@example.com", "Carol", email_verified=False)
        session = await self._login(components, "c1", profile)
        assert components.store.find_by_id(session.user_id).confirmed is False

    async def test_same_subject_resolves_to_same_user(self, components):
        profile = ExternalProfile("g-1", "bob@example.com", "Bob")
        first = await self._login(components, "c1", profile)
        second = await self._login(components, "c2", profile)
        assert first.user_id == second.user_id

    async def test_verified_email_links_existing_user(self, components):
        local = await _register(components)
        session = await self._login(components, "c1", ExternalProfile("g-1", EMAIL, "Alice G"))
        assert session.user_id == local.id
        assert [i.provider for i in components.store.get_identities(local.id)] == ["google"]
        assert components.store.find_by_id(local.id).confirmed is True

    async def test_unverified_email_does_not_link(self, components):
        await _register(components)
        with pytest.raises(ProviderError):
            await self._login(components, "c1", ExternalProfile("g-1", EMAIL, "Alice", email_verified=False))

    async def test_second_subject_for_same_provider_conflicts(self, components):
        await _register(components)
        await self._login(components, "c1", ExternalProfile("g-1", EMAIL, "Alice"))
        with pytest.raises(Conflict):
            await self._login(components, "c2", ExternalProfile("g-2", EMAIL, "Alice"))

    async def test_state_is_single_use(self, components):
        components.provider.profiles["c1"] = ExternalProfile("g-1", "bob@example.com", "Bob")
        state = _state_from(await components.external.begin_authorization("google"))
        await components.external.complete_authorization("google", "c1", state)
        with pytest.raises(InvalidToken):
            await components.external.complete_authorization("google", "c1", state)

    async def test_forged_state_is_rejected(self, components):
        with pytest.raises(InvalidToken):
            await components.external.complete_authorization("google", "c1", "forged")

    async def test_state_not_in_cache_is_rejected(self, components):
        state = components.codec.issue(TokenKind.OAUTH_STATE, "google", token_id="never-stored")
        with pytest.raises(InvalidToken):
            await components.external.complete_authorization("google", "c1", state.token)

    async def test_failed_exchange_is_provider_error(self, components):
        state = _state_from(await components.external.begin_authorization("google"))
        with pytest.raises(ProviderError):
            await components.external.complete_authorization("google", "bad-code", state)

    async def test_two_factor_gates_external_login(self, components):
        await _register(components)
        await _enable_two_factor(components)
        result = await self._login(components, "c1", ExternalProfile("g-1", EMAIL, "Alice"))
        assert isinstance(result, TwoFactorPending)

    async def test_two_factor_gate_can_be_disabled(self, make_components):
        c = make_components(two_factor_on_external_login=False)
        await _register(c)
        await _enable_two_factor(c)
        result = await self._login(c, "c1", ExternalProfile("g-1", EMAIL, "Alice"))
        assert isinstance(result, SessionTokens)

    async def test_deleted_linked_user_is_rejected(self, components):
        session = await self._login(components, "c1", ExternalProfile("g-1", "bob@example.com", "Bob"))
        components.store.soft_delete(session.user_id)
        with pytest.raises(InvalidCredentials):
            await self._login(components, "c2", ExternalProfile("g-1", "bob@example.com", "Bob"))
