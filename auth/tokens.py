"""
auth/tokens.py -- Token Codec, password hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Every token kind (access, refresh,
       confirmation, reset, oauth_state) is signed with its own secret and
       expires on its own clock, so a leaked Confirmation token cannot be
       replayed as an Access token. The "typ" claim repeats the kind and is
       checked after the signature. Verification raises typed errors from
       auth.errors -- the flow layer decides what each one means.

  Token ids: refresh, confirmation, reset and state tokens carry a random
       "jti". The refresh jti is the key of the revocable session record in
       the session cache. Access tokens carry none: their short lifetime is
       the only defense.

  Passwords: argon2id via argon2-cffi. Memory-hard, per-hash random salt,
       parameters encoded in the hash so they can be raised later
       (needs_rehash). The _DUMMY_HASH constant enables timing equalization
       in the login flow so response time does not reveal whether an email
       exists [C1].

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidSignature, InvalidToken, TokenExpired, TokenKindMismatch
from auth.models import IssuedToken, TokenClaims, TokenKind
from core.config import Settings

logger = logging.getLogger("tokengate.auth.tokens")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (argon2id)
# ---------------------------------------------------------------------------

_hasher = PasswordHasher()


def hash_password(plain: str) -> str:
    """Return an argon2id hash of the given plaintext password."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the argon2 hash.

    argon2-cffi compares digests in constant time. Malformed hashes are
    treated as a mismatch rather than an error.
    """
    try:
        return _hasher.verify(hashed, plain)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def password_needs_rehash(hashed: str) -> bool:
    return _hasher.check_needs_rehash(hashed)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("tokengate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a full argon2 verification against the dummy hash and discard it.

    Called on every login path that fails before a real hash comparison
    (unknown email, deleted or external-only account) [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token Codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Sign and verify the per-kind JWTs.

    Usage:
        codec = TokenCodec(settings)
        issued = codec.issue(TokenKind.REFRESH, str(user.id))
        claims = codec.verify(issued.token, TokenKind.REFRESH)

    Stateless: the codec never touches storage. Liveness of refresh tokens
    is the session cache's job.
    """

    def __init__(self, settings: Settings) -> None:
        self._issuer = settings.api_id
        self._leeway = settings.token_leeway_seconds
        self._keys: dict[TokenKind, tuple[str, int]] = {
            TokenKind.ACCESS: (settings.access_secret, settings.access_expiration),
            TokenKind.REFRESH: (settings.refresh_secret, settings.refresh_expiration),
            TokenKind.CONFIRMATION: (settings.confirmation_secret, settings.confirmation_expiration),
            TokenKind.RESET: (settings.reset_secret, settings.reset_expiration),
            TokenKind.OAUTH_STATE: (settings.state_secret, settings.state_expiration),
        }

    def ttl(self, kind: TokenKind) -> int:
        """Return the configured lifetime of a token kind in seconds."""
        return self._keys[kind][1]

    def issue(
        self,
        kind: TokenKind,
        subject: str,
        ttl: int | None = None,
        *,
        version: int | None = None,
        token_id: str | None = None,
    ) -> IssuedToken:
        """Encode a signed token of the given kind.

        Args:
            kind:     Token kind; selects secret and default lifetime.
            subject:  Stored as "sub". The user id for user tokens, the
                      provider name for OAUTH_STATE.
            ttl:      Lifetime override in seconds (tests use negative values).
            version:  User version embedded as "ver" (confirmation/reset).
            token_id: Explicit "jti"; a random one is generated for every
                      kind except ACCESS when omitted.
        """
        secret, default_ttl = self._keys[kind]
        issued_at = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=default_ttl if ttl is None else ttl)
        if token_id is None and kind is not TokenKind.ACCESS:
            token_id = secrets.token_urlsafe(16)

        payload: dict = {
            "iss": self._issuer,
            "sub": subject,
            "typ": kind.value,
            "iat": issued_at,
            "exp": expires_at,
        }
        if token_id is not None:
            payload["jti"] = token_id
        if version is not None:
            payload["ver"] = version

        token = jwt.encode(payload, secret, algorithm=_ALGORITHM)
        return IssuedToken(token=token, token_id=token_id, issued_at=issued_at, expires_at=expires_at)

    def verify(self, raw: str, expected_kind: TokenKind) -> TokenClaims:
        """Verify signature, expiry, issuer and kind of a raw token.

        Raises:
            TokenKindMismatch: The token is well formed but of another kind.
            InvalidSignature:  Signature does not verify or token is malformed.
            TokenExpired:      Past "exp" plus the configured leeway.
        """
        secret, _ = self._keys[expected_kind]
        try:
            payload = jwt.decode(
                raw,
                secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"leeway": self._leeway, "require_exp": True, "require_sub": True},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            # Signed with a different key: report a kind mismatch when the
            # unverified typ claim names another kind, so callers see why.
            if self._peek_kind(raw) not in (None, expected_kind.value):
                raise TokenKindMismatch() from exc
            raise InvalidSignature() from exc

        if payload.get("typ") != expected_kind.value:
            raise TokenKindMismatch()
        if expected_kind is not TokenKind.ACCESS and not payload.get("jti"):
            raise InvalidToken("Token is missing its identifier.")

        return TokenClaims(
            subject=str(payload["sub"]),
            kind=expected_kind,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=payload.get("jti"),
            version=payload.get("ver"),
        )

    @staticmethod
    def _peek_kind(raw: str) -> str | None:
        try:
            return jwt.get_unverified_claims(raw).get("typ")
        except JWTError:
            return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------

REFRESH_COOKIE_PATH = "/api/v1/auth"


def set_refresh_cookie(response, settings: Settings, token: str) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    path: scoped to the auth routes so the cookie never rides along on
        ordinary API calls.
    max_age: matches the refresh token lifetime so both expire together.
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.refresh_expiration,
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response, settings: Settings) -> None:
    response.delete_cookie(settings.refresh_cookie_name, path=REFRESH_COOKIE_PATH)
