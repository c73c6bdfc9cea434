"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and flows do
the work; these types only carry shape between them.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    """Discriminator carried in the ``typ`` claim of every signed token.

    Each kind has its own signing secret and lifetime. OAUTH_STATE is the
    short-lived anti-forgery value sent through the provider redirect.
    """

    ACCESS = "access"
    REFRESH = "refresh"
    CONFIRMATION = "confirmation"
    RESET = "reset"
    OAUTH_STATE = "oauth_state"


class ProviderName(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"


class ChallengeOutcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass
class User:
    """A local identity.

    email is always stored lower-cased. hashed_password is None for users
    created through an external provider who never set a local password.
    version increments on every credential mutation and backs the
    optimistic concurrency checks in the store.
    """

    email: str
    name: str
    id: int | None = None
    hashed_password: str | None = None  # None = external-only user
    confirmed: bool = False
    two_factor: bool = False
    is_deleted: bool = False
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ExternalIdentity:
    """Link from a provider account to a local user. Unique per (provider, subject)."""

    provider: str
    subject: str
    user_id: int
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str | None
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a token. subject is the user id for user tokens."""

    subject: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str | None = None
    version: int | None = None


@dataclass(frozen=True)
class SessionTokens:
    """Result of a completed login: one Access and one Refresh token."""

    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    user_id: int


@dataclass(frozen=True)
class TwoFactorPending:
    """Login step one succeeded; a code was emailed and must be verified."""

    user_id: int
    expires_in: int


@dataclass(frozen=True)
class ExternalProfile:
    """Normalized profile returned by an OAuth provider."""

    subject: str
    email: str
    name: str
    email_verified: bool = True
