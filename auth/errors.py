"""
auth/errors.py -- Typed domain errors raised by the auth core.

Every flow converts lookup and validation failures into one of these at its
boundary. api/main.py renders them in the shared ErrorResponse envelope using
the status_code and code attributes, so route handlers never build error
bodies for domain failures themselves.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every auth-core failure that reaches a client."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    # Same message for unknown email and wrong password [C1]
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class EmailTaken(AuthError):
    status_code = 409
    code = "email_taken"
    message = "An account with that email already exists."


class EmailNotConfirmed(AuthError):
    status_code = 403
    code = "email_not_confirmed"
    message = "Please confirm your email. A new confirmation link has been sent."


class InvalidToken(AuthError):
    status_code = 400
    code = "invalid_token"
    message = "Invalid token."


class InvalidSignature(InvalidToken):
    code = "invalid_signature"


class TokenKindMismatch(InvalidToken):
    code = "token_kind_mismatch"
    message = "Token is not valid for this operation."


class TokenExpired(AuthError):
    status_code = 410
    code = "expired"
    message = "Token has expired."


class Revoked(AuthError):
    status_code = 401
    code = "revoked"
    message = "Session has been revoked."


class InvalidCode(AuthError):
    status_code = 400
    code = "invalid_code"
    message = "Invalid verification code."


class AttemptsExhausted(AuthError):
    status_code = 429
    code = "attempts_exhausted"
    message = "Too many invalid codes. Please sign in again."


class ProviderError(AuthError):
    status_code = 502
    code = "provider_error"
    message = "The identity provider could not complete the sign-in."


class UnknownProvider(AuthError):
    status_code = 404
    code = "unknown_provider"
    message = "Identity provider is not configured."


class EmailDispatchError(AuthError):
    status_code = 503
    code = "email_dispatch_failed"
    message = "The email could not be sent. Please try again later."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    message = "The resource was modified or is linked elsewhere."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "Not found."


class PasswordNotSet(AuthError):
    status_code = 403
    code = "password_not_set"
    message = "This account has no password yet. Use the password reset email to set one."
