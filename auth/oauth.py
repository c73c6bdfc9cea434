"""
auth/oauth.py -- OAuth2 identity providers (Google, Facebook).

Every provider is a variant of OAuthProvider exposing the same capability
interface:
  authorization_url(state, code_verifier) -> str
  exchange_code(code, code_verifier)      -> token dict
  fetch_profile(token)                    -> ExternalProfile

Adding a provider means adding a ProviderName member and a subclass with its
endpoints and profile parsing -- the external flow never branches on the
provider name.

HTTP goes through authlib's httpx AsyncOAuth2Client with a bounded timeout.
Any failure (network, timeout, error response, malformed profile) is raised
as ProviderError so the route layer can answer 502.

Security notes:
  [H1] Google profiles are only accepted when email_verified is true.
       Facebook only returns confirmed addresses in its Graph API.

  PKCE (S256) is used on every authorization request. The verifier is kept
  server side in the session cache, keyed by the state nonce, never sent to
  the browser.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.errors import ProviderError
from auth.models import ExternalProfile, ProviderName
from core.config import Settings

logger = logging.getLogger("tokengate.auth.oauth")

_PROVIDER_LABELS = {
    ProviderName.GOOGLE: "Google",
    ProviderName.FACEBOOK: "Facebook",
}


class OAuthProvider:
    """Authorization-code client for one identity provider."""

    name: ProviderName
    authorize_url: str
    token_url: str
    userinfo_url: str
    scopes: tuple[str, ...] = ()
    userinfo_params: dict = {}

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def label(self) -> str:
        return _PROVIDER_LABELS[self.name]

    def authorization_url(self, state: str, code_verifier: str) -> str:
        """Build the provider consent URL. No network call."""
        return prepare_grant_uri(
            self.authorize_url,
            self.client_id,
            "code",
            redirect_uri=self.redirect_uri,
            scope=list(self.scopes),
            state=state,
            code_challenge=create_s256_code_challenge(code_verifier),
            code_challenge_method="S256",
        )

    async def exchange_code(self, code: str, code_verifier: str) -> dict:
        """Trade an authorization code for a provider access token."""
        try:
            async with self._client() as client:
                token = await client.fetch_token(self.token_url, code=code, code_verifier=code_verifier)
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            logger.warning("%s token exchange failed: %s", self.name.value, exc)
            raise ProviderError() from exc
        if not token.get("access_token"):
            raise ProviderError("The identity provider returned no access token.")
        return dict(token)

    async def fetch_profile(self, token: dict) -> ExternalProfile:
        """Fetch and normalize the signed-in user's profile."""
        try:
            async with self._client(token=token) as client:
                resp = await client.get(self.userinfo_url, params=self.userinfo_params or None)
                resp.raise_for_status()
                data = resp.json()
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            logger.warning("%s profile fetch failed: %s", self.name.value, exc)
            raise ProviderError() from exc
        return self.parse_profile(data)

    def parse_profile(self, data: dict) -> ExternalProfile:
        raise NotImplementedError

    def _client(self, token: dict | None = None) -> AsyncOAuth2Client:
        kwargs: dict = {"timeout": self.timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_endpoint_auth_method="client_secret_post",  # noqa: S106 -- auth method name, not a password
            redirect_uri=self.redirect_uri,
            token=token,
            **kwargs,
        )


class GoogleProvider(OAuthProvider):
    name = ProviderName.GOOGLE
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://openidconnect.googleapis.com/v1/userinfo"
    scopes = ("openid", "email", "profile")

    def parse_profile(self, data: dict) -> ExternalProfile:
        """Normalize an OpenID Connect userinfo response [H1]."""
        subject = data.get("sub")
        email = data.get("email")
        if not subject or not email:
            raise ProviderError("Google did not return an email address.")
        return ExternalProfile(
            subject=str(subject),
            email=email,
            name=data.get("name") or email.split("@", 1)[0],
            email_verified=bool(data.get("email_verified", False)),
        )


class FacebookProvider(OAuthProvider):
    name = ProviderName.FACEBOOK
    authorize_url = "https://www.facebook.com/v18.0/dialog/oauth"
    token_url = "https://graph.facebook.com/v18.0/oauth/access_token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://graph.facebook.com/v18.0/me"
    scopes = ("email", "public_profile")
    userinfo_params = {"fields": "id,name,email"}

    def parse_profile(self, data: dict) -> ExternalProfile:
        """Normalize a Graph API /me response.

        Facebook omits the email field entirely when the user signed up with
        a phone number or declined the email permission.
        """
        subject = data.get("id")
        email = data.get("email")
        if not subject or not email:
            raise ProviderError("Facebook did not return an email address.")
        return ExternalProfile(
            subject=str(subject),
            email=email,
            name=data.get("name") or email.split("@", 1)[0],
            email_verified=True,
        )


_PROVIDER_CLASSES: dict[ProviderName, type[OAuthProvider]] = {
    ProviderName.GOOGLE: GoogleProvider,
    ProviderName.FACEBOOK: FacebookProvider,
}


def callback_url(settings: Settings, provider: ProviderName) -> str:
    return f"{settings.backend_url.rstrip('/')}/api/v1/auth/{provider.value}/callback"


def build_providers(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> dict[ProviderName, OAuthProvider]:
    """Instantiate every provider whose client id and secret are configured."""
    credentials = {
        ProviderName.GOOGLE: (settings.google_client_id, settings.google_client_secret),
        ProviderName.FACEBOOK: (settings.facebook_client_id, settings.facebook_client_secret),
    }
    providers: dict[ProviderName, OAuthProvider] = {}
    for name, (client_id, client_secret) in credentials.items():
        if client_id and client_secret:
            providers[name] = _PROVIDER_CLASSES[name](
                client_id,
                client_secret,
                callback_url(settings, name),
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )
            logger.info("%s OAuth provider registered", _PROVIDER_LABELS[name])
    return providers


def get_enabled_providers(providers: dict[ProviderName, OAuthProvider]) -> list[dict]:
    """Return {"name", "label"} for every registered provider.

    Used by GET /api/v1/auth/providers so the login page can render buttons.
    """
    return [{"name": p.name.value, "label": p.label} for p in providers.values()]
