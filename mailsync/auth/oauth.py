"""
OAuth2 token endpoints for email providers.

Only the token-endpoint half of OAuth lives here (authorization-code and
refresh-token grants). The consent screen is driven elsewhere; providers
just build its URL.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests

from mailsync import config
from mailsync.utils.errors import TokenRefreshError


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenBundle:
    """Container for OAuth2 tokens."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime] = None


class OAuthProvider(ABC):
    """Abstract base class for OAuth2 providers."""

    AUTHORIZATION_ENDPOINT: str = ""
    TOKEN_ENDPOINT: str = ""
    DEFAULT_SCOPES: List[str] = []

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str = "http://localhost:8080/",
        scopes: Optional[List[str]] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes or self.DEFAULT_SCOPES)
        self.session = session or requests.Session()
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS

    def get_authorization_url(self, state: str) -> str:
        """
        Build the consent-screen URL for the authorization-code flow.

        Args:
            state: A state parameter for CSRF protection.
        """
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        """
        Exchange an authorization code for access and refresh tokens.

        Raises:
            TokenRefreshError: If the token endpoint rejects the code.
        """
        return self._token_request(
            {
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            previous_refresh_token=None,
        )

    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        """
        Obtain a new access token from a refresh token.

        Providers that do not rotate refresh tokens omit one from the
        response; the previous refresh token is kept in that case.

        Raises:
            TokenRefreshError: If the refresh is rejected or the endpoint is unreachable.
        """
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")
        return self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            previous_refresh_token=refresh_token,
        )

    @abstractmethod
    def _extra_token_params(self) -> Dict[str, str]:
        """Provider-specific fields added to every token request."""
        pass

    def _token_request(self, data: Dict[str, str], previous_refresh_token: Optional[str]) -> TokenBundle:
        if not self.client_id:
            raise TokenRefreshError(f"{type(self).__name__}: OAuth client id is not configured")

        payload = {"client_id": self.client_id, **data, **self._extra_token_params()}
        if self.client_secret:
            payload["client_secret"] = self.client_secret

        try:
            response = self.session.post(self.TOKEN_ENDPOINT, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        if not response.ok:
            raise TokenRefreshError(
                f"Token request failed ({response.status_code}): {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TokenRefreshError("Token endpoint returned invalid JSON") from e

        access_token = body.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token response did not include an access token")

        expires_at = None
        if body.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(body["expires_in"]))

        logger.info("Obtained new access token from %s", self.TOKEN_ENDPOINT)
        return TokenBundle(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
        )


class GoogleOAuthProvider(OAuthProvider):
    """OAuth2 provider for Gmail."""

    AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    DEFAULT_SCOPES = config.GMAIL_SCOPES

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None, **kwargs):
        super().__init__(
            client_id or config.GMAIL_CLIENT_ID,
            client_secret or config.GMAIL_CLIENT_SECRET,
            **kwargs,
        )

    def _extra_token_params(self) -> Dict[str, str]:
        return {}


class OutlookOAuthProvider(OAuthProvider):
    """OAuth2 provider for Microsoft 365 / Outlook.com."""

    AUTHORIZATION_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    TOKEN_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    DEFAULT_SCOPES = [
        "https://outlook.office.com/IMAP.AccessAsUser.All",
        "https://outlook.office.com/SMTP.Send",
        "offline_access",
    ]

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None, **kwargs):
        super().__init__(
            client_id or config.OUTLOOK_CLIENT_ID,
            client_secret or config.OUTLOOK_CLIENT_SECRET,
            **kwargs,
        )

    def _extra_token_params(self) -> Dict[str, str]:
        return {"scope": " ".join(self.scopes)}


def default_providers() -> Dict[str, OAuthProvider]:
    """Providers keyed by account service name."""
    return {
        "gmail": GoogleOAuthProvider(),
        "outlook": OutlookOAuthProvider(),
    }
