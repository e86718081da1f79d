"""
OAuth authorization-code client for third-party sign-in.
"""
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from ..config import settings


class OAuthNotConfigured(Exception):
    pass


class OAuthProviderError(Exception):
    pass


class OAuthTimeout(OAuthProviderError):
    pass


class OAuthClient:
    """Talks to the provider's token and userinfo endpoints."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id or settings.oauth_client_id
        self.client_secret = client_secret or settings.oauth_client_secret
        self.redirect_url = redirect_url or settings.oauth_redirect_url or f"{settings.public_base_url}/auth/oauth/callback"
        self.timeout = timeout or settings.http_timeout_s

        if not self.client_id or not self.client_secret:
            raise OAuthNotConfigured("OAuth client id and secret are required")

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_url,
            "response_type": "code",
            "scope": settings.oauth_scopes,
            "state": state,
        }
        return f"{settings.oauth_authorize_url}?{urlencode(params)}"

    def _request(self, method: str, url: str, **kwargs) -> Dict:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise OAuthTimeout(f"OAuth provider timed out: {url}") from e
        except httpx.HTTPStatusError as e:
            raise OAuthProviderError(f"OAuth provider returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise OAuthProviderError(f"OAuth provider request failed: {e}") from e

    def exchange_code(self, code: str) -> str:
        """Trade an authorization code for an access token."""
        data = self._request(
            "POST",
            settings.oauth_token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_url,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise OAuthProviderError("OAuth provider returned no access token")
        return token

    def userinfo(self, access_token: str) -> Dict:
        info = self._request(
            "GET",
            settings.oauth_userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not info.get("sub") or not info.get("email"):
            raise OAuthProviderError("OAuth userinfo is missing subject or email")
        return info
