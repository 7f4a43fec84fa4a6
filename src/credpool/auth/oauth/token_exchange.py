"""OAuth refresh-token exchange.

The only upstream call the pool makes: trade a refresh token for a fresh
access token. Requests are form-encoded as in standard OAuth 2.0.
"""

from dataclasses import dataclass
from typing import Any

import httpx
from structlog import get_logger

from credpool.exceptions import UpstreamAuthError

from .constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_EXPIRY_SECONDS,
    MAX_ERROR_TEXT_LENGTH,
    OAUTH_TOKEN_URL,
    OAUTH_USERINFO_URL,
)


logger = get_logger(__name__)


@dataclass
class OAuthConfig:
    """OAuth configuration with sensible defaults."""

    token_url: str = OAUTH_TOKEN_URL
    client_id: str = ""
    client_secret: str = ""
    userinfo_url: str | None = OAUTH_USERINFO_URL
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass
class TokenGrant:
    """Result of a successful refresh."""

    access_token: str
    expires_in: int = DEFAULT_TOKEN_EXPIRY_SECONDS
    refresh_token: str | None = None  # Set only when the provider rotated it


def _handle_error_response(response: httpx.Response, operation: str) -> None:
    """Log a non-2xx token endpoint response and raise UpstreamAuthError."""
    error_text = response.text[:MAX_ERROR_TEXT_LENGTH]
    logger.error(
        f"oauth_{operation}_failed",
        status=response.status_code,
        error=error_text,
    )
    raise UpstreamAuthError(
        f"{operation} failed ({response.status_code}): {error_text}",
        status_code=response.status_code,
        response_text=error_text,
    )


def parse_token_response(data: Any, refresh_token: str) -> TokenGrant:
    """Build a TokenGrant from the token endpoint's JSON body.

    Raises:
        UpstreamAuthError: If no access token is present
    """
    if not isinstance(data, dict) or not data.get("access_token"):
        raise UpstreamAuthError("token_refresh failed: response has no access_token")

    try:
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_EXPIRY_SECONDS)
    except (TypeError, ValueError):
        expires_in = DEFAULT_TOKEN_EXPIRY_SECONDS

    new_refresh = data.get("refresh_token")
    rotated = new_refresh if isinstance(new_refresh, str) and new_refresh != refresh_token else None

    return TokenGrant(
        access_token=str(data["access_token"]),
        expires_in=expires_in,
        refresh_token=rotated or None,
    )


class OAuthTokenClient:
    """Token endpoint client.

    Supports connection pooling by reusing a shared httpx.AsyncClient.
    """

    def __init__(
        self,
        config: OAuthConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            config: OAuth configuration, uses defaults if not provided
            http_client: Optional shared httpx client for connection pooling
        """
        self.config = config or OAuthConfig()
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: Refresh token of the account

        Returns:
            The granted access token and its lifetime

        Raises:
            UpstreamAuthError: If the provider rejects the token or the call fails
        """
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = await self._get_client().post(
                self.config.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("oauth_token_refresh_transport_error", error=str(e))
            raise UpstreamAuthError(f"token_refresh failed: {e}") from e

        if not response.is_success:
            _handle_error_response(response, "token_refresh")

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamAuthError(
                "token_refresh failed: response is not JSON",
                status_code=response.status_code,
                response_text=response.text[:MAX_ERROR_TEXT_LENGTH],
            ) from e

        grant = parse_token_response(data, refresh_token)
        logger.debug(
            "oauth_token_refreshed",
            expires_in=grant.expires_in,
            rotated=grant.refresh_token is not None,
        )
        return grant

    async def fetch_account_email(self, access_token: str) -> str | None:
        """Look up the account email via the userinfo endpoint; never raises."""
        if not self.config.userinfo_url:
            return None

        try:
            response = await self._get_client().get(
                self.config.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("userinfo_lookup_failed", error=str(e))
            return None

        if not response.is_success:
            logger.warning("userinfo_lookup_failed", status=response.status_code)
            return None

        try:
            email = response.json().get("email")
        except (ValueError, AttributeError):
            return None
        return email if isinstance(email, str) and email else None

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
