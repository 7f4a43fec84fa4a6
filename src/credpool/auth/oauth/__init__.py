"""OAuth token endpoint access."""

from .token_exchange import OAuthConfig, OAuthTokenClient, TokenGrant, parse_token_response


__all__ = [
    "OAuthConfig",
    "OAuthTokenClient",
    "TokenGrant",
    "parse_token_response",
]
