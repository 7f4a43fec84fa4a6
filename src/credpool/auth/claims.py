"""Identity hints read from access-token claims.

Tokens are decoded without signature verification: the claims only label an
account for display and are never trusted for authorization.
"""

from typing import Any

import jwt

from credpool.auth.oauth.constants import PROFILE_CLAIM


def decode_claims(access_token: str | None) -> dict[str, Any] | None:
    """Unverified JWT payload, or None when the token is not a JWT."""
    if not access_token:
        return None
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def infer_email(access_token: str | None) -> str | None:
    """Email from the `email` claim or the provider profile claim."""
    claims = decode_claims(access_token)
    if claims is None:
        return None

    profile = claims.get(PROFILE_CLAIM)
    if isinstance(profile, dict):
        email = profile.get("email")
        if isinstance(email, str) and email:
            return email

    email = claims.get("email")
    return email if isinstance(email, str) and email else None
