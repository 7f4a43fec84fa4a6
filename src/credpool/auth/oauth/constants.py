"""OAuth endpoint defaults.

Client credentials are deployment specific and come from settings.
"""

OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
OAUTH_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"

# Claim carrying the profile object in provider-issued access tokens
PROFILE_CLAIM = "https://api.openai.com/profile"

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_TOKEN_EXPIRY_SECONDS = 3600  # 1 hour

# Truncation for upstream error bodies kept in exceptions and logs
MAX_ERROR_TEXT_LENGTH = 500
