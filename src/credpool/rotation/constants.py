"""Constants for the rotation module.

This module centralizes configuration values used across the rotation package.
"""

# Time constants (milliseconds unless otherwise noted)
TOKEN_EXPIRY_MARGIN_MILLISECONDS = 5 * 60 * 1000
DEFAULT_RATE_LIMIT_MILLISECONDS = 60 * 1000

# Persisted document versions
POOL_DOCUMENT_VERSION = 1
LEGACY_PROFILE_STORE_VERSION = 1

# Legacy two-slot store, in migration order
LEGACY_SLOT_NAMES: tuple[str, ...] = ("current", "previous")
