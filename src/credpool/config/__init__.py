"""Configuration module for credpool."""

from .settings import OAuthSettings, ProfileSettings, RotationSettings, Settings, get_settings


__all__ = [
    "Settings",
    "get_settings",
    "OAuthSettings",
    "ProfileSettings",
    "RotationSettings",
]
