"""Saved credential profiles for the cyclic profile switcher."""

from dataclasses import dataclass, field
from typing import Any

import shortuuid

from credpool.core.time import now_ms


PROFILE_STORE_VERSION = 2


def generate_profile_id() -> str:
    """Short URL-safe profile id."""
    return f"p_{shortuuid.uuid()[:12]}"


@dataclass
class Profile:
    """One saved login: a label plus the raw auth-store credential."""

    id: str
    label: str
    oauth: dict[str, Any]
    saved_at: int = field(default_factory=now_ms)
    email: str | None = None
    account_id: str | None = None

    @property
    def refresh_token(self) -> str | None:
        value = self.oauth.get("refresh")
        return value if isinstance(value, str) and value else None

    @property
    def identity(self) -> str:
        return self.email or self.account_id or "unknown-account"

    def match_keys(self) -> tuple[str, ...]:
        return tuple(k for k in (self.id, self.email, self.account_id) if k)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "savedAt": self.saved_at,
            "email": self.email,
            "accountId": self.account_id,
            "oauth": self.oauth,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Profile":
        """Create from dictionary.

        Raises:
            KeyError: If id, label or oauth is missing
            ValueError: If oauth is not an object
        """
        oauth = data["oauth"]
        if not isinstance(oauth, dict):
            raise ValueError("oauth must be an object")
        return cls(
            id=str(data["id"]),
            label=str(data["label"]),
            oauth=dict(oauth),
            saved_at=_saved_at(data.get("savedAt")),
            email=data.get("email") if isinstance(data.get("email"), str) else None,
            account_id=data.get("accountId") if isinstance(data.get("accountId"), str) else None,
        )


def _saved_at(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
        return int(value)
    return now_ms()


@dataclass
class ProfileStore:
    """Current (v2) profile store document."""

    version: int = PROFILE_STORE_VERSION
    active_profile_id: str | None = None
    profiles: list[Profile] = field(default_factory=list)

    @property
    def active_profile(self) -> Profile | None:
        return self.get(self.active_profile_id) if self.active_profile_id else None

    def get(self, profile_id: str) -> Profile | None:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None

    def find_by_refresh_token(self, refresh_token: str | None) -> Profile | None:
        if not refresh_token:
            return None
        for profile in self.profiles:
            if profile.refresh_token == refresh_token:
                return profile
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": self.version}
        if self.active_profile_id is not None:
            data["activeProfileId"] = self.active_profile_id
        data["profiles"] = [profile.to_dict() for profile in self.profiles]
        return data
