"""Account model and pool document for multi-account rotation.

The pool document is the single source of truth across process restarts;
runtime state (cached access tokens, rate limits, counters) is persisted with it.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from structlog import get_logger

from credpool.core.time import now_ms
from credpool.exceptions import DuplicateError, ValidationError
from credpool.rotation.constants import POOL_DOCUMENT_VERSION


logger = get_logger(__name__)


class RotationMode(StrEnum):
    """When the active account pointer advances."""

    ROUND_ROBIN = "round-robin"
    USE_UNTIL_EXHAUSTED = "use-until-exhausted"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> "RotationMode":
        """Parse a mode name or one of its short aliases.

        Raises:
            ValidationError: If the value names no mode
        """
        normalized = value.strip().lower()
        mode = _MODE_ALIASES.get(normalized)
        if mode is None:
            raise ValidationError(
                f"Unknown rotation mode '{value}'",
                details={"allowed": [m.value for m in cls]},
            )
        return mode


_MODE_ALIASES: dict[str, RotationMode] = {
    "round-robin": RotationMode.ROUND_ROBIN,
    "rr": RotationMode.ROUND_ROBIN,
    "r": RotationMode.ROUND_ROBIN,
    "use-until-exhausted": RotationMode.USE_UNTIL_EXHAUSTED,
    "exhaust": RotationMode.USE_UNTIL_EXHAUSTED,
    "ue": RotationMode.USE_UNTIL_EXHAUSTED,
    "e": RotationMode.USE_UNTIL_EXHAUSTED,
    "manual": RotationMode.MANUAL,
    "m": RotationMode.MANUAL,
}


@dataclass
class Account:
    """One stored credential for one real-world login."""

    refresh_token: str
    email: str | None = None
    account_id: str | None = None
    label: str | None = None
    project_id: str | None = None

    # Cached access token; expiry is the instant (ms) until which it is usable
    access_token: str | None = None
    access_token_expires: int | None = None

    added_at: int = field(default_factory=now_ms)
    last_used: int | None = None
    last_error: str | None = None
    rate_limit_reset_time: int | None = None  # Unix timestamp ms
    request_count: int = 0

    # Provider-specific raw fields carried through untouched
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        """Email when known, else the opaque account id, else the label."""
        return self.email or self.account_id or self.label or "unknown-account"

    @property
    def display_name(self) -> str:
        return self.label or self.identity

    def match_keys(self) -> tuple[str, ...]:
        """Identity keys a selector may match besides the label."""
        return tuple(k for k in (self.email, self.account_id) if k)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (absent values omitted)."""
        data: dict[str, Any] = {
            "email": self.email,
            "accountId": self.account_id,
            "label": self.label,
            "refreshToken": self.refresh_token,
            "projectId": self.project_id,
            "accessToken": self.access_token,
            "accessTokenExpires": self.access_token_expires,
            "addedAt": self.added_at,
            "lastUsed": self.last_used,
            "lastError": self.last_error,
            "rateLimitResetTime": self.rate_limit_reset_time,
            "requestCount": self.request_count,
        }
        if self.extra:
            data["extra"] = dict(self.extra)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Account":
        """Create from dictionary.

        Raises:
            KeyError: If the refresh token is missing
            ValueError: If the refresh token is not a non-empty string
        """
        refresh_token = data["refreshToken"]
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("refreshToken must be a non-empty string")

        extra = data.get("extra") or {}
        if not isinstance(extra, dict):
            logger.warning("invalid_field_dropped", field="extra", expected="object", got=type(extra).__name__)
            extra = {}

        return cls(
            refresh_token=refresh_token,
            email=_optional_str(data, "email"),
            account_id=_optional_str(data, "accountId"),
            label=_optional_str(data, "label"),
            project_id=_optional_str(data, "projectId") or _optional_str(data, "managedProjectId"),
            access_token=_optional_str(data, "accessToken"),
            access_token_expires=_optional_int(data, "accessTokenExpires"),
            added_at=_optional_int(data, "addedAt") or now_ms(),
            last_used=_optional_int(data, "lastUsed"),
            last_error=_optional_str(data, "lastError"),
            rate_limit_reset_time=_optional_int(data, "rateLimitResetTime"),
            request_count=_optional_int(data, "requestCount") or 0,
            extra=dict(extra),
        )


@dataclass
class PoolDocument:
    """One provider's ordered account set plus rotation state."""

    version: int = POOL_DOCUMENT_VERSION
    accounts: list[Account] = field(default_factory=list)
    active_index: int | None = None
    rotation_mode: RotationMode = RotationMode.ROUND_ROBIN

    @property
    def active_account(self) -> Account | None:
        if self.active_index is None:
            return None
        return self.accounts[self.active_index]

    def normalize(self) -> None:
        """Restore the active index invariant after load or mutation."""
        if not self.accounts:
            self.active_index = None
        elif self.active_index is None or not 0 <= self.active_index < len(self.accounts):
            self.active_index = 0

    def find_by_refresh_token(self, refresh_token: str) -> Account | None:
        for account in self.accounts:
            if account.refresh_token == refresh_token:
                return account
        return None

    def index_of(self, account: Account) -> int | None:
        for i, candidate in enumerate(self.accounts):
            if candidate is account:
                return i
        return None

    def add_account(self, account: Account) -> int:
        """Append an account, activating it when the pool was empty.

        Returns:
            Index of the new account

        Raises:
            DuplicateError: If the refresh secret is already stored
        """
        existing = self.find_by_refresh_token(account.refresh_token)
        if existing is not None:
            raise DuplicateError(
                f"Account already exists: {existing.display_name}",
                existing=existing,
            )

        self.accounts.append(account)
        if self.active_index is None:
            self.active_index = 0

        logger.info("account_added", account=account.display_name)
        return len(self.accounts) - 1

    def remove_index(self, index: int) -> Account:
        """Remove an account, keeping the active pointer valid.

        Removing the active account moves the pointer to the first remaining
        account; removing one before it keeps the pointer on the same account.
        """
        removed = self.accounts.pop(index)

        if not self.accounts:
            self.active_index = None
        elif self.active_index is not None:
            if index == self.active_index:
                self.active_index = 0
            elif index < self.active_index:
                self.active_index -= 1

        logger.info("account_removed", account=removed.display_name)
        return removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "activeIndex": self.active_index,
            "rotationMode": self.rotation_mode.value,
            "accounts": [account.to_dict() for account in self.accounts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PoolDocument":
        """Create from dictionary loaded from JSON.

        Invalid entries are skipped with a warning rather than failing the load.
        """
        accounts: list[Account] = []
        raw_accounts = data.get("accounts")
        if not isinstance(raw_accounts, list):
            raw_accounts = []

        for position, entry in enumerate(raw_accounts):
            if not isinstance(entry, dict):
                logger.warning("invalid_account_skipped", position=position, error="not an object")
                continue
            try:
                accounts.append(Account.from_dict(entry))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(
                    "invalid_account_skipped",
                    position=position,
                    error=str(e),
                )

        mode_value = data.get("rotationMode")
        try:
            mode = RotationMode(mode_value) if mode_value else RotationMode.ROUND_ROBIN
        except ValueError:
            logger.warning("unknown_rotation_mode", mode=mode_value)
            mode = RotationMode.ROUND_ROBIN

        active_index = _optional_int(data, "activeIndex")

        document = cls(
            version=POOL_DOCUMENT_VERSION,
            accounts=accounts,
            active_index=active_index,
            rotation_mode=mode,
        )
        document.normalize()
        return document


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    """Read an optional string field, dropping a value of the wrong type."""
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    logger.warning("invalid_field_dropped", field=key, expected="string", got=type(value).__name__)
    return None


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    """Read an optional integer field, dropping a value of the wrong type."""
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float):
        return int(value)
    logger.warning("invalid_field_dropped", field=key, expected="number", got=type(value).__name__)
    return None
