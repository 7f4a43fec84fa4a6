"""Access token cache with single-flight refresh per account."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from structlog import get_logger

from credpool.auth.oauth.token_exchange import TokenGrant
from credpool.exceptions import UpstreamAuthError
from credpool.rotation.accounts import Account
from credpool.rotation.constants import TOKEN_EXPIRY_MARGIN_MILLISECONDS


logger = get_logger(__name__)


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenGrant: ...


# Called after every refresh attempt with the account and the refresh token
# it held before the attempt; the pool persists from here
RefreshCallback = Callable[[Account, str], Awaitable[None]]


class TokenCache:
    """Hands out usable access tokens, refreshing them when expired.

    Concurrent callers for the same account share one refresh: the second
    caller waits on the account's lock, then finds the fresh token cached.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        margin_ms: int = TOKEN_EXPIRY_MARGIN_MILLISECONDS,
        on_refreshed: RefreshCallback | None = None,
    ):
        self._refresher = refresher
        self._margin_ms = margin_ms
        self._on_refreshed = on_refreshed
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        # Last grant per refresh token it was obtained with
        self._grants: dict[str, tuple[str, int, str]] = {}
        # Rotated refresh token -> the token it replaced; older generations are pruned
        self._rotated_from: dict[str, str] = {}

    def _get_lock(self, refresh_token: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(refresh_token)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[refresh_token] = lock
        return lock

    def forget(self, refresh_token: str) -> None:
        """Drop all state kept for an account that left the pool."""
        self._refresh_locks.pop(refresh_token, None)
        self._grants.pop(refresh_token, None)
        previous = self._rotated_from.pop(refresh_token, None)
        if previous is not None:
            self._refresh_locks.pop(previous, None)
            self._grants.pop(previous, None)

    def _record_rotation(self, old: str, new: str, lock: asyncio.Lock) -> None:
        # Only the previous generation keeps its lock and grant
        stale = self._rotated_from.pop(old, None)
        if stale is not None:
            self._refresh_locks.pop(stale, None)
            self._grants.pop(stale, None)
        self._refresh_locks[new] = lock
        self._rotated_from[new] = old

    @staticmethod
    def cached_token(account: Account, now: int) -> str | None:
        """The cached access token if it is still usable at `now`."""
        if account.access_token and account.access_token_expires is not None:
            if now < account.access_token_expires:
                return account.access_token
        return None

    def _adopt_grant(self, account: Account, refresh_token: str, now: int) -> str | None:
        """Copy a grant another caller obtained onto this account object."""
        recorded = self._grants.get(refresh_token)
        if recorded is None:
            return None
        access_token, expires, current_refresh = recorded
        if now >= expires:
            return None
        account.access_token = access_token
        account.access_token_expires = expires
        account.refresh_token = current_refresh
        account.last_error = None
        return access_token

    async def get_valid_access_token(self, account: Account, now: int) -> str:
        """Return a usable access token, refreshing it if needed.

        Raises:
            UpstreamAuthError: If the refresh fails; the refresh token is kept
        """
        token = self.cached_token(account, now)
        if token is not None:
            return token

        refresh_token = account.refresh_token
        lock = self._get_lock(refresh_token)

        async with lock:
            # Another caller may have refreshed while we waited
            token = self.cached_token(account, now) or self._adopt_grant(account, refresh_token, now)
            if token is not None:
                return token

            try:
                grant = await self._refresher.refresh(refresh_token)
            except UpstreamAuthError as e:
                account.last_error = f"Token refresh failed: {e.message}"
                logger.warning(
                    "token_refresh_failed",
                    account=account.display_name,
                    status_code=e.upstream_status,
                )
                if self._on_refreshed is not None:
                    await self._on_refreshed(account, refresh_token)
                raise

            account.access_token = grant.access_token
            account.access_token_expires = now + grant.expires_in * 1000 - self._margin_ms
            if grant.refresh_token and grant.refresh_token != refresh_token:
                account.refresh_token = grant.refresh_token
                self._record_rotation(refresh_token, grant.refresh_token, lock)
            self._grants[refresh_token] = (
                grant.access_token,
                account.access_token_expires,
                account.refresh_token,
            )
            account.last_error = None

            logger.info(
                "token_refreshed",
                account=account.display_name,
                expires_in=grant.expires_in,
                rotated=grant.refresh_token is not None,
            )

            if self._on_refreshed is not None:
                await self._on_refreshed(account, refresh_token)

            return grant.access_token
