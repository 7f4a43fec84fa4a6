"""Pool manager: the one owner of a provider's account pool.

Selects an account per outbound request, keeps its access token fresh, reacts
to rate-limit signals, and fails over once when a refresh is rejected. Every
read-modify-persist section runs under a single asyncio.Lock; token refreshes
run outside it so a slow token endpoint never blocks other accounts.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import orjson
from structlog import get_logger

from credpool.auth.claims import infer_email
from credpool.auth.oauth.token_exchange import OAuthConfig, OAuthTokenClient
from credpool.auth.store import AuthStore
from credpool.core.time import ms_to_iso, now_ms
from credpool.exceptions import (
    CredentialsInvalidError,
    CredentialsNotFoundError,
    CredentialsStorageError,
    DuplicateError,
    ExhaustedPoolError,
    NotFoundError,
    UpstreamAuthError,
    ValidationError,
)
from credpool.rotation.accounts import Account, PoolDocument, RotationMode
from credpool.rotation.codec import load_pool, save_pool, seed_pool
from credpool.rotation.constants import (
    DEFAULT_RATE_LIMIT_MILLISECONDS,
    TOKEN_EXPIRY_MARGIN_MILLISECONDS,
)
from credpool.rotation.labels import email_local_part, ensure_unique_label, sanitize_label
from credpool.rotation.rate_limit import (
    clear_rate_limit,
    is_available,
    is_rate_limit_error,
    mark_rate_limited,
    parse_reset_delay_ms,
    parse_retry_after,
    seconds_until_reset,
)
from credpool.rotation.resolver import resolve_index
from credpool.rotation.selection import next_index
from credpool.rotation.tokens import TokenCache, TokenRefresher


if TYPE_CHECKING:
    from credpool.config.settings import Settings
    from credpool.rotation.provider import RequestOutcome


logger = get_logger(__name__)


# Raw auth-store fields with a dedicated Account attribute
_TOKEN_FIELDS = frozenset(
    {
        "type",
        "refresh",
        "refreshToken",
        "access",
        "accessToken",
        "expires",
        "email",
        "accountId",
        "projectId",
        "label",
    }
)

EmailLookup = Callable[[str], Awaitable[str | None]]


class AccountState(StrEnum):
    """Account availability states."""

    AVAILABLE = "available"
    RATE_LIMITED = "rate_limited"
    AUTH_ERROR = "auth_error"


# ============================================================================
# Results
# ============================================================================


@dataclass
class Credential:
    """What the host attaches to one outbound request."""

    access_token: str
    refresh_token: str
    expires_at: int | None
    identity: str
    label: str | None
    index: int
    total_accounts: int
    project_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    rate_limited: bool = False

    def api_key(self) -> str:
        """Token plus project id, the shape provider adapters expect as a key."""
        return orjson.dumps({"token": self.access_token, "projectId": self.project_id}).decode()

    def to_dict(self) -> dict[str, Any]:
        """Auth-store shaped entry with pool metadata attached."""
        data: dict[str, Any] = {
            "type": "oauth",
            "refresh": self.refresh_token,
            "access": self.access_token,
            "expires": self.expires_at,
            **self.extra,
        }
        if self.project_id is not None:
            data["projectId"] = self.project_id
        data["_multiAccount"] = {
            "index": self.index,
            "total": self.total_accounts,
            "identity": self.identity,
            "label": self.label,
            "rateLimited": self.rate_limited,
        }
        return data


@dataclass
class ImportResult:
    account: Account
    index: int
    created: bool


@dataclass
class RateLimitEvent:
    """A rate-limit signal applied to the pool."""

    account: Account
    delay_ms: int
    reset_time: int
    previous_index: int | None
    new_index: int | None


@dataclass
class Transition:
    """Before/after state of an interactive command."""

    previous_index: int | None
    new_index: int | None
    account: Account | None = None
    previous_label: str | None = None
    previous_mode: RotationMode | None = None
    new_mode: RotationMode | None = None


# ============================================================================
# Pool manager
# ============================================================================


class PoolManager:
    """Owns one pool document and hands out credentials from it.

    Usage:
        async with PoolManager(path, refresher) as pool:
            credential = await pool.get_credential_for_request()
    """

    def __init__(
        self,
        accounts_path: Path | str,
        refresher: TokenRefresher,
        *,
        provider: str = "google-antigravity",
        margin_ms: int = TOKEN_EXPIRY_MARGIN_MILLISECONDS,
        default_rate_limit_ms: int = DEFAULT_RATE_LIMIT_MILLISECONDS,
        default_mode: RotationMode = RotationMode.ROUND_ROBIN,
        email_lookup: EmailLookup | None = None,
        seed_path: Path | str | None = None,
        owns_refresher: bool = False,
    ):
        self.accounts_path = Path(accounts_path).expanduser()
        self.provider = provider
        self._refresher = refresher
        self._owns_refresher = owns_refresher
        self._margin_ms = margin_ms
        self._default_rate_limit_ms = default_rate_limit_ms
        self._default_mode = default_mode
        self._email_lookup = email_lookup
        self._seed_path = Path(seed_path).expanduser() if seed_path else None

        self._lock = asyncio.Lock()
        self._document = PoolDocument(rotation_mode=default_mode)
        self._loaded = False
        self._tokens = TokenCache(refresher, margin_ms, on_refreshed=self._on_token_refreshed)

        # Session counters, not persisted
        self.total_requests = 0
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the pool document."""
        async with self._lock:
            self._load_locked()
        logger.info(
            "pool_started",
            provider=self.provider,
            path=str(self.accounts_path),
            accounts=len(self._document.accounts),
            mode=self._document.rotation_mode,
        )

    async def stop(self) -> None:
        """Flush the pool document and release the owned HTTP client."""
        async with self._lock:
            if self._loaded and (self._document.accounts or self.accounts_path.exists()):
                self._persist_locked()
        if self._owns_refresher:
            aclose = getattr(self._refresher, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.info("pool_stopped", provider=self.provider)

    async def __aenter__(self) -> "PoolManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def reload(self) -> PoolDocument:
        """Re-read the pool document from disk."""
        async with self._lock:
            return self._load_locked()

    @property
    def document(self) -> PoolDocument:
        return self._document

    def _load_locked(self) -> PoolDocument:
        document = load_pool(self.accounts_path, self._margin_ms)
        seeded = False
        if not self.accounts_path.exists():
            if self._seed_path is not None:
                document = seed_pool(self._seed_path) or document
                seeded = bool(document.accounts)
            document.rotation_mode = self._default_mode
        self._document = document
        self._loaded = True
        if seeded:
            logger.info(
                "pool_seeded",
                source=str(self._seed_path),
                accounts=len(document.accounts),
            )
            self._persist_locked()
        return document

    def _ensure_loaded_locked(self) -> PoolDocument:
        if not self._loaded:
            self._load_locked()
        return self._document

    def _save_locked(self) -> None:
        save_pool(self._document, self.accounts_path)

    def _persist_locked(self) -> None:
        """Save on the request path, where a failed write must not fail the request."""
        try:
            self._save_locked()
        except CredentialsStorageError as e:
            logger.error("pool_persist_failed", path=str(self.accounts_path), error=e.message)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_credential(
        self,
        raw: Mapping[str, Any],
        label_hint: str | None = None,
        now: int | None = None,
    ) -> ImportResult:
        """Add an auth-store credential to the pool.

        Importing a refresh token the pool already holds changes nothing.

        Raises:
            CredentialsInvalidError: If the credential has no refresh token
            CredentialsStorageError: If the pool cannot be saved
        """
        refresh = raw.get("refresh") or raw.get("refreshToken")
        if not isinstance(refresh, str) or not refresh:
            raise CredentialsInvalidError("Credential has no refresh token")
        now = now if now is not None else now_ms()

        access = raw.get("access") or raw.get("accessToken")
        access = access if isinstance(access, str) and access else None

        email = raw.get("email") if isinstance(raw.get("email"), str) else None
        if email is None:
            email = infer_email(access)
        if email is None and access and self._email_lookup is not None:
            async with self._lock:
                known = self._ensure_loaded_locked().find_by_refresh_token(refresh)
            if known is None:
                email = await self._email_lookup(access)

        account_id = raw.get("accountId") if isinstance(raw.get("accountId"), str) else None
        project_id = raw.get("projectId") if isinstance(raw.get("projectId"), str) else None
        expires = raw.get("expires")
        access_expires = (
            expires - self._margin_ms
            if access is not None and isinstance(expires, int) and not isinstance(expires, bool)
            else None
        )

        async with self._lock:
            document = self._load_locked()
            label = ensure_unique_label(
                (a.label for a in document.accounts if a.label),
                self._default_label(label_hint, email, account_id, len(document.accounts)),
            )
            account = Account(
                refresh_token=refresh,
                email=email,
                account_id=account_id,
                label=label,
                project_id=project_id,
                access_token=access,
                access_token_expires=access_expires,
                added_at=now,
                extra={k: v for k, v in raw.items() if k not in _TOKEN_FIELDS},
            )
            try:
                index = document.add_account(account)
            except DuplicateError as e:
                existing: Account = e.existing
                logger.info("account_already_exists", account=existing.display_name)
                return ImportResult(
                    account=existing,
                    index=document.index_of(existing) or 0,
                    created=False,
                )
            self._save_locked()

        logger.info(
            "account_imported",
            account=account.display_name,
            index=index,
            total=len(document.accounts),
        )
        return ImportResult(account=account, index=index, created=True)

    async def import_from_auth_store(
        self,
        auth_store: AuthStore,
        provider: str | None = None,
        label_hint: str | None = None,
    ) -> ImportResult:
        """Import the live credential for a provider.

        Raises:
            CredentialsNotFoundError: If the auth store has no OAuth entry for it
        """
        provider = provider or self.provider
        entry = auth_store.get_oauth(provider)
        if entry is None:
            raise CredentialsNotFoundError(
                f"No OAuth credential for '{provider}' in {auth_store.path}"
            )
        return await self.import_credential(entry, label_hint=label_hint)

    def _default_label(
        self,
        hint: str | None,
        email: str | None,
        account_id: str | None,
        count: int,
    ) -> str:
        if hint and sanitize_label(hint):
            return sanitize_label(hint)
        if local := email_local_part(email):
            return local
        if account_id:
            return f"{self.provider}-{account_id[:8]}"
        return f"account-{count + 1}"

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def get_credential_for_request(
        self,
        now: int | None = None,
        strict: bool = False,
    ) -> Credential:
        """Select an account and return a usable credential for one request.

        A rejected refresh is retried exactly once on the next account; if that
        also fails the first error is raised.

        Raises:
            CredentialsNotFoundError: If the pool has no accounts
            ExhaustedPoolError: If strict and every account is rate limited
            UpstreamAuthError: If the refresh and its single fallback fail
        """
        now = now if now is not None else now_ms()
        account, rate_limited = await self._select(now, strict)

        try:
            token = await self._tokens.get_valid_access_token(account, now)
        except UpstreamAuthError as first_error:
            self.last_error = first_error.message
            fallback = await self._select_fallback(now, account)
            if fallback is None:
                raise
            account, rate_limited = fallback
            try:
                token = await self._tokens.get_valid_access_token(account, now)
            except UpstreamAuthError as e:
                logger.error("fallback_account_failed", account=account.display_name)
                raise first_error from e

        return await self._record_use(account, token, now, rate_limited)

    async def select_credential(self, now: int | None = None) -> Credential:
        return await self.get_credential_for_request(now)

    async def _select(self, now: int, strict: bool) -> tuple[Account, bool]:
        async with self._lock:
            document = self._ensure_loaded_locked()
            if not document.accounts:
                raise CredentialsNotFoundError(
                    f"No accounts configured in {self.accounts_path}"
                )

            exhausted = not any(is_available(a, now) for a in document.accounts)
            if exhausted:
                resets_at = min(a.rate_limit_reset_time or now for a in document.accounts)
                if strict:
                    raise ExhaustedPoolError(
                        f"All {len(document.accounts)} accounts are rate limited",
                        resets_at=resets_at,
                    )
                logger.warning(
                    "all_accounts_rate_limited",
                    accounts=len(document.accounts),
                    resets_at=ms_to_iso(resets_at),
                )

            index = next_index(
                document,
                now,
                force_switch=document.rotation_mode == RotationMode.ROUND_ROBIN,
            )
            assert index is not None
            if index != document.active_index:
                logger.debug(
                    "active_account_changed",
                    previous_index=document.active_index,
                    new_index=index,
                )
                document.active_index = index
            return document.accounts[index], exhausted

    async def _select_fallback(self, now: int, failed: Account) -> tuple[Account, bool] | None:
        async with self._lock:
            document = self._document
            failed_index = document.index_of(failed)
            if failed_index is None:
                found = document.find_by_refresh_token(failed.refresh_token)
                failed_index = document.index_of(found) if found is not None else None
            if len(document.accounts) < 2:
                return None
            if failed_index is not None:
                document.active_index = failed_index

            index = next_index(document, now, force_switch=True)
            if index is None or index == failed_index:
                return None

            document.active_index = index
            account = document.accounts[index]
            logger.warning(
                "fallback_account_selected",
                failed_account=failed.display_name,
                account=account.display_name,
                index=index,
            )
            return account, not is_available(account, now)

    async def _record_use(
        self,
        account: Account,
        token: str,
        now: int,
        rate_limited: bool,
    ) -> Credential:
        async with self._lock:
            document = self._document
            current = document.find_by_refresh_token(account.refresh_token) or account
            if current is not account:
                _copy_token_state(account, current)
            current.last_used = now
            current.request_count += 1
            self.total_requests += 1
            index = document.index_of(current)
            if index is None:
                index = 0
            self._persist_locked()

            return Credential(
                access_token=token,
                refresh_token=current.refresh_token,
                expires_at=current.access_token_expires,
                identity=current.identity,
                label=current.label,
                index=index,
                total_accounts=len(document.accounts),
                project_id=current.project_id,
                extra=dict(current.extra),
                rate_limited=rate_limited,
            )

    async def _on_token_refreshed(self, account: Account, previous_refresh_token: str) -> None:
        async with self._lock:
            current = self._document.find_by_refresh_token(previous_refresh_token)
            if current is None:
                current = self._document.find_by_refresh_token(account.refresh_token)
            if current is not None and current is not account:
                _copy_token_state(account, current)
            self._persist_locked()

    # ------------------------------------------------------------------
    # Failure signals
    # ------------------------------------------------------------------

    async def report_failure(
        self,
        error_text: str | None,
        now: int | None = None,
        headers: Mapping[str, str] | None = None,
        refresh_token: str | None = None,
    ) -> RateLimitEvent | None:
        """Apply a failed request to the pool.

        Rate-limit failures mark the account that served the request (the
        active one unless `refresh_token` names another) and advance the
        pointer past it. Other failures are only remembered as the last error.

        Returns:
            The applied rate-limit event, or None
        """
        now = now if now is not None else now_ms()
        self.last_error = error_text

        if not is_rate_limit_error(error_text):
            logger.debug("request_failure_recorded", error=error_text)
            return None

        delay_ms = parse_retry_after(headers, now)
        if delay_ms is None:
            delay_ms = parse_reset_delay_ms(error_text, self._default_rate_limit_ms)

        async with self._lock:
            document = self._ensure_loaded_locked()
            account = None
            if refresh_token:
                account = document.find_by_refresh_token(refresh_token)
            if account is None:
                account = document.active_account
            if account is None:
                return None

            previous_index = document.active_index
            reset_time = mark_rate_limited(account, delay_ms, now)
            if document.index_of(account) == previous_index:
                document.active_index = next_index(document, now, force_switch=True)
            self._persist_locked()

            if document.active_index != previous_index:
                logger.info(
                    "switched_account_after_rate_limit",
                    previous_index=previous_index,
                    new_index=document.active_index,
                )

            return RateLimitEvent(
                account=account,
                delay_ms=delay_ms,
                reset_time=reset_time,
                previous_index=previous_index,
                new_index=document.active_index,
            )

    async def report_outcome(self, outcome: "RequestOutcome") -> RateLimitEvent | None:
        """Host-facing failure report; successful outcomes are ignored."""
        if outcome.ok:
            return None
        return await self.report_failure(
            outcome.describe(),
            headers=outcome.headers,
            refresh_token=outcome.refresh_token,
        )

    # ------------------------------------------------------------------
    # Interactive commands
    # ------------------------------------------------------------------

    def _resolve_locked(self, selector: str) -> int:
        index = resolve_index(self._document.accounts, selector)
        if index is None:
            raise NotFoundError(f"No account matches '{selector}'", selector=selector)
        return index

    async def remove(self, selector: str) -> Transition:
        """Remove an account.

        Raises:
            NotFoundError: If the selector matches no account
        """
        async with self._lock:
            document = self._load_locked()
            index = self._resolve_locked(selector)
            previous = document.active_index
            removed = document.remove_index(index)
            self._save_locked()
            self._tokens.forget(removed.refresh_token)
            return Transition(
                previous_index=previous,
                new_index=document.active_index,
                account=removed,
                previous_label=removed.label,
            )

    async def switch_to(self, selector: str) -> Transition:
        """Make the selected account active.

        Raises:
            NotFoundError: If the selector matches no account
        """
        async with self._lock:
            document = self._load_locked()
            index = self._resolve_locked(selector)
            previous = document.active_index
            document.active_index = index
            self._save_locked()
            account = document.accounts[index]
            logger.info("account_switched", account=account.display_name, index=index)
            return Transition(
                previous_index=previous,
                new_index=index,
                account=account,
                previous_label=account.label,
            )

    async def rename(self, selector: str, new_label: str) -> Transition:
        """Relabel an account; the label is made unique among the others.

        Raises:
            ValidationError: If the new label is empty
            NotFoundError: If the selector matches no account
        """
        label = sanitize_label(new_label)
        if not label:
            raise ValidationError("Label must not be empty")

        async with self._lock:
            document = self._load_locked()
            index = self._resolve_locked(selector)
            account = document.accounts[index]
            previous_label = account.label
            account.label = ensure_unique_label(
                (a.label for a in document.accounts if a.label and a is not account),
                label,
            )
            self._save_locked()
            logger.info("account_renamed", index=index, label=account.label)
            return Transition(
                previous_index=document.active_index,
                new_index=document.active_index,
                account=account,
                previous_label=previous_label,
            )

    async def set_mode(self, mode: RotationMode | str) -> Transition:
        """Change the rotation mode.

        Raises:
            ValidationError: If the mode name is unknown
        """
        new_mode = mode if isinstance(mode, RotationMode) else RotationMode.parse(mode)
        async with self._lock:
            document = self._load_locked()
            previous_mode = document.rotation_mode
            document.rotation_mode = new_mode
            self._save_locked()
            logger.info("rotation_mode_changed", previous=previous_mode, mode=new_mode)
            return Transition(
                previous_index=document.active_index,
                new_index=document.active_index,
                previous_mode=previous_mode,
                new_mode=new_mode,
            )

    async def force_next(self, now: int | None = None) -> Transition:
        """Advance the active pointer to the next available account.

        Raises:
            CredentialsNotFoundError: If the pool has no accounts
        """
        now = now if now is not None else now_ms()
        async with self._lock:
            document = self._load_locked()
            if not document.accounts:
                raise CredentialsNotFoundError(f"No accounts configured in {self.accounts_path}")
            previous = document.active_index
            document.active_index = next_index(document, now, force_switch=True)
            self._save_locked()
            account = document.active_account
            return Transition(
                previous_index=previous,
                new_index=document.active_index,
                account=account,
                previous_label=account.label if account else None,
            )

    async def clear_rate_limits(self) -> int:
        """Forget every rate limit and last error.

        Returns:
            Number of accounts that had state to clear
        """
        async with self._lock:
            document = self._load_locked()
            cleared = sum(1 for account in document.accounts if clear_rate_limit(account))
            self._save_locked()
        self.last_error = None
        logger.info("rate_limits_cleared", accounts=cleared)
        return cleared

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def list_accounts(self, now: int | None = None) -> list[dict[str, Any]]:
        now = now if now is not None else now_ms()
        async with self._lock:
            document = self._ensure_loaded_locked()
            return [
                self._account_status(account, i, i == document.active_index, now)
                for i, account in enumerate(document.accounts)
            ]

    async def get_status(self, now: int | None = None) -> dict[str, Any]:
        """Get pool status for monitoring.

        Returns:
            Status dictionary with counts and account details
        """
        now = now if now is not None else now_ms()
        async with self._lock:
            document = self._ensure_loaded_locked()
            accounts = [
                self._account_status(account, i, i == document.active_index, now)
                for i, account in enumerate(document.accounts)
            ]
            active = document.active_account

        return {
            "provider": self.provider,
            "rotationMode": document.rotation_mode.value,
            "activeIndex": document.active_index,
            "activeAccount": active.display_name if active else None,
            "totalAccounts": len(accounts),
            "availableAccounts": sum(1 for a in accounts if a["available"]),
            "rateLimitedAccounts": sum(1 for a in accounts if not a["available"]),
            "totalRequests": self.total_requests,
            "lastError": self.last_error,
            "accounts": accounts,
        }

    def _account_status(
        self,
        account: Account,
        index: int,
        active: bool,
        now: int,
    ) -> dict[str, Any]:
        available = is_available(account, now)
        if not available:
            state = AccountState.RATE_LIMITED
        elif account.last_error and account.last_error.startswith("Token refresh failed"):
            state = AccountState.AUTH_ERROR
        else:
            state = AccountState.AVAILABLE

        return {
            "index": index,
            "label": account.display_name,
            "identity": account.identity,
            "active": active,
            "state": state,
            "available": available,
            "rateLimitedFor": seconds_until_reset(account, now),
            "rateLimitedUntil": ms_to_iso(account.rate_limit_reset_time) if not available else None,
            "requestCount": account.request_count,
            "lastUsed": ms_to_iso(account.last_used),
            "lastError": account.last_error,
            "tokenExpiresAt": ms_to_iso(account.access_token_expires),
            "projectId": account.project_id,
        }


def _copy_token_state(source: Account, target: Account) -> None:
    target.access_token = source.access_token
    target.access_token_expires = source.access_token_expires
    target.refresh_token = source.refresh_token
    target.last_error = source.last_error


def create_pool_manager(
    settings: "Settings",
    http_client: httpx.AsyncClient | None = None,
) -> PoolManager:
    """Build a pool manager and its token client from settings."""
    oauth = settings.oauth
    client = OAuthTokenClient(
        OAuthConfig(
            token_url=oauth.token_url,
            client_id=oauth.client_id,
            client_secret=oauth.client_secret.get_secret_value(),
            userinfo_url=oauth.userinfo_url,
            timeout=oauth.timeout,
        ),
        http_client=http_client,
    )
    return PoolManager(
        settings.rotation.accounts_path,
        client,
        provider=settings.provider,
        margin_ms=settings.rotation.token_expiry_margin_seconds * 1000,
        default_rate_limit_ms=settings.rotation.default_rate_limit_seconds * 1000,
        default_mode=settings.rotation.default_mode,
        email_lookup=client.fetch_account_email,
        seed_path=settings.rotation.seed_path,
        owns_refresher=True,
    )
