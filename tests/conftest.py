"""Shared fixtures for credpool tests."""

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import jwt
import pytest
import structlog

from credpool.auth.oauth.token_exchange import TokenGrant
from credpool.exceptions import UpstreamAuthError


FAR_FUTURE = 9_999_999_999_999
NOW = 1_700_000_000_000


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration made by CLI invocations."""
    yield
    structlog.reset_defaults()


class FakeRefresher:
    """Token endpoint stand-in that records every refresh call."""

    def __init__(
        self,
        failing: set[str] | None = None,
        delay: float = 0.0,
        rotate: bool = False,
        expires_in: int = 3600,
    ) -> None:
        self.calls: list[str] = []
        self.failing = failing or set()
        self.delay = delay
        self.rotate = rotate
        self.expires_in = expires_in

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if refresh_token in self.failing:
            raise UpstreamAuthError(
                f"token_refresh failed (400): invalid_grant for {refresh_token}",
                status_code=400,
                response_text="invalid_grant",
            )
        return TokenGrant(
            access_token=f"fresh-{refresh_token}-{len(self.calls)}",
            expires_in=self.expires_in,
            refresh_token=f"{refresh_token}-rotated" if self.rotate else None,
        )


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def make_refresher() -> Callable[..., FakeRefresher]:
    return FakeRefresher


@pytest.fixture
def make_account() -> Callable[..., dict[str, Any]]:
    """Factory for persisted account entries (camelCase, as on disk)."""

    def _make(n: int, *, fresh: bool = True, **overrides: Any) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "email": f"user{n}@example.com",
            "label": f"user{n}",
            "refreshToken": f"refresh-{n}",
            "addedAt": NOW,
        }
        if fresh:
            entry["accessToken"] = f"access-{n}"
            entry["accessTokenExpires"] = FAR_FUTURE
        entry.update(overrides)
        return entry

    return _make


@pytest.fixture
def write_pool(tmp_path: Path) -> Callable[..., Path]:
    """Write a pool document into tmp_path and return its path."""

    def _write(
        accounts: list[dict[str, Any]],
        active_index: int | None = 0,
        mode: str = "round-robin",
    ) -> Path:
        path = tmp_path / "accounts.json"
        path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "activeIndex": active_index,
                    "rotationMode": mode,
                    "accounts": accounts,
                },
                indent=2,
            )
        )
        return path

    return _write


@pytest.fixture
def pool_path(write_pool: Callable[..., Path], make_account: Callable[..., dict[str, Any]]) -> Path:
    """Pool of three accounts with usable access tokens, account 1 active."""
    return write_pool([make_account(1), make_account(2), make_account(3)])


@pytest.fixture
def make_jwt() -> Callable[[dict[str, Any]], str]:
    def _make(claims: dict[str, Any]) -> str:
        return jwt.encode(claims, "test-signing-key-of-sufficient-length", algorithm="HS256")

    return _make


@pytest.fixture
def auth_store_path(tmp_path: Path) -> Path:
    return tmp_path / "auth.json"
