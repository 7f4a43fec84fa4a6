"""Tests for the pool manager: request path, failure signals and commands."""

import asyncio
import json
from pathlib import Path

import orjson
import pytest

from credpool.auth.store import AuthStore
from credpool.exceptions import (
    CredentialsInvalidError,
    CredentialsNotFoundError,
    ExhaustedPoolError,
    NotFoundError,
    UpstreamAuthError,
    ValidationError,
)
from credpool.rotation.accounts import RotationMode
from credpool.rotation.codec import load_pool
from credpool.rotation.pool import AccountState, PoolManager
from credpool.rotation.provider import RequestOutcome


NOW = 1_700_000_000_000


@pytest.mark.unit
@pytest.mark.asyncio
class TestRequestPath:
    async def test_round_robin_cycles_through_accounts(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            served = [
                (await pool.get_credential_for_request(NOW)).index for _ in range(3)
            ]

        assert served == [1, 2, 0]
        assert refresher.calls == []

    async def test_credential_carries_cached_token_and_metadata(
        self, write_pool, make_account, refresher
    ) -> None:
        path = write_pool([make_account(1, projectId="proj-1")], mode="manual")

        async with PoolManager(path, refresher) as pool:
            credential = await pool.get_credential_for_request(NOW)

        assert credential.access_token == "access-1"
        assert credential.identity == "user1@example.com"
        assert credential.total_accounts == 1
        assert orjson.loads(credential.api_key()) == {"token": "access-1", "projectId": "proj-1"}
        meta = credential.to_dict()["_multiAccount"]
        assert meta == {
            "index": 0,
            "total": 1,
            "identity": "user1@example.com",
            "label": "user1",
            "rateLimited": False,
        }

    async def test_use_is_recorded_and_persisted(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            await pool.get_credential_for_request(NOW)
            assert pool.total_requests == 1

        stored = load_pool(pool_path)
        assert stored.active_index == 1
        assert stored.accounts[1].request_count == 1
        assert stored.accounts[1].last_used == NOW

    async def test_expired_token_is_refreshed_and_persisted(
        self, write_pool, make_account, refresher
    ) -> None:
        path = write_pool([make_account(1, fresh=False)], mode="manual")

        async with PoolManager(path, refresher, margin_ms=0) as pool:
            credential = await pool.get_credential_for_request(NOW)

        assert credential.access_token == "fresh-refresh-1-1"
        stored = load_pool(path).accounts[0]
        assert stored.access_token == "fresh-refresh-1-1"
        assert stored.access_token_expires == NOW + 3_600_000

    async def test_rotated_refresh_token_replaces_stored_one(
        self, write_pool, make_account, make_refresher
    ) -> None:
        path = write_pool([make_account(1, fresh=False)], mode="manual")

        async with PoolManager(path, make_refresher(rotate=True)) as pool:
            credential = await pool.get_credential_for_request(NOW)

        assert credential.refresh_token == "refresh-1-rotated"
        assert load_pool(path).accounts[0].refresh_token == "refresh-1-rotated"

    async def test_migrated_token_inside_margin_is_refreshed(self, tmp_path: Path, refresher) -> None:
        path = tmp_path / "accounts.json"
        legacy_oauth = {"type": "oauth", "refresh": "legacy-r", "access": "old", "expires": NOW + 120_000}
        path.write_text(
            json.dumps(
                {"version": 1, "activeSlot": "current", "slots": {"current": {"label": "work", "oauth": legacy_oauth}}}
            )
        )

        async with PoolManager(path, refresher) as pool:
            credential = await pool.get_credential_for_request(NOW)

        assert refresher.calls == ["legacy-r"]
        assert credential.access_token == "fresh-legacy-r-1"

    async def test_empty_pool_raises(self, tmp_path: Path, refresher) -> None:
        async with PoolManager(tmp_path / "accounts.json", refresher) as pool:
            with pytest.raises(CredentialsNotFoundError):
                await pool.get_credential_for_request(NOW)

        assert not (tmp_path / "accounts.json").exists()

    async def test_concurrent_requests_spread_evenly(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            await asyncio.gather(*(pool.get_credential_for_request(NOW) for _ in range(30)))
            counts = [a.request_count for a in pool.document.accounts]

        assert sum(counts) == 30
        assert max(counts) - min(counts) <= 1


@pytest.mark.unit
@pytest.mark.asyncio
class TestFallback:
    async def test_failed_refresh_falls_back_once(
        self, write_pool, make_account, make_refresher
    ) -> None:
        path = write_pool(
            [make_account(1, fresh=False), make_account(2)],
            mode="use-until-exhausted",
        )
        refresher = make_refresher(failing={"refresh-1"})

        async with PoolManager(path, refresher) as pool:
            credential = await pool.get_credential_for_request(NOW)
            assert pool.last_error is not None

        assert credential.index == 1
        assert credential.access_token == "access-2"
        assert refresher.calls == ["refresh-1"]
        stored = load_pool(path)
        assert stored.active_index == 1
        assert stored.accounts[0].refresh_token == "refresh-1"
        assert stored.accounts[0].last_error.startswith("Token refresh failed")

    async def test_failed_fallback_surfaces_first_error(
        self, write_pool, make_account, make_refresher
    ) -> None:
        path = write_pool(
            [make_account(1, fresh=False), make_account(2, fresh=False), make_account(3)],
            mode="use-until-exhausted",
        )
        refresher = make_refresher(failing={"refresh-1", "refresh-2"})

        async with PoolManager(path, refresher) as pool:
            with pytest.raises(UpstreamAuthError) as exc_info:
                await pool.get_credential_for_request(NOW)

        assert "refresh-1" in exc_info.value.message
        assert refresher.calls == ["refresh-1", "refresh-2"]

    async def test_single_account_failure_propagates(
        self, write_pool, make_account, make_refresher
    ) -> None:
        path = write_pool([make_account(1, fresh=False)])

        async with PoolManager(path, make_refresher(failing={"refresh-1"})) as pool:
            with pytest.raises(UpstreamAuthError):
                await pool.get_credential_for_request(NOW)
            status = await pool.get_status(NOW)

        assert status["accounts"][0]["state"] == AccountState.AUTH_ERROR


@pytest.mark.unit
@pytest.mark.asyncio
class TestRateLimits:
    async def test_rate_limit_marks_active_and_advances(
        self, write_pool, make_account, refresher
    ) -> None:
        path = write_pool(
            [make_account(1), make_account(2), make_account(3)],
            mode="use-until-exhausted",
        )

        async with PoolManager(path, refresher) as pool:
            event = await pool.report_failure(
                "429 RESOURCE_EXHAUSTED: quota will reset after 2m30s", NOW
            )

        assert event is not None
        assert event.delay_ms == 150_000
        assert event.reset_time == NOW + 150_000
        assert (event.previous_index, event.new_index) == (0, 1)
        stored = load_pool(path)
        assert stored.active_index == 1
        assert stored.accounts[0].rate_limit_reset_time == NOW + 150_000

    async def test_limited_account_is_skipped_until_reset(
        self, write_pool, make_account, refresher
    ) -> None:
        path = write_pool([make_account(1), make_account(2)], mode="use-until-exhausted")

        async with PoolManager(path, refresher) as pool:
            await pool.report_failure("rate limited, retry in 30s", NOW)
            await pool.switch_to("1")
            during = await pool.get_credential_for_request(NOW + 1_000)
            await pool.switch_to("1")
            after = await pool.get_credential_for_request(NOW + 30_000)

        assert during.index == 1
        assert after.index == 0

    async def test_retry_after_header_wins_over_text(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            event = await pool.report_failure(
                "429 quota resets in 2m30s", NOW, headers={"Retry-After": "10"}
            )

        assert event is not None
        assert event.delay_ms == 10_000

    async def test_unparseable_delay_uses_default(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher, default_rate_limit_ms=5_000) as pool:
            event = await pool.report_failure("Too many requests: quota", NOW)

        assert event is not None
        assert event.delay_ms == 5_000

    async def test_other_failures_only_record_last_error(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            event = await pool.report_failure("500 Internal Server Error", NOW)
            assert pool.last_error == "500 Internal Server Error"

        assert event is None
        assert all(a.rate_limit_reset_time is None for a in load_pool(pool_path).accounts)

    async def test_failure_targets_serving_account(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            event = await pool.report_failure("429", NOW, refresh_token="refresh-3")

        assert event is not None
        assert event.account.refresh_token == "refresh-3"
        assert (event.previous_index, event.new_index) == (0, 0)

    async def test_exhausted_pool(self, write_pool, make_account, refresher) -> None:
        path = write_pool(
            [
                make_account(1, rateLimitResetTime=NOW + 30_000),
                make_account(2, rateLimitResetTime=NOW + 10_000),
            ]
        )

        async with PoolManager(path, refresher) as pool:
            with pytest.raises(ExhaustedPoolError) as exc_info:
                await pool.get_credential_for_request(NOW, strict=True)
            credential = await pool.get_credential_for_request(NOW)

        assert exc_info.value.resets_at == NOW + 10_000
        assert credential.index == 1
        assert credential.rate_limited

    async def test_report_outcome(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            assert await pool.report_outcome(RequestOutcome(status_code=200)) is None
            event = await pool.report_outcome(
                RequestOutcome(
                    status_code=429,
                    error_text="Too Many Requests",
                    headers={"retry-after": "30"},
                    refresh_token="refresh-2",
                )
            )

        assert event is not None
        assert event.account.refresh_token == "refresh-2"
        assert event.delay_ms == 30_000

    async def test_clear_rate_limits(self, write_pool, make_account, refresher) -> None:
        path = write_pool(
            [
                make_account(1, rateLimitResetTime=NOW + 30_000, lastError="Rate limited"),
                make_account(2),
            ]
        )

        async with PoolManager(path, refresher) as pool:
            cleared = await pool.clear_rate_limits()

        assert cleared == 1
        assert load_pool(path).accounts[0].rate_limit_reset_time is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestImport:
    async def test_import_into_empty_pool(self, tmp_path: Path, refresher) -> None:
        path = tmp_path / "accounts.json"
        raw = {
            "type": "oauth",
            "refresh": "new-refresh",
            "access": "opaque-access",
            "expires": NOW + 3_600_000,
            "email": "jane@example.com",
            "tier": "pro",
        }

        async with PoolManager(path, refresher) as pool:
            result = await pool.import_credential(raw, now=NOW)

        assert result.created
        assert result.index == 0
        assert result.account.label == "jane"
        assert result.account.access_token_expires == NOW + 3_600_000 - 300_000
        assert result.account.extra == {"tier": "pro"}
        stored = load_pool(path)
        assert stored.active_index == 0
        assert stored.accounts[0].added_at == NOW

    async def test_reimport_is_a_no_op(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            result = await pool.import_credential({"refresh": "refresh-2", "email": "x@y.z"})

        assert not result.created
        assert result.index == 1
        assert len(load_pool(pool_path).accounts) == 3

    async def test_labels_stay_unique(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            first = await pool.import_credential({"refresh": "a"}, label_hint="user1")
            second = await pool.import_credential({"refresh": "b", "accountId": "abcdef123456"})

        assert first.account.label == "user1 2"
        assert second.account.label == "google-antigravity-abcdef12"

    async def test_email_from_token_claims(self, tmp_path: Path, refresher, make_jwt) -> None:
        access = make_jwt({"email": "claims@example.com"})

        async with PoolManager(tmp_path / "accounts.json", refresher) as pool:
            result = await pool.import_credential({"refresh": "r", "access": access})

        assert result.account.email == "claims@example.com"

    async def test_email_lookup_for_opaque_tokens(self, tmp_path: Path, refresher) -> None:
        looked_up: list[str] = []

        async def lookup(access_token: str) -> str | None:
            looked_up.append(access_token)
            return "lookup@example.com"

        async with PoolManager(tmp_path / "accounts.json", refresher, email_lookup=lookup) as pool:
            result = await pool.import_credential({"refresh": "r", "access": "opaque"})
            await pool.import_credential({"refresh": "r", "access": "opaque"})

        assert result.account.email == "lookup@example.com"
        assert looked_up == ["opaque"]

    async def test_missing_refresh_token_is_rejected(self, tmp_path: Path, refresher) -> None:
        async with PoolManager(tmp_path / "accounts.json", refresher) as pool:
            with pytest.raises(CredentialsInvalidError):
                await pool.import_credential({"access": "a"})

    async def test_import_from_auth_store(self, tmp_path: Path, auth_store_path: Path, refresher) -> None:
        auth_store_path.write_text(
            json.dumps({"google-antigravity": {"type": "oauth", "refresh": "live", "email": "live@example.com"}})
        )

        async with PoolManager(tmp_path / "accounts.json", refresher) as pool:
            result = await pool.import_from_auth_store(AuthStore(auth_store_path))
            with pytest.raises(CredentialsNotFoundError):
                await pool.import_from_auth_store(AuthStore(auth_store_path), provider="openai-codex")

        assert result.account.email == "live@example.com"

    async def test_seeded_from_other_accounts_file(self, tmp_path: Path, refresher) -> None:
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps({"accounts": [{"refreshToken": "s1", "managedProjectId": "p"}]}))
        path = tmp_path / "accounts.json"

        async with PoolManager(path, refresher, seed_path=seed, default_mode=RotationMode.MANUAL) as pool:
            assert len(pool.document.accounts) == 1
            assert pool.document.rotation_mode == RotationMode.MANUAL

        assert path.exists()
        assert load_pool(path).accounts[0].project_id == "p"


@pytest.mark.unit
@pytest.mark.asyncio
class TestCommands:
    async def test_remove_before_active_keeps_active_account(
        self, write_pool, make_account, refresher
    ) -> None:
        path = write_pool([make_account(1), make_account(2), make_account(3)], active_index=1)

        async with PoolManager(path, refresher) as pool:
            transition = await pool.remove("user1")
            assert pool.document.active_account.label == "user2"

        assert (transition.previous_index, transition.new_index) == (1, 0)

    async def test_remove_active_moves_to_first(self, write_pool, make_account, refresher) -> None:
        path = write_pool([make_account(1), make_account(2), make_account(3)], active_index=2)

        async with PoolManager(path, refresher) as pool:
            transition = await pool.remove("3")

        assert transition.account.label == "user3"
        assert load_pool(path).active_index == 0

    async def test_remove_last_account_empties_pool(self, write_pool, make_account, refresher) -> None:
        path = write_pool([make_account(1)])

        async with PoolManager(path, refresher) as pool:
            await pool.remove("user1@example.com")

        stored = load_pool(path)
        assert stored.accounts == []
        assert stored.active_index is None

    async def test_unknown_selector(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            with pytest.raises(NotFoundError):
                await pool.switch_to("nobody")
            with pytest.raises(NotFoundError):
                await pool.remove("user")

    async def test_switch_to(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            transition = await pool.switch_to("user3")

        assert (transition.previous_index, transition.new_index) == (0, 2)
        assert load_pool(pool_path).active_index == 2

    async def test_rename(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            transition = await pool.rename("1", "  user2 ")
            with pytest.raises(ValidationError):
                await pool.rename("1", "   ")

        assert transition.previous_label == "user1"
        assert transition.account.label == "user2 2"

    async def test_set_mode(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            transition = await pool.set_mode("ue")
            with pytest.raises(ValidationError):
                await pool.set_mode("random")

        assert transition.previous_mode == RotationMode.ROUND_ROBIN
        assert transition.new_mode == RotationMode.USE_UNTIL_EXHAUSTED
        assert load_pool(pool_path).rotation_mode == RotationMode.USE_UNTIL_EXHAUSTED

    async def test_force_next(self, pool_path: Path, refresher) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            transition = await pool.force_next(NOW)

        assert (transition.previous_index, transition.new_index) == (0, 1)

    async def test_force_next_on_empty_pool(self, tmp_path: Path, refresher) -> None:
        async with PoolManager(tmp_path / "accounts.json", refresher) as pool:
            with pytest.raises(CredentialsNotFoundError):
                await pool.force_next(NOW)

    async def test_commands_see_external_edits(self, pool_path: Path, refresher, make_account) -> None:
        async with PoolManager(pool_path, refresher) as pool:
            data = json.loads(pool_path.read_text())
            data["accounts"].append(make_account(4))
            pool_path.write_text(json.dumps(data))

            await pool.switch_to("user4")

        assert load_pool(pool_path).active_index == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_status_view(write_pool, make_account, refresher) -> None:
    path = write_pool(
        [make_account(1), make_account(2, rateLimitResetTime=NOW + 90_500)],
        mode="manual",
    )

    async with PoolManager(path, refresher) as pool:
        status = await pool.get_status(NOW)

    assert status["provider"] == "google-antigravity"
    assert status["rotationMode"] == "manual"
    assert status["activeAccount"] == "user1"
    assert (status["totalAccounts"], status["availableAccounts"], status["rateLimitedAccounts"]) == (2, 1, 1)
    limited = status["accounts"][1]
    assert limited["state"] == AccountState.RATE_LIMITED
    assert limited["rateLimitedFor"] == 91
    assert limited["rateLimitedUntil"] is not None
    assert status["accounts"][0]["active"]
