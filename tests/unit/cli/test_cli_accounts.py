"""Tests for account pool CLI commands."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import typer
from rich.table import Table

from credpool.cli.commands.accounts import (
    clear_rate_limits,
    import_account,
    list_accounts,
    next_account,
    remove_account,
    rename_account,
    set_mode,
    status,
    switch_account,
)
from credpool.config.settings import OAuthSettings, RotationSettings, Settings
from credpool.rotation.codec import load_pool


MODULE = "credpool.cli.commands.accounts"


@pytest.fixture
def settings(tmp_path: Path, auth_store_path: Path) -> Settings:
    """Settings pointing every file at tmp_path."""
    return Settings(
        auth_store_path=auth_store_path,
        oauth=OAuthSettings(userinfo_url=""),
        rotation=RotationSettings(accounts_path=tmp_path / "accounts.json"),
    )


@pytest.fixture
def cli(settings: Settings):
    """Patch settings and console for the accounts command module."""
    with (
        patch(f"{MODULE}.get_settings", return_value=settings),
        patch(f"{MODULE}.console") as mock_console,
    ):
        yield mock_console


def _printed(mock_console) -> str:
    return "\n".join(str(call) for call in mock_console.print.call_args_list)


@pytest.mark.unit
class TestListAccounts:
    def test_empty_pool(self, cli) -> None:
        """Test listing an empty pool prints a hint."""
        list_accounts()

        assert "No accounts in the pool" in _printed(cli)

    def test_table(self, cli, pool_path: Path) -> None:
        """Test listing accounts renders a table."""
        list_accounts()

        tables = [c.args[0] for c in cli.print.call_args_list if c.args and isinstance(c.args[0], Table)]
        assert len(tables) == 1
        assert tables[0].row_count == 3


@pytest.mark.unit
class TestImportAccount:
    def test_import_then_reimport(self, cli, auth_store_path: Path, settings: Settings) -> None:
        """Test importing the live credential twice adds it once."""
        auth_store_path.write_text(
            json.dumps({"google-antigravity": {"type": "oauth", "refresh": "live", "email": "me@example.com"}})
        )

        import_account(label=None, auth_file=None)
        assert "Added account 1: me" in _printed(cli)

        cli.reset_mock()
        import_account(label="other", auth_file=None)
        assert "Account already exists" in _printed(cli)

        assert len(load_pool(settings.rotation.accounts_path).accounts) == 1

    def test_import_from_explicit_file(self, cli, tmp_path: Path, settings: Settings) -> None:
        """Test importing from an auth file given on the command line."""
        other = tmp_path / "other-auth.json"
        other.write_text(json.dumps({"google-antigravity": {"refresh": "r"}}))

        import_account(label="laptop", auth_file=other)

        assert load_pool(settings.rotation.accounts_path).accounts[0].label == "laptop"

    def test_import_without_live_credential(self, cli) -> None:
        """Test importing with no live credential exits with an error."""
        with pytest.raises(typer.Exit) as exc_info:
            import_account(label=None, auth_file=None)

        assert exc_info.value.exit_code == 1
        assert "No OAuth credential" in _printed(cli)


@pytest.mark.unit
class TestPoolCommands:
    def test_switch(self, cli, pool_path: Path) -> None:
        """Test switching the active account by label."""
        switch_account(selector="user3")

        assert "Active account: user3 (3)" in _printed(cli)
        assert load_pool(pool_path).active_index == 2

    def test_remove(self, cli, pool_path: Path) -> None:
        """Test removing an account by position."""
        remove_account(selector="2")

        assert "Removed account: user2" in _printed(cli)
        assert [a.label for a in load_pool(pool_path).accounts] == ["user1", "user3"]

    def test_remove_unknown(self, cli, pool_path: Path) -> None:
        """Test removing an unknown account exits with an error."""
        with pytest.raises(typer.Exit):
            remove_account(selector="nobody")

        assert "No account matches 'nobody'" in _printed(cli)

    def test_rename(self, cli, pool_path: Path) -> None:
        """Test relabeling an account."""
        rename_account(selector="user1", new_label="work")

        assert "Renamed account to: work" in _printed(cli)

    def test_show_and_set_mode(self, cli, pool_path: Path) -> None:
        """Test showing and changing the rotation mode."""
        set_mode(mode=None)
        assert "round-robin" in _printed(cli)

        set_mode(mode="manual")
        assert "Rotation mode: manual" in _printed(cli)
        assert load_pool(pool_path).rotation_mode == "manual"

    def test_invalid_mode(self, cli, pool_path: Path) -> None:
        """Test an unknown mode exits with an error."""
        with pytest.raises(typer.Exit):
            set_mode(mode="random")

    def test_next(self, cli, pool_path: Path) -> None:
        """Test advancing to the next account."""
        next_account()

        assert "Switched to account 2: user2" in _printed(cli)

    def test_next_with_single_account(self, cli, write_pool, make_account) -> None:
        """Test advancing a one-account pool reports nothing to switch to."""
        write_pool([make_account(1)])

        next_account()

        assert "No other account available" in _printed(cli)

    def test_clear(self, cli, write_pool, make_account) -> None:
        """Test clearing rate limits reports how many accounts changed."""
        write_pool([make_account(1, rateLimitResetTime=9_999_999_999_999), make_account(2)])

        clear_rate_limits()

        assert "Cleared rate limits on 1 account(s)" in _printed(cli)

    def test_status(self, cli, pool_path: Path) -> None:
        """Test the status summary."""
        status()

        printed = _printed(cli)
        assert "google-antigravity" in printed
        assert "3/3" in printed
