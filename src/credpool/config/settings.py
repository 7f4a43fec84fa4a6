"""Settings configuration for credpool."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credpool.auth.oauth.constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    OAUTH_TOKEN_URL,
    OAUTH_USERINFO_URL,
)
from credpool.config.discovery import find_toml_config_file
from credpool.exceptions import ConfigError, ValidationError
from credpool.rotation.accounts import RotationMode


__all__ = [
    "OAuthSettings",
    "ProfileSettings",
    "RotationSettings",
    "Settings",
    "get_settings",
]


CONFIG_FILE_ENV = "CREDPOOL_CONFIG_FILE"


class OAuthSettings(BaseModel):
    """Token endpoint of the pooled provider."""

    token_url: str = Field(default=OAUTH_TOKEN_URL, description="OAuth token endpoint")
    client_id: str = Field(default="", description="OAuth client id")
    client_secret: SecretStr = Field(default=SecretStr(""), description="OAuth client secret")
    userinfo_url: str | None = Field(
        default=OAUTH_USERINFO_URL,
        description="Endpoint returning the account email; empty disables the lookup",
    )
    timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)

    @field_validator("userinfo_url", mode="before")
    @classmethod
    def empty_url_disables(cls, v: Any) -> Any:
        return None if v == "" else v


class RotationSettings(BaseModel):
    """Account pool behavior."""

    accounts_path: Path = Field(
        default=Path("~/.pi/agent/antigravity-accounts.json"),
        validate_default=True,
        description="Pool document path",
    )
    seed_path: Path | None = Field(
        default=None,
        description="Accounts file of another tool, imported once when the pool does not exist yet",
    )
    default_mode: RotationMode = Field(
        default=RotationMode.ROUND_ROBIN,
        description="Rotation mode for a pool created from scratch",
    )
    token_expiry_margin_seconds: int = Field(default=300, ge=0)
    default_rate_limit_seconds: int = Field(default=60, gt=0)

    @field_validator("default_mode", mode="before")
    @classmethod
    def parse_mode_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return RotationMode.parse(v)
            except ValidationError as e:
                raise ValueError(e.message) from e
        return v

    @field_validator("accounts_path", "seed_path")
    @classmethod
    def expand_path(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None


class ProfileSettings(BaseModel):
    """Cyclic profile switcher."""

    store_path: Path = Field(default=Path("~/.pi/agent/codexswap.json"), validate_default=True)
    provider: str = Field(default="openai-codex", min_length=1)
    backups_dir: Path | None = Field(
        default=Path("~/.pi/backups"),
        validate_default=True,
        description="Directory holding <provider>-oauth.*.json auth store backups",
    )

    @field_validator("store_path", "backups_dir")
    @classmethod
    def expand_path(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None


class Settings(BaseSettings):
    """
    Configuration settings for credpool.

    Settings are loaded from environment variables (CREDPOOL_ prefix), .env
    files, and an optional TOML configuration file. Explicit keyword overrides
    beat the file; environment variables beat defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="CREDPOOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    provider: str = Field(
        default="google-antigravity",
        min_length=1,
        description="Auth store key of the pooled provider",
    )
    auth_store_path: Path = Field(
        default=Path("~/.pi/agent/auth.json"),
        validate_default=True,
        description="Authentication store holding the live credential per provider",
    )

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    rotation: RotationSettings = Field(default_factory=RotationSettings)
    profiles: ProfileSettings = Field(default_factory=ProfileSettings)

    log_level: str = Field(default="WARNING")
    json_logs: bool = Field(default=False)

    @field_validator("auth_store_path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @classmethod
    def load_toml_config(cls, toml_path: Path) -> dict[str, Any]:
        """Load configuration from a TOML file.

        Args:
            toml_path: Path to the TOML configuration file

        Returns:
            dict: Configuration data from the TOML file

        Raises:
            ConfigError: If the TOML file is invalid or cannot be read
        """
        try:
            with toml_path.open("rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read TOML config file {toml_path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML syntax in {toml_path}: {e}") from e

    @classmethod
    def from_config(
        cls, config_path: Path | str | None = None, **kwargs: Any
    ) -> "Settings":
        """Create Settings instance from configuration file.

        Args:
            config_path: Path to configuration file. Can be:
                - None: Use CREDPOOL_CONFIG_FILE or auto-discover a config file
                - Path or str: Use this specific config file
            **kwargs: Additional keyword arguments to override config values

        Returns:
            Settings: Configured Settings instance

        Raises:
            ConfigError: If the file is unreadable or a value is invalid
        """
        if config_path is None:
            config_path_env = os.environ.get(CONFIG_FILE_ENV)
            if config_path_env:
                config_path = Path(config_path_env)

        if isinstance(config_path, str):
            config_path = Path(config_path)

        if config_path is None:
            config_path = find_toml_config_file()

        config_data: dict[str, Any] = {}
        if config_path is not None:
            config_path = config_path.expanduser()
            if config_path.suffix.lower() != ".toml":
                raise ConfigError(
                    f"Unsupported config file format: {config_path.suffix}. "
                    "Only TOML (.toml) files are supported."
                )
            if config_path.exists():
                config_data = cls.load_toml_config(config_path)

        # Merge config with kwargs (kwargs take precedence)
        merged_config = {**config_data, **kwargs}

        try:
            return cls(**merged_config)
        except ValueError as e:
            # pydantic.ValidationError subclasses ValueError
            raise ConfigError(f"Invalid configuration: {e}") from e


def get_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings with configuration file support.

    Args:
        config_path: Optional path to configuration file. If None, uses
                    CREDPOOL_CONFIG_FILE or auto-discovers a config file.

    Returns:
        Settings: Configured Settings instance
    """
    return Settings.from_config(config_path=config_path)
