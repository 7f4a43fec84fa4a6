from pathlib import Path

from credpool.core.system import get_credpool_config_dir


def find_toml_config_file() -> Path | None:
    """Find the TOML configuration file for credpool.

    Searches in the following order:
    1. .credpool.toml in current directory
    2. credpool.toml in current directory
    3. config.toml in user config directory/credpool/ (platform-specific)
    """
    candidates = [
        Path(".credpool.toml").resolve(),
        Path("credpool.toml").resolve(),
        get_credpool_config_dir() / "config.toml",
    ]

    for candidate in candidates:
        if candidate.exists() and candidate.is_file():
            return candidate

    return None
