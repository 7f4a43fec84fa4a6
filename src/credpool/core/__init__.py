"""Core helpers shared across credpool."""

from credpool.core.logging import setup_logging
from credpool.core.system import get_credpool_config_dir, get_xdg_config_home
from credpool.core.time import ms_to_datetime, ms_to_iso, now_ms


__all__ = [
    "setup_logging",
    "get_credpool_config_dir",
    "get_xdg_config_home",
    "now_ms",
    "ms_to_datetime",
    "ms_to_iso",
]
