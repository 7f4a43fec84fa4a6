"""credpool - OAuth credential pooling with rotation and failover."""

from ._version import __version__


__all__ = ["__version__"]
