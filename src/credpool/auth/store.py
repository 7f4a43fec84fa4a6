"""The host's authentication store.

A JSON object keyed by provider, each value holding that provider's single
live credential. Only the fields below are interpreted; everything else in an
entry is carried through untouched.
"""

from pathlib import Path
from typing import Any

from structlog import get_logger

from credpool.core.storage import read_json_document, write_json_document


logger = get_logger(__name__)


class AuthStore:
    """Read and overwrite live credentials in the authentication store."""

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    def read(self) -> dict[str, Any]:
        """Load the whole store; never raises ({} on any failure)."""
        return read_json_document(self.path) or {}

    def get(self, provider: str) -> dict[str, Any] | None:
        entry = self.read().get(provider)
        return entry if isinstance(entry, dict) else None

    def get_oauth(self, provider: str) -> dict[str, Any] | None:
        """Live OAuth entry for a provider, or None without a refresh secret."""
        entry = self.get(provider)
        if entry is None:
            return None
        if entry.get("type", "oauth") != "oauth":
            return None
        refresh = entry.get("refresh")
        if not isinstance(refresh, str) or not refresh:
            return None
        return entry

    def put(self, provider: str, entry: dict[str, Any]) -> None:
        """Replace one provider's entry, preserving every other provider.

        Raises:
            CredentialsStorageError: If the write fails
        """
        data = self.read()
        data[provider] = entry
        write_json_document(data, self.path)
        logger.info("auth_store_updated", provider=provider, path=str(self.path))
