"""JSON document persistence shared by every on-disk store.

Reads never raise; writes go through a sibling temp file and a rename so a
reader never observes a half-written file.
"""

import contextlib
import os
from pathlib import Path
from typing import Any

import orjson
from structlog import get_logger

from credpool.exceptions import CredentialsStorageError, ErrorType


logger = get_logger(__name__)


def read_json_document(path: Path) -> dict[str, Any] | None:
    """Read a JSON object from disk, returning None on any failure."""
    path = Path(path).expanduser()
    if not path.exists():
        return None

    try:
        with path.open("rb") as f:
            data = orjson.loads(f.read())
    except (OSError, orjson.JSONDecodeError) as e:
        # OSError: permissions, path is a directory
        # JSONDecodeError: truncated or hand-edited file
        logger.warning(
            "document_unreadable",
            path=str(path),
            error=str(e),
            error_type=ErrorType.CONFIGURATION,
        )
        return None

    if not isinstance(data, dict):
        logger.warning(
            "document_invalid",
            path=str(path),
            error=f"expected object, got {type(data).__name__}",
            error_type=ErrorType.CONFIGURATION,
        )
        return None

    return data


def write_json_document(data: dict[str, Any], path: Path) -> None:
    """Write a JSON object so a reader never observes a half-written file.

    Raises:
        CredentialsStorageError: If the file system refuses the write
    """
    path = Path(path).expanduser()
    temp_path = path.with_name(f".{path.name}.tmp")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("wb") as f:
            f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, path)
    except OSError as e:
        logger.error("document_save_failed", path=str(path), error=str(e))
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise CredentialsStorageError(
            f"Failed to write {path}: {e}", path=str(path)
        ) from e

    logger.debug("document_saved", path=str(path))
