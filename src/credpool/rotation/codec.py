"""Loading, saving and migrating the persisted credential documents.

Loading never raises: a missing, unreadable or malformed file yields an empty,
valid document. The legacy two-slot profile store is upgraded here and nowhere
else, so the rest of the package never sees that shape.
"""

from pathlib import Path
from typing import Any

from structlog import get_logger

from credpool.core.storage import read_json_document, write_json_document
from credpool.core.time import now_ms
from credpool.profiles.models import PROFILE_STORE_VERSION, Profile, ProfileStore
from credpool.rotation.accounts import Account, PoolDocument
from credpool.rotation.constants import (
    LEGACY_PROFILE_STORE_VERSION,
    LEGACY_SLOT_NAMES,
    TOKEN_EXPIRY_MARGIN_MILLISECONDS,
)
from credpool.rotation.labels import sanitize_label


logger = get_logger(__name__)


# ============================================================================
# Legacy migration
# ============================================================================


def is_legacy_store(data: dict[str, Any]) -> bool:
    return data.get("version") == LEGACY_PROFILE_STORE_VERSION and isinstance(
        data.get("slots"), dict
    )


def migrate_profile_store(data: dict[str, Any]) -> ProfileStore:
    """Upgrade any supported store shape to the current profile store.

    Current-shaped input comes back unchanged in meaning, so running the
    migration twice is a no-op. Unsupported shapes yield an empty store.
    """
    if data.get("version") == PROFILE_STORE_VERSION and isinstance(data.get("profiles"), list):
        return _parse_profile_store(data)

    if is_legacy_store(data):
        store = _migrate_legacy_slots(data)
        logger.info(
            "legacy_store_migrated",
            profiles=len(store.profiles),
            active_profile_id=store.active_profile_id,
        )
        return store

    return ProfileStore()


def _migrate_legacy_slots(legacy: dict[str, Any]) -> ProfileStore:
    slots: dict[str, Any] = legacy["slots"]
    store = ProfileStore()

    for name in LEGACY_SLOT_NAMES:
        slot = slots.get(name)
        if not isinstance(slot, dict):
            continue
        oauth = slot.get("oauth")
        if not isinstance(oauth, dict) or oauth.get("type") != "oauth":
            continue
        refresh = oauth.get("refresh")
        if refresh and store.find_by_refresh_token(refresh) is not None:
            logger.info("legacy_slot_duplicate_skipped", slot=name)
            continue

        raw_label = slot.get("label")
        label = sanitize_label(raw_label) if isinstance(raw_label, str) else ""
        saved_at = slot.get("savedAt")
        store.profiles.append(
            Profile(
                id=f"legacy_{name}",
                label=label or name,
                oauth=dict(oauth),
                saved_at=saved_at if isinstance(saved_at, int) and saved_at else now_ms(),
                email=slot.get("email") if isinstance(slot.get("email"), str) else None,
                account_id=slot.get("accountId") if isinstance(slot.get("accountId"), str) else None,
            )
        )

    active_slot = legacy.get("activeSlot")
    if active_slot in LEGACY_SLOT_NAMES and store.get(f"legacy_{active_slot}") is not None:
        store.active_profile_id = f"legacy_{active_slot}"

    return store


def _parse_profile_store(data: dict[str, Any]) -> ProfileStore:
    store = ProfileStore()
    for position, entry in enumerate(data["profiles"]):
        if not isinstance(entry, dict):
            logger.warning("invalid_profile_skipped", position=position, error="not an object")
            continue
        try:
            store.profiles.append(Profile.from_dict(entry))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("invalid_profile_skipped", position=position, error=str(e))

    active_id = data.get("activeProfileId")
    if isinstance(active_id, str) and store.get(active_id) is not None:
        store.active_profile_id = active_id
    elif active_id is not None:
        logger.warning("dangling_active_profile_dropped", active_profile_id=active_id)

    return store


def _accounts_from_profiles(store: ProfileStore, margin_ms: int) -> PoolDocument:
    document = PoolDocument()
    for profile in store.profiles:
        oauth = profile.oauth
        refresh = profile.refresh_token
        if refresh is None:
            logger.warning("legacy_slot_without_refresh_skipped", profile=profile.id)
            continue
        expires = oauth.get("expires")
        project_id = oauth.get("projectId")
        document.accounts.append(
            Account(
                refresh_token=refresh,
                email=profile.email,
                account_id=profile.account_id,
                label=profile.label,
                project_id=project_id if isinstance(project_id, str) else None,
                access_token=oauth.get("access") if isinstance(oauth.get("access"), str) else None,
                access_token_expires=(
                    expires - margin_ms
                    if isinstance(expires, int) and not isinstance(expires, bool)
                    else None
                ),
                added_at=profile.saved_at,
            )
        )
        if profile.id == store.active_profile_id:
            document.active_index = len(document.accounts) - 1

    document.normalize()
    return document


# ============================================================================
# Public API
# ============================================================================


def load_pool(path: Path, margin_ms: int = TOKEN_EXPIRY_MARGIN_MILLISECONDS) -> PoolDocument:
    """Load a pool document; never raises.

    Args:
        path: Pool document path
        margin_ms: Subtracted from raw expiries when a legacy store is upgraded
    """
    data = read_json_document(path)
    if data is None:
        logger.debug("pool_document_defaulted", path=str(path))
        return PoolDocument()

    if is_legacy_store(data):
        document = _accounts_from_profiles(migrate_profile_store(data), margin_ms)
        logger.info("legacy_pool_document_migrated", path=str(path), count=len(document.accounts))
        return document

    document = PoolDocument.from_dict(data)
    logger.debug(
        "pool_document_loaded",
        path=str(path),
        count=len(document.accounts),
        mode=document.rotation_mode,
    )
    return document


def save_pool(document: PoolDocument, path: Path) -> None:
    """Persist a pool document.

    Raises:
        CredentialsStorageError: If the write fails
    """
    document.normalize()
    write_json_document(document.to_dict(), path)


def load_profile_store(path: Path) -> ProfileStore:
    """Load a profile store, migrating the legacy shape; never raises."""
    data = read_json_document(path)
    if data is None:
        return ProfileStore()
    return migrate_profile_store(data)


def save_profile_store(store: ProfileStore, path: Path) -> None:
    """Persist a profile store.

    Raises:
        CredentialsStorageError: If the write fails
    """
    write_json_document(store.to_dict(), path)


def seed_pool(source: Path) -> PoolDocument | None:
    """Pool document built from another tool's accounts file, or None."""
    data = read_json_document(source)
    if data is None:
        return None
    document = PoolDocument.from_dict(
        {"accounts": data.get("accounts"), "activeIndex": data.get("activeIndex")}
    )
    return document if document.accounts else None
