"""Cyclic profile switcher.

Keeps saved credentials for one provider and swaps the live credential in the
authentication store between them. Every operation starts from the store on
disk, so edits made by other processes are picked up.
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from structlog import get_logger

from credpool.auth.claims import infer_email
from credpool.auth.store import AuthStore
from credpool.core.storage import read_json_document
from credpool.core.time import now_ms
from credpool.exceptions import CredentialsNotFoundError, NotFoundError, ValidationError
from credpool.profiles.models import Profile, ProfileStore, generate_profile_id
from credpool.rotation.codec import load_profile_store, save_profile_store
from credpool.rotation.labels import email_local_part, ensure_unique_label, sanitize_label
from credpool.rotation.resolver import resolve


logger = get_logger(__name__)


@dataclass
class ProfileView:
    """One row of `status()`."""

    position: int
    profile: Profile
    active: bool
    live: bool


@dataclass
class LiveIdentity:
    """Who the live credential belongs to, and its saved profile if any."""

    who: str
    profile: Profile | None


class ProfileSwitcher:
    """Saved-profile store plus live-credential swapping for one provider."""

    def __init__(
        self,
        store_path: Path | str,
        auth_store: AuthStore,
        provider: str = "openai-codex",
        backups_dir: Path | str | None = None,
    ):
        self.store_path = Path(store_path).expanduser()
        self.auth_store = auth_store
        self.provider = provider
        self.backups_dir = Path(backups_dir).expanduser() if backups_dir else None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _live(self) -> dict[str, Any]:
        live = self.auth_store.get_oauth(self.provider)
        if live is None:
            raise CredentialsNotFoundError(
                f"No {self.provider} OAuth credential in {self.auth_store.path}"
            )
        return live

    def _profile_from_oauth(self, oauth: dict[str, Any], label: str) -> Profile:
        account_id = oauth.get("accountId")
        return Profile(
            id=generate_profile_id(),
            label=label,
            oauth=dict(oauth),
            saved_at=now_ms(),
            email=infer_email(oauth.get("access")),
            account_id=account_id if isinstance(account_id, str) else None,
        )

    def _default_label(self, oauth: dict[str, Any], store: ProfileStore) -> str:
        if local := email_local_part(infer_email(oauth.get("access"))):
            return ensure_unique_label(_labels(store), local)
        account_id = oauth.get("accountId")
        suffix = account_id[:8] if isinstance(account_id, str) else "profile"
        return ensure_unique_label(_labels(store), f"{self.provider}-{suffix}")

    def _latest_backup(self) -> dict[str, Any] | None:
        """Provider credential from the newest `<provider>-oauth.*.json` backup."""
        if self.backups_dir is None or not self.backups_dir.is_dir():
            return None
        candidates = sorted(self.backups_dir.glob(f"{self.provider}-oauth.*.json"))
        if not candidates:
            return None
        data = read_json_document(candidates[-1])
        entry = data.get(self.provider) if data else None
        if not isinstance(entry, dict) or entry.get("type") != "oauth":
            return None
        return entry

    def _bootstrap(self, store: ProfileStore, live: dict[str, Any]) -> Profile:
        """Make sure the live credential is saved and marked active."""
        live_profile = store.find_by_refresh_token(live.get("refresh"))
        if live_profile is None:
            live_profile = self._profile_from_oauth(live, self._default_label(live, store))
            store.profiles.append(live_profile)
            logger.info("live_profile_saved", label=live_profile.label)

        if len(store.profiles) < 2:
            backup = self._latest_backup()
            if backup and backup.get("refresh") and store.find_by_refresh_token(backup["refresh"]) is None:
                preferred = email_local_part(infer_email(backup.get("access"))) or "backup"
                seeded = self._profile_from_oauth(backup, ensure_unique_label(_labels(store), preferred))
                store.profiles.append(seeded)
                logger.info("backup_profile_seeded", label=seeded.label)

        store.active_profile_id = live_profile.id
        return live_profile

    def _open(self) -> tuple[ProfileStore, dict[str, Any], Profile]:
        live = self._live()
        store = load_profile_store(self.store_path)
        live_profile = self._bootstrap(store, live)
        return store, live, live_profile

    def _resolve(self, store: ProfileStore, selector: str) -> Profile:
        profile = resolve(store.profiles, selector)
        if profile is None:
            raise NotFoundError(f"Profile not found: {selector or '(empty)'}", selector=selector)
        return profile

    def _activate(self, store: ProfileStore, profile: Profile) -> None:
        self.auth_store.put(self.provider, profile.oauth)
        store.active_profile_id = profile.id
        logger.info("profile_activated", label=profile.label, provider=self.provider)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def cycle_next(self) -> Profile:
        """Write the profile after the live one into the auth store.

        Raises:
            ValidationError: If fewer than two profiles are saved
        """
        with self._lock:
            store, _, live_profile = self._open()
            if len(store.profiles) < 2:
                save_profile_store(store, self.store_path)
                raise ValidationError(
                    "Need at least 2 saved profiles; log in with another account and add it"
                )

            position = store.profiles.index(live_profile)
            target = store.profiles[(position + 1) % len(store.profiles)]
            self._activate(store, target)
            save_profile_store(store, self.store_path)
            return target

    def save_current(self, label: str | None = None) -> tuple[Profile, bool]:
        """Save the live credential as a profile.

        Returns:
            The profile and whether it was newly created (False: updated in place)
        """
        with self._lock:
            live = self._live()
            store = load_profile_store(self.store_path)
            desired = sanitize_label(label) if label else ""

            existing = store.find_by_refresh_token(live.get("refresh"))
            if existing is not None:
                existing.oauth = dict(live)
                existing.saved_at = now_ms()
                existing.email = infer_email(live.get("access"))
                account_id = live.get("accountId")
                existing.account_id = account_id if isinstance(account_id, str) else None
                if desired:
                    existing.label = ensure_unique_label(_labels(store, exclude=existing), desired)
                store.active_profile_id = existing.id
                save_profile_store(store, self.store_path)
                logger.info("profile_updated", label=existing.label)
                return existing, False

            label_value = (
                ensure_unique_label(_labels(store), desired)
                if desired
                else self._default_label(live, store)
            )
            profile = self._profile_from_oauth(live, label_value)
            store.profiles.append(profile)
            store.active_profile_id = profile.id
            save_profile_store(store, self.store_path)
            logger.info("profile_saved", label=profile.label)
            return profile, True

    def use(self, selector: str) -> Profile:
        """Make the selected profile live.

        Raises:
            NotFoundError: If the selector matches no profile
        """
        with self._lock:
            store, _, _ = self._open()
            target = self._resolve(store, selector)
            self._activate(store, target)
            save_profile_store(store, self.store_path)
            return target

    def remove(self, selector: str) -> Profile:
        """Delete a saved profile; the auth store is left untouched.

        Raises:
            NotFoundError: If the selector matches no profile
        """
        with self._lock:
            store, _, _ = self._open()
            target = self._resolve(store, selector)
            store.profiles = [p for p in store.profiles if p.id != target.id]
            if store.active_profile_id == target.id:
                store.active_profile_id = store.profiles[0].id if store.profiles else None
            save_profile_store(store, self.store_path)
            logger.info("profile_removed", label=target.label)
            return target

    def rename(self, selector: str, new_label: str) -> Profile:
        """Relabel a profile.

        Raises:
            ValidationError: If the new label is empty
            NotFoundError: If the selector matches no profile
        """
        desired = sanitize_label(new_label)
        if not desired:
            raise ValidationError("Label must not be empty")

        with self._lock:
            store, _, _ = self._open()
            target = self._resolve(store, selector)
            target.label = ensure_unique_label(_labels(store, exclude=target), desired)
            save_profile_store(store, self.store_path)
            logger.info("profile_renamed", profile_id=target.id, label=target.label)
            return target

    def status(self) -> list[ProfileView]:
        with self._lock:
            store, live, _ = self._open()
            save_profile_store(store, self.store_path)
            return [
                ProfileView(
                    position=i + 1,
                    profile=profile,
                    active=profile.id == store.active_profile_id,
                    live=profile.refresh_token == live.get("refresh"),
                )
                for i, profile in enumerate(store.profiles)
            ]

    def who(self) -> LiveIdentity:
        """Identify the live credential."""
        with self._lock:
            store, live, live_profile = self._open()
            save_profile_store(store, self.store_path)
            account_id = live.get("accountId")
            who = infer_email(live.get("access")) or (
                account_id if isinstance(account_id, str) else "unknown-account"
            )
            return LiveIdentity(who=who, profile=live_profile)


def _labels(store: ProfileStore, exclude: Profile | None = None) -> list[str]:
    return [p.label for p in store.profiles if p is not exclude]
