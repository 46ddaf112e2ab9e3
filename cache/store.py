"""
cache/store.py -- Process-wide holder of the reconciled configuration.

ConfigService owns the single in-memory AdminConfig. Every configuration read
in the process goes through get(); the admin routes write through update(),
save(), apply_config_file(), reset() and set().

Load on cache miss:
  1. read the persisted document from the UserStore
     (unparseable -> ConfigurationCorrupt -> logged, treated as absent)
  2. absent: first-run initialization from the file-declared document
     (Settings.config_file, if set) plus the current roster; persist it
  3. present: rebuild only the user roster from the credential store and
     persist only when the roster actually changed
  4. self_check() dedup, then cache

A threading.RLock makes the load single-flight: concurrent misses wait for
the first loader instead of each computing and persisting its own copy. The
same lock is held across every read-modify-write (update(),
apply_config_file(), reset(), refresh_subscription()), so two admin writes
never start from the same snapshot and overwrite each other.

Usage:
    service = ConfigService(user_store, settings)
    config = service.get()                 # cached after the first call
    config = service.get(force_reload=True)
    service.update(lambda c: setattr(c.site, "site_name", "Mine"))
    service.invalidate()
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from core.access import resolve_visible_sources
from core.errors import ConfigurationCorrupt
from core.fetcher import fetch_config_document
from core.models import AdminConfig, Source
from core.reconcile import init_config, rebuild_users, reconcile, self_check, users_changed

if TYPE_CHECKING:
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("tvcore.cache")


class ConfigService:
    def __init__(self, user_store: UserStore, settings: Optional[Settings] = None) -> None:
        self._store = user_store
        self._settings = settings
        self._config: Optional[AdminConfig] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Cache slot
    # ------------------------------------------------------------------

    def get(self, force_reload: bool = False) -> AdminConfig:
        """Return the reconciled configuration, loading it on a miss or when forced."""
        config = self._config
        if config is not None and not force_reload:
            return config
        with self._lock:
            # Another thread may have finished loading while we waited.
            if self._config is not None and not force_reload:
                return self._config
            self._config = self._load()
            return self._config

    def invalidate(self) -> None:
        """Drop the cached configuration. The next get() reloads it."""
        with self._lock:
            self._config = None
        logger.info("Configuration cache cleared")

    def set(self, config: AdminConfig) -> None:
        """Replace the cached value without persisting (after an external import)."""
        with self._lock:
            self._config = self_check(config)

    def save(self, config: AdminConfig) -> AdminConfig:
        """Persist `config` and make it the cached value."""
        checked = self_check(config)
        with self._lock:
            self._store.set_admin_config(checked.to_dict())
            self._config = checked
        return checked

    def update(self, mutate: Callable[[AdminConfig], None]) -> AdminConfig:
        """Apply `mutate` to a copy of the current configuration and persist it.

        The lock is held from the read to the write. Anything `mutate` raises
        propagates and nothing is saved.
        """
        with self._lock:
            config = copy.deepcopy(self.get())
            mutate(config)
            return self.save(config)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self) -> AdminConfig:
        try:
            persisted = self._store.get_admin_config()
        except ConfigurationCorrupt:
            logger.warning("Persisted configuration is corrupt; re-initializing from the configuration file")
            persisted = None

        roster = self._store.list_users_with_role()

        if persisted is None:
            logger.info("No stored configuration, running first-time initialization")
            config = init_config(self._initial_document(), roster, settings=self._settings)
            self._store.set_admin_config(config.to_dict())
            return config

        config = AdminConfig.from_dict(persisted)
        rebuilt = rebuild_users(roster, config.users)
        if users_changed(config.users, rebuilt):
            config.users = rebuilt
            logger.info("User roster changed (%d users); saving configuration", len(rebuilt))
            config = self_check(config)
            self._store.set_admin_config(config.to_dict())
            return config
        return self_check(config)

    def _initial_document(self) -> str:
        path = self._settings.config_file if self._settings is not None else ""
        if not path:
            return ""
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Could not read configuration file %r: %s", path, e)
            return ""

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def apply_config_file(self, text: str, overwrite: bool = True) -> AdminConfig:
        """Reconcile a new file-declared document into the current configuration and persist it."""
        with self._lock:
            current = self.get()
            merged = reconcile(current, text, overwrite=overwrite, roster=self._store.list_users_with_role())
            logger.info(
                "Applied configuration file (overwrite=%s): %d sources, %d categories, %d live channels",
                overwrite,
                len(merged.sources),
                len(merged.custom_categories),
                len(merged.lives),
            )
            return self.save(merged)

    def reset(self) -> AdminConfig:
        """Rebuild the configuration from the stored file document alone.

        Admin edits (hand-added sources, disabled flags, user grants) are
        discarded. The config file text and subscription settings are kept.
        """
        with self._lock:
            try:
                persisted = self._store.get_admin_config()
            except ConfigurationCorrupt:
                persisted = None
            previous = AdminConfig.from_dict(persisted) if persisted else AdminConfig()
            config = init_config(
                previous.config_file,
                self._store.list_users_with_role(),
                settings=self._settings,
                subscription=previous.subscription,
            )
            logger.info("Configuration reset to file defaults")
            return self.save(config)

    def refresh_subscription(self) -> Optional[AdminConfig]:
        """Fetch the subscription URL and reconcile it without overwriting admin-edited names.

        Returns None (and leaves the configuration untouched) when no URL is
        configured or the fetch fails.
        """
        url = self.get().subscription.url
        if not url:
            return None
        # Fetched outside the lock; the merge below starts from the latest state.
        document = fetch_config_document(url)
        if document is None:
            return None
        with self._lock:
            current = self.get()
            merged = reconcile(current, document, overwrite=False, roster=self._store.list_users_with_role())
            merged.subscription.last_check = datetime.now(timezone.utc).isoformat()
            return self.save(merged)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def cache_time(self) -> int:
        return self.get().site.cache_time or 7200

    def visible_sources(self, username: Optional[str] = None) -> list[Source]:
        return resolve_visible_sources(self.get(), username)
