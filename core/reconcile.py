"""
core/reconcile.py -- Merge the file-declared configuration into persisted admin state.

Two sources of configuration exist:
  file-declared  a JSON document shipped with the deployment (or uploaded by
                 the owner). Changes only on redeploy / upload.
  persisted      the AdminConfig stored in the database. Admins edit it at
                 runtime (display names, disabled flags, hand-added sources).

reconcile() folds the first into the second, independently for each resource
family (sources, custom categories, live channels):

  key only in the file        inserted with origin="config"
  key in both, overwrite      every file-controlled field replaced, origin="config"
  key in both, no overwrite   only endpoint fields refreshed (api/detail, url/ua/epg),
                              admin-edited names kept, origin="config"
  key only in persisted       origin="custom" -- it survived a redeploy that
                              dropped it, so it now belongs to the admin

Every function here is pure: inputs are deep-copied, never mutated. The
merge is idempotent -- applying it twice with the same file document gives
the same result as applying it once.

File document shape:
    {
      "cache_time": 7200,
      "api_site": {"<key>": {"name": ..., "displayName": ..., "api": ..., "detail": ...}},
      "custom_category": [{"name": ..., "type": "movie" | "tv", "query": ...}],
      "lives": {"<key>": {"name": ..., "url": ..., "ua": ..., "epg": ...}}
    }

Layer rule: core/ only. No database or HTTP access; the user roster is passed in.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Hashable, Iterable
from typing import Any, Optional, TypeVar, Union

from core.models import (
    ORIGIN_CONFIG,
    ORIGIN_CUSTOM,
    AdminConfig,
    ConfigSubscription,
    ConfigUser,
    CustomCategory,
    LiveChannel,
    SiteConfig,
    Source,
)

logger = logging.getLogger("tvcore.reconcile")

T = TypeVar("T")

# (username, role) pairs as returned by UserStore.list_users_with_role().
Roster = Iterable[tuple[str, Optional[str]]]

DEFAULT_CACHE_TIME = 7200


# ---------------------------------------------------------------------------
# File document
# ---------------------------------------------------------------------------


def parse_config_file(text: str) -> dict[str, Any]:
    """Parse the file-declared document. Unparseable or non-object input yields {}."""
    if not text:
        return {}
    try:
        doc = json.loads(text)
    except ValueError:
        logger.warning("Configuration file is not valid JSON; treating it as empty")
        return {}
    if not isinstance(doc, dict):
        logger.warning("Configuration file is not a JSON object; treating it as empty")
        return {}
    return doc


def _normalize_document(file_declared: Union[str, dict, None]) -> tuple[str, dict[str, Any]]:
    if file_declared is None:
        return "", {}
    if isinstance(file_declared, str):
        return file_declared, parse_config_file(file_declared)
    return json.dumps(file_declared, ensure_ascii=False), file_declared


def _mapping(doc: dict[str, Any], name: str) -> dict[str, dict[str, Any]]:
    value = doc.get(name)
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items() if isinstance(v, dict)}


def _declared_categories(doc: dict[str, Any]) -> list[dict[str, Any]]:
    value = doc.get("custom_category")
    if not isinstance(value, list):
        return []
    return [c for c in value if isinstance(c, dict) and c.get("query") and c.get("type")]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def rebuild_users(roster: Roster, existing: Iterable[ConfigUser] = ()) -> list[ConfigUser]:
    """Rebuild the configuration user list from the credential store roster.

    The roster is authoritative for who exists and for their role: users are
    never invented or dropped here. Admin-edited fields (banned, enabled_apis,
    tags) are carried over from the matching existing entry.

    Owners are moved to the front with a stable sort on a single boolean key.
    Relative order among everyone else is whatever order the roster query
    returned; there is no secondary key.
    """
    previous: dict[str, ConfigUser] = {}
    for user in existing:
        previous.setdefault(user.username, user)

    users = []
    for username, role in roster:
        prev = previous.get(username)
        users.append(
            ConfigUser(
                username=username,
                role=role or "user",
                banned=prev.banned if prev else False,
                enabled_apis=list(prev.enabled_apis) if prev and prev.enabled_apis is not None else None,
                tags=list(prev.tags) if prev and prev.tags is not None else None,
            )
        )
    users.sort(key=lambda u: u.role != "owner")
    return users


# ---------------------------------------------------------------------------
# Dedup / self check
# ---------------------------------------------------------------------------


def _dedup(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    seen: set = set()
    result = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        result.append(item)
    return result


def self_check(config: AdminConfig) -> AdminConfig:
    """Return a copy with every collection free of duplicate keys (first wins)."""
    checked = copy.deepcopy(config)
    checked.users = _dedup(checked.users, key=lambda u: u.username)
    checked.tags = _dedup(checked.tags, key=lambda t: t.name)
    checked.sources = _dedup(checked.sources, key=lambda s: s.key)
    checked.custom_categories = _dedup(checked.custom_categories, key=lambda c: c.key)
    checked.lives = _dedup(checked.lives, key=lambda lv: lv.key)
    return checked


# ---------------------------------------------------------------------------
# First-run initialization
# ---------------------------------------------------------------------------


def default_site_config(settings: Any = None, cache_time: Optional[int] = None) -> SiteConfig:
    """SiteConfig seeded from Settings (or library defaults when settings is None)."""
    site = SiteConfig()
    if settings is not None:
        site.site_name = settings.site_name
        site.announcement = settings.announcement
        site.search_max_page = settings.search_max_page
        site.douban_proxy_type = settings.douban_proxy_type
        site.douban_proxy = settings.douban_proxy
        site.douban_image_proxy_type = settings.douban_image_proxy_type
        site.douban_image_proxy = settings.douban_image_proxy
        site.disable_yellow_filter = settings.disable_yellow_filter
        site.fluid_search = settings.fluid_search
    site.cache_time = cache_time or DEFAULT_CACHE_TIME
    return site


def init_config(
    file_declared: Union[str, dict, None],
    roster: Roster = (),
    settings: Any = None,
    subscription: Optional[ConfigSubscription] = None,
) -> AdminConfig:
    """Build a fresh AdminConfig from the file document alone (first run / reset)."""
    raw, doc = _normalize_document(file_declared)
    cache_time = doc.get("cache_time") if isinstance(doc.get("cache_time"), int) else None

    config = AdminConfig(
        config_file=raw,
        subscription=copy.deepcopy(subscription) if subscription else ConfigSubscription(),
        site=default_site_config(settings, cache_time),
        users=rebuild_users(roster),
    )
    for key, site in _mapping(doc, "api_site").items():
        config.sources.append(
            Source(
                key=key,
                name=site.get("name") or "",
                display_name=site.get("displayName"),
                api=site.get("api") or "",
                detail=site.get("detail"),
            )
        )
    for category in _declared_categories(doc):
        config.custom_categories.append(
            CustomCategory(
                query=category["query"],
                type=category["type"],
                name=category.get("name") or category["query"],
            )
        )
    for key, live in _mapping(doc, "lives").items():
        config.lives.append(
            LiveChannel(
                key=key,
                name=live.get("name") or "",
                url=live.get("url") or "",
                ua=live.get("ua"),
                epg=live.get("epg"),
            )
        )
    logger.info(
        "Initialized configuration: %d sources, %d categories, %d live channels, %d users",
        len(config.sources),
        len(config.custom_categories),
        len(config.lives),
        len(config.users),
    )
    return self_check(config)


# ---------------------------------------------------------------------------
# Per-family merges
# ---------------------------------------------------------------------------


def _retag_custom(merged: dict, declared_keys: set) -> None:
    # Persisted keys the file no longer declares become admin-owned.
    for key in merged.keys() - declared_keys:
        merged[key].origin = ORIGIN_CUSTOM


def _merge_sources(current: list[Source], declared: dict[str, dict], overwrite: bool) -> list[Source]:
    merged = {s.key: s for s in _dedup(current, key=lambda s: s.key)}
    for key, site in declared.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = Source(
                key=key,
                name=site.get("name") or "",
                display_name=site.get("displayName"),
                api=site.get("api") or "",
                detail=site.get("detail"),
            )
            continue
        if overwrite:
            existing.name = site.get("name") or ""
            existing.display_name = site.get("displayName")
        existing.api = site.get("api") or ""
        existing.detail = site.get("detail")
        existing.origin = ORIGIN_CONFIG
    _retag_custom(merged, set(declared))
    return list(merged.values())


def _merge_categories(
    current: list[CustomCategory], declared: list[dict[str, Any]], overwrite: bool
) -> list[CustomCategory]:
    merged = {c.key: c for c in _dedup(current, key=lambda c: c.key)}
    declared_keys = set()
    for category in declared:
        key = (category["query"], category["type"])
        declared_keys.add(key)
        name = category.get("name") or category["query"]
        existing = merged.get(key)
        if existing is None:
            merged[key] = CustomCategory(query=key[0], type=key[1], name=name)
            continue
        if overwrite:
            existing.name = name
        existing.origin = ORIGIN_CONFIG
    _retag_custom(merged, declared_keys)
    return list(merged.values())


def _merge_lives(current: list[LiveChannel], declared: dict[str, dict], overwrite: bool) -> list[LiveChannel]:
    merged = {lv.key: lv for lv in _dedup(current, key=lambda lv: lv.key)}
    for key, live in declared.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = LiveChannel(
                key=key,
                name=live.get("name") or "",
                url=live.get("url") or "",
                ua=live.get("ua"),
                epg=live.get("epg"),
            )
            continue
        if overwrite:
            existing.name = live.get("name") or ""
        existing.url = live.get("url") or ""
        existing.ua = live.get("ua")
        existing.epg = live.get("epg")
        existing.origin = ORIGIN_CONFIG
    _retag_custom(merged, set(declared))
    return list(merged.values())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def reconcile(
    persisted: Optional[AdminConfig],
    file_declared: Union[str, dict, None],
    overwrite: bool = True,
    roster: Optional[Roster] = None,
    settings: Any = None,
) -> AdminConfig:
    """Merge the file-declared document into the persisted configuration.

    Args:
        persisted:     Current AdminConfig, or None on first run.
        file_declared: Raw JSON text or an already-parsed document. Raw text is
                       stored verbatim as config_file.
        overwrite:     True replaces every file-controlled field of existing
                       entries; False refreshes endpoints only and keeps
                       admin-edited names.
        roster:        When given, the user list is rebuilt from it.
        settings:      Site defaults for first-run initialization.

    Returns a new AdminConfig; `persisted` is left untouched.
    """
    if persisted is None:
        return init_config(file_declared, roster or (), settings=settings)

    raw, doc = _normalize_document(file_declared)
    config = copy.deepcopy(persisted)
    config.config_file = raw
    config.sources = _merge_sources(config.sources, _mapping(doc, "api_site"), overwrite)
    config.custom_categories = _merge_categories(config.custom_categories, _declared_categories(doc), overwrite)
    config.lives = _merge_lives(config.lives, _mapping(doc, "lives"), overwrite)
    if roster is not None:
        config.users = rebuild_users(roster, config.users)
    return self_check(config)


def users_changed(current: Iterable[ConfigUser], rebuilt: Iterable[ConfigUser]) -> bool:
    """True when the rebuilt roster differs from the stored one (order-sensitive)."""
    return [u.to_dict() for u in current] != [u.to_dict() for u in rebuilt]
