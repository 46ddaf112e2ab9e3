"""
core/models.py -- Domain dataclasses for the reconciled site configuration.

AdminConfig is the aggregate root: the raw file-declared document, the user
roster with its per-user access settings, the tag catalog, and the three
resource families (sources, custom categories, live channels).

Persisted JSON uses the camelCase shape the admin UI reads and writes
(SourceConfig, displayName, from, channelNumber, ...). to_dict()/from_dict()
are the only places that know about that shape.

`origin` is the provenance marker serialized as "from":
  "config"  declared by the current configuration file
  "custom"  owned by an administrator (added by hand, or dropped from the file)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

ORIGIN_CONFIG = "config"
ORIGIN_CUSTOM = "custom"

ROLES = ("owner", "admin", "user")


def _list_or_empty(value: Any) -> list:
    return value if isinstance(value, list) else []


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Source:
    """A content provider endpoint, keyed by `key`."""

    key: str
    name: str
    api: str
    display_name: Optional[str] = None
    detail: Optional[str] = None
    origin: str = ORIGIN_CONFIG
    disabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "key": self.key,
                "name": self.name,
                "displayName": self.display_name,
                "api": self.api,
                "detail": self.detail,
                "from": self.origin,
                "disabled": self.disabled,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Source":
        return cls(
            key=str(data.get("key", "")),
            name=data.get("name") or "",
            api=data.get("api") or "",
            display_name=data.get("displayName"),
            detail=data.get("detail"),
            origin=data.get("from") or ORIGIN_CONFIG,
            disabled=bool(data.get("disabled", False)),
        )


@dataclass
class CustomCategory:
    """A saved search shown as a category. Identity is (query, type)."""

    query: str
    type: str  # "movie" | "tv"
    name: Optional[str] = None
    origin: str = ORIGIN_CONFIG
    disabled: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.query, self.type)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "name": self.name,
                "type": self.type,
                "query": self.query,
                "from": self.origin,
                "disabled": self.disabled,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CustomCategory":
        return cls(
            query=data.get("query") or "",
            type=data.get("type") or "",
            name=data.get("name"),
            origin=data.get("from") or ORIGIN_CONFIG,
            disabled=bool(data.get("disabled", False)),
        )


@dataclass
class LiveChannel:
    """A live stream entry, keyed by `key`."""

    key: str
    name: str
    url: str
    ua: Optional[str] = None  # user agent override
    epg: Optional[str] = None  # program guide URL
    channel_number: int = 0
    origin: str = ORIGIN_CONFIG
    disabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "key": self.key,
                "name": self.name,
                "url": self.url,
                "ua": self.ua,
                "epg": self.epg,
                "channelNumber": self.channel_number,
                "from": self.origin,
                "disabled": self.disabled,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LiveChannel":
        return cls(
            key=str(data.get("key", "")),
            name=data.get("name") or "",
            url=data.get("url") or "",
            ua=data.get("ua"),
            epg=data.get("epg"),
            channel_number=int(data.get("channelNumber") or 0),
            origin=data.get("from") or ORIGIN_CONFIG,
            disabled=bool(data.get("disabled", False)),
        )


@dataclass
class ConfigUser:
    """A roster entry. Identity and role come from the credential store;
    banned / enabled_apis / tags are admin-edited configuration."""

    username: str
    role: str = "user"
    banned: bool = False
    enabled_apis: Optional[list[str]] = None
    tags: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "username": self.username,
                "role": self.role,
                "banned": self.banned,
                "enabledApis": self.enabled_apis,
                "tags": self.tags,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigUser":
        enabled = data.get("enabledApis")
        tags = data.get("tags")
        return cls(
            username=data.get("username") or "",
            role=data.get("role") or "user",
            banned=bool(data.get("banned", False)),
            enabled_apis=list(enabled) if isinstance(enabled, list) else None,
            tags=list(tags) if isinstance(tags, list) else None,
        )


@dataclass
class Tag:
    """A named group granting a set of source keys."""

    name: str
    enabled_apis: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "enabledApis": self.enabled_apis}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tag":
        return cls(name=data.get("name") or "", enabled_apis=list(_list_or_empty(data.get("enabledApis"))))


@dataclass
class SiteConfig:
    site_name: str = "TvCore"
    announcement: str = ""
    search_max_page: int = 5
    cache_time: int = 7200
    douban_proxy_type: str = ""
    douban_proxy: str = ""
    douban_image_proxy_type: str = ""
    douban_image_proxy: str = ""
    disable_yellow_filter: bool = False
    fluid_search: bool = True

    _FIELDS = (
        ("site_name", "SiteName"),
        ("announcement", "Announcement"),
        ("search_max_page", "SearchDownstreamMaxPage"),
        ("cache_time", "SiteInterfaceCacheTime"),
        ("douban_proxy_type", "DoubanProxyType"),
        ("douban_proxy", "DoubanProxy"),
        ("douban_image_proxy_type", "DoubanImageProxyType"),
        ("douban_image_proxy", "DoubanImageProxy"),
        ("disable_yellow_filter", "DisableYellowFilter"),
        ("fluid_search", "FluidSearch"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for attr, wire in self._FIELDS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SiteConfig":
        site = cls()
        for attr, wire in cls._FIELDS:
            if wire in data and data[wire] is not None:
                setattr(site, attr, data[wire])
        return site


@dataclass
class ConfigSubscription:
    url: str = ""
    auto_update: bool = False
    last_check: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"URL": self.url, "AutoUpdate": self.auto_update, "LastCheck": self.last_check}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigSubscription":
        return cls(
            url=data.get("URL") or "",
            auto_update=bool(data.get("AutoUpdate", False)),
            last_check=data.get("LastCheck") or "",
        )


@dataclass
class AdminConfig:
    """The reconciled configuration. Single source of truth served from cache."""

    config_file: str = ""
    subscription: ConfigSubscription = field(default_factory=ConfigSubscription)
    site: SiteConfig = field(default_factory=SiteConfig)
    users: list[ConfigUser] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    custom_categories: list[CustomCategory] = field(default_factory=list)
    lives: list[LiveChannel] = field(default_factory=list)

    def find_user(self, username: str) -> Optional[ConfigUser]:
        return next((u for u in self.users if u.username == username), None)

    def find_tag(self, name: str) -> Optional[Tag]:
        return next((t for t in self.tags if t.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ConfigFile": self.config_file,
            "ConfigSubscribtion": self.subscription.to_dict(),
            "SiteConfig": self.site.to_dict(),
            "UserConfig": {
                "Users": [u.to_dict() for u in self.users],
                "Tags": [t.to_dict() for t in self.tags],
            },
            "SourceConfig": [s.to_dict() for s in self.sources],
            "CustomCategories": [c.to_dict() for c in self.custom_categories],
            "LiveConfig": [lv.to_dict() for lv in self.lives],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdminConfig":
        """Build an aggregate from its persisted shape.

        Missing or non-list collections become empty lists, and non-dict
        entries inside collections are skipped.
        """
        user_config = data.get("UserConfig") if isinstance(data.get("UserConfig"), dict) else {}
        subscription = data.get("ConfigSubscribtion")
        site = data.get("SiteConfig")
        return cls(
            config_file=data.get("ConfigFile") or "",
            subscription=ConfigSubscription.from_dict(subscription if isinstance(subscription, dict) else {}),
            site=SiteConfig.from_dict(site if isinstance(site, dict) else {}),
            users=[ConfigUser.from_dict(u) for u in _list_or_empty(user_config.get("Users")) if isinstance(u, dict)],
            tags=[Tag.from_dict(t) for t in _list_or_empty(user_config.get("Tags")) if isinstance(t, dict)],
            sources=[Source.from_dict(s) for s in _list_or_empty(data.get("SourceConfig")) if isinstance(s, dict)],
            custom_categories=[
                CustomCategory.from_dict(c) for c in _list_or_empty(data.get("CustomCategories")) if isinstance(c, dict)
            ],
            lives=[LiveChannel.from_dict(lv) for lv in _list_or_empty(data.get("LiveConfig")) if isinstance(lv, dict)],
        )
