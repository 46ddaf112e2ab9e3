"""
core/access.py -- Per-user source visibility.

Precedence (strict, first match wins):
  1. no username                       -> every enabled source
  2. user has a non-empty enabled_apis -> only those keys
  3. user tags resolve to a non-empty
     union of tag grants               -> only those keys
  4. otherwise                         -> every enabled source (fail-open)

Disabled sources are never visible. Unknown users fall through to rule 4.
"""

from __future__ import annotations

from typing import Optional

from core.models import AdminConfig, Source


def resolve_user_grants(config: AdminConfig, username: Optional[str]) -> Optional[set[str]]:
    """Return the set of source keys granted to `username`, or None for "all enabled"."""
    if not username:
        return None
    user = config.find_user(username)
    if user is None:
        return None

    if user.enabled_apis:
        return set(user.enabled_apis)

    if user.tags:
        from_tags: set[str] = set()
        for tag_name in user.tags:
            tag = config.find_tag(tag_name)
            if tag is not None and tag.enabled_apis:
                from_tags.update(tag.enabled_apis)
        if from_tags:
            return from_tags

    return None


def resolve_visible_sources(config: AdminConfig, username: Optional[str] = None) -> list[Source]:
    """Return the enabled sources `username` may use, in configuration order."""
    enabled = [s for s in config.sources if not s.disabled]
    grants = resolve_user_grants(config, username)
    if grants is None:
        return enabled
    return [s for s in enabled if s.key in grants]
