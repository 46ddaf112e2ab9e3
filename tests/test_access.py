"""Unit tests for core/access.py -- which sources a user may see."""

import pytest

from core.access import resolve_user_grants, resolve_visible_sources
from core.models import AdminConfig, ConfigUser, Source, Tag


@pytest.fixture
def config():
    return AdminConfig(
        sources=[
            Source(key="a", name="A", api="http://a"),
            Source(key="b", name="B", api="http://b"),
            Source(key="c", name="C", api="http://c"),
            Source(key="off", name="Off", api="http://off", disabled=True),
        ],
        tags=[
            Tag(name="kids", enabled_apis=["b"]),
            Tag(name="sports", enabled_apis=["c", "off"]),
            Tag(name="empty", enabled_apis=[]),
        ],
        users=[
            ConfigUser("explicit", enabled_apis=["a"], tags=["kids"]),
            ConfigUser("tagged", tags=["kids", "sports"]),
            ConfigUser("empty_grants", enabled_apis=[], tags=["empty", "missing"]),
            ConfigUser("plain"),
        ],
    )


def _keys(sources):
    return [s.key for s in sources]


class TestVisibleSources:
    def test_anonymous_sees_all_enabled(self, config):
        assert _keys(resolve_visible_sources(config)) == ["a", "b", "c"]

    def test_explicit_grants_win_over_tags(self, config):
        assert _keys(resolve_visible_sources(config, "explicit")) == ["a"]

    def test_tag_union(self, config):
        assert _keys(resolve_visible_sources(config, "tagged")) == ["b", "c"]

    def test_disabled_never_visible_even_when_granted(self, config):
        assert "off" not in _keys(resolve_visible_sources(config, "tagged"))

    def test_empty_grants_fail_open(self, config):
        assert _keys(resolve_visible_sources(config, "empty_grants")) == ["a", "b", "c"]

    def test_user_without_grants(self, config):
        assert _keys(resolve_visible_sources(config, "plain")) == ["a", "b", "c"]

    def test_unknown_user_fails_open(self, config):
        assert _keys(resolve_visible_sources(config, "stranger")) == ["a", "b", "c"]

    def test_grant_for_missing_key_yields_nothing(self, config):
        config.users.append(ConfigUser("stale", enabled_apis=["removed"]))
        assert resolve_visible_sources(config, "stale") == []

    def test_preserves_configuration_order(self, config):
        config.users.append(ConfigUser("reversed", enabled_apis=["c", "a"]))
        assert _keys(resolve_visible_sources(config, "reversed")) == ["a", "c"]


class TestUserGrants:
    def test_none_means_everything(self, config):
        assert resolve_user_grants(config, None) is None
        assert resolve_user_grants(config, "plain") is None

    def test_explicit_set(self, config):
        assert resolve_user_grants(config, "explicit") == {"a"}

    def test_tag_set_includes_disabled_keys(self, config):
        assert resolve_user_grants(config, "tagged") == {"b", "c", "off"}
