"""
Activity filter: type and visibility rules.
"""
import pytest

from services.activity_filter import ActivityFilter, is_allowed


@pytest.fixture
def swim_filter():
    return ActivityFilter.of(["Swim"], ["everyone", "followers_only"])


class TestActivityFilter:
    def test_public_swim_is_allowed(self, swim_filter):
        assert swim_filter.is_allowed({"type": "Swim", "visibility": "everyone"})

    def test_followers_only_swim_is_allowed(self, swim_filter):
        assert swim_filter.is_allowed({"type": "Swim", "visibility": "followers_only"})

    @pytest.mark.parametrize("activity_type", ["Run", "Ride", "swim", "", None])
    def test_other_types_are_rejected(self, swim_filter, activity_type):
        assert not swim_filter.is_allowed({"type": activity_type, "visibility": "everyone"})

    @pytest.mark.parametrize("visibility", ["only_me", None, "EVERYONE"])
    def test_private_or_unknown_visibility_is_rejected(self, swim_filter, visibility):
        assert not swim_filter.is_allowed({"type": "Swim", "visibility": visibility})

    def test_sport_type_used_when_type_missing(self, swim_filter):
        assert swim_filter.is_allowed({"sport_type": "Swim", "visibility": "everyone"})

    def test_module_shortcut_uses_configured_rules(self):
        # Defaults: Swim, everyone / followers_only
        assert is_allowed({"type": "Swim", "visibility": "everyone"})
        assert not is_allowed({"type": "Run", "visibility": "everyone"})
