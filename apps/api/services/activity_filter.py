"""
Which Strava activities the club keeps.

An activity is kept iff its type is in ALLOWED_ACTIVITY_TYPES and its
visibility is in ALLOWED_VISIBILITY. Both lists are deployment settings.
"""

from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping

from core.config import settings


def activity_type_of(activity: Mapping[str, Any]) -> Any:
    # Summary payloads carry "type"; newer ones also carry "sport_type".
    return activity.get("type") or activity.get("sport_type")


@dataclass(frozen=True)
class ActivityFilter:
    allowed_types: FrozenSet[str]
    allowed_visibility: FrozenSet[str]

    @classmethod
    def from_settings(cls) -> "ActivityFilter":
        return cls.of(settings.ALLOWED_ACTIVITY_TYPES, settings.ALLOWED_VISIBILITY)

    @classmethod
    def of(cls, types: Iterable[str], visibility: Iterable[str]) -> "ActivityFilter":
        return cls(frozenset(types), frozenset(visibility))

    def is_allowed(self, activity: Mapping[str, Any]) -> bool:
        return (
            activity_type_of(activity) in self.allowed_types
            and activity.get("visibility") in self.allowed_visibility
        )


def is_allowed(activity: Mapping[str, Any]) -> bool:
    """Module-level shortcut using the configured rules."""
    return ActivityFilter.from_settings().is_allowed(activity)
