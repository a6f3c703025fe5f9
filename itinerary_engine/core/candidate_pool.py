"""
Ordered, title-keyed collections of activities.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from itinerary_engine.core.schemas import Activity, normalize_title


class CandidatePool:
    """
    Deduplicated map of normalized title -> best-known Activity.

    Insertion order is preserved so iteration is deterministic. Used as the
    ranking output and as the fallback source of truth.
    """

    def __init__(self, activities: Iterable[Activity] | None = None) -> None:
        self._items: dict[str, Activity] = {}
        for activity in activities or []:
            self.add(activity)

    def add(self, activity: Activity) -> bool:
        """Insert or replace when the new activity has a higher relevance score."""
        key = activity.key
        if not key:
            return False
        existing = self._items.get(key)
        if existing is None:
            self._items[key] = activity
            return True
        if (activity.relevance_score or 0.0) > (existing.relevance_score or 0.0):
            # Replacing a value keeps the original insertion position
            self._items[key] = activity
            return True
        return False

    def get(self, title: str) -> Activity | None:
        return self._items.get(normalize_title(title))

    def titles(self) -> list[str]:
        return [activity.title for activity in self._items.values()]

    def activities(self) -> list[Activity]:
        return list(self._items.values())

    def __contains__(self, title: object) -> bool:
        return normalize_title(title) in self._items

    def __iter__(self) -> Iterator[Activity]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


class Allowlist:
    """Activities considered admissible for a re-generation pass."""

    def __init__(self) -> None:
        self._items: dict[str, Activity] = {}

    @classmethod
    def from_pool(cls, pool: CandidatePool | Iterable[Activity]) -> Allowlist:
        allowlist = cls()
        for activity in pool:
            allowlist.register(activity)
        return allowlist

    def register(self, activity: Activity) -> None:
        """Add an activity, keeping fields already known for the same title."""
        key = activity.key
        if not key:
            return
        existing = self._items.get(key)
        if existing is None:
            self._items[key] = activity
            return
        # Existing entry wins, incoming only fills gaps
        updates = {}
        if existing.peak_hours is None and activity.peak_hours:
            updates["peak_hours"] = activity.peak_hours
        if existing.relevance_score is None and activity.relevance_score is not None:
            updates["relevance_score"] = activity.relevance_score
        if updates:
            self._items[key] = existing.model_copy(update=updates)

    def admits(self, title: str) -> bool:
        return normalize_title(title) in self._items

    def get(self, title: str) -> Activity | None:
        return self._items.get(normalize_title(title))

    def activities(self) -> list[Activity]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)
