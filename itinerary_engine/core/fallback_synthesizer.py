"""
Backend-independent itinerary built straight from the candidate pool.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from itinerary_engine.core.candidate_pool import CandidatePool
from itinerary_engine.core.schema_validator import coerce_activity
from itinerary_engine.core.schemas import PERIOD_SLOTS, Activity, Itinerary, Period, period_label

logger = logging.getLogger(__name__)

MAX_FALLBACK_ACTIVITIES = 6
ACTIVITIES_PER_PERIOD = 2

OPTIMIZING_REASON = (
    "We are currently optimizing your itinerary. This time slot will be filled with "
    "personalized suggestions based on real-time traffic and weather conditions."
)
FALLBACK_SUBTITLE = "Curated recommendations based on your preferences"
DEGRADED_SUBTITLE = "Unable to generate custom itinerary - please try again"


class FallbackSynthesizer:
    """Produces a valid one-day itinerary from whatever activities are at hand. Never raises."""

    def __init__(self, destination_name: str = "Baguio City") -> None:
        self.destination_name = destination_name

    def _collect(self, pool: Any) -> list[Activity]:
        if pool is None:
            return []
        if isinstance(pool, CandidatePool):
            source: Iterable[Any] = pool.activities()
        elif isinstance(pool, dict):
            source = pool.values()
        elif isinstance(pool, Iterable) and not isinstance(pool, (str, bytes)):
            source = pool
        else:
            return []

        activities: list[Activity] = []
        seen: set[str] = set()
        for raw in source:
            try:
                activity = coerce_activity(raw)
            except Exception as e:
                logger.debug(f"[Fallback] Skipping unusable activity: {e}")
                continue
            if activity is None or activity.key in seen:
                continue
            seen.add(activity.key)
            activities.append(activity)
            if len(activities) >= MAX_FALLBACK_ACTIVITIES:
                break
        return activities

    def synthesize(self, pool: Any = None) -> Itinerary:
        """
        Build the fallback itinerary.

        Args:
            pool: CandidatePool, list of Activities or dicts, or None

        Returns:
            Itinerary with exactly three Day 1 periods, two activities each at most
        """
        try:
            activities = self._collect(pool)
        except Exception as e:
            logger.error(f"[Fallback] Could not read candidate pool: {e}", exc_info=True)
            activities = []

        items = []
        for index, slot in enumerate(PERIOD_SLOTS):
            chunk = activities[index * ACTIVITIES_PER_PERIOD : (index + 1) * ACTIVITIES_PER_PERIOD]
            items.append(
                Period(
                    period=period_label(1, slot),
                    activities=chunk,
                    reason=None if chunk else OPTIMIZING_REASON,
                )
            )

        logger.warning(f"[Fallback] Synthesized fallback itinerary with {len(activities)} activities")
        return Itinerary(
            title=f"{self.destination_name} Itinerary",
            subtitle=FALLBACK_SUBTITLE if activities else DEGRADED_SUBTITLE,
            items=items,
        )
