"""
Normalization of a validated itinerary into the Day N - Morning/Afternoon/Evening grid.

Steps, in the order the service applies them:
- canonicalize: overwrite known titles with their canonical record, drop crowded ones
- organize: dedupe, infer slots, redistribute into exactly 3 x days periods, narrate gaps
- merge_backfill: accept re-generated activities for empty periods (allowlisted only)
- fill_from_allowlist: spread unused admissible activities over the grid
- apply_reasons: final narration pass for periods that stayed empty
"""

from __future__ import annotations

import logging
import re
from collections import deque
from datetime import datetime
from typing import Protocol

from itinerary_engine.core.candidate_pool import Allowlist
from itinerary_engine.core.peak_hours import is_currently_peak
from itinerary_engine.core.schemas import (
    PERIOD_LABEL_RE,
    PERIOD_SLOTS,
    Activity,
    Itinerary,
    Period,
    period_label,
)

logger = logging.getLogger(__name__)

FLEXIBLE = "Flexible"

SLOT_PRIORITY: dict[str, tuple[str, ...]] = {
    "Morning": ("Morning", FLEXIBLE, "Afternoon", "Evening"),
    "Afternoon": ("Afternoon", FLEXIBLE, "Morning", "Evening"),
    "Evening": ("Evening", FLEXIBLE, "Afternoon", "Morning"),
}
FALLBACK_PRIORITY: tuple[str, ...] = ("Morning", "Afternoon", "Evening", FLEXIBLE)

# Checked in order: a window like "11:00AM-1:00PM" counts as Morning
_SLOT_KEYWORDS: list[tuple[str, re.Pattern[str]]] = [
    ("Morning", re.compile(r"morning|\d\s*am\b|\bam\b", re.IGNORECASE)),
    ("Afternoon", re.compile(r"afternoon|\d\s*pm\b|\bpm\b", re.IGNORECASE)),
    ("Evening", re.compile(r"evening|night", re.IGNORECASE)),
]

PLACEHOLDER_TITLES = {"no available activity", "activity"}

FINAL_EVENING_REASON = (
    "This final evening is left unscheduled to allow for a stress-free departure. Use this "
    "time for last-minute shopping, a farewell dinner, or simply to reflect on your wonderful "
    "Baguio experience."
)
FIRST_MORNING_REASON = (
    "Your first morning is intentionally flexible. After arriving and getting settled, this "
    "time allows you to ease into Baguio's relaxed pace, perfect for a hearty breakfast or a "
    "light walk to get your bearings."
)
DEFAULT_EMPTY_REASON = (
    "This period stays open to adapt to real-time traffic and crowd conditions, giving your "
    "group room for spontaneous exploration."
)

EMPTY_SLOT_MESSAGES: dict[str, tuple[str, ...]] = {
    "morning": (
        "Morning peak hours at popular viewpoints (6-8 AM) create crowded conditions. This "
        "flexible time lets you visit scenic spots after 9 AM when parking is easier and the "
        "atmosphere is calmer.",
        "Tour buses fill up Baguio's key attractions early. Use this window for a relaxing "
        "breakfast or a quiet stroll before tackling the main sights at off-peak hours.",
        "Traffic sensors show a short-lived morning rush. Holding this slot open keeps your day "
        "adaptable for weather or spontaneous discoveries later on.",
    ),
    "afternoon": (
        "Afternoon congestion around Session Road and SM Baguio peaks from 12-3 PM. This buffer "
        "keeps your group rested before diving into late-day adventures.",
        "Mountain roads heading to panoramic viewpoints slow down after lunch. Stay flexible now "
        "so you can visit during clearer, late-afternoon windows.",
        "Cloud buildup is common mid-afternoon. Keeping this slot open lets you pivot to indoor "
        "cafés or museums until skies clear.",
    ),
    "evening": (
        "Dinner rush in Baguio spikes between 6-7 PM. Waiting it out means shorter queues and "
        "better service once the crowd thins.",
        "Night markets and cafés come alive later in the evening. This empty slot is your "
        "strategic buffer to explore them after peak traffic eases.",
        "Evening weather can turn misty. Keeping plans flexible allows you to choose between cozy "
        "indoor spots or a late-night stroll when conditions improve.",
    ),
}


class CanonicalSource(Protocol):
    def get(self, title: str) -> Activity | None: ...


def parse_period_label(label: str | None) -> tuple[int, str] | None:
    """Split 'Day 2 - evening' into (2, 'Evening'); None for anything else."""
    if not isinstance(label, str):
        return None
    match = PERIOD_LABEL_RE.match(label.strip())
    if not match:
        return None
    return int(match.group(1)), match.group(2).capitalize()


def infer_slot(time_window: str | None, label: str | None = None) -> str:
    """
    Classify an activity as Morning, Afternoon, Evening or Flexible.

    The time window is scanned first, then the label of the period the
    activity was generated under.
    """
    for text in (time_window, label):
        if not isinstance(text, str):
            continue
        for slot, pattern in _SLOT_KEYWORDS:
            if pattern.search(text):
                return slot
    return FLEXIBLE


def empty_slot_reason(day_number: int, slot: str, total_days: int) -> str:
    """Deterministic narration for an empty period."""
    normalized = (slot or "").strip().lower()

    if day_number == total_days and normalized == "evening":
        return FINAL_EVENING_REASON
    if day_number == 1 and normalized == "morning":
        return FIRST_MORNING_REASON

    messages = EMPTY_SLOT_MESSAGES.get(normalized)
    if not messages:
        return DEFAULT_EMPTY_REASON
    return messages[day_number % len(messages)]


def _is_placeholder(activity: Activity) -> bool:
    key = activity.key
    return not key or key in PLACEHOLDER_TITLES


def _day_of(label: str) -> int | None:
    parsed = parse_period_label(label)
    if parsed:
        return parsed[0]
    match = re.search(r"day\s*(\d+)", label or "", re.IGNORECASE)
    return int(match.group(1)) if match else None


class ItineraryOrganizer:
    """Grid normalization, gap narration and allowlist bookkeeping for itineraries."""

    @staticmethod
    def infer_duration(itinerary: Itinerary, max_days: int | None = None) -> int:
        """Highest "Day N" label, at least 1 and at most max_days when given."""
        days = [d for d in (_day_of(item.period) for item in itinerary.items) if d]
        inferred = max(days) if days else 1
        if max_days is not None and inferred > max_days:
            logger.warning(f"[Organizer] Output mentions day {inferred}, capping trip at {max_days} days")
            return max(1, max_days)
        return inferred

    def organize(
        self,
        itinerary: Itinerary,
        duration_days: int | None = None,
        allowlist: Allowlist | None = None,
    ) -> Itinerary:
        """
        Redistribute activities into exactly 3 x days periods with no repeated title.

        Args:
            itinerary: Schema-valid itinerary in any period layout
            duration_days: Trip length; inferred from the highest "Day N" label when None
            allowlist: Receives every placed activity when given

        Returns:
            New Itinerary with periods in day/slot order and reasons on empty periods
        """
        days = duration_days if duration_days and duration_days > 0 else self.infer_duration(itinerary)

        queues: dict[str, deque[Activity]] = {slot: deque() for slot in FALLBACK_PRIORITY}
        seen: set[str] = set()
        for item in itinerary.items:
            for activity in item.activities:
                if _is_placeholder(activity) or activity.key in seen:
                    continue
                seen.add(activity.key)
                queues[infer_slot(activity.time, item.period)].append(activity)

        def take(slot: str, strict: bool) -> Activity | None:
            order = SLOT_PRIORITY[slot] if strict else dict.fromkeys(SLOT_PRIORITY[slot] + FALLBACK_PRIORITY)
            for key in order:
                if queues[key]:
                    return queues[key].popleft()
            return None

        def remaining() -> bool:
            return any(queues.values())

        buckets: list[dict[str, list[Activity]]] = [
            {slot: [] for slot in PERIOD_SLOTS} for _ in range(days)
        ]

        # First pass: at most one best-fit activity per slot
        for bucket in buckets:
            for slot in PERIOD_SLOTS:
                activity = take(slot, strict=True)
                if activity is not None:
                    bucket[slot].append(activity)

        while remaining():
            assigned = False
            for bucket in buckets:
                for slot in PERIOD_SLOTS:
                    activity = take(slot, strict=False)
                    if activity is not None:
                        bucket[slot].append(activity)
                        assigned = True
                    if not remaining():
                        break
                if not remaining():
                    break
            if not assigned:
                break

        items = []
        for index, bucket in enumerate(buckets):
            day = index + 1
            for slot in PERIOD_SLOTS:
                activities = bucket[slot]
                items.append(
                    Period(
                        period=period_label(day, slot),
                        activities=activities,
                        reason=None if activities else empty_slot_reason(day, slot, days),
                    )
                )
                if allowlist is not None:
                    for activity in activities:
                        allowlist.register(activity)

        placed = sum(len(item.activities) for item in items)
        logger.debug(f"[Organizer] Placed {placed} activities into {len(items)} periods ({days} days)")
        return Itinerary(title=itinerary.title, subtitle=itinerary.subtitle, items=items)

    def canonicalize(
        self,
        itinerary: Itinerary,
        canonical: CanonicalSource,
        now: datetime | None = None,
        drop_unknown: bool = False,
    ) -> Itinerary:
        """
        Replace known activities with their canonical record and drop currently crowded ones.

        Activities with no canonical record are dropped when drop_unknown is set,
        otherwise kept as generated.
        """
        items = []
        dropped = 0
        for item in itinerary.items:
            activities = []
            for activity in item.activities:
                resolved = canonical.get(activity.title)
                if resolved is None:
                    if drop_unknown:
                        logger.info(f"[Organizer] Excluding '{activity.title}': not a known activity")
                        dropped += 1
                        continue
                    resolved = activity
                if resolved.peak_hours and is_currently_peak(resolved.peak_hours, now):
                    logger.info(
                        f"[Organizer] Excluding '{activity.title}': currently in peak hours ({resolved.peak_hours})"
                    )
                    dropped += 1
                    continue
                activities.append(resolved)
            items.append(item.model_copy(update={"activities": activities}))

        if dropped:
            logger.info(f"[Organizer] Canonicalization dropped {dropped} activities")
        return itinerary.model_copy(update={"items": items})

    def missing_days(self, itinerary: Itinerary, duration_days: int) -> list[int]:
        """Days in 1..duration_days without a single scheduled activity."""
        counts: dict[int, int] = {}
        for item in itinerary.items:
            day = _day_of(item.period)
            if day is not None:
                counts[day] = counts.get(day, 0) + len(item.activities)
        return [day for day in range(1, duration_days + 1) if not counts.get(day)]

    def has_missing_periods(self, itinerary: Itinerary, duration_days: int) -> bool:
        """True if any requested day has no periods or at least one empty period."""
        per_day: dict[int, list[bool]] = {}
        for item in itinerary.items:
            day = _day_of(item.period)
            if day is not None:
                per_day.setdefault(day, []).append(bool(item.activities))

        for day in range(1, duration_days + 1):
            slots = per_day.get(day)
            if not slots or not all(slots):
                return True
        return False

    def merge_backfill(
        self,
        itinerary: Itinerary,
        generated: Itinerary | None,
        allowlist: Allowlist,
        now: datetime | None = None,
    ) -> Itinerary:
        """
        Fill empty periods with activities from a re-generation pass.

        Only allowlisted, not-currently-crowded, not-yet-used titles are accepted,
        and the allowlisted record replaces whatever the backend produced.
        """
        if generated is None:
            return itinerary

        used = {activity.key for activity in itinerary.all_activities()}
        proposals: dict[str, list[Activity]] = {}
        for item in generated.items:
            parsed = parse_period_label(item.period)
            label = period_label(*parsed) if parsed else item.period.strip()

            accepted = proposals.setdefault(label, [])
            for activity in item.activities:
                admitted = allowlist.get(activity.title)
                if admitted is None:
                    logger.info(f"[Organizer] Filtering out '{activity.title}': not in allowlist")
                    continue
                if admitted.peak_hours and is_currently_peak(admitted.peak_hours, now):
                    logger.info(f"[Organizer] Filtering out '{activity.title}': currently in peak hours")
                    continue
                if admitted.key in used:
                    continue
                used.add(admitted.key)
                accepted.append(admitted)

        items = []
        for item in itinerary.items:
            incoming = proposals.get(item.period)
            if not item.activities and incoming:
                items.append(Period(period=item.period, activities=incoming))
            else:
                items.append(item)
        return itinerary.model_copy(update={"items": items})

    def fill_from_allowlist(
        self,
        itinerary: Itinerary,
        allowlist: Allowlist,
        target_per_slot: int = 2,
    ) -> Itinerary:
        """
        Place admissible activities that are not yet in the itinerary.

        Empty periods are filled first, then periods are topped up to
        target_per_slot (least loaded first), and anything left is appended
        round-robin so no admissible activity is lost.
        """
        used = {activity.key for activity in itinerary.all_activities()}
        pending = deque(a for a in allowlist.activities() if a.key and a.key not in used)
        if not pending:
            return itinerary

        slots = [list(item.activities) for item in itinerary.items]

        for activities in slots:
            if not pending:
                break
            if not activities:
                activities.append(pending.popleft())

        by_load = sorted(slots, key=len)
        safety = 0
        limit = len(pending) * 2
        while pending and safety < limit:
            for activities in by_load:
                if not pending:
                    break
                if len(activities) < target_per_slot:
                    activities.append(pending.popleft())
            safety += 1
            if all(len(activities) >= target_per_slot for activities in by_load):
                break

        while pending:
            for activities in slots:
                if not pending:
                    break
                activities.append(pending.popleft())

        items = [
            Period(
                period=item.period,
                activities=activities,
                reason=None if activities else item.reason,
            )
            for item, activities in zip(itinerary.items, slots)
        ]
        logger.debug(f"[Organizer] Distributed remaining allowlisted activities across {len(items)} periods")
        return itinerary.model_copy(update={"items": items})

    def apply_reasons(self, itinerary: Itinerary, duration_days: int | None = None) -> Itinerary:
        """Give empty periods a reason and strip reasons from periods that have activities."""
        days = duration_days or self.infer_duration(itinerary)
        items = []
        for item in itinerary.items:
            if item.activities:
                items.append(item.model_copy(update={"reason": None}))
                continue
            if item.reason and item.reason.strip():
                items.append(item)
                continue
            parsed = parse_period_label(item.period)
            day, slot = parsed if parsed else (_day_of(item.period) or 1, FLEXIBLE)
            items.append(item.model_copy(update={"reason": empty_slot_reason(day, slot, days)}))
        return itinerary.model_copy(update={"items": items})
