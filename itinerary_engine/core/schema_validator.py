"""
Validation and one-pass structural repair of parsed itinerary objects.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from itinerary_engine.core.schemas import (
    DEFAULT_DESC,
    DEFAULT_IMAGE,
    DEFAULT_TIME,
    DEFAULT_TITLE,
    GENERIC_TAG,
    MIN_DESC_LENGTH,
    Activity,
    Itinerary,
)

logger = logging.getLogger(__name__)

DEFAULT_ITINERARY_TITLE = "Personalized Itinerary"
DEFAULT_ITINERARY_SUBTITLE = "Personalized travel recommendations"
DEFAULT_PERIOD = "Day 1 - Morning"

# Checked in order, first hit wins
TAG_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("nature", "scenery"), "nature"),
    (("food", "dining"), "food"),
    (("culture", "heritage"), "culture"),
    (("adventure", "hiking"), "adventure"),
    (("morning",), "morning"),
    (("afternoon",), "afternoon"),
    (("evening", "night"), "evening"),
]

_OPTIONAL_STRING_FIELDS = {
    "peakHours": ("peakHours", "peak_hours"),
    "trafficLevel": ("trafficLevel", "traffic_level"),
    "crowdLevel": ("crowdLevel", "crowd_level"),
    "trafficRecommendation": ("trafficRecommendation", "traffic_recommendation"),
}


def ensure_string(value: Any, fallback: str) -> str:
    return value.strip() if isinstance(value, str) and value.strip() else fallback


def ensure_array(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def derive_fallback_tag(hint: Any) -> str | None:
    """Infer a tag from free text such as a title, description or period label."""
    if not isinstance(hint, str) or not hint:
        return None

    normalized = hint.lower()
    for keywords, tag in TAG_HINTS:
        if any(keyword in normalized for keyword in keywords):
            return tag
    return None


def ensure_tags(value: Any, *fallback_hints: Any) -> list[str]:
    """
    Normalize a tags value into a non-empty list of strings.

    Args:
        value: Raw tags (list, single string or anything else)
        fallback_hints: Texts scanned in order when no usable tag is present

    Returns:
        List of unique tags in first-seen order
    """
    collected: list[str] = []

    if isinstance(value, list):
        candidates = value
    elif isinstance(value, str):
        candidates = [value]
    else:
        candidates = []

    for tag in candidates:
        if isinstance(tag, str) and tag.strip() and tag.strip() not in collected:
            collected.append(tag.strip())

    if not collected:
        for hint in fallback_hints:
            fallback_tag = derive_fallback_tag(hint)
            if fallback_tag:
                collected.append(fallback_tag)
                break

    return collected or [GENERIC_TAG]


def coerce_activity(raw: Any, *hints: Any) -> Activity | None:
    """
    Build a valid Activity from a loosely shaped mapping, applying safe defaults.

    Returns None when the input is not a mapping at all.
    """
    if isinstance(raw, Activity):
        return raw
    if not isinstance(raw, dict):
        return None

    title = ensure_string(raw.get("title"), DEFAULT_TITLE)
    desc = ensure_string(raw.get("desc") or raw.get("description"), DEFAULT_DESC)
    if len(desc) < MIN_DESC_LENGTH:
        desc = DEFAULT_DESC

    fields: dict[str, Any] = {
        "image": ensure_string(raw.get("image"), DEFAULT_IMAGE),
        "title": title,
        "time": ensure_string(raw.get("time"), DEFAULT_TIME),
        "desc": desc,
        "tags": ensure_tags(raw.get("tags"), title, *hints, desc),
    }

    for alias, keys in _OPTIONAL_STRING_FIELDS.items():
        for key in keys:
            if isinstance(raw.get(key), str) and raw[key].strip():
                fields[alias] = raw[key].strip()
                break

    score = raw.get("relevanceScore", raw.get("relevance_score"))
    if isinstance(score, (int, float)) and not isinstance(score, bool):
        fields["relevanceScore"] = float(score)

    return Activity.model_validate(fields)


class SchemaValidator:
    """Confirms that a parsed object matches the Itinerary shape, repairing it once if needed."""

    def __init__(
        self,
        default_title: str = DEFAULT_ITINERARY_TITLE,
        default_subtitle: str = DEFAULT_ITINERARY_SUBTITLE,
    ) -> None:
        self.default_title = default_title
        self.default_subtitle = default_subtitle

    def validate(self, data: Any) -> Itinerary | None:
        """
        Validate a parsed object, applying one structural fix pass on failure.

        Args:
            data: Object produced by the recovery chain

        Returns:
            A schema-valid Itinerary, or None if the object cannot be repaired
        """
        if isinstance(data, Itinerary):
            return data
        if not isinstance(data, dict):
            return None

        try:
            return Itinerary.model_validate(data)
        except ValidationError as e:
            logger.debug(f"[Validator] Schema validation failed, attempting fixes: {e.error_count()} errors")

        fixed = self.fix(data)
        try:
            return Itinerary.model_validate(fixed)
        except ValidationError as e:
            logger.debug(f"[Validator] Unable to fix schema issues: {e.error_count()} errors")
            return None

    def is_valid(self, data: Any) -> bool:
        return self.validate(data) is not None

    def fix(self, data: dict[str, Any]) -> dict[str, Any]:
        """Coerce blanks to defaults, non-arrays to empty arrays and infer missing tags."""
        items = []
        for item in ensure_array(data.get("items")):
            if not isinstance(item, dict):
                continue

            period = ensure_string(item.get("period"), DEFAULT_PERIOD)
            activities = [
                activity
                for activity in (
                    coerce_activity(raw, period) for raw in ensure_array(item.get("activities"))
                )
                if activity is not None
            ]

            fixed_item: dict[str, Any] = {"period": period, "activities": activities}
            if isinstance(item.get("reason"), str) and item["reason"].strip():
                fixed_item["reason"] = item["reason"].strip()
            items.append(fixed_item)

        return {
            "title": ensure_string(data.get("title"), self.default_title),
            "subtitle": ensure_string(data.get("subtitle"), self.default_subtitle),
            "items": items,
        }
