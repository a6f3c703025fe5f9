"""
Helper functions for turning a request and a ranked pool into search queries and prompts.
"""

import json
from typing import Any

from itinerary_engine.core.candidate_pool import CandidatePool
from itinerary_engine.core.schemas import (
    PERIOD_SLOTS,
    Itinerary,
    ItineraryRequest,
    WeatherCategory,
    period_label,
)

INTEREST_QUERIES = {
    "Nature & Scenery": "parks gardens viewpoints scenic nature trails",
    "Food & Culinary": "food markets local dining restaurants cafes",
    "Culture & Arts": "museums heritage sites art villages galleries",
    "Shopping & Local Finds": "markets souvenir shops local crafts",
    "Adventure": "hiking trails outdoor adventure parks",
}

# Mapping of weather categories to acceptable activity tags
WEATHER_TAG_FILTERS: dict[WeatherCategory, list[str]] = {
    WeatherCategory.THUNDERSTORM: ["Indoor-Friendly"],
    WeatherCategory.RAINY: ["Indoor-Friendly"],
    WeatherCategory.SNOW: ["Indoor-Friendly"],
    WeatherCategory.FOGGY: ["Indoor-Friendly", "Weather-Flexible"],
    WeatherCategory.CLOUDY: ["Outdoor-Friendly", "Weather-Flexible"],
    WeatherCategory.CLEAR: ["Outdoor-Friendly"],
    WeatherCategory.COLD: ["Indoor-Friendly"],
    WeatherCategory.DEFAULT: [],
}

WEATHER_GUIDANCE = {
    WeatherCategory.THUNDERSTORM: 'Thunderstorm warning. ONLY indoor activities tagged "Indoor-Friendly".',
    WeatherCategory.RAINY: 'Rainy weather. Prioritize "Indoor-Friendly" activities: museums, malls, covered dining.',
    WeatherCategory.SNOW: 'Snow. Focus on "Indoor-Friendly" warm venues and brief, safe outdoor viewing.',
    WeatherCategory.FOGGY: 'Foggy. Use "Indoor-Friendly" or "Weather-Flexible" activities and avoid viewpoints.',
    WeatherCategory.CLOUDY: 'Cloudy. Mix of "Weather-Flexible" activities, good for photography.',
    WeatherCategory.CLEAR: 'Clear skies. Perfect for "Outdoor-Friendly" activities: hiking, parks, viewpoints.',
    WeatherCategory.COLD: 'Cold. Prioritize "Indoor-Friendly" activities with warming options.',
    WeatherCategory.DEFAULT: "Balance indoor and outdoor activities.",
}

_SIMPLIFICATIONS = [
    "",
    "\nSIMPLIFIED MODE: Focus on basic structure with minimal activities.",
    "\nMINIMAL MODE: Return a simple itinerary with 1-2 activities per period.",
    "\nFALLBACK MODE: Return the basic structure even if activities are generic.",
]


def get_weather_tags(weather: WeatherCategory) -> list[str]:
    return WEATHER_TAG_FILTERS.get(weather, [])


def expand_search_queries(prompt: str, interests: list[str]) -> list[str]:
    """
    Build the similarity-search queries for a request.

    Args:
        prompt: User's free-text request
        interests: Selected interest categories

    Returns:
        Prompt followed by one query per interest, without duplicates
    """
    queries = [prompt.strip()] if prompt and prompt.strip() else []
    for interest in interests:
        if interest == "Random":
            continue
        # Fallback: use the interest as-is
        query = INTEREST_QUERIES.get(interest, interest.lower())
        if query not in queries:
            queries.append(query)
    return queries


def get_day_guidance(day_number: int, total_days: int) -> str:
    """Short pacing note for one day of the trip."""
    if day_number == 1:
        return "First day - lighter schedule, nearby attractions, allow for travel fatigue."
    if day_number == total_days:
        return "Last day - lighter schedule, flexible timing for departure."
    return f"Full day {day_number} - moderate pace."


def build_itinerary_prompt(request: ItineraryRequest, pool: CandidatePool) -> str:
    """
    Assemble the base generation prompt from the request and the ranked candidate pool.

    Only activities from the pool may be used, so the pool is embedded as JSON.
    """
    days = request.duration_days or 1
    candidates = [
        {
            "title": a.title,
            "desc": a.desc,
            "tags": a.tags,
            "time": a.time,
            "image": a.image,
        }
        for a in pool
    ]
    periods = ", ".join(period_label(d, s) for d in range(1, days + 1) for s in PERIOD_SLOTS)
    day_notes = "\n".join(f"- {get_day_guidance(d, days)}" for d in range(1, days + 1))

    parts = [
        "You are an expert local itinerary planner.",
        f"User request: {request.prompt}",
        f"Trip length: {days} day(s). Periods: {periods}.",
        f"Weather: {WEATHER_GUIDANCE.get(request.weather_category, WEATHER_GUIDANCE[WeatherCategory.DEFAULT])}",
    ]
    if request.interests:
        parts.append(f"Interests: {', '.join(request.interests)}")
    if request.budget:
        parts.append(f"Budget: {request.budget}")
    if request.group_size:
        parts.append(f"Group size: {request.group_size}")
    parts.append(f"Day pacing:\n{day_notes}")
    parts.append(
        "Use ONLY activities from this list, never repeat an activity, and copy "
        "title, image, time, desc and tags exactly:\n" + json.dumps(candidates, ensure_ascii=False)
    )
    parts.append(
        'If a period has no suitable activity, leave "activities" empty and add a short "reason".'
    )
    return "\n\n".join(parts)


def itinerary_schema_hint() -> dict[str, Any]:
    return Itinerary.model_json_schema(by_alias=True)


def build_structured_prompt(prompt: str) -> str:
    """Append the strict output contract used by the schema-constrained strategy."""
    return (
        f"{prompt}\n\n"
        "CRITICAL: Return ONLY valid JSON matching this exact shape:\n"
        '{"title": "string", "subtitle": "string", "items": [{"period": "Day X - Morning|Afternoon|Evening", '
        '"activities": [{"image": "string", "title": "string", "time": "string", '
        '"desc": "string (minimum 10 characters)", "tags": ["string"]}], "reason": "string (only if empty)"}]}\n'
        "DO NOT return explanatory text, markdown, or anything other than pure JSON."
    )


def build_progressive_prompt(prompt: str, attempt: int, max_attempts: int) -> str:
    """Strict JSON prompt that gets simpler with each retry."""
    base = (
        f"{prompt}\n\n"
        "Respond with a single JSON object with keys title, subtitle and items. "
        "Use double quotes, no trailing commas, no comments, no markdown fences."
    )
    if attempt <= 1:
        return base
    level = min(attempt - 1, max_attempts - 1, len(_SIMPLIFICATIONS) - 1)
    return base + _SIMPLIFICATIONS[level]


def build_backfill_prompt(
    request: ItineraryRequest, missing_days: list[int], allowed_titles: list[str]
) -> str:
    """Prompt for re-generating only the days left without activities."""
    days = ", ".join(f"Day {d}" for d in missing_days)
    return (
        f"The user wants a {request.duration_days}-day trip. The current itinerary is "
        f"missing plans for: {days}.\n"
        "Generate Morning/Afternoon/Evening periods for those days only. Use ONLY these "
        f"activity titles: {json.dumps(allowed_titles, ensure_ascii=False)}.\n"
        'Return JSON with an "items" array of {"period", "activities"} objects. Each activity '
        "needs title, desc, image, time and tags.\n\n"
        f"User prompt: {request.prompt}"
    )
