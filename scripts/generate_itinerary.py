#!/usr/bin/env python3
"""
Generate an itinerary end-to-end against the configured LLM backend.

Needs GOOGLE_API_KEY (or the key for the AISUITE_MODEL provider) and
ACTIVITY_CORPUS_PATH pointing at a JSON list of activity records.

Usage:
    python scripts/generate_itinerary.py "Food trip in the rain" --weather rainy --days 2
"""
import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Add the repo root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from itinerary_engine.core.errors import ConfigurationError  # noqa: E402
from itinerary_engine.core.itinerary_service import ItineraryService  # noqa: E402
from itinerary_engine.core.schemas import ItineraryRequest  # noqa: E402


def print_section(title: str):
    """Print a formatted section header."""
    print("\n" + "=" * 80)
    print(f"  {title}")
    print("=" * 80 + "\n")


async def run(request: ItineraryRequest) -> int:
    try:
        service = ItineraryService.from_settings()
    except ConfigurationError as e:
        print(f"❌ Backend not configured: {e}")
        return 1

    print_section("Generating Itinerary")
    print(f"  Prompt: {request.prompt}")
    print(f"  Weather: {request.weather_category.value}")
    print(f"  Interests: {request.interests or ['(none)']}")
    print(f"  Days: {request.duration_days or '(inferred)'}")

    try:
        itinerary = await service.plan(request)
    except ConfigurationError as e:
        print(f"\n❌ Backend rejected the request: {e}")
        return 1
    finally:
        await service.aclose()

    print_section(itinerary.title)
    print(f"  {itinerary.subtitle}\n")
    for item in itinerary.items:
        print(f"📅 {item.period}")
        if not item.activities:
            print(f"   (empty) {item.reason}")
        for activity in item.activities:
            print(f"   - {activity.title} [{activity.time}] {', '.join(activity.tags)}")

    print_section("Generation Metrics")
    for key, value in service.metrics().items():
        print(f"  {key}: {value}")
    return 0


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("prompt")
    parser.add_argument("--weather", default="default")
    parser.add_argument("--interest", action="append", default=[], dest="interests")
    parser.add_argument("--days", type=int, default=None)
    args = parser.parse_args()

    request = ItineraryRequest(
        prompt=args.prompt,
        weatherCategory=args.weather,
        interests=args.interests,
        durationDays=args.days,
    )
    sys.exit(asyncio.run(run(request)))


if __name__ == "__main__":
    main()
