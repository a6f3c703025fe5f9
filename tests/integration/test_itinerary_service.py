import json

import pytest

from helpers import make_records
from itinerary_engine.core.activity_corpus import InMemoryActivityCorpus
from itinerary_engine.core.errors import ConfigurationError
from itinerary_engine.core.generation_orchestrator import GenerationOrchestrator
from itinerary_engine.core.itinerary_service import ItineraryService
from itinerary_engine.core.schemas import ItineraryRequest
from itinerary_engine.core.settings import Settings


def activity(title, time="Flexible"):
    return {"image": "/img.jpg", "title": title, "time": time, "desc": "Generated description text.", "tags": ["x"]}


PRIMARY = json.dumps(
    {
        "title": "Food Trip",
        "subtitle": "Two rainy days",
        "items": [
            {"period": "Day 1 - Morning", "activities": [activity("Food Stop 3")]},
            {"period": "Day 1 - Afternoon", "activities": [activity("Food Stop 6"), activity("food stop 3")]},
            {"period": "Day 1 - Evening", "activities": [activity("Scenic Park 1"), activity("Hallucinated Diner")]},
        ],
    }
)
BACKFILL = "```json\n" + json.dumps(
    {"items": [{"period": "Day 2 - Morning", "activities": [activity("Food Stop 9"), activity("Imaginary Bistro")]}]}
) + "\n```"


class PipelineBackend:
    def __init__(self, primary=PRIMARY, backfill=BACKFILL, error=None):
        self.primary = primary
        self.backfill = backfill
        self.error = error
        self.backfill_calls = 0

    async def complete(self, prompt, options):
        if self.error is not None:
            raise self.error
        if "missing plans for" in prompt:
            self.backfill_calls += 1
            return self.backfill
        return self.primary


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def fast_settings(**overrides):
    return Settings(
        generation_backoff_base_seconds=0.01,
        generation_backoff_cap_seconds=0.01,
        generation_timeout_seconds=5,
        **overrides,
    )


def make_service(backend, **overrides):
    settings = fast_settings(**overrides)
    orchestrator = GenerationOrchestrator.from_settings(backend, settings)
    return ItineraryService(InMemoryActivityCorpus(make_records(45)), orchestrator, settings=settings)


def rainy_food_request():
    return ItineraryRequest(
        prompt="Food trip around Baguio",
        weatherCategory="rainy",
        interests=["Food & Culinary"],
        durationDays=2,
    )


def assert_well_formed(itinerary, days):
    labels = [item.period for item in itinerary.items]
    assert labels == [f"Day {d} - {s}" for d in range(1, days + 1) for s in ("Morning", "Afternoon", "Evening")]
    titles = [a.title.lower() for a in itinerary.all_activities()]
    assert len(titles) == len(set(titles))
    for item in itinerary.items:
        if not item.activities:
            assert item.reason and item.reason.strip()


@pytest.mark.asyncio
async def test_rainy_food_scenario(now):
    backend = PipelineBackend()
    service = make_service(backend)

    itinerary = await service.plan(rainy_food_request(), now=now)
    await service.aclose()

    assert_well_formed(itinerary, 2)
    for item in itinerary.items:
        for a in item.activities:
            assert "Indoor-Friendly" in a.tags or "Food & Culinary" in a.tags

    titles = {a.title for a in itinerary.all_activities()}
    assert "Hallucinated Diner" not in titles
    assert "Scenic Park 1" not in titles
    assert "Imaginary Bistro" not in titles
    assert backend.backfill_calls == 1

    # Every non-crowded food stop in the corpus ends up scheduled exactly once
    expected = {f"Food Stop {i}" for i in range(0, 45, 3) if i % 5 != 0}
    assert titles == expected


@pytest.mark.asyncio
async def test_generation_failure_still_fills_grid(now):
    service = make_service(PipelineBackend(error=StatusError("Service overloaded", 503)))

    itinerary = await service.plan(rainy_food_request(), now=now)
    await service.aclose()

    assert_well_formed(itinerary, 2)
    assert itinerary.all_activities()
    assert all(a.title.startswith("Food Stop") for a in itinerary.all_activities())
    assert service.metrics()["fallback_used"] == 1


@pytest.mark.asyncio
async def test_unparseable_output_and_empty_corpus(now):
    backend = PipelineBackend(primary="I cannot do that.", backfill="still no")
    settings = fast_settings()
    service = ItineraryService(
        InMemoryActivityCorpus([]), GenerationOrchestrator.from_settings(backend, settings), settings=settings
    )

    itinerary = await service.plan(ItineraryRequest(prompt="Anything", durationDays=3), now=now)
    await service.aclose()

    assert_well_formed(itinerary, 3)
    assert itinerary.all_activities() == []


@pytest.mark.asyncio
async def test_configuration_error_reaches_caller(now):
    service = make_service(PipelineBackend(error=StatusError("Incorrect API key provided", 401)))

    with pytest.raises(ConfigurationError):
        await service.plan(rainy_food_request(), now=now)
    await service.aclose()


@pytest.mark.asyncio
async def test_long_trip_gets_full_grid(now):
    service = make_service(PipelineBackend())
    request = rainy_food_request().model_copy(update={"duration_days": 10})

    itinerary = await service.plan(request, now=now)
    await service.aclose()

    assert len(itinerary.items) == 30
    assert_well_formed(itinerary, 10)


@pytest.mark.asyncio
async def test_requested_days_capped_by_settings(now):
    service = make_service(PipelineBackend(), max_duration_days=4)
    request = rainy_food_request().model_copy(update={"duration_days": 9})

    itinerary = await service.plan(request, now=now)
    await service.aclose()

    assert_well_formed(itinerary, 4)


@pytest.mark.asyncio
async def test_inferred_days_capped_by_settings(now):
    far_day = json.dumps(
        {
            "title": "Food Trip",
            "subtitle": "Open ended",
            "items": [{"period": "Day 40 - Morning", "activities": [activity("Food Stop 3")]}],
        }
    )
    backend = PipelineBackend(primary=far_day)
    service = make_service(backend, max_duration_days=5)
    request = ItineraryRequest(prompt="Food trip around Baguio", weatherCategory="rainy", interests=["Food & Culinary"])

    itinerary = await service.plan(request, now=now)
    await service.aclose()

    assert len(itinerary.items) == 15
    assert_well_formed(itinerary, 5)
    assert "Food Stop 3" in {a.title for a in itinerary.all_activities()}
    assert backend.backfill_calls == 0
