import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from helpers import VALID_RESPONSE, ScriptedBackend, itinerary_json, make_activity
from itinerary_engine.core.candidate_pool import CandidatePool
from itinerary_engine.core.errors import ConfigurationError
from itinerary_engine.core.fallback_synthesizer import FALLBACK_SUBTITLE
from itinerary_engine.core.generation_orchestrator import (
    GenerationMetrics,
    GenerationOrchestrator,
    PromptEngineeredStrategy,
    StructuredOutputStrategy,
)

FAST_RESPONSE = itinerary_json({"Day 1 - Morning": [make_activity("Cafe by the Ruins")]}, title="Fast")
SLOW_RESPONSE = itinerary_json({"Day 1 - Morning": [make_activity("Mines View Park")]}, title="Slow")


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class SlowThenFastBackend:
    """First call hangs past the timeout, later calls answer immediately."""

    def __init__(self):
        self.calls = 0

    async def complete(self, prompt, options):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(5)
        return VALID_RESPONSE


def make_orchestrator(backend, **kwargs):
    kwargs.setdefault("backoff_base", 0.01)
    kwargs.setdefault("backoff_cap", 0.02)
    kwargs.setdefault("timeout", 10.0)
    return GenerationOrchestrator(backend, **kwargs)


def test_backoff_schedule():
    orchestrator = GenerationOrchestrator(ScriptedBackend(), backoff_base=1.0, backoff_cap=3.0)
    assert [orchestrator.backoff_delay(a) for a in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]


def test_strategy_temperatures_decrease():
    structured = StructuredOutputStrategy()
    engineered = PromptEngineeredStrategy()
    assert [structured.temperature(a) for a in (1, 2, 3, 4)] == [0.2, 0.15, 0.1, 0.05]
    assert [engineered.temperature(a) for a in (1, 2, 3, 4)] == [0.25, 0.2, 0.15, 0.1]
    assert structured.options(1, 1000, 30).schema_hint is not None
    assert engineered.options(1, 1000, 30).schema_hint is None


@pytest.mark.asyncio
async def test_fast_strategy_wins_race():
    backend = ScriptedBackend(
        by_strategy={"structured": (5.0, SLOW_RESPONSE), "prompt_engineered": (0.05, FAST_RESPONSE)}
    )
    orchestrator = make_orchestrator(backend)

    started = time.perf_counter()
    itinerary = await orchestrator.generate("plan a trip")
    elapsed = time.perf_counter() - started
    await orchestrator.aclose()

    assert itinerary.title == "Fast"
    assert elapsed < 1.0
    assert orchestrator.metrics.snapshot()["successes"] == {"prompt_engineered": 1}
    assert not orchestrator._background


@pytest.mark.asyncio
async def test_loser_stops_after_race_is_decided():
    backend = ScriptedBackend(
        by_strategy={"structured": (0.05, VALID_RESPONSE), "prompt_engineered": (0.01, "not json at all")}
    )
    orchestrator = make_orchestrator(backend, backoff_base=0.2, backoff_cap=0.2)

    await orchestrator.generate("plan a trip")
    await asyncio.sleep(0.3)
    await orchestrator.aclose()

    engineered_calls = [c for c in backend.calls if c[1].schema_hint is None]
    assert len(engineered_calls) == 1


@pytest.mark.asyncio
async def test_retries_after_malformed_output_with_lower_temperature():
    backend = ScriptedBackend(["Sorry, I can't help with that.", VALID_RESPONSE])
    orchestrator = make_orchestrator(backend, strategies=[PromptEngineeredStrategy()])

    itinerary = await orchestrator.generate("plan a trip")

    assert itinerary.title == "Trip"
    assert [options.temperature for _, options in backend.calls] == [0.25, 0.2]
    assert orchestrator.metrics.snapshot()["total_attempts"] == 2


@pytest.mark.asyncio
async def test_timeout_degrades_to_retry():
    backend = SlowThenFastBackend()
    orchestrator = make_orchestrator(backend, strategies=[StructuredOutputStrategy()], timeout=0.05)

    itinerary = await orchestrator.generate("plan a trip")
    await orchestrator.aclose()

    assert itinerary.title == "Trip"
    assert backend.calls == 2


@pytest.mark.asyncio
async def test_backoff_applied_between_attempts():
    backend = ScriptedBackend(["garbage"])
    orchestrator = make_orchestrator(
        backend, strategies=[PromptEngineeredStrategy()], backoff_base=0.05, backoff_cap=0.05
    )

    started = time.perf_counter()
    await orchestrator.generate("plan a trip")
    elapsed = time.perf_counter() - started

    assert len(backend.calls) == 3
    assert elapsed >= 0.1


@pytest.mark.asyncio
async def test_exhaustion_falls_back_to_pool():
    backend = ScriptedBackend([StatusError("Service overloaded", 503)])
    orchestrator = make_orchestrator(backend)
    pool = CandidatePool(make_activity(f"Place {i}") for i in range(4))

    itinerary = await orchestrator.generate("plan a trip", pool)

    assert itinerary.subtitle == FALLBACK_SUBTITLE
    assert len(itinerary.all_activities()) == 4
    snapshot = orchestrator.metrics.snapshot()
    assert snapshot["fallback_used"] == 1
    assert snapshot["total_attempts"] == 6
    assert snapshot["fallback_rate"] == 100.0


@pytest.mark.asyncio
async def test_configuration_error_propagates():
    backend = ScriptedBackend([StatusError("Invalid credentials", 401)])
    orchestrator = make_orchestrator(backend)

    with pytest.raises(ConfigurationError):
        await orchestrator.generate("plan a trip")
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_health_check_statuses():
    healthy = await make_orchestrator(ScriptedBackend([VALID_RESPONSE])).health_check()
    assert healthy["status"] == "healthy"

    degraded = await make_orchestrator(ScriptedBackend(["nope"])).health_check()
    assert degraded["status"] == "degraded"

    unhealthy = await make_orchestrator(ScriptedBackend([StatusError("bad key", 401)])).health_check()
    assert unhealthy["status"] == "unhealthy"
    assert "metrics" in unhealthy["details"]


def test_metrics_are_thread_safe():
    metrics = GenerationMetrics()

    def work(_):
        for _ in range(500):
            metrics.record_request()
            metrics.record_attempt()
            metrics.record_success("structured")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(work, range(8)))

    snapshot = metrics.snapshot()
    assert snapshot["total_requests"] == 4000
    assert snapshot["total_attempts"] == 4000
    assert snapshot["successes"] == {"structured": 4000}
    assert snapshot["average_attempts"] == 1.0

    metrics.reset()
    assert metrics.snapshot()["total_requests"] == 0
