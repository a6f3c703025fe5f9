"""
Multi-strategy itinerary generation.

Strategies race as asyncio tasks. Each one retries the backend with a
per-call timeout, a falling temperature and exponential backoff, feeding
every raw response through the ResponseRecoveryChain. The first validated
itinerary wins and a shared CancellationToken tells the others to stop.
When every strategy is exhausted the FallbackSynthesizer builds the result
from the candidate pool.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Protocol

from itinerary_engine.core.cancellation import CancellationToken
from itinerary_engine.core.candidate_pool import CandidatePool
from itinerary_engine.core.errors import (
    ConfigurationError,
    ExhaustionError,
    MalformedOutputError,
    TransientBackendError,
    classify_backend_error,
)
from itinerary_engine.core.fallback_synthesizer import FallbackSynthesizer
from itinerary_engine.core.itinerary_planner import (
    build_progressive_prompt,
    build_structured_prompt,
    itinerary_schema_hint,
)
from itinerary_engine.core.response_recovery import ParsedObject, ResponseRecoveryChain
from itinerary_engine.core.schemas import (
    AttemptOutcome,
    GenerationAttempt,
    GenerationContext,
    GenerationOptions,
    Itinerary,
)
from itinerary_engine.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

HEALTH_CHECK_PROMPT = "Generate a simple one-day itinerary with one morning activity."


class GenerationBackend(Protocol):
    async def complete(self, prompt: str, options: GenerationOptions) -> str: ...


# =============================================================================
# Metrics
# =============================================================================


class GenerationMetrics:
    """Per-orchestrator counters, safe to update from concurrent requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self.total_requests = 0
        self.total_attempts = 0
        self.successes: dict[str, int] = {}
        self.fallback_used = 0

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()

    def record_request(self) -> None:
        with self._lock:
            self.total_requests += 1

    def record_attempt(self) -> None:
        with self._lock:
            self.total_attempts += 1

    def record_success(self, strategy_id: str) -> None:
        with self._lock:
            self.successes[strategy_id] = self.successes.get(strategy_id, 0) + 1

    def record_fallback(self) -> None:
        with self._lock:
            self.fallback_used += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            total = self.total_requests
            succeeded = sum(self.successes.values())
            return {
                "total_requests": total,
                "total_attempts": self.total_attempts,
                "successes": dict(self.successes),
                "fallback_used": self.fallback_used,
                "average_attempts": round(self.total_attempts / total, 3) if total else 0.0,
                "success_rate": round(succeeded / total * 100, 2) if total else 0.0,
                "fallback_rate": round(self.fallback_used / total * 100, 2) if total else 0.0,
            }


# =============================================================================
# Strategies
# =============================================================================


class GenerationStrategy:
    """One way of asking the backend for an itinerary."""

    strategy_id = "base"

    def temperature(self, attempt: int) -> float:
        return 0.3

    def build_prompt(self, prompt: str, attempt: int, max_attempts: int) -> str:
        return prompt

    def schema_hint(self) -> dict[str, Any] | None:
        return None

    def options(self, attempt: int, max_tokens: int, timeout: float) -> GenerationOptions:
        return GenerationOptions(
            temperature=self.temperature(attempt),
            max_tokens=max_tokens,
            timeout=timeout,
            response_format="json",
            schema_hint=self.schema_hint(),
        )


class StructuredOutputStrategy(GenerationStrategy):
    """Schema-constrained call: JSON schema hint plus a strict output contract."""

    strategy_id = "structured"

    def temperature(self, attempt: int) -> float:
        return round(max(0.05, 0.2 - 0.05 * (attempt - 1)), 3)

    def build_prompt(self, prompt: str, attempt: int, max_attempts: int) -> str:
        return build_structured_prompt(prompt)

    def schema_hint(self) -> dict[str, Any] | None:
        return itinerary_schema_hint()


class PromptEngineeredStrategy(GenerationStrategy):
    """Free-form call with a prompt that gets simpler on every retry."""

    strategy_id = "prompt_engineered"

    def temperature(self, attempt: int) -> float:
        return round(max(0.1, 0.3 - attempt * 0.05), 3)

    def build_prompt(self, prompt: str, attempt: int, max_attempts: int) -> str:
        return build_progressive_prompt(prompt, attempt, max_attempts)


def default_strategies() -> list[GenerationStrategy]:
    return [StructuredOutputStrategy(), PromptEngineeredStrategy()]


# =============================================================================
# Orchestrator
# =============================================================================


class GenerationOrchestrator:
    def __init__(
        self,
        backend: GenerationBackend,
        recovery: ResponseRecoveryChain | None = None,
        fallback: FallbackSynthesizer | None = None,
        strategies: list[GenerationStrategy] | None = None,
        max_attempts: int = 3,
        timeout: float = 45.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 3.0,
        max_tokens: int = 3072,
    ) -> None:
        self.backend = backend
        self.recovery = recovery or ResponseRecoveryChain()
        self.fallback = fallback or FallbackSynthesizer()
        self.strategies = strategies or default_strategies()
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_tokens = max_tokens
        self.metrics = GenerationMetrics()
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls, backend: GenerationBackend, settings: Settings | None = None, **kwargs: Any
    ) -> GenerationOrchestrator:
        settings = settings or get_settings()
        kwargs.setdefault("fallback", FallbackSynthesizer(settings.destination_name))
        return cls(
            backend,
            max_attempts=settings.generation_max_attempts,
            timeout=settings.generation_timeout_seconds,
            backoff_base=settings.generation_backoff_base_seconds,
            backoff_cap=settings.generation_backoff_cap_seconds,
            max_tokens=settings.generation_max_tokens,
            **kwargs,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt + 1: base * 2^(attempt-1), capped."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)

    # -------------------------------------------------------------------------
    # Background task bookkeeping
    # -------------------------------------------------------------------------

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._discard)

    def _discard(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[Orchestrator] Discarded late result from {task.get_name()}: {task.exception()}")

    async def aclose(self) -> None:
        """Cancel any backend call or strategy still running after its race was decided."""
        # Cancelling a strategy can hand its in-flight backend call over to the set
        while self._background:
            tasks = list(self._background)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._background.difference_update(tasks)

    # -------------------------------------------------------------------------
    # Attempts
    # -------------------------------------------------------------------------

    async def _call_backend(self, prompt: str, options: GenerationOptions) -> str:
        """Race one backend call against a timer. A late call keeps running in the background."""
        call = asyncio.create_task(self.backend.complete(prompt, options), name="backend-call")
        try:
            done, _ = await asyncio.wait({call}, timeout=options.timeout)
        except asyncio.CancelledError:
            self._track(call)
            raise

        if call in done:
            return call.result()

        self._track(call)
        raise TimeoutError(f"Backend call timed out after {options.timeout}s")

    async def _pause(self, delay: float, cancel: CancellationToken) -> None:
        """Backoff sleep that ends early once the race is decided."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _run_strategy(
        self,
        strategy: GenerationStrategy,
        prompt: str,
        cancel: CancellationToken,
        history: list[GenerationAttempt],
    ) -> Itinerary | None:
        """
        Run one strategy until it produces a validated itinerary.

        Returns:
            The itinerary, or None if the race was decided elsewhere

        Raises:
            ConfigurationError: Backend is unusable, retrying cannot help
            ExhaustionError: All attempts failed
        """
        for attempt in range(1, self.max_attempts + 1):
            if cancel.cancelled:
                return None

            options = strategy.options(attempt, self.max_tokens, self.timeout)
            record = GenerationAttempt(
                strategy_id=strategy.strategy_id,
                attempt=attempt,
                temperature=options.temperature,
                timeout=options.timeout,
            )
            history.append(record)
            self.metrics.record_attempt()

            try:
                text = await self._call_backend(
                    strategy.build_prompt(prompt, attempt, self.max_attempts), options
                )
            except TimeoutError:
                record.outcome = AttemptOutcome.TIMEOUT
                logger.warning(f"[Orchestrator] {strategy.strategy_id} attempt {attempt} timed out")
                text = None
            except Exception as exc:
                error = classify_backend_error(exc)
                if isinstance(error, ConfigurationError):
                    record.outcome = AttemptOutcome.BACKEND_ERROR
                    raise error
                if isinstance(error, TransientBackendError):
                    record.outcome = AttemptOutcome.TRANSIENT_ERROR
                elif isinstance(error, MalformedOutputError):
                    record.outcome = AttemptOutcome.MALFORMED
                else:
                    record.outcome = AttemptOutcome.BACKEND_ERROR
                logger.warning(f"[Orchestrator] {strategy.strategy_id} attempt {attempt} failed: {error}")
                text = None

            if cancel.cancelled:
                record.outcome = AttemptOutcome.CANCELLED
                return None

            if text is not None:
                result = self.recovery.recover(text, cancel)
                if isinstance(result, ParsedObject):
                    record.outcome = AttemptOutcome.SUCCESS
                    logger.info(
                        f"[Orchestrator] {strategy.strategy_id} succeeded on attempt {attempt} "
                        f"(recovery stage: {result.stage})"
                    )
                    return result.itinerary
                if result.reason == "cancelled":
                    record.outcome = AttemptOutcome.CANCELLED
                    return None
                record.outcome = AttemptOutcome.MALFORMED
                logger.warning(
                    f"[Orchestrator] {strategy.strategy_id} attempt {attempt} unrecoverable: {result.reason}"
                )

            if attempt < self.max_attempts:
                await self._pause(self.backoff_delay(attempt), cancel)

        raise ExhaustionError(f"{strategy.strategy_id} exhausted {self.max_attempts} attempts")

    # -------------------------------------------------------------------------
    # Race
    # -------------------------------------------------------------------------

    async def _race(
        self, prompt: str, context: GenerationContext
    ) -> tuple[Itinerary | None, str | None, list[GenerationAttempt]]:
        cancel = CancellationToken()
        history: list[GenerationAttempt] = []
        tasks = {
            asyncio.create_task(
                self._run_strategy(strategy, prompt, cancel, history),
                name=f"strategy:{strategy.strategy_id}",
            ): strategy
            for strategy in self.strategies
        }

        pending = set(tasks)
        winner: tuple[Itinerary, str] | None = None
        config_error: ConfigurationError | None = None
        try:
            while pending and winner is None and config_error is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    strategy_id = tasks[task].strategy_id
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is None:
                        itinerary = task.result()
                        if itinerary is not None and winner is None:
                            winner = (itinerary, strategy_id)
                    elif isinstance(exc, ConfigurationError):
                        config_error = exc
                    elif isinstance(exc, ExhaustionError):
                        logger.warning(f"[Orchestrator] [{context.request_id}] {exc}")
                    else:
                        logger.error(
                            f"[Orchestrator] [{context.request_id}] {strategy_id} crashed: {exc}",
                            exc_info=exc,
                        )
        finally:
            cancel.cancel("race decided")
            for task in pending:
                self._track(task)

        if config_error is not None:
            raise config_error
        if winner is None:
            return None, None, history
        return winner[0], winner[1], history

    async def generate(
        self,
        prompt: str,
        pool: CandidatePool | None = None,
        context: GenerationContext | None = None,
    ) -> Itinerary:
        """
        Produce a schema-valid itinerary for a fully built prompt.

        Args:
            prompt: Generation prompt
            pool: Ranked candidates, used by the fallback when every strategy fails
            context: Request id and trip length, used for logging

        Returns:
            The first validated itinerary, or the fallback itinerary

        Raises:
            ConfigurationError: The backend cannot be used at all
        """
        context = context or GenerationContext()
        self.metrics.record_request()
        started = time.perf_counter()

        itinerary, strategy_id, history = await self._race(prompt, context)
        elapsed = time.perf_counter() - started

        if itinerary is not None and strategy_id is not None:
            self.metrics.record_success(strategy_id)
            logger.info(
                f"[Orchestrator] [{context.request_id}] {strategy_id} won after "
                f"{len(history)} attempts in {elapsed:.2f}s"
            )
            return itinerary

        self.metrics.record_fallback()
        logger.warning(
            f"[Orchestrator] [{context.request_id}] All strategies failed after "
            f"{len(history)} attempts in {elapsed:.2f}s, using fallback"
        )
        return self.fallback.synthesize(pool)

    async def health_check(self) -> dict[str, Any]:
        """Run a tiny generation and report healthy, degraded or unhealthy."""
        try:
            itinerary, strategy_id, _ = await self._race(
                HEALTH_CHECK_PROMPT, GenerationContext(request_id="health-check")
            )
            status = "healthy" if itinerary is not None and strategy_id else "degraded"
            details: dict[str, Any] = {"strategy": strategy_id}
        except Exception as e:
            logger.error(f"[Orchestrator] Health check failed: {e}")
            status = "unhealthy"
            details = {"error": str(e)}

        details["metrics"] = self.metrics.snapshot()
        return {"status": status, "details": details}
