"""
End-to-end itinerary pipeline used by the HTTP layer.

rank pool -> build prompt -> race strategies -> canonicalize -> organize ->
backfill empty days -> spread remaining allowlisted activities -> narrate gaps
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any

from itinerary_engine.core.activity_corpus import ActivityCorpus, InMemoryActivityCorpus
from itinerary_engine.core.activity_ranker import ActivityRanker
from itinerary_engine.core.candidate_pool import Allowlist
from itinerary_engine.core.errors import ConfigurationError, classify_backend_error
from itinerary_engine.core.generation_orchestrator import GenerationBackend, GenerationOrchestrator
from itinerary_engine.core.itinerary_organizer import ItineraryOrganizer
from itinerary_engine.core.itinerary_planner import build_backfill_prompt, build_itinerary_prompt
from itinerary_engine.core.llm_provider import LLMProvider
from itinerary_engine.core.peak_hours import local_now
from itinerary_engine.core.response_recovery import ParsedObject, ResponseRecoveryChain
from itinerary_engine.core.schema_validator import coerce_activity
from itinerary_engine.core.schemas import (
    Activity,
    GenerationContext,
    GenerationOptions,
    Itinerary,
    ItineraryRequest,
    RankingContext,
)
from itinerary_engine.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

BACKFILL_TEMPERATURE = 0.3


class CorpusLookup:
    """Resolves a title to its canonical activity through the corpus exact-title lookup."""

    def __init__(self, corpus: ActivityCorpus) -> None:
        self.corpus = corpus

    def get(self, title: str) -> Activity | None:
        record = self.corpus.lookup(title)
        if record is None:
            return None
        return coerce_activity(record.model_dump())


class ItineraryService:
    def __init__(
        self,
        corpus: ActivityCorpus,
        orchestrator: GenerationOrchestrator,
        ranker: ActivityRanker | None = None,
        organizer: ItineraryOrganizer | None = None,
        backend: GenerationBackend | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.corpus = corpus
        self.orchestrator = orchestrator
        self.ranker = ranker or ActivityRanker(search_limit=self.settings.search_limit)
        self.organizer = organizer or ItineraryOrganizer()
        self.backend = backend or orchestrator.backend
        self.recovery: ResponseRecoveryChain = orchestrator.recovery

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ItineraryService:
        """Build the production service: JSON corpus file plus the configured LLM backend."""
        settings = settings or get_settings()
        if settings.activity_corpus_path:
            corpus = InMemoryActivityCorpus.from_json_file(settings.activity_corpus_path)
        else:
            logger.warning("[Service] ACTIVITY_CORPUS_PATH is not set, starting with an empty corpus")
            corpus = InMemoryActivityCorpus([])

        provider = LLMProvider(settings.aisuite_model)
        orchestrator = GenerationOrchestrator.from_settings(provider, settings)
        return cls(corpus, orchestrator, settings=settings)

    def metrics(self) -> dict[str, Any]:
        return self.orchestrator.metrics.snapshot()

    async def aclose(self) -> None:
        await self.orchestrator.aclose()

    async def plan(self, request: ItineraryRequest, now: datetime | None = None) -> Itinerary:
        """
        Generate an organized itinerary for a request.

        Args:
            request: Normalized itinerary request
            now: Local time for peak-hour checks (defaults to the configured timezone)

        Returns:
            Itinerary with exactly three periods per day and no repeated titles

        Raises:
            ConfigurationError: The generation backend is not usable
        """
        request_id = uuid.uuid4().hex[:8]
        now = now or local_now(self.settings.local_timezone)
        max_days = self.settings.max_duration_days
        if request.duration_days and request.duration_days > max_days:
            logger.warning(
                f"[Service] [{request_id}] Requested {request.duration_days} days, planning the first {max_days}"
            )
            request = request.model_copy(update={"duration_days": max_days})

        context = RankingContext(
            prompt=request.prompt,
            interests=request.interests,
            weather=request.weather_category,
            traffic_level=request.traffic_level,
            now=now,
            limit=self.settings.ranker_limit,
        )
        pool = await self.ranker.search_and_rank(self.corpus, context)
        logger.info(f"[Service] [{request_id}] Ranked pool has {len(pool)} activities")

        prompt = build_itinerary_prompt(request, pool)
        itinerary = await self.orchestrator.generate(
            prompt,
            pool,
            GenerationContext(request_id=request_id, duration_days=request.duration_days),
        )

        if pool:
            itinerary = self.organizer.canonicalize(itinerary, pool, now, drop_unknown=True)
        else:
            # Nothing ranked: keep what was generated, enriched from the corpus where possible
            itinerary = self.organizer.canonicalize(itinerary, CorpusLookup(self.corpus), now)
        days = request.duration_days or self.organizer.infer_duration(itinerary, max_days)

        allowlist = Allowlist.from_pool(pool)
        itinerary = self.organizer.organize(itinerary, days, allowlist)

        if request.duration_days and self.organizer.has_missing_periods(itinerary, days):
            itinerary = await self._backfill(request, itinerary, allowlist, now, request_id)

        itinerary = self.organizer.fill_from_allowlist(itinerary, allowlist)
        itinerary = self.organizer.apply_reasons(itinerary, days)

        total = len(itinerary.all_activities())
        logger.info(f"[Service] [{request_id}] Final itinerary: {len(itinerary.items)} periods, {total} activities")
        return itinerary

    async def _backfill(
        self,
        request: ItineraryRequest,
        itinerary: Itinerary,
        allowlist: Allowlist,
        now: datetime,
        request_id: str,
    ) -> Itinerary:
        """Ask the backend once for the days that have no activity at all."""
        days = request.duration_days or 1
        missing = self.organizer.missing_days(itinerary, days)
        if not missing or not len(allowlist):
            return itinerary

        logger.info(f"[Service] [{request_id}] Backfilling missing days: {missing}")
        prompt = build_backfill_prompt(request, missing, [a.title for a in allowlist.activities()])
        options = GenerationOptions(
            temperature=BACKFILL_TEMPERATURE,
            max_tokens=self.settings.generation_max_tokens,
            timeout=self.settings.generation_timeout_seconds,
        )

        try:
            text = await asyncio.wait_for(self.backend.complete(prompt, options), timeout=options.timeout)
        except Exception as exc:
            error = classify_backend_error(exc)
            if isinstance(error, ConfigurationError):
                raise error
            logger.warning(f"[Service] [{request_id}] Backfill failed, keeping itinerary as is: {error}")
            return itinerary

        result = self.recovery.recover(text)
        if not isinstance(result, ParsedObject):
            logger.warning(f"[Service] [{request_id}] Backfill response unusable: {result.reason}")
            return itinerary

        return self.organizer.merge_backfill(itinerary, result.itinerary, allowlist, now)
