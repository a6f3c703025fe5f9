"""
Weighted scoring and filtering of the candidate activity pool.

score = similarity + interest boost + weather boost +/- peak-hours term - traffic penalty
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from itinerary_engine.core.activity_corpus import ActivityCorpus
from itinerary_engine.core.candidate_pool import CandidatePool
from itinerary_engine.core.itinerary_planner import expand_search_queries, get_weather_tags
from itinerary_engine.core.peak_hours import is_currently_peak, local_now
from itinerary_engine.core.schema_validator import coerce_activity
from itinerary_engine.core.schemas import CandidateRecord, RankingContext, normalize_title

logger = logging.getLogger(__name__)

INTEREST_BOOST_MAX = 0.3
WEATHER_BOOST_MAX = 0.2
OFF_PEAK_BONUS = 0.25
PEAK_PENALTY = 0.5
TRAFFIC_PENALTIES = {"MODERATE": 0.05, "HIGH": 0.15, "SEVERE": 0.3}

BASIC_SEARCH_LIMIT = 20
BASIC_SEARCH_SCORE = 0.5


@dataclass
class ScoredCandidate:
    record: CandidateRecord
    relevance_score: float
    interest_match: bool
    weather_match: bool
    is_currently_peak: bool
    traffic_level: str | None


def _normalize_level(level: str | None) -> str | None:
    return level.strip().upper() if isinstance(level, str) and level.strip() else None


class ActivityRanker:
    """Scores, filters and truncates raw retrieval results into a CandidatePool."""

    def __init__(self, search_limit: int = 30) -> None:
        self.search_limit = search_limit

    @staticmethod
    def dedupe(records: list[CandidateRecord]) -> list[CandidateRecord]:
        """Keep one record per normalized title, the one with the highest similarity."""
        by_title: dict[str, CandidateRecord] = {}
        for record in records:
            key = normalize_title(record.title)
            if not key:
                continue
            if key not in by_title or by_title[key].similarity < record.similarity:
                by_title[key] = record
        return list(by_title.values())

    def is_peak(self, record: CandidateRecord, now: datetime) -> bool:
        if record.is_currently_peak is not None:
            return record.is_currently_peak
        return is_currently_peak(record.peak_hours, now)

    def score(self, record: CandidateRecord, context: RankingContext, now: datetime) -> ScoredCandidate:
        interests = {i for i in context.interests if i != "Random"}
        if "Random" in context.interests:
            interests = set()
        weather_tags = get_weather_tags(context.weather)
        tags = record.tags

        interest_hits = len([t for t in tags if t in interests])
        weather_hits = len([t for t in tags if t in weather_tags])
        interest_match = not interests or interest_hits > 0
        weather_match = not weather_tags or weather_hits > 0
        peak = self.is_peak(record, now)

        relevance = record.similarity
        if interests and interest_hits:
            relevance += min(interest_hits / len(interests), 1.0) * INTEREST_BOOST_MAX
        if weather_tags and weather_hits:
            relevance += min(weather_hits / len(weather_tags), 1.0) * WEATHER_BOOST_MAX
        relevance += -PEAK_PENALTY if peak else OFF_PEAK_BONUS

        traffic_level = _normalize_level(record.traffic_level) or _normalize_level(
            context.traffic_level
        )
        relevance -= TRAFFIC_PENALTIES.get(traffic_level or "", 0.0)

        return ScoredCandidate(
            record=record,
            relevance_score=round(relevance, 6),
            interest_match=interest_match,
            weather_match=weather_match,
            is_currently_peak=peak,
            traffic_level=traffic_level,
        )

    def rank(self, records: list[CandidateRecord], context: RankingContext) -> CandidatePool:
        """
        Dedupe, score, filter and truncate raw candidate records.

        Args:
            records: Raw similarity-search results
            context: Interests, weather, traffic and peak-hour policy

        Returns:
            CandidatePool ordered by relevance (ties broken by similarity)
        """
        now = context.now or local_now()
        scored = [self.score(r, context, now) for r in self.dedupe(records)]

        kept = []
        for candidate in scored:
            if not (candidate.interest_match and candidate.weather_match):
                continue
            if context.strict_peak:
                # Strict policy: crowded places are excluded outright
                if candidate.is_currently_peak or candidate.traffic_level == "SEVERE":
                    continue
            kept.append(candidate)

        kept.sort(key=lambda c: (c.relevance_score, c.record.similarity), reverse=True)
        kept = kept[: context.limit]

        pool = CandidatePool()
        for candidate in kept:
            activity = self._to_activity(candidate.record, candidate.relevance_score, candidate.traffic_level)
            if activity is not None:
                pool.add(activity)

        logger.info(
            f"[Ranker] {len(records)} records -> {len(scored)} unique -> {len(pool)} kept "
            f"(weather={context.weather.value}, strict_peak={context.strict_peak})"
        )
        return pool

    def basic_search(self, records: list[CandidateRecord], context: RankingContext) -> CandidatePool:
        """Degraded substring/keyword match over the full corpus."""
        now = context.now or local_now()
        prompt = context.prompt.strip().lower()
        keywords = [w for w in re.findall(r"[a-z0-9]+", prompt) if len(w) > 3]

        pool = CandidatePool()
        for record in self.dedupe(records):
            if len(pool) >= BASIC_SEARCH_LIMIT:
                break
            haystack = " ".join([record.title, record.desc, " ".join(record.tags)]).lower()
            matched = (prompt and prompt in haystack) or any(k in haystack for k in keywords)
            if not matched:
                continue
            if context.strict_peak and self.is_peak(record, now):
                continue
            activity = self._to_activity(record, BASIC_SEARCH_SCORE, _normalize_level(record.traffic_level))
            if activity is not None:
                pool.add(activity)

        logger.info(f"[Ranker] Basic search matched {len(pool)} activities")
        return pool

    async def search_and_rank(self, corpus: ActivityCorpus, context: RankingContext) -> CandidatePool:
        """
        Retrieve candidates from the corpus and rank them. Never raises.

        Falls back to basic_search over the full corpus if the similarity
        search fails, and to an empty pool if that fails too.
        """
        queries = expand_search_queries(context.prompt, context.interests)
        try:
            records = await corpus.search(queries, self.search_limit)
            return self.rank(records, context)
        except Exception as e:
            logger.warning(f"[Ranker] Similarity search failed, falling back to basic search: {e}")

        try:
            return self.basic_search(corpus.all_records(), context)
        except Exception as e:
            logger.error(f"[Ranker] Basic search failed: {e}", exc_info=True)
            return CandidatePool()

    @staticmethod
    def _to_activity(record: CandidateRecord, relevance: float, traffic_level: str | None):
        return coerce_activity(
            {
                "image": record.image,
                "title": record.title,
                "time": record.time,
                "desc": record.desc,
                "tags": record.tags,
                "peakHours": record.peak_hours,
                "relevanceScore": relevance,
                "trafficLevel": traffic_level,
                "crowdLevel": record.crowd_level,
            }
        )
