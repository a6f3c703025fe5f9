"""
In-memory candidate activity corpus with keyword-overlap similarity search.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Protocol

from itinerary_engine.core.schemas import CandidateRecord, normalize_title

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class ActivityCorpus(Protocol):
    async def search(self, queries: list[str], limit: int) -> list[CandidateRecord]: ...

    def lookup(self, title: str) -> CandidateRecord | None: ...

    def all_records(self) -> list[CandidateRecord]: ...


def _tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 2}


class InMemoryActivityCorpus:
    """Read-only corpus backed by a list of records."""

    def __init__(self, records: list[CandidateRecord | dict[str, Any]]) -> None:
        self._records = [
            r if isinstance(r, CandidateRecord) else CandidateRecord.model_validate(r)
            for r in records
        ]
        self._by_title = {normalize_title(r.title): r for r in self._records}

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryActivityCorpus:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("activities", [])
        return cls(data)

    def _document(self, record: CandidateRecord) -> set[str]:
        return _tokens(" ".join([record.title, record.desc, " ".join(record.tags)]))

    async def search(self, queries: list[str], limit: int) -> list[CandidateRecord]:
        """
        Score every record against every query and return the best hits per query.

        Similarity is the share of query tokens found in the record's title,
        description and tags. A record can appear once per query.
        """
        results: list[CandidateRecord] = []
        for query in queries:
            query_tokens = _tokens(query)
            if not query_tokens:
                continue
            scored = []
            for record in self._records:
                overlap = len(query_tokens & self._document(record))
                if overlap:
                    similarity = round(overlap / len(query_tokens), 4)
                    scored.append(record.model_copy(update={"similarity": similarity}))
            scored.sort(key=lambda r: r.similarity, reverse=True)
            results.extend(scored[:limit])
        return results

    def lookup(self, title: str) -> CandidateRecord | None:
        return self._by_title.get(normalize_title(title))

    def all_records(self) -> list[CandidateRecord]:
        return list(self._records)
