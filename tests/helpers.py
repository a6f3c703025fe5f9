import asyncio
import json

from itinerary_engine.core.schemas import Activity, CandidateRecord

TIME_WINDOWS = ["8:00-10:00AM", "1:00-3:00PM", "6:00-8:00PM", "Flexible"]


def make_activity(title: str, time: str = "9:00-11:00AM", tags=None, **extra) -> Activity:
    return Activity(
        image=f"/images/{title.lower().replace(' ', '-')}.jpg",
        title=title,
        time=time,
        desc=f"A pleasant visit to {title} with plenty to see.",
        tags=tags or ["Indoor-Friendly"],
        **extra,
    )


def make_records(count: int = 45) -> list[CandidateRecord]:
    """
    Mock candidates cycling through three kinds:
    food (indoor), nature (outdoor) and culture (indoor, no food tag).
    Every fifth record is currently crowded.
    """
    records = []
    for i in range(count):
        kind = i % 3
        if kind == 0:
            title, tags, desc = f"Food Stop {i}", ["Food & Culinary", "Indoor-Friendly"], "Local food and dining stop"
        elif kind == 1:
            title, tags, desc = f"Scenic Park {i}", ["Nature & Scenery", "Outdoor-Friendly"], "Scenic park with nature trails"
        else:
            title, tags, desc = f"Heritage Museum {i}", ["Culture & Arts", "Indoor-Friendly"], "Heritage museum with local art"
        records.append(
            CandidateRecord(
                title=title,
                similarity=round(0.9 - i * 0.01, 4),
                tags=tags,
                time=TIME_WINDOWS[i % len(TIME_WINDOWS)],
                desc=f"{desc} number {i}.",
                image=f"/images/candidate-{i}.jpg",
                is_currently_peak=(i % 5 == 0),
            )
        )
    return records


def itinerary_json(periods: dict[str, list[Activity]], title: str = "Trip", subtitle: str = "Plan") -> str:
    return json.dumps(
        {
            "title": title,
            "subtitle": subtitle,
            "items": [
                {
                    "period": label,
                    "activities": [a.model_dump(by_alias=True, exclude_none=True) for a in acts],
                }
                for label, acts in periods.items()
            ],
        }
    )


VALID_RESPONSE = itinerary_json({"Day 1 - Morning": [make_activity("Burnham Park")]})


class ScriptedBackend:
    """
    Backend double returning (or raising) scripted responses.

    With by_strategy, responses are keyed by the strategy that made the call:
    {"structured": (delay, response), "prompt_engineered": (delay, response)}.
    The last scripted response repeats once the list runs out.
    """

    def __init__(self, responses=None, delay: float = 0.0, by_strategy=None):
        self.responses = list(responses or [""])
        self.delay = delay
        self.by_strategy = by_strategy
        self.calls = []

    async def complete(self, prompt, options):
        self.calls.append((prompt, options))
        if self.by_strategy is not None:
            key = "structured" if options.schema_hint is not None else "prompt_engineered"
            delay, response = self.by_strategy[key]
        else:
            delay = self.delay
            response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if delay:
            await asyncio.sleep(delay)
        if isinstance(response, BaseException):
            raise response
        return response
