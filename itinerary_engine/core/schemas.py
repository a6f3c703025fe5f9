import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

PERIOD_SLOTS = ("Morning", "Afternoon", "Evening")
PERIOD_LABEL_RE = re.compile(r"^Day\s+(\d+)\s*-\s*(Morning|Afternoon|Evening)$", re.IGNORECASE)

MIN_DESC_LENGTH = 10
DEFAULT_IMAGE = "/images/placeholders/default-itinerary.jpg"
DEFAULT_TIME = "9:00-10:00AM"
DEFAULT_DESC = "Enjoy this activity with optimal timing."
DEFAULT_TITLE = "Activity"
GENERIC_TAG = "general-interest"


def period_label(day: int, slot: str) -> str:
    return f"Day {day} - {slot}"


def normalize_title(title: Any) -> str:
    """Lower-cased, trimmed key used for every title comparison."""
    return title.strip().lower() if isinstance(title, str) else ""


class WeatherCategory(str, Enum):
    THUNDERSTORM = "thunderstorm"
    RAINY = "rainy"
    SNOW = "snow"
    FOGGY = "foggy"
    CLOUDY = "cloudy"
    CLEAR = "clear"
    COLD = "cold"
    DEFAULT = "default"


# =============================================================================
# Itinerary Schemas (outbound contract)
# =============================================================================


class Activity(BaseModel):
    """A single schedulable activity. Immutable once validated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    image: str = Field(..., min_length=1, description="Image URL or local image key")
    title: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1, description="Free-text time window, e.g. '9:00-11:00AM'")
    desc: str = Field(..., min_length=MIN_DESC_LENGTH)
    tags: list[str] = Field(..., min_length=1)

    # Optional enrichment carried over from the candidate corpus
    peak_hours: str | None = Field(None, alias="peakHours")
    relevance_score: float | None = Field(None, alias="relevanceScore")
    traffic_level: str | None = Field(None, alias="trafficLevel")
    crowd_level: str | None = Field(None, alias="crowdLevel")
    traffic_recommendation: str | None = Field(None, alias="trafficRecommendation")

    @property
    def key(self) -> str:
        return normalize_title(self.title)


class Period(BaseModel):
    period: str = Field(..., min_length=1, description="e.g. 'Day 1 - Morning'")
    activities: list[Activity] = Field(default_factory=list)
    reason: str | None = Field(None, description="Why this period is empty")


class Itinerary(BaseModel):
    title: str = Field(..., min_length=1)
    subtitle: str = Field(..., min_length=1)
    items: list[Period] = Field(..., min_length=1)

    def all_activities(self) -> list[Activity]:
        return [activity for item in self.items for activity in item.activities]

    def to_payload(self) -> dict[str, Any]:
        """Serialize using the outbound field names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Candidate Retrieval Schemas
# =============================================================================


class CandidateRecord(BaseModel):
    """Raw record returned by the candidate corpus similarity search."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    similarity: float = Field(
        0.0, validation_alias=AliasChoices("similarity", "similarityScore", "similarity_score")
    )
    tags: list[str] = Field(default_factory=list)
    time: str = Field("", validation_alias=AliasChoices("time", "timeWindow", "time_window"))
    desc: str = Field("", validation_alias=AliasChoices("desc", "description"))
    image: str = ""
    peak_hours: str | None = Field(
        None, validation_alias=AliasChoices("peak_hours", "peakHours")
    )
    traffic_level: str | None = Field(
        None, validation_alias=AliasChoices("traffic_level", "trafficLevel")
    )
    crowd_level: str | None = Field(None, validation_alias=AliasChoices("crowd_level", "crowdLevel"))
    is_currently_peak: bool | None = Field(
        None, validation_alias=AliasChoices("is_currently_peak", "isCurrentlyPeak")
    )


class RankingContext(BaseModel):
    prompt: str = ""
    interests: list[str] = Field(default_factory=list)
    weather: WeatherCategory = WeatherCategory.DEFAULT
    traffic_level: str | None = None
    now: datetime | None = Field(None, description="Local time used for peak-hour checks")
    strict_peak: bool = True
    limit: int = Field(40, ge=1)


# =============================================================================
# Generation Schemas (control flow only, never persisted)
# =============================================================================


class GenerationOptions(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 3072
    timeout: float = 45.0
    response_format: str = "json"
    schema_hint: dict[str, Any] | None = None


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSIENT_ERROR = "transient_error"
    MALFORMED = "malformed"
    BACKEND_ERROR = "backend_error"
    CANCELLED = "cancelled"


class GenerationAttempt(BaseModel):
    strategy_id: str
    attempt: int
    temperature: float
    timeout: float
    outcome: AttemptOutcome | None = None


class GenerationContext(BaseModel):
    request_id: str = "unknown"
    duration_days: int | None = None


# =============================================================================
# Inbound Request Schema
# =============================================================================


class ItineraryRequest(BaseModel):
    """Normalized itinerary generation request."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., min_length=1, max_length=2000)
    weather_category: WeatherCategory = Field(WeatherCategory.DEFAULT, alias="weatherCategory")
    interests: list[str] = Field(default_factory=list, max_length=20)
    duration_days: int | None = Field(None, ge=1, alias="durationDays")
    budget: str | None = Field(None, max_length=50)
    group_size: str | None = Field(None, max_length=50, alias="groupSize")
    traffic_level: str | None = Field(None, max_length=20, alias="trafficLevel")

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Sanitize the prompt by stripping whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("weather_category", mode="before")
    @classmethod
    def normalize_weather(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() or WeatherCategory.DEFAULT.value
        return v

    @field_validator("interests")
    @classmethod
    def validate_interests(cls, v: list[str]) -> list[str]:
        return [item.strip() for item in v if item and item.strip()]
