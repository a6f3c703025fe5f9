import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    aisuite_model: str = os.getenv("AISUITE_MODEL", "openai:gpt-4o-mini")

    # Generation backend
    generation_timeout_seconds: float = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "45"))
    generation_max_attempts: int = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
    generation_backoff_base_seconds: float = float(
        os.getenv("GENERATION_BACKOFF_BASE_SECONDS", "1.0")
    )
    generation_backoff_cap_seconds: float = float(
        os.getenv("GENERATION_BACKOFF_CAP_SECONDS", "3.0")
    )
    generation_max_tokens: int = int(os.getenv("GENERATION_MAX_TOKENS", "3072"))

    # Candidate ranking
    ranker_limit: int = int(os.getenv("RANKER_LIMIT", "40"))
    search_limit: int = int(os.getenv("SEARCH_LIMIT", "30"))
    local_timezone: str = os.getenv("LOCAL_TIMEZONE", "Asia/Manila")

    # Longest trip the grid is built for, requested or inferred from the output
    max_duration_days: int = int(os.getenv("MAX_DURATION_DAYS", "14"))

    destination_name: str = os.getenv("DESTINATION_NAME", "Baguio City")
    activity_corpus_path: str = os.getenv("ACTIVITY_CORPUS_PATH", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def get_settings() -> Settings:
    return Settings()
