# ens_assessment/assessment_config.py

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CATALOG_PATH = str(Path(__file__).resolve().parent / "catalog" / "ens_questions.jsonc")
DEFAULT_DATABASE_URL = "sqlite:///ens_assessment.db"
DEFAULT_LLM_MODEL = "gemini-2.5-flash-lite"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class EngineSettings:
    confidence_threshold: float = 0.7
    confirmation_margin: float = 0.05
    external_call_timeout: float = 10.0
    extraction_retries: int = 3
    retry_backoff_seconds: float = 0.5
    degraded_after_failures: int = 3
    conversation_window: int = 10
    session_ttl_seconds: int = 86400
    locale: str = "es"
    llm_model: str = DEFAULT_LLM_MODEL
    catalog_path: str = DEFAULT_CATALOG_PATH
    database_url: str = DEFAULT_DATABASE_URL
    vertex_project: str = "your-project-id"
    vertex_region: str = "us-central1"

    def __post_init__(self):
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if self.confirmation_margin < 0.0:
            raise ValueError(f"confirmation_margin must be >= 0, got {self.confirmation_margin}")
        if self.extraction_retries < 1:
            raise ValueError("extraction_retries must be >= 1")
        if self.external_call_timeout <= 0:
            raise ValueError("external_call_timeout must be > 0")

    @classmethod
    def from_env(cls, **overrides) -> "EngineSettings":
        settings = cls(
            confidence_threshold=_env_float("ENS_CONFIDENCE_THRESHOLD", 0.7),
            confirmation_margin=_env_float("ENS_CONFIRMATION_MARGIN", 0.05),
            external_call_timeout=_env_float("ENS_EXTERNAL_CALL_TIMEOUT", 10.0),
            extraction_retries=_env_int("ENS_EXTRACTION_RETRIES", 3),
            retry_backoff_seconds=_env_float("ENS_RETRY_BACKOFF_SECONDS", 0.5),
            degraded_after_failures=_env_int("ENS_DEGRADED_AFTER_FAILURES", 3),
            conversation_window=_env_int("ENS_CONVERSATION_WINDOW", 10),
            session_ttl_seconds=_env_int("ENS_SESSION_TTL_SECONDS", 86400),
            locale=os.getenv("ENS_LOCALE", "es"),
            llm_model=os.getenv("ENS_LLM_MODEL", DEFAULT_LLM_MODEL),
            catalog_path=os.getenv("ENS_CATALOG_PATH", DEFAULT_CATALOG_PATH),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            vertex_project=os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id"),
            vertex_region=os.getenv("GOOGLE_CLOUD_REGION", "us-central1"),
        )
        if overrides:
            settings = replace(settings, **overrides)
        return settings
