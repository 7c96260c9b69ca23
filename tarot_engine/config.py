"""Environment-driven settings for the reading engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

PACKAGE_DIR = Path(__file__).resolve().parent

OverdrawPolicy = Literal["cap", "fail"]

DEFAULT_PERSONA_DB = str(PACKAGE_DIR / "data" / "persona.sqlite")
DEFAULT_CATALOG = str(PACKAGE_DIR / "data" / "catalog.json")


class Settings(BaseModel):
    redis_url: str = ""
    persona_db_path: str = DEFAULT_PERSONA_DB
    catalog_path: str = DEFAULT_CATALOG

    openai_api_key: Optional[str] = None
    generation_model: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    generation_timeout_s: float = 60.0

    decay_rate: float = Field(0.95, gt=0.0, le=1.0)
    default_weight: float = 0.5
    min_weight: float = 0.1
    max_weight: float = 1.0
    feedback_delta: float = Field(0.1, gt=0.0)

    default_card_count: int = Field(3, ge=1)
    overdraw_policy: OverdrawPolicy = "cap"
    score_jitter: float = Field(0.1, ge=0.0, lt=1.0)

    run_timeout_s: float = Field(120.0, gt=0.0)
    cache_retry_attempts: int = Field(3, ge=1)
    cache_retry_base_delay_s: float = Field(0.1, ge=0.0)

    cron_secret: Optional[str] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        if self.min_weight > self.max_weight:
            raise ValueError("min_weight must not exceed max_weight")
        if not self.min_weight <= self.default_weight <= self.max_weight:
            raise ValueError("default_weight must lie within [min_weight, max_weight]")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file or os.path.join(PACKAGE_DIR, "..", ".env"))

        def _get(name: str, default: str) -> str:
            return os.getenv(name, default)

        api_key = (os.getenv("OPENAI_API_KEY") or "").strip() or None
        return cls(
            redis_url=_get("REDIS_URL", ""),
            persona_db_path=_get("PERSONA_DB_PATH", DEFAULT_PERSONA_DB),
            catalog_path=_get("CATALOG_PATH", DEFAULT_CATALOG),
            openai_api_key=api_key,
            generation_model=_get("TAROT_MODEL", "gpt-4o"),
            embedding_model=_get("EMBEDDING_MODEL", "text-embedding-3-small"),
            generation_timeout_s=float(_get("GENERATION_TIMEOUT_S", "60")),
            decay_rate=float(_get("THEME_DECAY_RATE", "0.95")),
            default_weight=float(_get("THEME_DEFAULT_WEIGHT", "0.5")),
            min_weight=float(_get("THEME_MIN_WEIGHT", "0.1")),
            max_weight=float(_get("THEME_MAX_WEIGHT", "1.0")),
            feedback_delta=float(_get("FEEDBACK_DELTA", "0.1")),
            default_card_count=int(_get("DEFAULT_CARD_COUNT", "3")),
            overdraw_policy=_get("OVERDRAW_POLICY", "cap"),
            score_jitter=float(_get("SCORE_JITTER", "0.1")),
            run_timeout_s=float(_get("RUN_TIMEOUT_S", "120")),
            cache_retry_attempts=int(_get("CACHE_RETRY_ATTEMPTS", "3")),
            cache_retry_base_delay_s=float(_get("CACHE_RETRY_BASE_DELAY_S", "0.1")),
            cron_secret=os.getenv("CRON_SECRET") or None,
        )
