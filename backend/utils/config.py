"""Pipeline settings read from the environment (see ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from utils.retry import RetryPolicy, exponential_backoff


def _get_env_int(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _get_env_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _get_env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key, "").strip()
    return value or default


@dataclass(frozen=True)
class PipelineSettings:
    llm_model: str = "claude-haiku-4-5-20251001"
    detection_confidence_threshold: float = 0.5
    search_max_results: int = 50
    prefilter_top_k: int = 10
    prefilter_min_score: float = 0.5
    batch_concurrency: int = 5
    batch_max_concurrency: int = 20
    extraction_timeout: float = 30.0
    search_timeout: float = 30.0
    visual_match_timeout: float = 60.0
    image_fetch_timeout: float = 20.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    catalog_api_url: str = "https://api.foodgraph.com"
    catalog_email: Optional[str] = None
    catalog_password: Optional[str] = None
    catalog_token_ttl: int = 23 * 60 * 60

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            llm_model=_get_env_str("LLM_MODEL", cls.llm_model),
            detection_confidence_threshold=_get_env_float(
                "DETECTION_CONFIDENCE_THRESHOLD", cls.detection_confidence_threshold
            ),
            search_max_results=_get_env_int("SEARCH_MAX_RESULTS", cls.search_max_results),
            prefilter_top_k=_get_env_int("PREFILTER_TOP_K", cls.prefilter_top_k),
            prefilter_min_score=_get_env_float("PREFILTER_MIN_SCORE", cls.prefilter_min_score),
            batch_concurrency=_get_env_int("BATCH_CONCURRENCY", cls.batch_concurrency),
            batch_max_concurrency=_get_env_int("BATCH_MAX_CONCURRENCY", cls.batch_max_concurrency),
            extraction_timeout=_get_env_float("EXTRACTION_TIMEOUT", cls.extraction_timeout),
            search_timeout=_get_env_float("SEARCH_TIMEOUT", cls.search_timeout),
            visual_match_timeout=_get_env_float("VISUAL_MATCH_TIMEOUT", cls.visual_match_timeout),
            image_fetch_timeout=_get_env_float("IMAGE_FETCH_TIMEOUT", cls.image_fetch_timeout),
            retry_max_attempts=_get_env_int("RETRY_MAX_ATTEMPTS", cls.retry_max_attempts),
            retry_base_delay=_get_env_float("RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=_get_env_float("RETRY_MAX_DELAY", cls.retry_max_delay),
            catalog_api_url=_get_env_str("CATALOG_API_URL", cls.catalog_api_url),
            catalog_email=_get_env_str("CATALOG_EMAIL"),
            catalog_password=_get_env_str("CATALOG_PASSWORD"),
            catalog_token_ttl=_get_env_int("CATALOG_TOKEN_TTL", cls.catalog_token_ttl),
        )

    def clamp_concurrency(self, requested: Optional[int]) -> int:
        """Clamp a caller-supplied concurrency to ``[1, batch_max_concurrency]``."""
        value = requested if requested is not None else self.batch_concurrency
        try:
            value = int(value)
        except (TypeError, ValueError):
            value = self.batch_concurrency
        return max(1, min(value, self.batch_max_concurrency))

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            backoff=exponential_backoff(base=self.retry_base_delay),
            max_delay=self.retry_max_delay,
        )
