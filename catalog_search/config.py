"""Application configuration and constants."""
from __future__ import annotations

import os
from dataclasses import dataclass


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


def _get_flag(name: str, default: str) -> bool:
    return _get_env(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    """Simple settings container with environment variable overrides."""

    es_host: str = _get_env("ES_HOST", "http://localhost:9200")
    products_index: str = _get_env("ES_PRODUCTS_INDEX", "products")
    categories_index: str = _get_env("ES_CATEGORIES_INDEX", "categories")
    brands_index: str = _get_env("ES_BRANDS_INDEX", "brands")
    analytics_index: str = _get_env("ES_ANALYTICS_INDEX", "search_analytics")
    search_queries_index: str = _get_env("ES_SEARCH_QUERIES_INDEX", "search_queries")
    request_timeout: float = float(_get_env("ES_REQUEST_TIMEOUT", "30"))
    ping_timeout: float = float(_get_env("ES_PING_TIMEOUT", "3"))

    # Backoff shared by the startup ping loop and ``ConnectionManager.execute``.
    max_retries: int = int(_get_env("ES_MAX_RETRIES", "3"))
    retry_initial_delay: float = float(_get_env("ES_RETRY_INITIAL_DELAY", "1.0"))
    retry_max_delay: float = float(_get_env("ES_RETRY_MAX_DELAY", "10.0"))
    retry_backoff_factor: float = float(_get_env("ES_RETRY_BACKOFF_FACTOR", "2.0"))
    health_check_interval: float = float(_get_env("HEALTH_CHECK_INTERVAL", "10"))

    redis_host: str = _get_env("REDIS_HOST", "localhost")
    redis_port: int = int(_get_env("REDIS_PORT", "6379"))
    cache_enabled: bool = _get_flag("SEARCH_CACHE_ENABLED", "true")
    cache_ttl_seconds: int = int(_get_env("CACHE_TTL_SECONDS", "300"))
    suggest_cache_ttl_seconds: int = int(_get_env("SUGGEST_CACHE_TTL_SECONDS", "300"))

    analytics_enabled: bool = _get_flag("ANALYTICS_ENABLED", "true")
    analytics_queue_size: int = int(_get_env("ANALYTICS_QUEUE_SIZE", "1000"))

    default_page_size: int = 20
    max_page_size: int = 100
    max_result_window: int = int(_get_env("MAX_RESULT_WINDOW", "10000"))
    track_total_hits: bool = _get_flag("TRACK_TOTAL_HITS", "true")
    search_timeout_seconds: float = float(_get_env("SEARCH_TIMEOUT_SECONDS", "10"))
    log_level: str = _get_env("LOG_LEVEL", "INFO")
    api_host: str = _get_env("API_HOST", "0.0.0.0")
    api_port: int = int(_get_env("API_PORT", "8000"))


settings = Settings()
