from __future__ import annotations

from functools import lru_cache
from typing import cast

from influencer_finder.config import AppSettings, load_settings
from influencer_finder.repositories.cache_repository import SqliteCacheStore
from influencer_finder.repositories.database import Database
from influencer_finder.services.credential_pool import Credential, CredentialPool
from influencer_finder.services.keyword_expander import (
    KeywordExpansionService,
    OpenAIKeywordExpander,
    PromptScenario,
)
from influencer_finder.services.platform_client import YouTubeDataClient
from influencer_finder.services.result_cache import (
    KEYWORD_NAMESPACE,
    SEARCH_NAMESPACE,
    CacheStore,
    InMemoryCacheStore,
    ResultCache,
)
from influencer_finder.services.search_service import SearchOrchestrator
from influencer_finder.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_cache_store() -> CacheStore:
    settings = get_settings()
    if settings.cache_backend == "sqlite":
        database = Database(settings.db_path)
        database.initialize()
        store = SqliteCacheStore(database)
        store.purge_expired()
        return store
    return InMemoryCacheStore()


@lru_cache(maxsize=1)
def get_search_cache() -> ResultCache:
    return ResultCache(
        get_cache_store(),
        ttl_seconds=get_settings().search_cache_ttl_seconds,
        namespace=SEARCH_NAMESPACE,
    )


@lru_cache(maxsize=1)
def get_credential_pool() -> CredentialPool:
    settings = get_settings()
    return CredentialPool(
        [
            Credential.from_secret(
                secret,
                label=f"key-{index + 1}",
                quota_limit=settings.youtube_quota_limit_per_key,
            )
            for index, secret in enumerate(settings.youtube_api_keys)
        ]
    )


@lru_cache(maxsize=1)
def get_keyword_service() -> KeywordExpansionService:
    settings = get_settings()
    expander = None
    if settings.openai_api_key is not None:
        expander = OpenAIKeywordExpander(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            scenario=cast(PromptScenario, settings.keyword_prompt_scenario),
            timeout_seconds=settings.http_timeout_seconds,
        )
    return KeywordExpansionService(
        expander=expander,
        cache=ResultCache(
            get_cache_store(),
            ttl_seconds=settings.keyword_cache_ttl_seconds,
            namespace=KEYWORD_NAMESPACE,
        ),
    )


@lru_cache(maxsize=1)
def get_search_orchestrator() -> SearchOrchestrator:
    settings = get_settings()
    return SearchOrchestrator(
        credential_pool=get_credential_pool(),
        platform_client=YouTubeDataClient(
            api_endpoint=settings.youtube_api_base_url,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        cache=get_search_cache(),
        keyword_service=get_keyword_service(),
        max_workers=settings.max_concurrent_calls,
        recency_days=settings.search_recency_days,
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_search_orchestrator.cache_clear()
    get_keyword_service.cache_clear()
    get_credential_pool.cache_clear()
    get_search_cache.cache_clear()
    get_cache_store.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
