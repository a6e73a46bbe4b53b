from __future__ import annotations

import logging
from typing import Annotated, Literal, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from influencer_finder.dependencies import (
    get_credential_pool,
    get_keyword_service,
    get_search_cache,
    get_search_orchestrator,
    get_telemetry,
)
from influencer_finder.models.search_contracts import (
    CacheInvalidateResponse,
    CacheStatsResponse,
    ChannelResultModel,
    ChannelSearchResponse,
    SearchActivityModel,
    CredentialListResponse,
    CredentialReplaceRequest,
    CredentialStatusModel,
    CredentialTestResponse,
    ErrorDetail,
    HealthResponse,
    KeywordExpandRequest,
    KeywordExpandResponse,
    SearchRequest,
    VideoResultModel,
    VideoSearchResponse,
)
from influencer_finder.services.candidates import (
    ChannelCandidate,
    SearchMode,
    SearchQuery,
    VideoCandidate,
)
from influencer_finder.services.credential_pool import Credential, CredentialPool
from influencer_finder.services.errors import (
    BadRequestError,
    InvalidCredentialError,
    NoCredentialError,
    PlatformError,
    QuotaExceededError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from influencer_finder.services.keyword_expander import KeywordExpansionService
from influencer_finder.services.result_cache import ResultCache
from influencer_finder.services.search_service import SearchOrchestrator, SearchOutcome
from influencer_finder.telemetry import TelemetryClient

router = APIRouter()

LOGGER = logging.getLogger("influencer_finder.api")

CACHE_STATUS_HEADER = "X-Cache"

OrchestratorDep = Annotated[SearchOrchestrator, Depends(get_search_orchestrator)]
PoolDep = Annotated[CredentialPool, Depends(get_credential_pool)]
CacheDep = Annotated[ResultCache, Depends(get_search_cache)]
KeywordServiceDep = Annotated[KeywordExpansionService, Depends(get_keyword_service)]
TelemetryDep = Annotated[TelemetryClient, Depends(get_telemetry)]

# (http status, error code, retryable)
_ERROR_MAPPING: tuple[tuple[type[PlatformError], int, str, bool], ...] = (
    (NoCredentialError, 503, "NO_CREDENTIAL", False),
    (InvalidCredentialError, 401, "INVALID_CREDENTIAL", False),
    (QuotaExceededError, 429, "QUOTA_EXCEEDED", True),
    (RateLimitedError, 429, "RATE_LIMITED", True),
    (BadRequestError, 400, "BAD_REQUEST", False),
    (UpstreamUnavailableError, 502, "UPSTREAM_UNAVAILABLE", True),
)


def _classify(exc: PlatformError) -> tuple[int, str, bool]:
    for error_type, status_code, code, retryable in _ERROR_MAPPING:
        if isinstance(exc, error_type):
            return status_code, code, retryable
    return 502, "UPSTREAM_ERROR", True


def _error_detail(exc: PlatformError) -> ErrorDetail:
    _, code, retryable = _classify(exc)
    return ErrorDetail(
        code=code,
        message=str(exc),
        retryable=retryable,
        upstream_status=exc.status_code,
    )


def _raise_platform_error(exc: PlatformError) -> NoReturn:
    status_code, code, _ = _classify(exc)
    LOGGER.warning(
        "search request failed code=%s upstream_status=%s error=%s",
        code,
        exc.status_code,
        exc,
    )
    raise HTTPException(status_code=status_code, detail=_error_detail(exc).model_dump()) from exc


def _run_search(
    orchestrator: SearchOrchestrator,
    request: SearchRequest,
    mode: SearchMode,
    response: Response,
) -> SearchOutcome:
    query = SearchQuery(topic=request.topic, filters=request.filters.to_filters(), mode=mode)
    try:
        outcome = orchestrator.search_with_metadata(query, force_refresh=request.force_refresh)
    except PlatformError as exc:
        _raise_platform_error(exc)
    response.headers[CACHE_STATUS_HEADER] = "HIT" if outcome.cache_hit else "MISS"
    return outcome


def _envelope(outcome: SearchOutcome) -> dict[str, object]:
    return {
        "search_id": outcome.search_id,
        "topic": outcome.query.topic,
        "search_keyword": outcome.search_keyword,
        "expanded_keywords": list(outcome.expanded_keywords),
        "total_found": outcome.total_found,
        "cache_hit": outcome.cache_hit,
        "partial": outcome.partial,
        "failed_variants": list(outcome.failed_variants),
    }


@router.post(
    "/search/influencers",
    response_model=ChannelSearchResponse,
    operation_id="search_influencers",
    tags=["search"],
)
def search_influencers(
    request: SearchRequest,
    response: Response,
    orchestrator: OrchestratorDep,
) -> ChannelSearchResponse:
    outcome = _run_search(orchestrator, request, "channels", response)
    return ChannelSearchResponse(
        **_envelope(outcome),
        results=[
            ChannelResultModel.model_validate(candidate.to_dict())
            for candidate in outcome.results
            if isinstance(candidate, ChannelCandidate)
        ],
    )


@router.post(
    "/search/videos",
    response_model=VideoSearchResponse,
    operation_id="search_videos",
    tags=["search"],
)
def search_videos(
    request: SearchRequest,
    response: Response,
    orchestrator: OrchestratorDep,
) -> VideoSearchResponse:
    outcome = _run_search(orchestrator, request, "videos", response)
    return VideoSearchResponse(
        **_envelope(outcome),
        results=[
            VideoResultModel.model_validate(candidate.to_dict())
            for candidate in outcome.results
            if isinstance(candidate, VideoCandidate)
        ],
    )


@router.post(
    "/keywords/expand",
    response_model=KeywordExpandResponse,
    operation_id="expand_keywords",
    tags=["keywords"],
)
def expand_keywords(
    request: KeywordExpandRequest,
    keyword_service: KeywordServiceDep,
) -> KeywordExpandResponse:
    expansion = keyword_service.expand(
        request.topic,
        max_keywords=request.max_keywords,
        language=request.language.lower(),
    )
    return KeywordExpandResponse(
        original_topic=expansion.original_topic,
        expanded_keywords=list(expansion.keywords),
        confidence=expansion.confidence,
        source=expansion.source,
    )


def _credential_list(pool: CredentialPool) -> CredentialListResponse:
    return CredentialListResponse(
        credentials=[
            CredentialStatusModel(
                id=view.id,
                label=view.label,
                masked_secret=view.masked_secret,
                status=view.status,
                quota_used=view.quota_used,
                quota_limit=view.quota_limit,
                last_error=view.last_error,
                last_used_at=view.last_used_at,
                is_current=view.is_current,
            )
            for view in pool.snapshot()
        ]
    )


@router.get(
    "/credentials",
    response_model=CredentialListResponse,
    operation_id="list_credentials",
    tags=["credentials"],
)
def list_credentials(pool: PoolDep) -> CredentialListResponse:
    return _credential_list(pool)


@router.put(
    "/credentials",
    response_model=CredentialListResponse,
    operation_id="replace_credentials",
    tags=["credentials"],
)
def replace_credentials(
    request: CredentialReplaceRequest,
    orchestrator: OrchestratorDep,
    pool: PoolDep,
) -> CredentialListResponse:
    orchestrator.replace_credentials(
        [
            Credential.from_secret(
                item.secret,
                label=item.label or f"key-{index + 1}",
                quota_limit=request.quota_limit,
            )
            for index, item in enumerate(request.credentials)
        ]
    )
    return _credential_list(pool)


@router.post(
    "/credentials/{credential_id}/reset",
    response_model=CredentialListResponse,
    operation_id="reset_credential",
    tags=["credentials"],
)
def reset_credential(
    credential_id: str,
    pool: PoolDep,
    clear_usage: bool = False,
) -> CredentialListResponse:
    if not pool.reset(credential_id, clear_usage=clear_usage):
        raise HTTPException(status_code=404, detail=f"Unknown credential: {credential_id}")
    return _credential_list(pool)


@router.post(
    "/credentials/{credential_id}/test",
    response_model=CredentialTestResponse,
    operation_id="test_credential",
    tags=["credentials"],
)
def check_credential_connectivity(
    credential_id: str,
    orchestrator: OrchestratorDep,
    pool: PoolDep,
) -> CredentialTestResponse:
    check = orchestrator.check_credential(credential_id)
    if check is None:
        raise HTTPException(status_code=404, detail=f"Unknown credential: {credential_id}")
    status = next(
        item for item in _credential_list(pool).credentials if item.id == check.credential_id
    )
    return CredentialTestResponse(
        credential_id=check.credential_id,
        ok=check.ok,
        error=_error_detail(check.error) if check.error is not None else None,
        credential=status,
    )


@router.delete(
    "/cache",
    response_model=CacheInvalidateResponse,
    operation_id="invalidate_cache",
    tags=["cache"],
)
def invalidate_cache(
    orchestrator: OrchestratorDep,
    keyword_service: KeywordServiceDep,
    scope: Literal["all", "topic"] = "all",
    topic: Annotated[str | None, Query(max_length=100)] = None,
) -> CacheInvalidateResponse:
    if scope == "topic" and not (topic and topic.strip()):
        raise HTTPException(status_code=400, detail="topic is required when scope=topic")
    removed = orchestrator.invalidate_cache(scope, topic=topic)
    if scope == "topic" and topic:
        removed += keyword_service.invalidate_topic(topic)
    return CacheInvalidateResponse(scope=scope, removed=removed)


def _cache_stats(cache: ResultCache) -> CacheStatsResponse:
    stats = cache.stats()
    return CacheStatsResponse(
        entries=stats.entries,
        hits=stats.hits,
        misses=stats.misses,
        writes=stats.writes,
        evictions=stats.evictions,
        hit_rate=round(stats.hit_rate, 4),
        ttl_seconds=cache.ttl_seconds,
    )


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    operation_id="cache_stats",
    tags=["cache"],
)
def cache_stats(cache: CacheDep) -> CacheStatsResponse:
    return _cache_stats(cache)


def health_check(pool: PoolDep, cache: CacheDep, telemetry: TelemetryDep) -> HealthResponse:
    active = sum(1 for view in pool.snapshot() if view.status == "active")
    activity = telemetry.activity()
    return HealthResponse(
        status="ok" if active else "degraded",
        active_credentials=active,
        cache=_cache_stats(cache),
        activity=SearchActivityModel(
            searches=activity.searches,
            cache_hits=activity.cache_hits,
            partial_searches=activity.partial_searches,
            credential_rotations=activity.credential_rotations,
            failed_credential_checks=activity.failed_credential_checks,
        ),
    )
