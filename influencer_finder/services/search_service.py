from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from threading import Event
from time import perf_counter
from typing import Any, Literal, TypeVar, cast
from uuid import uuid4

from influencer_finder.services.candidates import (
    Candidate,
    ChannelCandidate,
    ChannelSnapshot,
    SearchQuery,
    TopVideo,
    VideoCandidate,
)
from influencer_finder.services.credential_pool import (
    Credential,
    CredentialPool,
    CredentialStatusView,
)
from influencer_finder.services.errors import (
    ROTATABLE_ERRORS,
    NoCredentialError,
    PlatformError,
    SearchCancelledError,
    UpstreamUnavailableError,
)
from influencer_finder.services.keyword_expander import KeywordExpansionService
from influencer_finder.services.platform_client import (
    LIST_QUOTA_UNITS,
    SEARCH_QUOTA_UNITS,
    ChannelRecord,
    PlatformClient,
    SearchHit,
    VideoRecord,
)
from influencer_finder.services.relevance import (
    CHANNEL_SCORE_FLOOR,
    CORROBORATION_BONUS,
    VIDEO_RELEVANCE_FLOOR,
    clamp_combined_score,
    prioritize_keywords,
    rank_channels,
    rank_videos,
    score_channel,
    score_video,
    select_top_videos,
)
from influencer_finder.services.result_cache import ResultCache
from influencer_finder.telemetry import TelemetryClient

QUERY_VARIANT_SUFFIXES: tuple[str, ...] = ("", "review", "unboxing", "test", "hands on")
PER_CALL_RESULT_CAP = 15
CHANNEL_VIDEO_SAMPLE_SIZE = 20
MIN_CHANNEL_SUBSCRIBERS = 100
DEFAULT_MAX_WORKERS = 4
DEFAULT_RECENCY_DAYS = 365
CONNECTIVITY_CHECK_QUERY = "test"

LOGGER = logging.getLogger("influencer_finder.search")

_T = TypeVar("_T")


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SearchOutcome:
    search_id: str
    query: SearchQuery
    results: list[Candidate]
    expanded_keywords: tuple[str, ...]
    search_keyword: str | None
    cache_hit: bool = False
    partial: bool = False
    failed_variants: tuple[str, ...] = ()

    @property
    def total_found(self) -> int:
        return len(self.results)


@dataclass(frozen=True)
class CredentialCheck:
    credential_id: str
    error: PlatformError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _VariantReport:
    hits_by_variant: dict[str, list[SearchHit]] = field(default_factory=dict)
    failed_variants: list[str] = field(default_factory=list)
    last_error: PlatformError | None = None


def build_query_variants(keyword: str) -> list[str]:
    base = " ".join(keyword.split())
    return [f"{base} {suffix}".strip() for suffix in QUERY_VARIANT_SUFFIXES]


class SearchOrchestrator:
    """Turns one topic into ranked, deduplicated channel or video candidates.

    Variant searches fan out on a bounded thread pool; only the calling thread
    merges their results. Every upstream call goes through the credential pool
    and is retried once on a fresh credential when the current one is spent or
    rejected.
    """

    def __init__(
        self,
        *,
        credential_pool: CredentialPool,
        platform_client: PlatformClient,
        cache: ResultCache,
        keyword_service: KeywordExpansionService,
        max_workers: int = DEFAULT_MAX_WORKERS,
        recency_days: int = DEFAULT_RECENCY_DAYS,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._pool = credential_pool
        self._client = platform_client
        self._cache = cache
        self._keyword_service = keyword_service
        self._max_workers = max_workers
        self._recency_days = recency_days
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._clock = clock

    def search(
        self,
        query: SearchQuery,
        *,
        force_refresh: bool = False,
        cancel_event: Event | None = None,
    ) -> list[Candidate]:
        return self.search_with_metadata(
            query,
            force_refresh=force_refresh,
            cancel_event=cancel_event,
        ).results

    def search_with_metadata(
        self,
        query: SearchQuery,
        *,
        force_refresh: bool = False,
        cancel_event: Event | None = None,
    ) -> SearchOutcome:
        search_id = f"search_{uuid4().hex}"
        started_at = perf_counter()
        start_credential = self._pool.current()
        cache_key = self._cache.search_key(
            query,
            credential_id=start_credential.id,
            generation=self._pool.generation,
        )

        if force_refresh:
            self._cache.invalidate_topic(query.topic)
        else:
            cached = self._cache.get(cache_key)
            if isinstance(cached, dict):
                outcome = _outcome_from_payload(
                    cast(dict[str, Any], cached),
                    search_id=search_id,
                    query=query,
                )
                LOGGER.info(
                    "search cache hit mode=%s topic=%s results=%s",
                    query.mode,
                    query.topic,
                    outcome.total_found,
                )
                self._telemetry.emit(
                    "search.cache_hit",
                    search_id=search_id,
                    mode=query.mode,
                    result_count=outcome.total_found,
                )
                return outcome

        self._telemetry.emit("search.start", search_id=search_id, mode=query.mode)
        expansion = self._keyword_service.expand(query.topic)
        keywords = prioritize_keywords(expansion.keywords, query.topic)
        if not keywords:
            keywords = [query.normalized_topic]
        search_keyword = keywords[0]
        variants = build_query_variants(search_keyword)
        LOGGER.info(
            "search started id=%s mode=%s topic=%s keyword=%s variants=%s source=%s",
            search_id,
            query.mode,
            query.topic,
            search_keyword,
            len(variants),
            expansion.source,
        )

        per_call_cap = PER_CALL_RESULT_CAP
        if query.mode == "videos":
            per_call_cap = min(PER_CALL_RESULT_CAP, query.filters.max_results)
        report = self._run_variants(query, variants, per_call_cap, cancel_event)

        if not report.hits_by_variant:
            raise self._failure_error(
                report.last_error,
                message=f"All {len(variants)} search variants failed: {report.last_error}",
            )

        partial = bool(report.failed_variants)
        if query.mode == "channels":
            results, enrichment_partial = self._assemble_channels(
                query, search_keyword, report, cancel_event
            )
        else:
            results, enrichment_partial = self._assemble_videos(
                query, search_keyword, report, cancel_event
            )
        partial = partial or enrichment_partial
        _check_cancelled(cancel_event)

        outcome = SearchOutcome(
            search_id=search_id,
            query=query,
            results=results,
            expanded_keywords=tuple(keywords),
            search_keyword=search_keyword,
            cache_hit=False,
            partial=partial,
            failed_variants=tuple(report.failed_variants),
        )
        if not partial:
            # Rotation may have moved the pool; store under the credential serving next lookups.
            store_key = self._cache_key_for_current(query, fallback=start_credential)
            self._cache.set(store_key, _outcome_to_payload(outcome))

        duration_ms = int((perf_counter() - started_at) * 1000)
        LOGGER.info(
            "search finished id=%s mode=%s results=%s partial=%s failed_variants=%s duration_ms=%s",
            search_id,
            query.mode,
            outcome.total_found,
            partial,
            len(report.failed_variants),
            duration_ms,
        )
        self._telemetry.emit(
            "search.finish",
            search_id=search_id,
            mode=query.mode,
            result_count=outcome.total_found,
            partial=partial,
            duration_ms=duration_ms,
        )
        return outcome

    def current_credential_status(self) -> list[CredentialStatusView]:
        return self._pool.snapshot()

    def check_credential(self, credential_id: str) -> CredentialCheck | None:
        """Run a one-result search with a single credential and record how it went."""
        credential = self._pool.get(credential_id)
        if credential is None:
            return None
        try:
            self._client.search(
                api_key=credential.secret,
                query=CONNECTIVITY_CHECK_QUERY,
                region="",
                max_results=1,
            )
        except PlatformError as exc:
            self._pool.record_failure(credential.id, exc)
            LOGGER.warning(
                "credential check failed credential=%s error_type=%s status=%s",
                credential.label,
                type(exc).__name__,
                exc.status_code,
            )
            self._telemetry.emit(
                "credential.checked",
                ok=False,
                error_type=type(exc).__name__,
            )
            return CredentialCheck(credential_id=credential.id, error=exc)
        self._pool.record_usage(credential.id, SEARCH_QUOTA_UNITS)
        LOGGER.info("credential check passed credential=%s", credential.label)
        self._telemetry.emit("credential.checked", ok=True)
        return CredentialCheck(credential_id=credential.id)

    def replace_credentials(self, credentials: Sequence[Credential]) -> None:
        self._pool.replace(credentials)
        removed = self._cache.invalidate_all()
        LOGGER.info(
            "credentials replaced count=%s cache_removed=%s",
            len(credentials),
            removed,
        )

    def invalidate_cache(
        self,
        scope: Literal["all", "topic"] = "all",
        *,
        topic: str | None = None,
    ) -> int:
        if scope == "topic":
            if not topic:
                raise ValueError("topic is required when invalidating a single topic")
            return self._cache.invalidate_topic(topic)
        return self._cache.invalidate_all()

    def _run_variants(
        self,
        query: SearchQuery,
        variants: Sequence[str],
        per_call_cap: int,
        cancel_event: Event | None,
    ) -> _VariantReport:
        report = _VariantReport()
        published_after = self._clock() - timedelta(days=self._recency_days)

        def _search_variant(variant: str) -> list[SearchHit]:
            return self._call_with_rotation(
                lambda api_key: self._client.search(
                    api_key=api_key,
                    query=variant,
                    region=query.filters.region,
                    max_results=per_call_cap,
                    published_after=published_after,
                ),
                units=SEARCH_QUOTA_UNITS,
                operation=f"search:{variant}",
                cancel_event=cancel_event,
            )

        results_by_variant: dict[str, list[SearchHit]] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(variants)),
            thread_name_prefix="search-variant",
        )
        cancelled = False
        try:
            futures: dict[Future[list[SearchHit]], str] = {
                executor.submit(_search_variant, variant): variant for variant in variants
            }
            for future in as_completed(futures):
                variant = futures[future]
                try:
                    results_by_variant[variant] = future.result()
                except SearchCancelledError:
                    cancelled = True
                    raise
                except PlatformError as exc:
                    report.failed_variants.append(variant)
                    report.last_error = exc
                    LOGGER.warning(
                        "search variant failed variant=%s error_type=%s status=%s error=%s",
                        variant,
                        type(exc).__name__,
                        exc.status_code,
                        exc,
                    )
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    _check_cancelled(cancel_event)
        finally:
            # A cancelled search returns without waiting on calls already in flight.
            executor.shutdown(wait=not cancelled, cancel_futures=cancelled)
            if cancelled:
                LOGGER.info("search cancelled topic=%s", query.topic)

        # Merge in submission order so ties resolve deterministically.
        for variant in variants:
            if variant in results_by_variant:
                report.hits_by_variant[variant] = results_by_variant[variant]
        return report

    def _assemble_channels(
        self,
        query: SearchQuery,
        keyword: str,
        report: _VariantReport,
        cancel_event: Event | None,
    ) -> tuple[list[Candidate], bool]:
        variant_hits = _count_variant_hits(
            report.hits_by_variant, key=lambda hit: hit.channel_id
        )
        if not variant_hits:
            return [], False

        partial = False
        try:
            records = self._call_with_rotation(
                lambda api_key: self._client.list_channels(
                    api_key=api_key,
                    channel_ids=list(variant_hits),
                ),
                units=LIST_QUOTA_UNITS,
                operation="channels.list",
                cancel_event=cancel_event,
            )
        except PlatformError as exc:
            raise self._failure_error(exc, message=f"Channel lookup failed: {exc}") from exc

        eligible = [
            record
            for record in records
            if record.channel_id in variant_hits
            and record.subscriber_count >= max(MIN_CHANNEL_SUBSCRIBERS, query.filters.min_subscribers)
        ]

        top_videos_by_channel: dict[str, list[TopVideo]] = {}
        if eligible:
            executor = ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(eligible)),
                thread_name_prefix="channel-enrich",
            )
            cancelled = False
            try:
                futures = {
                    executor.submit(
                        self._top_videos_for_channel,
                        record.channel_id,
                        keyword,
                        cancel_event,
                    ): record.channel_id
                    for record in eligible
                }
                for future in as_completed(futures):
                    channel_id = futures[future]
                    try:
                        top_videos_by_channel[channel_id] = future.result()
                    except SearchCancelledError:
                        cancelled = True
                        raise
                    except PlatformError as exc:
                        partial = True
                        top_videos_by_channel[channel_id] = []
                        LOGGER.warning(
                            "channel enrichment failed channel=%s error_type=%s",
                            channel_id,
                            type(exc).__name__,
                        )
            finally:
                executor.shutdown(wait=not cancelled, cancel_futures=cancelled)

        merged: dict[str, ChannelCandidate] = {}
        for record in eligible:
            top_videos = top_videos_by_channel.get(record.channel_id, [])
            merged[record.channel_id] = _channel_candidate(
                record,
                top_videos=top_videos,
                keyword=keyword,
                topic=query.topic,
                variant_hits=variant_hits[record.channel_id],
            )

        filtered = [
            candidate
            for candidate in merged.values()
            if _channel_passes_filters(candidate, query)
        ]
        ranked = rank_channels(filtered)[: query.filters.max_results]
        return list(ranked), partial

    def _assemble_videos(
        self,
        query: SearchQuery,
        keyword: str,
        report: _VariantReport,
        cancel_event: Event | None,
    ) -> tuple[list[Candidate], bool]:
        variant_hits = _count_variant_hits(
            report.hits_by_variant,
            key=lambda hit: hit.video_id,
        )
        if not variant_hits:
            return [], False

        try:
            videos = self._call_with_rotation(
                lambda api_key: self._client.list_videos(
                    api_key=api_key,
                    video_ids=list(variant_hits),
                ),
                units=LIST_QUOTA_UNITS,
                operation="videos.list",
                cancel_event=cancel_event,
            )
        except PlatformError as exc:
            raise self._failure_error(exc, message=f"Video lookup failed: {exc}") from exc

        partial = False
        channels: list[ChannelRecord] = []
        channel_ids = list(dict.fromkeys(video.channel_id for video in videos))
        if channel_ids:
            try:
                channels = self._call_with_rotation(
                    lambda api_key: self._client.list_channels(
                        api_key=api_key,
                        channel_ids=channel_ids,
                    ),
                    units=LIST_QUOTA_UNITS,
                    operation="channels.list",
                    cancel_event=cancel_event,
                )
            except PlatformError as exc:
                partial = True
                LOGGER.warning(
                    "video channel lookup failed channels=%s error_type=%s",
                    len(channel_ids),
                    type(exc).__name__,
                )

        channels_by_id = {record.channel_id: record for record in channels}
        merged: dict[str, VideoCandidate] = {}
        for video in videos:
            if video.video_id not in variant_hits or video.video_id in merged:
                continue
            relevance = score_video(video.title, keyword)
            if relevance <= VIDEO_RELEVANCE_FLOOR:
                continue
            merged[video.video_id] = _video_candidate(
                video,
                channel=channels_by_id.get(video.channel_id),
                relevance=relevance,
                variant_hits=variant_hits[video.video_id],
            )

        # Subscriber counts are unknown when the channel lookup failed; only views can filter then.
        filtered = [
            candidate
            for candidate in merged.values()
            if candidate.view_count >= query.filters.min_views
            and (
                candidate.channel.channel_id not in channels_by_id
                or candidate.channel.subscriber_count >= query.filters.min_subscribers
            )
        ]
        ranked = rank_videos(filtered)[: query.filters.max_results]
        return list(ranked), partial

    def _top_videos_for_channel(
        self,
        channel_id: str,
        keyword: str,
        cancel_event: Event | None,
    ) -> list[TopVideo]:
        hits = self._call_with_rotation(
            lambda api_key: self._client.search(
                api_key=api_key,
                query=keyword,
                region="",
                max_results=CHANNEL_VIDEO_SAMPLE_SIZE,
                channel_id=channel_id,
            ),
            units=SEARCH_QUOTA_UNITS,
            operation=f"channel_videos:{channel_id}",
            cancel_event=cancel_event,
        )
        video_ids = [hit.video_id for hit in hits if hit.video_id]
        if not video_ids:
            return []
        videos = self._call_with_rotation(
            lambda api_key: self._client.list_videos(api_key=api_key, video_ids=video_ids),
            units=LIST_QUOTA_UNITS,
            operation=f"channel_video_stats:{channel_id}",
            cancel_event=cancel_event,
        )
        return select_top_videos(
            [
                TopVideo(
                    video_id=video.video_id,
                    title=video.title,
                    view_count=video.view_count,
                    published_at=video.published_at,
                    thumbnail_url=video.thumbnail_url,
                    relevance=score_video(video.title, keyword),
                )
                for video in videos
            ]
        )

    def _call_with_rotation(
        self,
        call: Callable[[str], _T],
        *,
        units: int,
        operation: str,
        cancel_event: Event | None,
    ) -> _T:
        attempts = 0
        while True:
            _check_cancelled(cancel_event)
            credential = self._pool.current()
            try:
                result = call(credential.secret)
            except ROTATABLE_ERRORS as exc:
                attempts += 1
                self._pool.record_failure(credential.id, exc)
                rotated = self._pool.rotate(from_id=credential.id)
                LOGGER.warning(
                    "credential failed operation=%s credential=%s error_type=%s rotated=%s",
                    operation,
                    credential.label,
                    type(exc).__name__,
                    rotated,
                )
                self._telemetry.emit(
                    "credential.rotated",
                    operation=operation.split(":", 1)[0],
                    error_type=type(exc).__name__,
                    rotated=rotated,
                )
                if not rotated or attempts > 1:
                    raise
                continue
            self._pool.record_usage(credential.id, units)
            return result

    def _failure_error(self, last_error: PlatformError | None, *, message: str) -> PlatformError:
        status_code = last_error.status_code if last_error is not None else None
        reason = last_error.reason if last_error is not None else None
        if not self._pool.has_active():
            return NoCredentialError(
                "All API credentials are exhausted or invalid.",
                status_code=status_code,
                reason=reason,
            )
        return UpstreamUnavailableError(message, status_code=status_code, reason=reason)

    def _cache_key_for_current(self, query: SearchQuery, *, fallback: Credential) -> str:
        try:
            credential = self._pool.current()
        except NoCredentialError:
            credential = fallback
        return self._cache.search_key(
            query,
            credential_id=credential.id,
            generation=self._pool.generation,
        )


def _check_cancelled(cancel_event: Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SearchCancelledError("Search was cancelled.")


def _count_variant_hits(
    hits_by_variant: dict[str, list[SearchHit]],
    *,
    key: Callable[[SearchHit], str | None],
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for hits in hits_by_variant.values():
        for value in dict.fromkeys(key(hit) for hit in hits):
            if value:
                counts[value] = counts.get(value, 0) + 1
    return counts


def _channel_candidate(
    record: ChannelRecord,
    *,
    top_videos: list[TopVideo],
    keyword: str,
    topic: str,
    variant_hits: int,
) -> ChannelCandidate:
    score = score_channel(
        title=record.title,
        description=record.description,
        subscriber_count=record.subscriber_count,
        video_titles=[video.title for video in top_videos],
        keyword=keyword,
        topic=topic,
    )
    return ChannelCandidate(
        channel_id=record.channel_id,
        title=record.title,
        description=record.description,
        thumbnail_url=record.thumbnail_url,
        subscriber_count=record.subscriber_count,
        total_view_count=record.view_count,
        video_count=record.video_count,
        country=record.country,
        top_videos=top_videos,
        relevance_score=clamp_combined_score(score + CORROBORATION_BONUS * (variant_hits - 1)),
    )


def _video_candidate(
    video: VideoRecord,
    *,
    channel: ChannelRecord | None,
    relevance: float,
    variant_hits: int,
) -> VideoCandidate:
    snapshot = ChannelSnapshot(
        channel_id=video.channel_id,
        title=channel.title if channel is not None else video.channel_title,
        subscriber_count=channel.subscriber_count if channel is not None else 0,
        thumbnail_url=channel.thumbnail_url if channel is not None else None,
        country=channel.country if channel is not None else None,
    )
    return VideoCandidate(
        video_id=video.video_id,
        title=video.title,
        description=video.description,
        published_at=video.published_at,
        view_count=video.view_count,
        like_count=video.like_count,
        comment_count=video.comment_count,
        duration=video.duration,
        thumbnail_url=video.thumbnail_url,
        channel=snapshot,
        relevance_score=clamp_combined_score(
            relevance * 100 + CORROBORATION_BONUS * (variant_hits - 1)
        ),
    )


def _channel_passes_filters(candidate: ChannelCandidate, query: SearchQuery) -> bool:
    if candidate.subscriber_count < query.filters.min_subscribers:
        return False
    if candidate.top_videos and not any(
        video.view_count >= query.filters.min_views for video in candidate.top_videos
    ):
        return False
    return candidate.relevance_score >= CHANNEL_SCORE_FLOOR


def _outcome_to_payload(outcome: SearchOutcome) -> dict[str, Any]:
    return {
        "mode": outcome.query.mode,
        "results": [candidate.to_dict() for candidate in outcome.results],
        "expanded_keywords": list(outcome.expanded_keywords),
        "search_keyword": outcome.search_keyword,
    }


def _outcome_from_payload(
    payload: dict[str, Any],
    *,
    search_id: str,
    query: SearchQuery,
) -> SearchOutcome:
    raw_results = payload.get("results")
    results: list[Candidate] = []
    for raw in raw_results if isinstance(raw_results, list) else []:
        if query.mode == "videos":
            results.append(VideoCandidate.from_dict(raw))
        else:
            results.append(ChannelCandidate.from_dict(raw))
    keywords = payload.get("expanded_keywords")
    search_keyword = payload.get("search_keyword")
    return SearchOutcome(
        search_id=search_id,
        query=query,
        results=results,
        expanded_keywords=tuple(str(item) for item in keywords) if isinstance(keywords, list) else (),
        search_keyword=search_keyword if isinstance(search_keyword, str) else None,
        cache_hit=True,
    )
