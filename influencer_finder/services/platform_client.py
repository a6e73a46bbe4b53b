from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Protocol, TypeVar, cast

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from influencer_finder.services.errors import (
    BadRequestError,
    InvalidCredentialError,
    PlatformError,
    QuotaExceededError,
    RateLimitedError,
    UpstreamUnavailableError,
)

SEARCH_QUOTA_UNITS = 100
LIST_QUOTA_UNITS = 1
MAX_IDS_PER_CALL = 50
MAX_SEARCH_RESULTS_PER_CALL = 50

LOGGER = logging.getLogger("influencer_finder.youtube")

_ModelT = TypeVar("_ModelT", bound=BaseModel)

_QUOTA_REASONS: frozenset[str] = frozenset({"quotaexceeded", "dailylimitexceeded"})
_RATE_LIMIT_REASONS: frozenset[str] = frozenset(
    {"ratelimitexceeded", "userratelimitexceeded"}
)
_INVALID_KEY_REASONS: frozenset[str] = frozenset(
    {"keyinvalid", "keyexpired", "badrequest.keyinvalid", "iplrefererblocked"}
)


@dataclass(frozen=True)
class SearchHit:
    video_id: str | None
    channel_id: str
    title: str
    description: str
    channel_title: str
    published_at: str | None
    thumbnail_url: str | None


@dataclass(frozen=True)
class ChannelRecord:
    channel_id: str
    title: str
    description: str
    country: str | None
    thumbnail_url: str | None
    subscriber_count: int
    view_count: int
    video_count: int


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    channel_id: str
    channel_title: str
    title: str
    description: str
    published_at: str | None
    thumbnail_url: str | None
    view_count: int
    like_count: int
    comment_count: int
    duration: str | None


class PlatformClient(Protocol):
    def search(
        self,
        *,
        api_key: str,
        query: str,
        region: str,
        max_results: int,
        published_after: datetime | None = None,
        channel_id: str | None = None,
    ) -> list[SearchHit]:
        ...

    def list_channels(self, *, api_key: str, channel_ids: Sequence[str]) -> list[ChannelRecord]:
        ...

    def list_videos(self, *, api_key: str, video_ids: Sequence[str]) -> list[VideoRecord]:
        ...


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _Thumbnail(_UpstreamModel):
    url: str | None = None


class _Snippet(_UpstreamModel):
    title: str = ""
    description: str = ""
    channel_id: str | None = Field(default=None, alias="channelId")
    channel_title: str = Field(default="", alias="channelTitle")
    published_at: str | None = Field(default=None, alias="publishedAt")
    country: str | None = None
    thumbnails: dict[str, _Thumbnail] = Field(default_factory=dict)

    @field_validator("title", "description", "channel_title", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("thumbnails", mode="before")
    @classmethod
    def _none_to_no_thumbnails(cls, value: Any) -> Any:
        return {} if value is None else value

    def best_thumbnail(self) -> str | None:
        for size in ("medium", "high", "default"):
            thumbnail = self.thumbnails.get(size)
            if thumbnail is not None and thumbnail.url:
                return thumbnail.url
        return None


class _Statistics(_UpstreamModel):
    subscriber_count: int = Field(default=0, alias="subscriberCount")
    view_count: int = Field(default=0, alias="viewCount")
    video_count: int = Field(default=0, alias="videoCount")
    like_count: int = Field(default=0, alias="likeCount")
    comment_count: int = Field(default=0, alias="commentCount")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        coerced = _coerce_int(value)
        return max(0, coerced) if coerced is not None else 0


class _ContentDetails(_UpstreamModel):
    duration: str | None = None


class _SearchItemId(_UpstreamModel):
    kind: str | None = None
    video_id: str | None = Field(default=None, alias="videoId")
    channel_id: str | None = Field(default=None, alias="channelId")


class _SearchItem(_UpstreamModel):
    id: _SearchItemId
    snippet: _Snippet


class _ChannelItem(_UpstreamModel):
    id: str
    snippet: _Snippet
    statistics: _Statistics = Field(default_factory=_Statistics)


class _VideoItem(_UpstreamModel):
    id: str
    snippet: _Snippet
    statistics: _Statistics = Field(default_factory=_Statistics)
    content_details: _ContentDetails = Field(default_factory=_ContentDetails, alias="contentDetails")


class YouTubeDataClient:
    """Stateless YouTube Data API v3 wrapper; the caller supplies the API key per call.

    One discovery resource is built per API key and reused. Each request runs on
    its own HTTP connection because httplib2 connections are not thread-safe.
    """

    def __init__(
        self,
        *,
        api_endpoint: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._api_endpoint = api_endpoint
        self._timeout_seconds = timeout_seconds
        self._services: dict[str, Any] = {}
        self._lock = Lock()

    def search(
        self,
        *,
        api_key: str,
        query: str,
        region: str,
        max_results: int,
        published_after: datetime | None = None,
        channel_id: str | None = None,
    ) -> list[SearchHit]:
        params: dict[str, object] = {
            "part": "snippet",
            "type": "video",
            "order": "relevance",
            "maxResults": max(1, min(max_results, MAX_SEARCH_RESULTS_PER_CALL)),
        }
        if query:
            params["q"] = query
        if region:
            params["regionCode"] = region.upper()
        if channel_id is not None:
            params["channelId"] = channel_id
        if published_after is not None:
            params["publishedAfter"] = published_after.strftime("%Y-%m-%dT%H:%M:%SZ")

        service = self._service(api_key)
        payload = self._execute(service.search().list(**params), endpoint="search")
        hits: list[SearchHit] = []
        for raw_item in _as_list(payload.get("items")):
            item = _validate_item(_SearchItem, raw_item, endpoint="search")
            if item is None:
                continue
            resolved_channel_id = item.snippet.channel_id or item.id.channel_id
            if not resolved_channel_id:
                continue
            hits.append(
                SearchHit(
                    video_id=item.id.video_id,
                    channel_id=resolved_channel_id,
                    title=item.snippet.title,
                    description=item.snippet.description,
                    channel_title=item.snippet.channel_title,
                    published_at=item.snippet.published_at,
                    thumbnail_url=item.snippet.best_thumbnail(),
                )
            )
        return hits

    def list_channels(self, *, api_key: str, channel_ids: Sequence[str]) -> list[ChannelRecord]:
        records: list[ChannelRecord] = []
        for batch in _batched(channel_ids, MAX_IDS_PER_CALL):
            service = self._service(api_key)
            payload = self._execute(
                service.channels().list(part="snippet,statistics", id=",".join(batch)),
                endpoint="channels",
            )
            for raw_item in _as_list(payload.get("items")):
                item = _validate_item(_ChannelItem, raw_item, endpoint="channels")
                if item is None:
                    continue
                records.append(
                    ChannelRecord(
                        channel_id=item.id,
                        title=item.snippet.title or "Unknown Channel",
                        description=item.snippet.description,
                        country=item.snippet.country,
                        thumbnail_url=item.snippet.best_thumbnail(),
                        subscriber_count=item.statistics.subscriber_count,
                        view_count=item.statistics.view_count,
                        video_count=item.statistics.video_count,
                    )
                )
        return records

    def list_videos(self, *, api_key: str, video_ids: Sequence[str]) -> list[VideoRecord]:
        records: list[VideoRecord] = []
        for batch in _batched(video_ids, MAX_IDS_PER_CALL):
            service = self._service(api_key)
            payload = self._execute(
                service.videos().list(
                    part="snippet,statistics,contentDetails",
                    id=",".join(batch),
                ),
                endpoint="videos",
            )
            for raw_item in _as_list(payload.get("items")):
                item = _validate_item(_VideoItem, raw_item, endpoint="videos")
                if item is None or not item.snippet.channel_id:
                    continue
                records.append(
                    VideoRecord(
                        video_id=item.id,
                        channel_id=item.snippet.channel_id,
                        channel_title=item.snippet.channel_title,
                        title=item.snippet.title or "Unknown Title",
                        description=item.snippet.description,
                        published_at=item.snippet.published_at,
                        thumbnail_url=item.snippet.best_thumbnail(),
                        view_count=item.statistics.view_count,
                        like_count=item.statistics.like_count,
                        comment_count=item.statistics.comment_count,
                        duration=item.content_details.duration,
                    )
                )
        return records

    def _service(self, api_key: str) -> Any:
        with self._lock:
            service = self._services.get(api_key)
            if service is None:
                service = build_youtube_service(api_key, api_endpoint=self._api_endpoint)
                self._services[api_key] = service
            return service

    def _execute(self, request: Any, *, endpoint: str) -> dict[str, Any]:
        try:
            response = request.execute(
                http=httplib2.Http(timeout=self._timeout_seconds),
                num_retries=0,
            )
        except HttpError as exc:
            error = classify_http_error(exc)
            LOGGER.warning(
                "youtube request failed endpoint=%s status=%s reason=%s error_type=%s",
                endpoint,
                error.status_code,
                error.reason,
                type(error).__name__,
            )
            raise error from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            LOGGER.warning(
                "youtube request unreachable endpoint=%s error=%s",
                endpoint,
                exc,
            )
            raise UpstreamUnavailableError(f"YouTube request failed: {exc}") from exc
        return _as_dict(response)


def build_youtube_service(api_key: str, *, api_endpoint: str | None = None) -> Any:
    """Build a YouTube Data API v3 resource authenticated by a plain API key."""
    client_options = {"api_endpoint": api_endpoint} if api_endpoint else None
    return build(
        "youtube",
        "v3",
        developerKey=api_key,
        cache_discovery=False,
        client_options=client_options,
    )


def classify_http_error(exc: HttpError) -> PlatformError:
    status_code = int(getattr(exc.resp, "status", 0) or 0)
    content = exc.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    raw_body = content if isinstance(content, str) else ""
    return classify_error(status_code, _parse_json_dict(raw_body))


def classify_error(status_code: int, payload: dict[str, Any]) -> PlatformError:
    """Map a non-2xx YouTube response to the typed error the orchestrator reacts to."""
    error_body = _as_dict(payload.get("error"))
    message = str(error_body.get("message") or f"YouTube API returned HTTP {status_code}")
    reasons = [
        str(_as_dict(entry).get("reason") or "").lower()
        for entry in _as_list(error_body.get("errors"))
    ]
    reasons = [reason for reason in reasons if reason]
    reason = reasons[0] if reasons else None
    lowered_message = message.lower()

    def _has(markers: frozenset[str]) -> bool:
        return any(item in markers for item in reasons) or any(
            marker in lowered_message.replace(" ", "") for marker in markers
        )

    if status_code == 401:
        return InvalidCredentialError(message, status_code=status_code, reason=reason)
    if status_code == 429:
        return RateLimitedError(message, status_code=status_code, reason=reason)
    if status_code == 403:
        if _has(_QUOTA_REASONS):
            return QuotaExceededError(message, status_code=status_code, reason=reason)
        if _has(_RATE_LIMIT_REASONS):
            return RateLimitedError(message, status_code=status_code, reason=reason)
        return InvalidCredentialError(message, status_code=status_code, reason=reason)
    if status_code == 400:
        if _has(_INVALID_KEY_REASONS) or "api key not valid" in lowered_message:
            return InvalidCredentialError(message, status_code=status_code, reason=reason)
        return BadRequestError(message, status_code=status_code, reason=reason)
    if status_code >= 500 or status_code == 0:
        return UpstreamUnavailableError(message, status_code=status_code, reason=reason)
    return BadRequestError(message, status_code=status_code, reason=reason)


def _validate_item(
    model: type[_ModelT], raw_item: Any, *, endpoint: str
) -> _ModelT | None:
    try:
        return model.model_validate(raw_item)
    except ValidationError as exc:
        LOGGER.warning(
            "youtube item skipped endpoint=%s errors=%s",
            endpoint,
            exc.error_count(),
        )
        return None


def _batched(values: Sequence[str], size: int) -> list[list[str]]:
    unique = list(dict.fromkeys(value for value in values if value))
    return [unique[index : index + size] for index in range(0, len(unique), size)]


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    return _as_dict(parsed)


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        return {key: item for key, item in raw_dict.items() if isinstance(key, str)}
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
