from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from influencer_finder.services.candidates import (
    DEFAULT_MAX_RESULTS,
    DEFAULT_MIN_SUBSCRIBERS,
    DEFAULT_MIN_VIEWS,
    DEFAULT_REGION,
    MAX_RESULTS_LIMIT,
    SearchFilters,
)

_TOPIC_PATTERN = re.compile(r"[a-zA-Z0-9\s\-_]+")

CredentialStatusName = Literal["active", "exhausted", "error"]


def _normalize_topic(value: object) -> str:
    if not isinstance(value, str):
        raise ValueError("topic must be a string")
    normalized = " ".join(value.split())
    if not _TOPIC_PATTERN.fullmatch(normalized):
        raise ValueError(
            "topic may only contain letters, digits, spaces, hyphens and underscores"
        )
    return normalized


class SearchFiltersModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    region: str = Field(default=DEFAULT_REGION, min_length=2, max_length=2)
    min_subscribers: int = Field(default=DEFAULT_MIN_SUBSCRIBERS, ge=0, le=10_000_000)
    min_views: int = Field(default=DEFAULT_MIN_VIEWS, ge=0, le=100_000_000)
    max_results: int = Field(default=DEFAULT_MAX_RESULTS, ge=1, le=MAX_RESULTS_LIMIT)

    @field_validator("region")
    @classmethod
    def _validate_region(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("region must be a 2-letter country code")
        return value.upper()

    def to_filters(self) -> SearchFilters:
        return SearchFilters(
            region=self.region,
            min_subscribers=self.min_subscribers,
            min_views=self.min_views,
            max_results=self.max_results,
        )


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic: str = Field(min_length=2, max_length=100)
    filters: SearchFiltersModel = Field(default_factory=SearchFiltersModel)
    force_refresh: bool = False

    @field_validator("topic", mode="before")
    @classmethod
    def _validate_topic(cls, value: object) -> str:
        return _normalize_topic(value)


class TopVideoModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    title: str
    url: str
    view_count: int
    published_at: str | None = None
    thumbnail_url: str | None = None
    relevance: float


class ChannelResultModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str
    title: str
    description: str
    url: str
    thumbnail_url: str | None = None
    subscriber_count: int
    total_view_count: int
    video_count: int
    country: str | None = None
    top_videos: list[TopVideoModel]
    relevance_score: int


class ChannelSnapshotModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str
    title: str
    url: str
    subscriber_count: int
    thumbnail_url: str | None = None
    country: str | None = None


class VideoResultModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    title: str
    description: str
    url: str
    published_at: str | None = None
    view_count: int
    like_count: int
    comment_count: int
    duration: str | None = None
    thumbnail_url: str | None = None
    channel: ChannelSnapshotModel
    relevance_score: int


class _SearchResponseBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_id: str
    topic: str
    search_keyword: str | None
    expanded_keywords: list[str]
    total_found: int
    cache_hit: bool
    partial: bool
    failed_variants: list[str]


class ChannelSearchResponse(_SearchResponseBase):
    results: list[ChannelResultModel]


class VideoSearchResponse(_SearchResponseBase):
    results: list[VideoResultModel]


class KeywordExpandRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic: str = Field(min_length=2, max_length=100)
    max_keywords: int = Field(default=10, ge=3, le=20)
    language: str = Field(default="en", min_length=2, max_length=2)

    @field_validator("topic", mode="before")
    @classmethod
    def _validate_topic(cls, value: object) -> str:
        return _normalize_topic(value)


class KeywordExpandResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    original_topic: str
    expanded_keywords: list[str]
    confidence: float
    source: Literal["openai", "fallback", "cache"]


class CredentialStatusModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    label: str
    masked_secret: str
    status: CredentialStatusName
    quota_used: int
    quota_limit: int
    last_error: str | None = None
    last_used_at: datetime | None = None
    is_current: bool


class CredentialInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    secret: str = Field(min_length=8, max_length=256)
    label: str | None = Field(default=None, max_length=80)

    @field_validator("secret")
    @classmethod
    def _strip_secret(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or any(character.isspace() for character in normalized):
            raise ValueError("secret must not contain whitespace")
        return normalized


class CredentialReplaceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credentials: list[CredentialInput] = Field(max_length=20)
    quota_limit: int = Field(default=10_000, ge=1)


class CredentialListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credentials: list[CredentialStatusModel]


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entries: int
    hits: int
    misses: int
    writes: int
    evictions: int
    hit_rate: float
    ttl_seconds: int


class CacheInvalidateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope: Literal["all", "topic"]
    removed: int


class SearchActivityModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    searches: int
    cache_hits: int
    partial_searches: int
    credential_rotations: int
    failed_credential_checks: int


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["ok", "degraded"]
    active_credentials: int
    cache: CacheStatsResponse
    activity: SearchActivityModel


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    retryable: bool
    upstream_status: int | None = None


class CredentialTestResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credential_id: str
    ok: bool
    error: ErrorDetail | None = None
    credential: CredentialStatusModel
