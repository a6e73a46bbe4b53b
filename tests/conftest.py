from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

import httplib2
import pytest
from fastapi.testclient import TestClient
from googleapiclient.errors import HttpError

from influencer_finder.dependencies import reset_cached_dependencies
from influencer_finder.main import create_app
from influencer_finder.services.credential_pool import Credential, CredentialPool
from influencer_finder.services.errors import PlatformError
from influencer_finder.services.keyword_expander import KeywordExpansionService
from influencer_finder.services.platform_client import ChannelRecord, SearchHit, VideoRecord
from influencer_finder.services.result_cache import InMemoryCacheStore, ResultCache
from influencer_finder.services.search_service import SearchOrchestrator

FIRST_SECRET = "AIzaFirstSecretKey0001"
SECOND_SECRET = "AIzaSecondSecretKey0002"


def _channel(
    channel_id: str,
    title: str,
    *,
    description: str,
    subscribers: int,
    country: str | None = "US",
) -> ChannelRecord:
    return ChannelRecord(
        channel_id=channel_id,
        title=title,
        description=description,
        country=country,
        thumbnail_url=f"https://img.example/{channel_id}.jpg",
        subscriber_count=subscribers,
        view_count=subscribers * 40,
        video_count=120,
    )


def _video(
    video_id: str,
    channel: ChannelRecord,
    title: str,
    *,
    views: int,
) -> VideoRecord:
    return VideoRecord(
        video_id=video_id,
        channel_id=channel.channel_id,
        channel_title=channel.title,
        title=title,
        description=f"{title} description",
        published_at="2026-05-01T12:00:00Z",
        thumbnail_url=f"https://img.example/{video_id}.jpg",
        view_count=views,
        like_count=views // 20,
        comment_count=views // 200,
        duration="PT12M30S",
    )


FITNESS_BLENDER = _channel(
    "UC_fit_blender",
    "Fitness Blender",
    description="Free fitness workouts for every level.",
    subscribers=500_000,
)
DAILY_FITNESS = _channel(
    "UC_daily_fitness",
    "Daily Fitness Lab",
    description="Home fitness routines and gear reviews.",
    subscribers=50_000,
)
FITNESS_CHANNELS: tuple[ChannelRecord, ...] = (FITNESS_BLENDER, DAILY_FITNESS)
FITNESS_VIDEOS: tuple[VideoRecord, ...] = (
    _video("vid_fb_1", FITNESS_BLENDER, "Fitness workout review for beginners", views=250_000),
    _video("vid_fb_2", FITNESS_BLENDER, "30 minute fitness hands on session", views=120_000),
    _video("vid_df_1", DAILY_FITNESS, "Fitness gear test at home", views=40_000),
    _video("vid_df_2", DAILY_FITNESS, "My morning fitness routine", views=15_000),
)


class FakePlatformClient:
    """In-memory stand-in for the YouTube Data API keyed by channel and video records."""

    def __init__(
        self,
        *,
        channels: Sequence[ChannelRecord] = FITNESS_CHANNELS,
        videos: Sequence[VideoRecord] = FITNESS_VIDEOS,
        failing_keys: dict[str, PlatformError] | None = None,
        failing_queries: dict[str, PlatformError] | None = None,
        videos_for_query: Callable[[str], Sequence[VideoRecord]] | None = None,
    ) -> None:
        self._channels = {record.channel_id: record for record in channels}
        self._videos = {record.video_id: record for record in videos}
        self._failing_keys = failing_keys or {}
        self._failing_queries = failing_queries or {}
        self._videos_for_query = videos_for_query
        self._lock = Lock()
        self.calls: list[tuple[str, str, bool]] = []

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
        _ = (region, published_after)
        self._check("search", api_key, query=query if channel_id is None else None)
        if channel_id is not None:
            matches = [video for video in self._videos.values() if video.channel_id == channel_id]
        elif self._videos_for_query is not None:
            matches = list(self._videos_for_query(query))
        else:
            matches = list(self._videos.values())
        return [
            SearchHit(
                video_id=video.video_id,
                channel_id=video.channel_id,
                title=video.title,
                description=video.description,
                channel_title=video.channel_title,
                published_at=video.published_at,
                thumbnail_url=video.thumbnail_url,
            )
            for video in matches[:max_results]
        ]

    def list_channels(self, *, api_key: str, channel_ids: Sequence[str]) -> list[ChannelRecord]:
        self._check("channels", api_key)
        return [self._channels[item] for item in channel_ids if item in self._channels]

    def list_videos(self, *, api_key: str, video_ids: Sequence[str]) -> list[VideoRecord]:
        self._check("videos", api_key)
        return [self._videos[item] for item in video_ids if item in self._videos]

    def successful_keys(self) -> set[str]:
        return {api_key for _, api_key, ok in self.calls if ok}

    def _check(self, operation: str, api_key: str, *, query: str | None = None) -> None:
        error = self._failing_keys.get(api_key)
        if error is None and query is not None:
            error = self._failing_queries.get(query)
        with self._lock:
            self.calls.append((operation, api_key, error is None))
        if error is not None:
            raise error


class FakeExpander:
    def __init__(self, keywords: Sequence[str], *, error: Exception | None = None) -> None:
        self._keywords = list(keywords)
        self._error = error
        self.calls = 0

    def expand(self, topic: str, *, max_keywords: int = 10, language: str = "en") -> list[str]:
        _ = (topic, language)
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._keywords[:max_keywords]


def build_pool(*secrets: str) -> CredentialPool:
    return CredentialPool(
        [
            Credential.from_secret(secret, label=f"key-{index + 1}")
            for index, secret in enumerate(secrets or (FIRST_SECRET,))
        ]
    )


def build_orchestrator(
    client: FakePlatformClient,
    *,
    pool: CredentialPool | None = None,
    keywords: Sequence[str] = ("fitness", "workout", "gym"),
    store: InMemoryCacheStore | None = None,
) -> SearchOrchestrator:
    return SearchOrchestrator(
        credential_pool=pool or build_pool(),
        platform_client=client,
        cache=ResultCache(store or InMemoryCacheStore(), ttl_seconds=1_800),
        keyword_service=KeywordExpansionService(expander=FakeExpander(keywords)),
        max_workers=4,
    )


def _youtube_item_payload(video: VideoRecord) -> dict[str, Any]:
    return {
        "id": video.video_id,
        "snippet": {
            "title": video.title,
            "description": video.description,
            "channelId": video.channel_id,
            "channelTitle": video.channel_title,
            "publishedAt": video.published_at,
            "thumbnails": {"medium": {"url": video.thumbnail_url}},
        },
        "statistics": {
            "viewCount": str(video.view_count),
            "likeCount": str(video.like_count),
            "commentCount": str(video.comment_count),
        },
        "contentDetails": {"duration": video.duration},
    }


def youtube_http_error(status: int, body: dict[str, Any]) -> HttpError:
    return HttpError(
        httplib2.Response({"status": str(status)}),
        json.dumps(body).encode("utf-8"),
    )


class _FakeRequest:
    def __init__(self, answer: Callable[[], dict[str, Any]]) -> None:
        self._answer = answer

    def execute(self, **kwargs: Any) -> dict[str, Any]:
        _ = kwargs
        return self._answer()


class _FakeCollection:
    def __init__(self, service: FakeYouTubeService, api_key: str, resource: str) -> None:
        self._service = service
        self._api_key = api_key
        self._resource = resource

    def list(self, **params: Any) -> _FakeRequest:
        return _FakeRequest(lambda: self._service.answer(self._api_key, self._resource, params))


class _FakeResource:
    def __init__(self, service: FakeYouTubeService, api_key: str) -> None:
        self._service = service
        self._api_key = api_key

    def search(self) -> _FakeCollection:
        return _FakeCollection(self._service, self._api_key, "search")

    def channels(self) -> _FakeCollection:
        return _FakeCollection(self._service, self._api_key, "channels")

    def videos(self) -> _FakeCollection:
        return _FakeCollection(self._service, self._api_key, "videos")


class FakeYouTubeService:
    """Answers discovery-client requests the way the YouTube Data API v3 would."""

    def __init__(self, *, invalid_keys: frozenset[str] = frozenset()) -> None:
        self._invalid_keys = invalid_keys
        self._lock = Lock()
        self.requests: list[tuple[str, str, dict[str, Any]]] = []

    def build(self, api_key: str, *, api_endpoint: str | None = None) -> _FakeResource:
        _ = api_endpoint
        return _FakeResource(self, api_key)

    def answer(self, api_key: str, resource: str, params: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.requests.append((resource, api_key, dict(params)))
        if api_key in self._invalid_keys:
            raise youtube_http_error(
                400,
                {
                    "error": {
                        "code": 400,
                        "message": "API key not valid. Please pass a valid API key.",
                        "errors": [{"reason": "keyInvalid"}],
                    }
                },
            )

        if resource == "search":
            channel_id = params.get("channelId")
            videos = [
                video
                for video in FITNESS_VIDEOS
                if channel_id is None or video.channel_id == channel_id
            ]
            return {
                "items": [
                    {
                        "id": {"kind": "youtube#video", "videoId": video.video_id},
                        "snippet": _youtube_item_payload(video)["snippet"],
                    }
                    for video in videos[: int(params.get("maxResults", 5))]
                ]
            }
        ids = set(str(params.get("id", "")).split(","))
        if resource == "videos":
            return {
                "items": [
                    _youtube_item_payload(video) for video in FITNESS_VIDEOS if video.video_id in ids
                ]
            }
        return {
            "items": [
                {
                    "id": channel.channel_id,
                    "snippet": {
                        "title": channel.title,
                        "description": channel.description,
                        "country": channel.country,
                        "thumbnails": {"default": {"url": channel.thumbnail_url}},
                    },
                    "statistics": {
                        "subscriberCount": str(channel.subscriber_count),
                        "viewCount": str(channel.view_count),
                        "videoCount": str(channel.video_count),
                    },
                }
                for channel in FITNESS_CHANNELS
                if channel.channel_id in ids
            ]
        }


@pytest.fixture
def fake_youtube(monkeypatch: pytest.MonkeyPatch) -> FakeYouTubeService:
    fake = FakeYouTubeService()
    monkeypatch.setattr(
        "influencer_finder.services.platform_client.build_youtube_service",
        fake.build,
    )
    return fake


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_youtube: FakeYouTubeService,
) -> Iterator[TestClient]:
    _ = fake_youtube
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("INFLUENCER_FINDER_DATA_DIR", str(data_dir))
    monkeypatch.setenv("INFLUENCER_FINDER_YOUTUBE_API_KEYS", f"{FIRST_SECRET},{SECOND_SECRET}")
    monkeypatch.setenv("INFLUENCER_FINDER_CACHE_BACKEND", "sqlite")
    monkeypatch.setenv("INFLUENCER_FINDER_TELEMETRY_ENABLED", "0")
    monkeypatch.delenv("INFLUENCER_FINDER_OPENAI_API_KEY", raising=False)
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
