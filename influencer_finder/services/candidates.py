from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SearchMode = Literal["channels", "videos"]

DEFAULT_REGION = "US"
DEFAULT_MIN_SUBSCRIBERS = 1_000
DEFAULT_MIN_VIEWS = 10_000
DEFAULT_MAX_RESULTS = 50
MAX_RESULTS_LIMIT = 100


@dataclass(frozen=True)
class SearchFilters:
    region: str = DEFAULT_REGION
    min_subscribers: int = DEFAULT_MIN_SUBSCRIBERS
    min_views: int = DEFAULT_MIN_VIEWS
    max_results: int = DEFAULT_MAX_RESULTS

    def __post_init__(self) -> None:
        if len(self.region) != 2 or not self.region.isalpha():
            raise ValueError(f"region must be a 2-letter code, got {self.region!r}")
        if self.min_subscribers < 0:
            raise ValueError("min_subscribers must be >= 0")
        if self.min_views < 0:
            raise ValueError("min_views must be >= 0")
        if not 1 <= self.max_results <= MAX_RESULTS_LIMIT:
            raise ValueError(f"max_results must be within 1..{MAX_RESULTS_LIMIT}")


@dataclass(frozen=True)
class SearchQuery:
    topic: str
    filters: SearchFilters = field(default_factory=SearchFilters)
    mode: SearchMode = "channels"

    @property
    def normalized_topic(self) -> str:
        return " ".join(self.topic.lower().split())


@dataclass(frozen=True)
class TopVideo:
    video_id: str
    title: str
    view_count: int
    published_at: str | None
    thumbnail_url: str | None
    relevance: float

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


@dataclass
class ChannelCandidate:
    channel_id: str
    title: str
    description: str
    thumbnail_url: str | None
    subscriber_count: int
    total_view_count: int
    video_count: int
    country: str | None
    top_videos: list[TopVideo] = field(default_factory=list)
    relevance_score: int = 0

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/channel/{self.channel_id}"

    @property
    def key(self) -> str:
        return self.channel_id

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["url"] = self.url
        payload["top_videos"] = [
            {**asdict(video), "url": video.url} for video in self.top_videos
        ]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChannelCandidate:
        return cls(
            channel_id=str(payload["channel_id"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            thumbnail_url=payload.get("thumbnail_url"),
            subscriber_count=int(payload.get("subscriber_count") or 0),
            total_view_count=int(payload.get("total_view_count") or 0),
            video_count=int(payload.get("video_count") or 0),
            country=payload.get("country"),
            top_videos=[
                TopVideo(
                    video_id=str(video["video_id"]),
                    title=str(video["title"]),
                    view_count=int(video.get("view_count") or 0),
                    published_at=video.get("published_at"),
                    thumbnail_url=video.get("thumbnail_url"),
                    relevance=float(video.get("relevance") or 0.0),
                )
                for video in payload.get("top_videos", [])
            ],
            relevance_score=int(payload.get("relevance_score") or 0),
        )


@dataclass(frozen=True)
class ChannelSnapshot:
    channel_id: str
    title: str
    subscriber_count: int
    thumbnail_url: str | None
    country: str | None

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/channel/{self.channel_id}"


@dataclass
class VideoCandidate:
    video_id: str
    title: str
    description: str
    published_at: str | None
    view_count: int
    like_count: int
    comment_count: int
    duration: str | None
    thumbnail_url: str | None
    channel: ChannelSnapshot
    relevance_score: int = 0

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"

    @property
    def key(self) -> str:
        return self.video_id

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["url"] = self.url
        payload["channel"]["url"] = self.channel.url
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> VideoCandidate:
        channel = payload["channel"]
        return cls(
            video_id=str(payload["video_id"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            published_at=payload.get("published_at"),
            view_count=int(payload.get("view_count") or 0),
            like_count=int(payload.get("like_count") or 0),
            comment_count=int(payload.get("comment_count") or 0),
            duration=payload.get("duration"),
            thumbnail_url=payload.get("thumbnail_url"),
            channel=ChannelSnapshot(
                channel_id=str(channel["channel_id"]),
                title=str(channel["title"]),
                subscriber_count=int(channel.get("subscriber_count") or 0),
                thumbnail_url=channel.get("thumbnail_url"),
                country=channel.get("country"),
            ),
            relevance_score=int(payload.get("relevance_score") or 0),
        )


Candidate = ChannelCandidate | VideoCandidate
