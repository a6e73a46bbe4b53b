from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from typing import TypeVar

from influencer_finder.services.candidates import ChannelCandidate, TopVideo, VideoCandidate

MAX_BASE_SCORE = 100
MAX_COMBINED_SCORE = 120
CORROBORATION_BONUS = 15
TIE_EPSILON = 5
VIDEO_RELEVANCE_FLOOR = 0.5
CHANNEL_SCORE_FLOOR = 20
TOP_VIDEOS_PER_CHANNEL = 3
VIDEO_TITLE_PREFIX_LENGTH = 50

_RankedT = TypeVar("_RankedT", ChannelCandidate, VideoCandidate)

_REVIEW_INTENT_MARKERS: tuple[str, ...] = (
    "review",
    "test",
    "unboxing",
    "setup",
    "comparison",
    "vs",
    "tutorial",
    "guide",
    "hands-on",
    "first look",
    "impressions",
)
_TITLE_WORD_SPLIT_PATTERN = re.compile(r"[\s\-_()\[\]]+")


def _word_overlap_ratio(words: Sequence[str], haystack: str) -> float:
    if not words:
        return 0.0
    matched = sum(1 for word in words if word in haystack)
    return matched / len(words)


def _subscriber_tier_score(subscriber_count: int) -> int:
    if subscriber_count > 1_000_000:
        return 25
    if subscriber_count > 100_000:
        return 20
    if subscriber_count > 10_000:
        return 15
    if subscriber_count > 1_000:
        return 10
    return 5


def _significant_words(text: str) -> list[str]:
    return [word for word in text.split() if len(word) > 2]


def channel_base_score(
    *,
    title: str,
    description: str,
    subscriber_count: int,
    video_titles: Sequence[str],
    keyword: str,
) -> float:
    """Score a channel against a single search keyword, bounded to [0, 100]."""
    keyword_lower = keyword.strip().lower()
    if not keyword_lower:
        return float(_subscriber_tier_score(subscriber_count))
    keyword_words = keyword_lower.split()
    title_lower = title.lower()
    description_lower = description.lower()

    score = 0.0
    if keyword_lower in title_lower:
        score += 30
    else:
        score += _word_overlap_ratio(keyword_words, title_lower) * 20

    if keyword_lower in description_lower:
        score += 20
    else:
        score += _word_overlap_ratio(keyword_words, description_lower) * 15

    video_hits = sum(
        8 for video_title in video_titles[:TOP_VIDEOS_PER_CHANNEL]
        if keyword_lower in video_title.lower()
    )
    score += min(25, video_hits)
    score += _subscriber_tier_score(subscriber_count)
    return min(float(MAX_BASE_SCORE), max(0.0, score))


def topic_bonus(*, title: str, video_titles: Sequence[str], topic: str, keyword: str) -> float:
    """Extra credit when the channel speaks about the original topic, not just the keyword."""
    topic_lower = " ".join(topic.lower().split())
    if not topic_lower or topic_lower == " ".join(keyword.lower().split()):
        return 0.0

    title_lower = title.lower()
    bonus = 0.0
    if topic_lower in title_lower:
        bonus += 20
    else:
        topic_words = _significant_words(topic_lower)
        matched = sum(1 for word in topic_words if word in title_lower)
        if matched:
            bonus += min(15.0, matched / len(topic_words) * 15)

    topic_video_hits = sum(1 for video_title in video_titles if topic_lower in video_title.lower())
    if topic_video_hits:
        bonus += min(10, topic_video_hits * 3)
    return bonus


def clamp_combined_score(score: float) -> int:
    return int(min(MAX_COMBINED_SCORE, max(0, round(score))))


def score_channel(
    *,
    title: str,
    description: str,
    subscriber_count: int,
    video_titles: Sequence[str],
    keyword: str,
    topic: str | None = None,
) -> int:
    score = channel_base_score(
        title=title,
        description=description,
        subscriber_count=subscriber_count,
        video_titles=video_titles,
        keyword=keyword,
    )
    if topic:
        score += topic_bonus(title=title, video_titles=video_titles, topic=topic, keyword=keyword)
    return clamp_combined_score(score)


def score_video(title: str, keyword: str) -> float:
    """Relevance of a single video title to a keyword, within [0, 1]."""
    title_lower = title.lower()
    keyword_lower = keyword.strip().lower()
    if not keyword_lower:
        return 0.0
    if keyword_lower in title_lower:
        return 1.0

    keyword_words = _significant_words(keyword_lower)
    title_words = [
        word for word in _TITLE_WORD_SPLIT_PATTERN.split(title_lower) if len(word) > 1
    ]

    exact_matches = 0
    partial_matches = 0
    for keyword_word in keyword_words:
        for title_word in title_words:
            if title_word == keyword_word:
                exact_matches += 1
            elif keyword_word in title_word or title_word in keyword_word:
                partial_matches += 1

    denominator = max(len(keyword_words), 1)
    score = exact_matches / denominator * 0.8 + partial_matches / denominator * 0.3

    if any(marker in title_lower for marker in _REVIEW_INTENT_MARKERS):
        score += 0.15
    title_prefix = title_lower[:VIDEO_TITLE_PREFIX_LENGTH]
    if any(word in title_prefix for word in keyword_words):
        score += 0.1
    return min(1.0, max(0.0, score))


def select_top_videos(videos: Sequence[TopVideo], limit: int = TOP_VIDEOS_PER_CHANNEL) -> list[TopVideo]:
    relevant = [video for video in videos if video.relevance > VIDEO_RELEVANCE_FLOOR]
    relevant.sort(
        key=lambda video: video.relevance * 0.8 + math.log10(video.view_count + 1) * 0.2,
        reverse=True,
    )
    return relevant[:limit]


def prioritize_keywords(keywords: Sequence[str], topic: str) -> list[str]:
    """Order keywords so the ones closest to the original topic are searched first."""
    topic_lower = " ".join(topic.lower().split())
    topic_words = _significant_words(topic_lower)

    def _priority(keyword: str) -> int:
        keyword_lower = keyword.lower()
        priority = 0
        if topic_lower and topic_lower in keyword_lower:
            priority += 100
        for word in topic_words:
            if word in keyword_lower:
                priority += 20
        if topic_lower and keyword_lower.startswith(topic_lower):
            priority += 50
        return priority

    # sorted() is stable, so equal priorities keep expander order.
    return sorted(keywords, key=_priority, reverse=True)


def _rank_with_near_ties(
    items: Sequence[_RankedT],
    *,
    score: Callable[[_RankedT], int],
    reach: Callable[[_RankedT], int],
    identity: Callable[[_RankedT], str],
) -> list[_RankedT]:
    """Sort by score, letting reach decide between neighbours within TIE_EPSILON.

    The initial sort is a total order, so the result does not depend on input order.
    The single pass afterwards only swaps adjacent items whose scores are closer than
    TIE_EPSILON, so an item never lands above one scoring TIE_EPSILON or more higher.
    """
    ranked = sorted(items, key=lambda item: (-score(item), -reach(item), identity(item)))
    for index in range(len(ranked) - 1):
        upper, lower = ranked[index], ranked[index + 1]
        if abs(score(upper) - score(lower)) < TIE_EPSILON and reach(lower) > reach(upper):
            ranked[index], ranked[index + 1] = lower, upper
    return ranked


def rank_channels(channels: Sequence[ChannelCandidate]) -> list[ChannelCandidate]:
    return _rank_with_near_ties(
        channels,
        score=lambda channel: channel.relevance_score,
        reach=lambda channel: channel.subscriber_count,
        identity=lambda channel: channel.channel_id,
    )


def rank_videos(videos: Sequence[VideoCandidate]) -> list[VideoCandidate]:
    return _rank_with_near_ties(
        videos,
        score=lambda video: video.relevance_score,
        reach=lambda video: video.view_count,
        identity=lambda video: video.video_id,
    )
