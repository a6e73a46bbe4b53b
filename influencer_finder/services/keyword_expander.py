from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from influencer_finder.services.errors import KeywordExpansionError
from influencer_finder.services.result_cache import ResultCache

PromptScenario = Literal["general", "tech", "smart_home", "product_focused"]
ExpansionSource = Literal["openai", "fallback", "cache"]

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo"
MAX_KEYWORDS = 15
MAX_KEYWORD_LENGTH = 50
FALLBACK_KEYWORD_LIMIT = 8
FALLBACK_CONFIDENCE = 0.5

LOGGER = logging.getLogger("influencer_finder.keywords")

SYSTEM_PROMPT = (
    "You are an expert in social media marketing and content discovery. "
    "Your task is to generate relevant keywords for finding YouTube influencers."
)

PROMPT_TEMPLATES: dict[PromptScenario, str] = {
    "general": (
        'Based on the topic "{topic}", generate 8-10 specific and relevant keywords that '
        "would help find YouTube influencers in this niche. Focus on:\n"
        "1. Specific sub-topics and niches\n"
        "2. Related terms and synonyms\n"
        "3. Industry-specific terminology\n"
        "4. Content types related to this topic\n\n"
        "Return only the keywords, separated by commas, without explanations."
    ),
    "tech": (
        'Based on the topic "{topic}", generate 8-10 keywords to find tech reviewers and '
        "influencers. Focus on:\n"
        "1. Product review terminology\n"
        "2. Tech channel keywords\n"
        "3. Comparison and benchmark terms\n"
        "4. Setup and tutorial content\n"
        "5. Brand and model variations\n\n"
        "Return only the keywords, separated by commas, without explanations."
    ),
    "smart_home": (
        'Based on the topic "{topic}", generate 8-10 keywords to find smart home influencers '
        "and content creators. Focus on:\n"
        "1. Smart home device categories\n"
        "2. Home automation platforms\n"
        "3. Integration and compatibility terms\n"
        "4. Setup and installation content\n"
        "5. Lifestyle and convenience aspects\n\n"
        "Return only the keywords, separated by commas, without explanations."
    ),
    "product_focused": (
        "You are helping find YouTube influencers who specifically review and discuss the "
        'exact product: "{topic}".\n\n'
        'Keep the exact product name "{topic}" in most keywords. Do not expand to other '
        "products or general categories.\n\n"
        "Generate 8-10 specific keywords that YouTubers would use when creating content "
        'about "{topic}". Focus on review, unboxing, testing, setup, comparison and '
        "long-term experience terms.\n\n"
        "Return ONLY the keywords separated by commas. Each keyword MUST contain "
        '"{topic}".'
    ),
}

_SMART_HOME_ECOSYSTEM_MARKERS: tuple[str, ...] = (
    "smart home ecosystem",
    "home automation system",
    "iot platform",
)
_FALLBACK_WORD_SUFFIXES: tuple[str, ...] = ("tutorial", "review", "tips")
_FALLBACK_TOPIC_SUFFIXES: tuple[str, ...] = ("channel", "creator", "influencer", "vlog", "guide")


class KeywordExpander(Protocol):
    def expand(self, topic: str, *, max_keywords: int = 10, language: str = "en") -> list[str]:
        ...


@dataclass(frozen=True)
class KeywordExpansion:
    original_topic: str
    keywords: tuple[str, ...]
    confidence: float
    source: ExpansionSource


def detect_scenario(topic: str) -> PromptScenario:
    lowered = topic.lower()
    if any(marker in lowered for marker in _SMART_HOME_ECOSYSTEM_MARKERS):
        return "smart_home"
    return "product_focused"


def build_prompt(
    topic: str,
    *,
    scenario: PromptScenario | Literal["auto"] = "auto",
    max_keywords: int = 10,
    language: str = "en",
) -> str:
    resolved: PromptScenario = detect_scenario(topic) if scenario == "auto" else scenario
    template = PROMPT_TEMPLATES[resolved].replace("{topic}", topic)
    return f"{template}\n\nReturn at most {max_keywords} keywords. Language: {language}."


def parse_keywords(content: str) -> list[str]:
    """Split a comma-separated completion into normalized, unique keywords."""
    keywords: list[str] = []
    for raw in content.split(","):
        keyword = " ".join(raw.strip().strip("\"'").split()).lower()
        if not keyword or len(keyword) > MAX_KEYWORD_LENGTH:
            continue
        if keyword in keywords:
            continue
        keywords.append(keyword)
        if len(keywords) >= MAX_KEYWORDS:
            break
    return keywords


def keyword_confidence(keywords: list[str], topic: str) -> float:
    if not keywords:
        return 0.3
    topic_words = topic.lower().split()
    relevant = 0
    for keyword in keywords:
        if any(
            word in topic_word or topic_word in word
            for word in keyword.split()
            for topic_word in topic_words
        ):
            relevant += 1
    return min(0.9, max(0.3, relevant / len(keywords)))


def fallback_keywords(topic: str) -> list[str]:
    """Deterministic local expansion used whenever the AI expander is unavailable."""
    normalized_topic = " ".join(topic.lower().split())
    keywords = [normalized_topic]
    for word in normalized_topic.split():
        if len(word) > 3:
            keywords.append(word)
            keywords.extend(f"{word} {suffix}" for suffix in _FALLBACK_WORD_SUFFIXES)
    keywords.extend(f"{normalized_topic} {suffix}" for suffix in _FALLBACK_TOPIC_SUFFIXES)
    bounded = [
        keyword for keyword in dict.fromkeys(keywords) if len(keyword) <= MAX_KEYWORD_LENGTH
    ]
    return (bounded or [normalized_topic])[:FALLBACK_KEYWORD_LIMIT]


class OpenAIKeywordExpander:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        model: str = DEFAULT_OPENAI_MODEL,
        scenario: PromptScenario | Literal["auto"] = "auto",
        timeout_seconds: float = 15.0,
    ) -> None:
        if not api_key:
            raise ValueError("OpenAI API key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._scenario = scenario
        self._timeout_seconds = timeout_seconds

    def expand(self, topic: str, *, max_keywords: int = 10, language: str = "en") -> list[str]:
        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": build_prompt(
                        topic,
                        scenario=self._scenario,
                        max_keywords=max_keywords,
                        language=language,
                    ),
                },
            ],
            "max_tokens": 300,
            "temperature": 0.7,
            "frequency_penalty": 0.5,
            "presence_penalty": 0.3,
        }
        status_code, payload = _post_json(
            f"{self._base_url}/chat/completions",
            body=body,
            api_key=self._api_key,
            timeout_seconds=self._timeout_seconds,
        )
        if status_code != 200:
            error_message = _as_dict(payload.get("error")).get("message") or "Unknown error"
            raise KeywordExpansionError(f"OpenAI API error: {status_code} - {error_message}")

        choices = payload.get("choices")
        first_choice = _as_dict(choices[0]) if isinstance(choices, list) and choices else {}
        content = _as_dict(first_choice.get("message")).get("content")
        if not isinstance(content, str) or not content.strip():
            raise KeywordExpansionError("No content received from OpenAI")
        keywords = parse_keywords(content)
        if not keywords:
            raise KeywordExpansionError("OpenAI returned no usable keywords")
        return keywords[:max_keywords]


class KeywordExpansionService:
    """Expands a topic through the AI collaborator, falling back deterministically."""

    def __init__(
        self,
        *,
        expander: KeywordExpander | None,
        cache: ResultCache | None = None,
    ) -> None:
        self._expander = expander
        self._cache = cache

    def expand(self, topic: str, *, max_keywords: int = 10, language: str = "en") -> KeywordExpansion:
        cache_key = None
        if self._cache is not None:
            cache_key = self._cache.key_for(
                topic,
                {"topic": topic.lower().strip(), "max_keywords": max_keywords, "language": language},
            )
            cached = self._cache.get(cache_key)
            if isinstance(cached, dict):
                cached_payload = cast(dict[str, Any], cached)
                return KeywordExpansion(
                    original_topic=topic,
                    keywords=tuple(str(item) for item in cached_payload.get("keywords", [])),
                    confidence=float(cached_payload.get("confidence", FALLBACK_CONFIDENCE)),
                    source="cache",
                )

        if self._expander is None:
            return self._fallback(topic, max_keywords)

        try:
            keywords = self._expander.expand(topic, max_keywords=max_keywords, language=language)
        except Exception as exc:
            LOGGER.warning(
                "keyword expansion failed; using fallback topic=%s error=%s",
                topic,
                exc,
                exc_info=True,
            )
            return self._fallback(topic, max_keywords)

        normalized = parse_keywords(",".join(keywords))
        if not normalized:
            return self._fallback(topic, max_keywords)

        expansion = KeywordExpansion(
            original_topic=topic,
            keywords=tuple(normalized),
            confidence=keyword_confidence(normalized, topic),
            source="openai",
        )
        if self._cache is not None and cache_key is not None:
            self._cache.set(
                cache_key,
                {"keywords": list(expansion.keywords), "confidence": expansion.confidence},
            )
        LOGGER.info(
            "keywords expanded topic=%s count=%s confidence=%.2f",
            topic,
            len(expansion.keywords),
            expansion.confidence,
        )
        return expansion

    def invalidate_topic(self, topic: str) -> int:
        if self._cache is None:
            return 0
        return self._cache.invalidate_topic(topic)

    def _fallback(self, topic: str, max_keywords: int) -> KeywordExpansion:
        return KeywordExpansion(
            original_topic=topic,
            keywords=tuple(fallback_keywords(topic)[:max_keywords]),
            confidence=FALLBACK_CONFIDENCE,
            source="fallback",
        )


def _post_json(
    url: str,
    *,
    body: dict[str, Any],
    api_key: str,
    timeout_seconds: float,
) -> tuple[int, dict[str, Any]]:
    request = Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={
            "authorization": f"Bearer {api_key}",
            "content-type": "application/json",
            "accept": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise KeywordExpansionError(f"OpenAI request failed: {exc}") from exc

    try:
        parsed = json.loads(raw_body) if raw_body.strip() else {}
    except json.JSONDecodeError:
        parsed = {}
    return status_code, _as_dict(parsed)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        return {key: item for key, item in raw_dict.items() if isinstance(key, str)}
    return {}
