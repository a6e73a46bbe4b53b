from __future__ import annotations

import re
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any, Literal, Protocol

import structlog

from influencer_finder.services.credential_pool import mask_secret

TELEMETRY_LOGGER_NAME = "influencer_finder.telemetry"

TelemetryEvent = Literal[
    "api.request",
    "search.start",
    "search.cache_hit",
    "search.finish",
    "credential.rotated",
    "credential.checked",
]
TelemetryValue = bool | int | float | str | None

# Attribute names that may carry a credential; their values are never written out.
_CREDENTIAL_ATTRIBUTE_TOKENS: tuple[str, ...] = ("api_key", "secret", "authorization", "token")
_YOUTUBE_KEY_PATTERN = re.compile(r"AIza[0-9A-Za-z_\-]{8,}")
_MAX_TEXT_LENGTH = 160


@dataclass(frozen=True)
class SearchActivity:
    """Process-lifetime counters derived from search and credential events."""

    searches: int = 0
    cache_hits: int = 0
    partial_searches: int = 0
    credential_rotations: int = 0
    failed_credential_checks: int = 0


class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class StructlogTelemetrySink:
    """Writes each event as one structured record on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def record(self, event: TelemetryEvent, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info(event, **dict(attributes))


class TelemetryClient:
    """Counts search activity and forwards sanitized events to an optional sink.

    Counters are kept even without a sink so `/health` can report activity.
    """

    def __init__(self, sink: TelemetrySink | None = None) -> None:
        self._sink = sink
        self._lock = Lock()
        self._counts: Counter[str] = Counter()

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(sink=None)

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def emit(self, event: TelemetryEvent, **attributes: Any) -> None:
        self._count(event, attributes)
        if self._sink is not None:
            self._sink.record(event, sanitize_attributes(attributes))

    def activity(self) -> SearchActivity:
        with self._lock:
            return SearchActivity(
                searches=self._counts["searches"],
                cache_hits=self._counts["cache_hits"],
                partial_searches=self._counts["partial_searches"],
                credential_rotations=self._counts["credential_rotations"],
                failed_credential_checks=self._counts["failed_credential_checks"],
            )

    def _count(self, event: TelemetryEvent, attributes: Mapping[str, Any]) -> None:
        with self._lock:
            if event == "search.cache_hit":
                self._counts["searches"] += 1
                self._counts["cache_hits"] += 1
            elif event == "search.finish":
                self._counts["searches"] += 1
                if attributes.get("partial"):
                    self._counts["partial_searches"] += 1
            elif event == "credential.rotated":
                self._counts["credential_rotations"] += 1
            elif event == "credential.checked" and not attributes.get("ok"):
                self._counts["failed_credential_checks"] += 1


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(sink=StructlogTelemetrySink())
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    """Flatten event attributes to scalars and keep API keys out of the output."""
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(token in key for token in _CREDENTIAL_ATTRIBUTE_TOKENS):
            sanitized[key] = "[redacted]"
            continue
        sanitized[key] = _scalar(raw_value)
    return sanitized


def _scalar(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        text = _YOUTUBE_KEY_PATTERN.sub(lambda match: mask_secret(match.group(0)), compact)
        if len(text) > _MAX_TEXT_LENGTH:
            return f"{text[:_MAX_TEXT_LENGTH]}..."
        return text
    if isinstance(value, list | tuple | set | frozenset):
        return len(value)
    return type(value).__name__
