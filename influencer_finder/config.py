from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".influencer-finder"
CACHE_BACKENDS: frozenset[str] = frozenset({"memory", "sqlite"})
PROMPT_SCENARIOS: frozenset[str] = frozenset(
    {"auto", "general", "tech", "smart_home", "product_focused"}
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("cache.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Runtime configuration, read from `INFLUENCER_FINDER_*` environment variables
    and an optional `.env` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="INFLUENCER_FINDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the cache database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("cache.db")),
        description="SQLite cache path. Defaults to `${INFLUENCER_FINDER_DATA_DIR}/cache.db`.",
    )

    # Cache.
    cache_backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="Where search results are cached: process memory or SQLite.",
    )
    search_cache_ttl_seconds: int = Field(
        default=1_800,
        ge=1,
        description="TTL for cached search results.",
    )
    keyword_cache_ttl_seconds: int = Field(
        default=86_400,
        ge=1,
        description="TTL for cached keyword expansions.",
    )

    # YouTube Data API.
    youtube_api_keys: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated YouTube Data API keys, rotated when one is spent.",
    )
    youtube_api_base_url: str = Field(
        default="https://youtube.googleapis.com",
        description="YouTube Data API endpoint the discovery client sends requests to.",
    )
    youtube_quota_limit_per_key: int = Field(
        default=10_000,
        ge=1,
        description="Daily quota units available to each key.",
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout applied to every outbound HTTP call.",
    )
    max_concurrent_calls: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Upper bound on concurrent upstream calls per search.",
    )
    search_recency_days: int = Field(
        default=365,
        ge=1,
        description="Only videos published within this many days are searched.",
    )

    # Keyword expansion.
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key. Without it keyword expansion uses the local fallback.",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible API base URL.",
    )
    openai_model: str = Field(
        default="gpt-3.5-turbo",
        description="Chat completion model used for keyword expansion.",
    )
    keyword_prompt_scenario: str = Field(
        default="auto",
        description="Prompt template: auto, general, tech, smart_home or product_focused.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description="Directory for log files. Defaults to `${INFLUENCER_FINDER_DATA_DIR}/logs`.",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` writes structured events; `none` disables them.",
    )

    @field_validator("youtube_api_keys", mode="before")
    @classmethod
    def _split_api_keys(cls, value: Any) -> list[str]:
        if value is None:
            return []
        raw_items = value.split(",") if isinstance(value, str) else value
        if not isinstance(raw_items, list | tuple):
            raise ValueError("INFLUENCER_FINDER_YOUTUBE_API_KEYS must be a comma-separated string.")
        keys: list[str] = []
        for item in raw_items:
            normalized = _normalize_optional_text(item)
            if normalized is not None and normalized not in keys:
                keys.append(normalized)
        return keys

    @field_validator("cache_backend", "telemetry_sink", "keyword_prompt_scenario", mode="before")
    @classmethod
    def _normalize_choice(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"INFLUENCER_FINDER_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().lower()
        allowed = {
            "cache_backend": CACHE_BACKENDS,
            "telemetry_sink": frozenset({"none", "log"}),
            "keyword_prompt_scenario": PROMPT_SCENARIOS,
        }[str(info.field_name)]
        if normalized in allowed:
            return normalized
        raise ValueError(f"{env_name} must be set to: {', '.join(sorted(allowed))}.")

    @field_validator("youtube_api_base_url", "openai_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"INFLUENCER_FINDER_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("openai_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    return settings.model_copy(
        update={
            field_name: _resolve_path(getattr(settings, field_name))
            for field_name in _PATH_FIELDS
        }
    )


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
