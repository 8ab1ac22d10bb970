"""Configuration loader for docflow services using Pydantic settings."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

ENV_VAR_NAME = "DOCFLOW_ENV"
DEFAULT_ENV = "local"
PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.default.toml"
LOCAL_CONFIG_FILE = CONFIG_DIR / "settings.local.toml"
SETTINGS_FILE_ENV_VAR = "DOCFLOW_SETTINGS_FILE"


def _resolve_env(explicit_env: str | None = None) -> str:
    """Return the active environment name.

    Args:
        explicit_env: Environment value supplied directly by the caller.

    Returns:
        A stripped environment name, falling back to ``DEFAULT_ENV``.
    """

    env = explicit_env or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV
    return env.strip()


def _env_file_candidates(env: str) -> list[Path]:
    """List candidate ``.env`` files used during settings resolution."""

    return [
        PROJECT_ROOT / ".env",
        PROJECT_ROOT / f".env.{env}",
        PROJECT_ROOT / ".env.local",
    ]


def _resolve_config_path(raw_path: str | None) -> Path | None:
    """Return an absolute config path from user input."""

    if not raw_path:
        return None
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = (PROJECT_ROOT / candidate).resolve()
    return candidate


def _config_file_priority(include_missing: bool = False) -> tuple[Path, ...]:
    """Return config files in descending precedence order."""

    ordered: list[Path] = []
    env_override = _resolve_config_path(os.getenv(SETTINGS_FILE_ENV_VAR))
    if env_override:
        ordered.append(env_override)
    ordered.append(LOCAL_CONFIG_FILE)
    ordered.append(DEFAULT_CONFIG_FILE)
    if include_missing:
        return tuple(ordered)
    return tuple(path for path in ordered if path.exists())


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """Pydantic settings source that loads values from a TOML file."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls)
        self.path = path
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            with self.path.open("rb") as handle:
                self._data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:  # pragma: no cover - invalid files surface immediately
            raise ValueError(f"Invalid TOML syntax in {self.path}") from exc
        return self._data

    def __call__(self) -> dict[str, Any]:  # pragma: no cover - trivial wrapper
        return self._load()

    def get_field_value(self, field_name: str, field):  # pragma: no cover - passthrough helper
        data = self._load()
        return data.get(field_name), field_name in data


class RuntimeSettings(BaseSettings):
    """Process-level runtime controls."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "RUNTIME__LOG_LEVEL"),
    )


class APISettings(BaseSettings):
    """API endpoint configuration shared by workers and scripts."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    base_url: str = Field(
        default="http://127.0.0.1:8000",
        validation_alias=AliasChoices("API_URL", "API__BASE_URL"),
    )
    key: str = Field(
        default="dev-user-token",
        validation_alias=AliasChoices("API_KEY", "API__KEY"),
    )


class StorageSettings(BaseSettings):
    """Structured storage configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    sqlite_path: Path = Field(
        default=PROJECT_ROOT / "data" / "docflow.db",
        validation_alias=AliasChoices("SQLITE_PATH", "STORAGE__SQLITE_PATH"),
    )
    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )


class QueueSettings(BaseSettings):
    """Polling cadence for the SQL-backed job queues."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    poll_interval_seconds: float = Field(
        default=0.5,
        validation_alias=AliasChoices("QUEUE_POLL_INTERVAL_SECONDS", "QUEUE__POLL_INTERVAL_SECONDS"),
    )
    events_poll_interval_seconds: float = Field(
        default=0.5,
        validation_alias=AliasChoices("QUEUE_EVENTS_POLL_INTERVAL_SECONDS", "QUEUE__EVENTS_POLL_INTERVAL_SECONDS"),
    )
    events_retention_hours: int = Field(
        default=24,
        validation_alias=AliasChoices("QUEUE_EVENTS_RETENTION_HOURS", "QUEUE__EVENTS_RETENTION_HOURS"),
    )
    events_settle_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices("QUEUE_EVENTS_SETTLE_SECONDS", "QUEUE__EVENTS_SETTLE_SECONDS"),
    )


class WorkerSettings(BaseSettings):
    """Concurrency and rate limits for each worker pool."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    analysis_concurrency: int = Field(
        default=2,
        validation_alias=AliasChoices("WORKER_ANALYSIS_CONCURRENCY", "WORKER__ANALYSIS_CONCURRENCY"),
    )
    analysis_limit_max: int = Field(
        default=20,
        validation_alias=AliasChoices("WORKER_ANALYSIS_LIMIT_MAX", "WORKER__ANALYSIS_LIMIT_MAX"),
    )
    analysis_limit_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices("WORKER_ANALYSIS_LIMIT_SECONDS", "WORKER__ANALYSIS_LIMIT_SECONDS"),
    )
    vision_concurrency: int = Field(
        default=2,
        validation_alias=AliasChoices("WORKER_VISION_CONCURRENCY", "WORKER__VISION_CONCURRENCY"),
    )
    vision_limit_max: int = Field(
        default=20,
        validation_alias=AliasChoices("WORKER_VISION_LIMIT_MAX", "WORKER__VISION_LIMIT_MAX"),
    )
    vision_limit_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices("WORKER_VISION_LIMIT_SECONDS", "WORKER__VISION_LIMIT_SECONDS"),
    )
    document_concurrency: int = Field(
        default=2,
        validation_alias=AliasChoices("WORKER_DOCUMENT_CONCURRENCY", "WORKER__DOCUMENT_CONCURRENCY"),
    )
    document_limit_max: int = Field(
        default=10,
        validation_alias=AliasChoices("WORKER_DOCUMENT_LIMIT_MAX", "WORKER__DOCUMENT_LIMIT_MAX"),
    )
    document_limit_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices("WORKER_DOCUMENT_LIMIT_SECONDS", "WORKER__DOCUMENT_LIMIT_SECONDS"),
    )
    transcription_concurrency: int = Field(
        default=1,
        validation_alias=AliasChoices("WORKER_TRANSCRIPTION_CONCURRENCY", "WORKER__TRANSCRIPTION_CONCURRENCY"),
    )
    transcription_limit_max: int = Field(
        default=5,
        validation_alias=AliasChoices("WORKER_TRANSCRIPTION_LIMIT_MAX", "WORKER__TRANSCRIPTION_LIMIT_MAX"),
    )
    transcription_limit_seconds: float = Field(
        default=3600.0,
        validation_alias=AliasChoices("WORKER_TRANSCRIPTION_LIMIT_SECONDS", "WORKER__TRANSCRIPTION_LIMIT_SECONDS"),
    )
    queues: list[str] = Field(
        default_factory=lambda: ["analysis-jobs", "vision-jobs", "document-process-jobs", "transcription-jobs"],
        validation_alias=AliasChoices("WORKER_QUEUES", "WORKER__QUEUES"),
    )


class LLMSettings(BaseSettings):
    """OpenAI-compatible model endpoints used for vision and transcription."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    provider: Literal["ollama", "openai", "mock"] = Field(
        default="ollama",
        validation_alias=AliasChoices("LLM_PROVIDER", "LLM__PROVIDER"),
    )
    ollama_base_url: str = Field(
        default="http://127.0.0.1:11434/v1",
        validation_alias=AliasChoices("OLLAMA_BASE_URL", "LLM__OLLAMA_BASE_URL"),
    )
    ollama_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OLLAMA_API_KEY", "LLM__OLLAMA_API_KEY"),
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias=AliasChoices("OPENAI_BASE_URL", "LLM__OPENAI_BASE_URL"),
    )
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "LLM__OPENAI_API_KEY"),
    )
    vision_model: str = Field(
        default="qwen2.5vl",
        validation_alias=AliasChoices("LLM_VISION_MODEL", "LLM__VISION_MODEL"),
    )
    transcription_model: str = Field(
        default="whisper-1",
        validation_alias=AliasChoices("LLM_TRANSCRIPTION_MODEL", "LLM__TRANSCRIPTION_MODEL"),
    )
    transcription_language: str = Field(
        default="pl",
        validation_alias=AliasChoices("LLM_TRANSCRIPTION_LANGUAGE", "LLM__TRANSCRIPTION_LANGUAGE"),
    )
    request_timeout_seconds: float = Field(
        default=120.0,
        validation_alias=AliasChoices("LLM_REQUEST_TIMEOUT_SECONDS", "LLM__REQUEST_TIMEOUT_SECONDS"),
    )
    max_tokens: int = Field(
        default=4096,
        validation_alias=AliasChoices("LLM_MAX_TOKENS", "LLM__MAX_TOKENS"),
    )


class OCRSettings(BaseSettings):
    """Tesseract configuration and the vision fallback threshold."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    language: str = Field(
        default="pol+eng",
        validation_alias=AliasChoices("OCR_LANGUAGE", "OCR__LANGUAGE"),
    )
    confidence_threshold: float = Field(
        default=60.0,
        validation_alias=AliasChoices("OCR_CONFIDENCE_THRESHOLD", "OCR__CONFIDENCE_THRESHOLD"),
    )
    vision_prompt: str = Field(
        default="Odczytaj cały tekst z tego obrazu.",
        validation_alias=AliasChoices("OCR_VISION_PROMPT", "OCR__VISION_PROMPT"),
    )


class ScrapingSettings(BaseSettings):
    """Scraping queue limits and HTTP behaviour."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_concurrent: int = Field(
        default=3,
        validation_alias=AliasChoices("SCRAPING_MAX_CONCURRENT", "SCRAPING__MAX_CONCURRENT"),
    )
    max_pages_parallel: int = Field(
        default=5,
        validation_alias=AliasChoices("SCRAPING_MAX_PAGES_PARALLEL", "SCRAPING__MAX_PAGES_PARALLEL"),
    )
    default_priority: int = Field(
        default=50,
        validation_alias=AliasChoices("SCRAPING_DEFAULT_PRIORITY", "SCRAPING__DEFAULT_PRIORITY"),
    )
    max_pages: int = Field(
        default=25,
        validation_alias=AliasChoices("SCRAPING_MAX_PAGES", "SCRAPING__MAX_PAGES"),
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        validation_alias=AliasChoices("SCRAPING_REQUEST_TIMEOUT_SECONDS", "SCRAPING__REQUEST_TIMEOUT_SECONDS"),
    )
    user_agent: str = Field(
        default="Mozilla/5.0 (compatible; docflow/0.1)",
        validation_alias=AliasChoices("SCRAPING_USER_AGENT", "SCRAPING__USER_AGENT"),
    )


class MediaSettings(BaseSettings):
    """External tools used to fetch audio for transcription."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    ytdlp_path: str = Field(
        default="yt-dlp",
        validation_alias=AliasChoices("YTDLP_PATH", "MEDIA__YTDLP_PATH"),
    )
    ffmpeg_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("FFMPEG_PATH", "MEDIA__FFMPEG_PATH"),
    )
    temp_dir: Path = Field(
        default=PROJECT_ROOT / "data" / "audio",
        validation_alias=AliasChoices("MEDIA_TEMP_DIR", "MEDIA__TEMP_DIR"),
    )
    download_timeout_seconds: float = Field(
        default=1800.0,
        validation_alias=AliasChoices("MEDIA_DOWNLOAD_TIMEOUT_SECONDS", "MEDIA__DOWNLOAD_TIMEOUT_SECONDS"),
    )


class RealtimeSettings(BaseSettings):
    """Notification hub tuning."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    sse_heartbeat_seconds: float = Field(
        default=15.0,
        validation_alias=AliasChoices("REALTIME_SSE_HEARTBEAT_SECONDS", "REALTIME__SSE_HEARTBEAT_SECONDS"),
    )
    finished_task_ttl_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices("REALTIME_FINISHED_TASK_TTL_SECONDS", "REALTIME__FINISHED_TASK_TTL_SECONDS"),
    )
    enable_queue_bridge: bool = Field(
        default=True,
        validation_alias=AliasChoices("REALTIME_ENABLE_QUEUE_BRIDGE", "REALTIME__ENABLE_QUEUE_BRIDGE"),
    )


class RecoverySettings(BaseSettings):
    """Transcription recovery thresholds."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("RECOVERY_ENABLED", "RECOVERY__ENABLED"),
    )
    stuck_after_minutes: int = Field(
        default=10,
        validation_alias=AliasChoices("RECOVERY_STUCK_AFTER_MINUTES", "RECOVERY__STUCK_AFTER_MINUTES"),
    )
    timeout_hours: int = Field(
        default=3,
        validation_alias=AliasChoices("RECOVERY_TIMEOUT_HOURS", "RECOVERY__TIMEOUT_HOURS"),
    )
    retention_days: int = Field(
        default=30,
        validation_alias=AliasChoices("RECOVERY_RETENTION_DAYS", "RECOVERY__RETENTION_DAYS"),
    )
    interval_seconds: int = Field(
        default=3600,
        validation_alias=AliasChoices("RECOVERY_INTERVAL_SECONDS", "RECOVERY__INTERVAL_SECONDS"),
    )


class AnalysisSettings(BaseSettings):
    """Document scoring inputs."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    council_location: str = Field(
        default="Drawno",
        validation_alias=AliasChoices("ANALYSIS_COUNCIL_LOCATION", "ANALYSIS__COUNCIL_LOCATION"),
    )
    task_retention_days: int = Field(
        default=7,
        validation_alias=AliasChoices("ANALYSIS_TASK_RETENTION_DAYS", "ANALYSIS__TASK_RETENTION_DAYS"),
    )


class ObservabilitySettings(BaseSettings):
    """Logging and metrics configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    structured_logging: bool = Field(
        default=True,
        validation_alias=AliasChoices("OBS_STRUCTURED_LOGGING", "OBSERVABILITY__STRUCTURED_LOGGING"),
    )
    statsd_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OBS_STATSD_HOST", "OBSERVABILITY__STATSD_HOST"),
    )
    statsd_port: int = Field(
        default=8125,
        validation_alias=AliasChoices("OBS_STATSD_PORT", "OBSERVABILITY__STATSD_PORT"),
    )
    statsd_prefix: str = Field(
        default="docflow",
        validation_alias=AliasChoices("OBS_STATSD_PREFIX", "OBSERVABILITY__STATSD_PREFIX"),
    )
    service_name: str = Field(
        default="docflow-backend",
        validation_alias=AliasChoices("OBS_SERVICE_NAME", "OBSERVABILITY__SERVICE_NAME"),
    )


class Settings(BaseSettings):
    """Top-level configuration model with nested sections for each subsystem."""

    env: str = Field(
        default_factory=lambda: _resolve_env(),
        validation_alias=AliasChoices("ENV", "ENVIRONMENT", "RUNTIME__ENV"),
    )
    project_root: Path = Field(default=PROJECT_ROOT)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    api: APISettings = Field(default_factory=APISettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    ocr: OCRSettings = Field(default_factory=OCRSettings)
    scraping: ScrapingSettings = Field(default_factory=ScrapingSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    env_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)
    config_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="DOCFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Extend settings sources with TOML-based config files."""

        config_sources = [TomlConfigSettingsSource(settings_cls, path) for path in _config_file_priority()]
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            *config_sources,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths once the model is initialised."""

        if not self.storage.sqlite_path.is_absolute():
            storage_update = {"sqlite_path": (self.project_root / self.storage.sqlite_path).resolve()}
            object.__setattr__(self, "storage", self.storage.model_copy(update=storage_update))
        if not self.media.temp_dir.is_absolute():
            media_update = {"temp_dir": (self.project_root / self.media.temp_dir).resolve()}
            object.__setattr__(self, "media", self.media.model_copy(update=media_update))
        return self

    @model_validator(mode="after")
    def _apply_environment_overrides(self) -> "Settings":
        """Force environment-specific defaults after basic resolution."""

        if self.env.lower() == "local":
            observability_update = {"structured_logging": False}
            object.__setattr__(self, "observability", self.observability.model_copy(update=observability_update))

        provider_override = os.getenv("DOCFLOW_LLM__PROVIDER") or os.getenv("DOCFLOW_LLM_PROVIDER")
        if provider_override:
            llm_updates = {"provider": provider_override.strip().lower()}
            object.__setattr__(self, "llm", self.llm.model_copy(update=llm_updates))
        return self

    @property
    def log_level(self) -> str:
        """str: Effective logging level for the running process."""

        return self.runtime.log_level

    @property
    def sqlite_path(self) -> Path:
        """Path: Filesystem path for the local SQLite database."""

        return self.storage.sqlite_path

    @property
    def is_local(self) -> bool:
        """bool: True when the active environment is ``local``."""

        return self.env.lower() == "local"


def _load_settings(env: str | None = None) -> Settings:
    """Load settings with optional environment override.

    Args:
        env: Environment name supplied programmatically.

    Returns:
        Fully parsed :class:`Settings` instance with env files applied.
    """

    resolved_env = _resolve_env(env)
    candidate_files = [path for path in _env_file_candidates(resolved_env) if path.exists()]
    config_files = _config_file_priority()
    return Settings(
        _env_file=[str(path) for path in candidate_files],
        _env_file_encoding="utf-8",
        env=resolved_env,
        env_files=tuple(candidate_files),
        config_files=config_files,
    )


@lru_cache(maxsize=1)
def get_settings(env: str | None = None) -> Settings:
    """Return cached settings for the requested environment."""

    return _load_settings(env)


def reload_settings(env: str | None = None) -> Settings:
    """Clear the cached settings and reload from disk."""

    get_settings.cache_clear()
    return get_settings(env)


__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "PROJECT_ROOT",
    "ENV_VAR_NAME",
]
