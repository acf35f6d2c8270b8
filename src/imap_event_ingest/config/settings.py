"""Configuration and environment settings for the ingest worker."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class WorkerSettings(BaseModel):
    """Session scheduling, keepalive and reconnect settings."""

    model_config = ConfigDict(extra="forbid")

    max_concurrent_providers: Annotated[int, Field(ge=1, le=500)] = 5
    poll_interval_ms: Annotated[int, Field(ge=1_000)] = 300_000
    idle_keepalive_ms: Annotated[int, Field(ge=1_000)] = 15_000
    backoff_min_ms: Annotated[int, Field(ge=100)] = 1_000
    backoff_max_ms: Annotated[int, Field(ge=100)] = 60_000
    backoff_factor: Annotated[float, Field(ge=1.0)] = 2.0
    backoff_jitter: Annotated[float, Field(ge=0.0, le=1.0)] = 0.25
    imap_timeout_seconds: Annotated[float, Field(gt=0)] = 120.0
    use_fake_extractor: bool = False

    @model_validator(mode="after")
    def _backoff_max_not_below_min(self) -> WorkerSettings:
        """Raise ``backoff_max_ms`` to ``backoff_min_ms`` when configured lower."""
        if self.backoff_max_ms < self.backoff_min_ms:
            self.backoff_max_ms = self.backoff_min_ms
        return self


class ExtractorSettings(BaseModel):
    """Settings for the remote extraction capability."""

    model_config = ConfigDict(extra="forbid")

    endpoint: HttpUrl | None = None
    api_key: Annotated[SecretStr | None, Field(repr=False)] = None
    timeout_seconds: Annotated[float, Field(gt=0, le=600)] = 30.0
    max_chars: Annotated[int, Field(ge=1_000)] = 20_000


class StorageSettings(BaseModel):
    """Settings for the sqlite state database."""

    model_config = ConfigDict(extra="forbid")

    root_dir: Path = Path("./data")
    sqlite_path_override: Path | None = None

    @field_validator("root_dir")
    @classmethod
    def _root_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the storage root directory to an absolute path."""
        return value.expanduser().resolve()

    @field_validator("sqlite_path_override")
    @classmethod
    def _path_to_absolute(cls, value: Path | None) -> Path | None:
        """Resolve the optional override path to an absolute path."""
        return value.expanduser().resolve() if value is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sqlite_path(self) -> Path:
        """Return the resolved sqlite database path."""
        return (self.sqlite_path_override or (self.root_dir / "worker.sqlite3")).resolve()


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    model_config = ConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = True
    db_sink: bool = False
    db_sink_batch_size: Annotated[int, Field(ge=1, le=1_000)] = 25


class AlertSettings(BaseModel):
    """Counter thresholds that escalate to warn/error log entries (0 disables)."""

    model_config = ConfigDict(extra="forbid")

    extraction_failure_threshold: Annotated[int, Field(ge=0)] = 25
    insert_failure_threshold: Annotated[int, Field(ge=0)] = 10


class MetricsSettings(BaseModel):
    """StatsD export of worker counters; disabled while ``statsd_host`` is unset."""

    model_config = ConfigDict(extra="forbid")

    statsd_host: str | None = None
    statsd_port: Annotated[int, Field(ge=1, le=65_535)] = 8125
    prefix: str = "worker"


def _split_list(value: object) -> object:
    """Parse a list from JSON or comma-separated values.

    Args:
        value: Raw env value.

    Returns:
        Parsed value (list or original).
    """
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            import json

            return json.loads(stripped)
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return value


class SpamSettings(BaseModel):
    """Keyword, phrase and domain lists used by the spam filter."""

    model_config = ConfigDict(extra="forbid")

    keywords: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "unsubscribe",
            "lottery",
            "sweepstakes",
            "crypto",
            "bet now",
            "guaranteed winner",
            "adult",
            "viagra",
            "pills",
            "free money",
        ],
    )
    suspicious_phrases: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "not an event",
            "special promotion",
            "buy now",
            "limited time offer",
            "sponsored content",
        ],
    )
    blocked_domains: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["example-spam.com", "spammy.biz", "clickme.net"],
    )
    penalty: Annotated[float, Field(ge=0, le=1)] = 0.4

    @field_validator("keywords", "suspicious_phrases", "blocked_domains", mode="before")
    @classmethod
    def _parse_lists(cls, value: object) -> object:
        """Accept JSON arrays or comma-separated strings from the environment."""
        return _split_list(value)

    @field_validator("keywords", "suspicious_phrases", "blocked_domains")
    @classmethod
    def _normalize_entries(cls, value: list[str]) -> list[str]:
        """Lowercase entries and drop blanks and repeats."""
        seen: set[str] = set()
        result: list[str] = []
        for entry in value:
            lowered = entry.strip().lower()
            if not lowered or lowered in seen:
                continue
            seen.add(lowered)
            result.append(lowered)
        return result


class DuplicateSettings(BaseModel):
    """Duplicate detection window and penalty."""

    model_config = ConfigDict(extra="forbid")

    lookback_days: Annotated[int, Field(ge=0, le=365)] = 7
    penalty: Annotated[float, Field(ge=0, le=1)] = 0.3


class ConfidenceWeights(BaseModel):
    """Weights of the confidence scorer; defaults keep the historical tuning."""

    model_config = ConfigDict(extra="forbid")

    base: float = 0.35
    title: float = 0.10
    title_min_length: int = 8
    description: float = 0.05
    description_min_length: int = 40
    location: float = 0.10
    url: float = 0.10
    end_time: float = 0.05
    published: float = 0.05
    organizer: float = 0.05
    email_source: float = 0.05
    trusted_provider: float = 0.05
    internal_date: float = 0.05
    high_threshold: Annotated[float, Field(ge=0, le=1)] = 0.8
    medium_threshold: Annotated[float, Field(ge=0, le=1)] = 0.6

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> ConfidenceWeights:
        """Ensure the medium threshold does not exceed the high threshold.

        Raises:
            ValueError: If ``medium_threshold`` is above ``high_threshold``.
        """
        if self.medium_threshold > self.high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")
        return self


class IngestSettings(BaseModel):
    """Decision pipeline tuning."""

    model_config = ConfigDict(extra="forbid")

    spam: SpamSettings = Field(default_factory=SpamSettings)
    duplicates: DuplicateSettings = Field(default_factory=DuplicateSettings)
    confidence: ConfidenceWeights = Field(default_factory=ConfidenceWeights)


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="INGEST_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    extractor: ExtractorSettings = Field(default_factory=ExtractorSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]
