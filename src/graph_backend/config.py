"""Application configuration using environment variables."""

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

_LOG_LEVELS: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}
_DEFAULT_RETENTION_HOURS = 48


class LoggingPreferences(BaseModel):
    """Levels and retention read from the `key = value` logging settings file.

    `terminal` sets console verbosity, `outcomes` gates the stream outcome log
    (`off` disables it) and `retention_hours` bounds how long outcome logs are kept.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    terminal_level: Optional[int] = Field(
        default=logging.INFO,
        validation_alias=AliasChoices("terminal", "terminal_level"),
    )
    outcomes_level: Optional[int] = Field(
        default=logging.INFO,
        validation_alias=AliasChoices("outcomes", "outcomes_level"),
    )
    retention_hours: int = _DEFAULT_RETENTION_HOURS

    @field_validator("terminal_level", "outcomes_level", mode="before")
    @classmethod
    def _level_from_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LOG_LEVELS.get(value.strip().lower(), logging.INFO)
        return value

    @field_validator("retention_hours", mode="before")
    @classmethod
    def _clamp_retention(cls, value: Any) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return _DEFAULT_RETENTION_HOURS


def _read_key_values(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip().lower()] = value.strip()
    return values


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # The key is optional at boot; the chat routes report its absence per request.
    openrouter_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "openrouter_api_key"),
    )
    openrouter_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices("OPENROUTER_BASE_URL", "base_url"),
    )
    openrouter_app_url: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENROUTER_APP_URL",
            "HTTP_REFERER",
            "http_referer",
            "REFERER",
        ),
    )
    openrouter_app_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENROUTER_APP_TITLE",
            "X_TITLE",
            "x_title",
        ),
    )
    default_model: str = Field(
        default="x-ai/grok-4.1-fast",
        validation_alias=AliasChoices(
            "OPENROUTER_DEFAULT_MODEL",
            "default_model",
        ),
    )
    default_image_model: str = Field(
        default="google/gemini-2.5-flash-image-preview",
        validation_alias=AliasChoices(
            "OPENROUTER_IMAGE_MODEL",
            "default_image_model",
        ),
    )
    default_provider_sort: str = Field(
        default="latency",
        validation_alias=AliasChoices(
            "OPENROUTER_PROVIDER_SORT",
            "default_provider_sort",
        ),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("OPENROUTER_TIMEOUT", "timeout"),
        ge=1,
    )

    image_generation_timeout: float = Field(
        default=60.0,
        gt=0,
        validation_alias=AliasChoices(
            "IMAGE_GENERATION_TIMEOUT",
            "image_generation_timeout",
        ),
    )
    image_generation_max_retries: int = Field(
        default=2,
        ge=0,
        validation_alias=AliasChoices(
            "IMAGE_GENERATION_MAX_RETRIES",
            "image_generation_max_retries",
        ),
    )
    image_generation_retry_delay: float = Field(
        default=1.0,
        ge=0,
        validation_alias=AliasChoices(
            "IMAGE_GENERATION_RETRY_DELAY",
            "image_generation_retry_delay",
        ),
    )

    # Deepgram (text-to-speech and word timestamps)
    deepgram_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("DEEPGRAM_API_KEY")
    )
    deepgram_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.deepgram.com/v1"),
        validation_alias=AliasChoices("DEEPGRAM_BASE_URL", "deepgram_base_url"),
    )
    deepgram_tts_model: str = Field(
        default="aura-2-odysseus-en",
        validation_alias=AliasChoices("DEEPGRAM_TTS_MODEL", "deepgram_tts_model"),
    )
    deepgram_stt_model: str = Field(
        default="nova-2",
        validation_alias=AliasChoices("DEEPGRAM_STT_MODEL", "deepgram_stt_model"),
    )

    # Google Cloud Storage for uploaded images
    gcs_bucket_name: str = Field(
        default="graph-chat-images",
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Path = Field(
        default_factory=lambda: Path("credentials/googlecloud/sa.json"),
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )
    image_upload_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "IMAGE_UPLOAD_MAX_BYTES",
            "image_upload_max_bytes",
        ),
    )
    image_url_ttl_days: int = Field(
        default=7,
        ge=1,
        le=7,
        validation_alias=AliasChoices("IMAGE_URL_TTL_DAYS", "image_url_ttl_days"),
    )

    document_max_bytes: int = Field(
        default=25 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices("DOCUMENT_MAX_BYTES", "document_max_bytes"),
    )

    allowed_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://localhost:9955",
            "https://graphai.one",
            "https://www.graphai.one",
            "https://api.graphai.one",
        ],
        validation_alias=AliasChoices("ALLOWED_ORIGINS", "allowed_origins"),
    )

    outcome_log_dir: Path = Field(
        default_factory=lambda: Path("logs/outcomes"),
        validation_alias=AliasChoices("OUTCOME_LOG_DIR", "outcome_log_dir"),
    )
    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices(
            "LOGGING_SETTINGS_PATH",
            "logging_settings_path",
        ),
    )

    @property
    def image_url_ttl(self) -> timedelta:
        return timedelta(days=self.image_url_ttl_days)

    @property
    def has_openrouter_key(self) -> bool:
        if self.openrouter_api_key is None:
            return False
        return bool(self.openrouter_api_key.get_secret_value().strip())

    def load_logging_preferences(self, root: Path | None = None) -> LoggingPreferences:
        """Read `logging_settings_path`, resolving relative paths under `root`."""

        path = self.logging_settings_path
        if not path.is_absolute():
            path = (root or PROJECT_ROOT) / path
        return LoggingPreferences.model_validate(_read_key_values(path))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["LoggingPreferences", "PROJECT_ROOT", "Settings", "get_settings"]
