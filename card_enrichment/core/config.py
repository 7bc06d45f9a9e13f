"""Configuration Manager for the card enrichment service.

Centralized configuration loading from environment variables with sensible defaults.
All configuration is validated at load time to fail fast on invalid values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from card_enrichment.core.exceptions import ConfigurationError

SUPPORTED_LLM_PROVIDERS = ("anthropic", "openai")


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Required:
        openai_api_key: API key for OpenAI (AI metadata and transcription).

    Optional (with defaults):
        anthropic_api_key: API key when llm_provider is "anthropic".
        llm_provider: Provider used for tags/summary generation.
        llm_model: Model name; None uses the provider default.
        ai_model_version: Version string stamped into aiModelMeta.
        transcription_model: OpenAI audio transcription model.
        kernel_api_key: API key for the headless-browser sandbox.
        kernel_api_url: Base URL of the sandbox REST API.
        unfurl_api_url: Link unfurl endpoint.
        unfurl_timeout: Seconds before an unfurl request is abandoned.
        data_dir: Directory holding cards, jobs and blobs.
        public_base_url: Base URL under which blobs are served.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        poll_interval: Seconds between scheduler polls.
        max_concurrent_jobs: Maximum jobs dispatched in parallel.
        cleanup_hour_utc: Hour of day (UTC) for the soft-delete purge.
        ai_backfill_interval_hours: Hours between AI backfill sweeps.
    """

    # Required
    openai_api_key: str

    # Optional with defaults
    anthropic_api_key: str | None = None
    llm_provider: str = "openai"
    llm_model: str | None = None
    ai_model_version: str = "2024-08-06"
    transcription_model: str = "gpt-4o-mini-transcribe"
    kernel_api_key: str | None = None
    kernel_api_url: str = "https://api.onkernel.com"
    unfurl_api_url: str = "https://api.microlink.io/"
    unfurl_timeout: float = 20.0
    data_dir: Path = field(default_factory=lambda: Path("data"))
    public_base_url: str = "http://localhost:8767"
    log_level: str = "INFO"
    poll_interval: float = 1.0
    max_concurrent_jobs: int = 5
    cleanup_hour_utc: int = 2
    ai_backfill_interval_hours: float = 6.0

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)
        self.public_base_url = self.public_base_url.rstrip("/")

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL '{self.log_level}'. "
                f"Must be one of: {', '.join(sorted(valid_log_levels))}"
            )
        self.log_level = self.log_level.upper()

        self.llm_provider = self.llm_provider.lower()
        if self.llm_provider not in SUPPORTED_LLM_PROVIDERS:
            raise ConfigurationError(
                f"Invalid CARD_LLM_PROVIDER '{self.llm_provider}'. "
                f"Must be one of: {', '.join(SUPPORTED_LLM_PROVIDERS)}"
            )

        if self.unfurl_timeout <= 0:
            raise ConfigurationError("CARD_UNFURL_TIMEOUT must be positive")
        if self.poll_interval <= 0:
            raise ConfigurationError("CARD_POLL_INTERVAL must be positive")
        if self.max_concurrent_jobs < 1:
            raise ConfigurationError("CARD_MAX_CONCURRENT_JOBS must be at least 1")
        if not 0 <= self.cleanup_hour_utc <= 23:
            raise ConfigurationError("CARD_CLEANUP_HOUR_UTC must be between 0 and 23")
        if self.ai_backfill_interval_hours <= 0:
            raise ConfigurationError("CARD_AI_BACKFILL_HOURS must be positive")

    @property
    def cards_file(self) -> Path:
        return self.data_dir / "cards.json"

    @property
    def jobs_file(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def blobs_dir(self) -> Path:
        return self.data_dir / "blobs"


def load_config(*, require_api_key: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        require_api_key: If True (default), raises ConfigurationError when
            OPENAI_API_KEY is missing. Set to False for testing or
            one-off maintenance commands that make no AI calls.

    Returns:
        Config object with all settings loaded.

    Raises:
        ConfigurationError: If required config is missing or values are invalid.
    """
    api_key = os.environ.get("OPENAI_API_KEY", "")

    if require_api_key and not api_key:
        raise ConfigurationError(
            "OPENAI_API_KEY environment variable is required but not set"
        )

    def get_float(key: str, default: float) -> float:
        """Parse float from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid number, got '{value}'")

    def get_int(key: str, default: int) -> int:
        """Parse int from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid integer, got '{value}'")

    return Config(
        openai_api_key=api_key,
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
        llm_provider=os.environ.get("CARD_LLM_PROVIDER", "openai"),
        llm_model=os.environ.get("CARD_LLM_MODEL") or None,
        ai_model_version=os.environ.get("CARD_AI_MODEL_VERSION", "2024-08-06"),
        transcription_model=os.environ.get(
            "CARD_TRANSCRIPTION_MODEL", "gpt-4o-mini-transcribe"
        ),
        kernel_api_key=os.environ.get("KERNEL_API_KEY"),
        kernel_api_url=os.environ.get("KERNEL_API_URL", "https://api.onkernel.com"),
        unfurl_api_url=os.environ.get(
            "CARD_UNFURL_API_URL", "https://api.microlink.io/"
        ),
        unfurl_timeout=get_float("CARD_UNFURL_TIMEOUT", 20.0),
        data_dir=Path(os.environ.get("CARD_DATA_DIR", "data")),
        public_base_url=os.environ.get("CARD_PUBLIC_BASE_URL", "http://localhost:8767"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        poll_interval=get_float("CARD_POLL_INTERVAL", 1.0),
        max_concurrent_jobs=get_int("CARD_MAX_CONCURRENT_JOBS", 5),
        cleanup_hour_utc=get_int("CARD_CLEANUP_HOUR_UTC", 2),
        ai_backfill_interval_hours=get_float("CARD_AI_BACKFILL_HOURS", 6.0),
    )


# Singleton instance for convenience
_config: Config | None = None


def get_config(*, require_api_key: bool = True) -> Config:
    """Get the global configuration instance.

    Loads configuration on first call and caches it for subsequent calls.
    Use reset_config() to force a reload.

    Args:
        require_api_key: If True (default), raises ConfigurationError when
            OPENAI_API_KEY is missing.

    Returns:
        The global Config instance.
    """
    global _config
    if _config is None:
        _config = load_config(require_api_key=require_api_key)
    return _config


def reset_config() -> None:
    """Reset the global configuration instance.

    Forces the next get_config() call to reload from environment variables.
    Useful for testing.
    """
    global _config
    _config = None
