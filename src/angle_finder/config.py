"""Layered application settings.

Values resolve from, lowest to highest precedence: field defaults, a YAML
file, a ``.env`` file, ``ANGLE_FINDER_*`` environment variables (``__``
separates nested keys, e.g. ``ANGLE_FINDER_SCHEDULER__SYNC_CONCURRENCY``)
and finally keyword overrides passed to :meth:`Settings.load`.

Secrets are deliberately absent. Provider and LLM keys are looked up under
their conventional names (``REDDIT_CLIENT_ID``, ``NCBI_API_KEY``,
``ANTHROPIC_API_KEY_PRIMARY`` ...) by the component that uses them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal, Self

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = Path("config.yaml")

DEFAULT_SEARCH_MODIFIERS: tuple[str, ...] = (
    "Surprising",
    "Shocking",
    "Breakthrough",
    "New Discovery",
    "New Research",
    "New Data",
    "New Finding",
    "Real Reason",
    "Science Behind",
)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class LLMSettings(BaseModel):
    """Model selection and the rate-limit retry budget."""

    model: str = Field(
        default="anthropic/claude-sonnet-4-20250514",
        description="litellm model identifier.",
    )
    max_tokens: int = Field(default=4096, gt=0)
    timeout: int = Field(default=120, gt=0, description="Seconds per completion.")
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Backoff seed in seconds, doubled per rate-limited attempt.",
    )


class ProviderSettings(BaseModel):
    """HTTP behaviour shared by the discovery adapters."""

    timeout: float = Field(default=15.0, gt=0.0)
    preprint_timeout: float = Field(default=8.0, gt=0.0)
    search_timeout: float = Field(
        default=30.0, gt=0.0, description="Ceiling for one yt-dlp search."
    )
    user_agent: str = "AngleFinder/1.0"
    ncbi_request_interval: float = Field(
        default=0.35,
        ge=0.0,
        description="Pause between NCBI E-utilities calls (3 req/s without a key).",
    )


class TranscriptSettings(BaseModel):
    poll_interval: float = Field(default=3.0, gt=0.0)
    poll_attempts: int = Field(default=10, ge=1)


class DiscoverySettings(BaseModel):
    page_size: int = Field(default=20, ge=1, le=200)
    modifiers: list[str] = Field(default_factory=lambda: list(DEFAULT_SEARCH_MODIFIERS))


class SchedulerSettings(BaseModel):
    """Pre-analysis pools.

    The commit pool may not be wider than the background pool: once the
    user is waiting, the rate-limit budget is tighter.
    """

    debounce_seconds: float = Field(default=0.5, ge=0.0)
    background_concurrency: int = Field(default=6, ge=1, le=64)
    sync_concurrency: int = Field(default=3, ge=1, le=64)

    @model_validator(mode="after")
    def _sync_pool_not_wider(self) -> Self:
        if self.sync_concurrency > self.background_concurrency:
            msg = (
                f"sync_concurrency ({self.sync_concurrency}) must not exceed "
                f"background_concurrency ({self.background_concurrency})"
            )
            raise ValueError(msg)
        return self


class StoreSettings(BaseModel):
    directory: Path = Field(
        default=Path("./data/store"),
        description="Holds the content cache, usage and error JSON files.",
    )


class APISettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Everything configurable about angle-finder, one section per concern."""

    model_config = SettingsConfigDict(
        env_prefix="ANGLE_FINDER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file=DEFAULT_CONFIG_FILE,
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    # Set only for the duration of one ``load`` call.
    _yaml_path: ClassVar[Path | None] = None

    llm: LLMSettings = Field(default_factory=LLMSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    transcripts: TranscriptSettings = Field(default_factory=TranscriptSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    api: APISettings = Field(default_factory=APISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Put the YAML file below the environment; secrets dirs are unused."""
        yaml_source = YamlConfigSettingsSource(
            settings_cls,
            yaml_file=cls._yaml_path or settings_cls.model_config.get("yaml_file"),
        )
        return init_settings, env_settings, dotenv_settings, yaml_source

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Resolve settings from every layer.

        Args:
            config_path: YAML file to read instead of ``./config.yaml``. A
                missing file is treated as empty.
            **overrides: Section values that beat every other layer, e.g.
                ``api={"port": 9000}``.

        Raises:
            ValidationError: When any layer supplies an invalid value.
        """
        cls._yaml_path = config_path
        try:
            return cls(**overrides)
        finally:
            cls._yaml_path = None


def format_validation_error(exc: ValidationError) -> str:
    """Render a settings ValidationError as one bullet per bad field."""
    bullets = []
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"]) or "settings"
        bullet = f"- {where}: {error['msg']}"
        if "input" in error and not isinstance(error["input"], dict):
            bullet += f" (got {error['input']!r})"
        bullets.append(bullet)
    return "Invalid configuration:\n" + "\n".join(bullets)
