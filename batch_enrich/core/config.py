"""Configuration management for the batch enrichment engine.

Loads configuration from environment variables with .env file support.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Load .env file from project root
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

ENV_PREFIX = "BATCH_ENRICH_"

MAX_CHECKPOINT_INTERVAL = 10000


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class EnrichConfig:
    """Enrichment run configuration."""

    # Analyses
    enable_vision: bool = True
    enable_audio: bool = True
    enable_pdf: bool = True
    enable_links: bool = True

    # Rate limiting
    rate_limit_delay_ms: int = 1000
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_ms: int = 60000

    # Providers
    gemini_model: str = "gemini-1.5-pro"
    firecrawl_enabled: bool = True

    # Checkpointing
    checkpoint_interval: int = 100
    checkpoint_dir: Path = Path("./.checkpoints")

    # Incremental mode
    state_file: Path = Path("./.batch-enrich-state.json")

    # Execution
    force_refresh: bool = False
    max_concurrent_items: int = 1

    def hash_input(self) -> dict[str, Any]:
        """Subset of the configuration that affects enrichment output.

        Checkpoint location, state file, interval, concurrency and
        force-refresh only
        change how a run proceeds, not what it produces, so they are left out.
        """
        return {
            "enableVisionAnalysis": self.enable_vision,
            "enableAudioTranscription": self.enable_audio,
            "enablePdfSummary": self.enable_pdf,
            "enableLinkAnalysis": self.enable_links,
            "rateLimitDelay": self.rate_limit_delay_ms,
            "maxRetries": self.max_retries,
            "circuitBreakerThreshold": self.circuit_breaker_threshold,
            "circuitBreakerResetMs": self.circuit_breaker_reset_ms,
            "geminiModel": self.gemini_model,
            "firecrawlEnabled": self.firecrawl_enabled,
        }

    def validate(self) -> list[str]:
        """Validate configuration values.

        Returns:
            List of validation error messages, empty if valid.
        """
        errors = []
        if self.rate_limit_delay_ms < 0:
            errors.append("rate limit delay must be a non-negative number of milliseconds")
        if self.max_retries < 0:
            errors.append("max retries must be non-negative")
        if self.circuit_breaker_threshold < 1:
            errors.append("circuit breaker threshold must be >= 1")
        if self.circuit_breaker_reset_ms < 0:
            errors.append("circuit breaker reset must be non-negative")
        if not 1 <= self.checkpoint_interval <= MAX_CHECKPOINT_INTERVAL:
            errors.append(
                f"checkpoint interval must be between 1 and {MAX_CHECKPOINT_INTERVAL}"
            )
        if self.max_concurrent_items < 1:
            errors.append("max concurrent items must be >= 1")
        if not self.gemini_model:
            errors.append("gemini model must not be empty")
        return errors


def get_config() -> EnrichConfig:
    """Load configuration from environment variables.

    Returns:
        EnrichConfig instance populated from environment.
    """
    defaults = EnrichConfig()
    checkpoint_dir = os.environ.get(f"{ENV_PREFIX}CHECKPOINT_DIR")
    state_file = os.environ.get(f"{ENV_PREFIX}STATE_FILE")

    return EnrichConfig(
        enable_vision=_env_bool("ENABLE_VISION", defaults.enable_vision),
        enable_audio=_env_bool("ENABLE_AUDIO", defaults.enable_audio),
        enable_pdf=_env_bool("ENABLE_PDF", defaults.enable_pdf),
        enable_links=_env_bool("ENABLE_LINKS", defaults.enable_links),
        rate_limit_delay_ms=_env_int("RATE_LIMIT_MS", defaults.rate_limit_delay_ms),
        max_retries=_env_int("MAX_RETRIES", defaults.max_retries),
        circuit_breaker_threshold=_env_int(
            "CIRCUIT_BREAKER_THRESHOLD", defaults.circuit_breaker_threshold
        ),
        circuit_breaker_reset_ms=_env_int(
            "CIRCUIT_BREAKER_RESET_MS", defaults.circuit_breaker_reset_ms
        ),
        gemini_model=os.environ.get(f"{ENV_PREFIX}GEMINI_MODEL", defaults.gemini_model),
        firecrawl_enabled=_env_bool("FIRECRAWL_ENABLED", defaults.firecrawl_enabled),
        checkpoint_interval=_env_int("CHECKPOINT_INTERVAL", defaults.checkpoint_interval),
        checkpoint_dir=Path(checkpoint_dir) if checkpoint_dir else defaults.checkpoint_dir,
        state_file=Path(state_file) if state_file else defaults.state_file,
        force_refresh=_env_bool("FORCE_REFRESH", defaults.force_refresh),
        max_concurrent_items=_env_int("MAX_CONCURRENT_ITEMS", defaults.max_concurrent_items),
    )
