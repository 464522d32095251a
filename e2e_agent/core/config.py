"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Anthropic API
    anthropic_api_key: SecretStr | None = Field(
        default=None,
        description="Anthropic API key for Claude access",
    )
    e2e_llm_model: str = Field(
        default="claude-3-sonnet-20240229",
        description="Default model used by the Anthropic backend",
    )
    e2e_llm_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for generation",
    )
    e2e_llm_max_tokens: int = Field(
        default=2000,
        ge=1,
        description="Maximum tokens per completion",
    )

    # OpenAI-compatible API (OpenAI, DeepSeek)
    openai_api_key: SecretStr | None = Field(
        default=None,
        description="API key for the OpenAI-compatible backend",
    )
    openai_base_url: str | None = Field(
        default=None,
        description="Base URL for OpenAI-compatible APIs such as DeepSeek",
    )
    e2e_openai_model: str = Field(
        default="gpt-4-turbo",
        description="Default model used by the OpenAI backend",
    )
    e2e_llm_providers: str = Field(
        default="anthropic",
        description="Comma-separated backend chain in priority order (anthropic, openai)",
    )

    # Logging
    e2e_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    e2e_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    e2e_log_dir: str = Field(
        default="logs",
        description="Directory for rotated log files",
    )

    # Model gateway
    e2e_cache_enabled: bool = Field(
        default=True,
        description="Cache model responses",
    )
    e2e_cache_max_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1024,
        description="Byte budget for the prompt cache",
    )
    e2e_cache_ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Prompt cache entry lifetime in seconds",
    )
    e2e_budget_limit: float = Field(
        default=10.0,
        ge=0.0,
        description="Spending cap in USD for one gateway",
    )
    e2e_provider_max_retries: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per backend before falling back",
    )
    e2e_provider_timeout_ms: int = Field(
        default=30000,
        ge=100,
        description="Per-attempt backend timeout in milliseconds",
    )
    e2e_backoff_base_ms: int = Field(
        default=1000,
        ge=0,
        description="Base delay for exponential backoff",
    )
    e2e_backoff_cap_ms: int = Field(
        default=5000,
        ge=0,
        description="Upper bound for a single backoff delay",
    )

    # Decomposition and self-healing
    e2e_html_budget: int = Field(
        default=4000,
        ge=200,
        description="Characters of page snapshot embedded in prompts",
    )
    e2e_refinement_rounds: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Generate/validate/refine rounds per planned step",
    )
    e2e_self_heal_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Execution attempts in the self-healing loop",
    )
    e2e_llm_call_budget: int = Field(
        default=6,
        ge=1,
        description="Correction calls allowed per failure across healing layers",
    )
    e2e_max_parallel_subtasks: int = Field(
        default=1,
        ge=1,
        le=20,
        description="Concurrent subtasks when running a task graph",
    )

    @property
    def llm_provider_chain(self) -> list[str]:
        """Backend names from ``E2E_LLM_PROVIDERS``, lowercased, in order."""
        return [p.strip().lower() for p in self.e2e_llm_providers.split(",") if p.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.e2e_self_heal_max_attempts
        3
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
