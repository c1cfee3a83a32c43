"""Configuration management for the context window planner."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Planner settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    WINDOW_PLANNER_ENV: str = Field(default="dev", description="Environment: dev, test, prod")

    # Strategy defaults
    DEFAULT_CONTEXT_STRATEGY: str = Field(
        default="append", description="Strategy used when a conversation sets none"
    )
    DEFAULT_TOKENS_BEFORE_CACHING: int = Field(
        default=10_000, description="Append strategy caching threshold"
    )
    DEFAULT_ROLLING_MAX_TOKENS: int = Field(
        default=50_000, description="Rolling strategy soft budget"
    )
    DEFAULT_ROLLING_GRACE_TOKENS: int = Field(
        default=10_000, description="Rolling strategy allowance above the soft budget"
    )

    # Prompt caching
    ENABLE_PROMPT_CACHING: bool = Field(
        default=True, description="Emit cache keys for the cacheable prefix"
    )
    CACHE_KEY_PREFIX: str = Field(default="arc-cache", description="Prefix for cache keys")
    CACHE_TTL_MINUTES: int = Field(
        default=5, description="Provider cache lifetime for regular models"
    )
    EXTENDED_CACHE_TTL_MINUTES: int = Field(
        default=60, description="Provider cache lifetime for extended-cache models"
    )

    # Token estimation
    TOKEN_ESTIMATOR: str = Field(
        default="heuristic", description="Token estimator: heuristic or tiktoken"
    )
    TIKTOKEN_ENCODING: str = Field(
        default="cl100k_base", description="Encoding used by the tiktoken estimator"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance
    """
    return Settings()
