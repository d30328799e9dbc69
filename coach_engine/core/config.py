"""Configuration management for the support coach engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Environment
    COACH_ENV: str = Field(default="dev", description="Environment: dev, staging, prod, test")

    # Language model gateway
    LLM_PROVIDER: str = Field(default="openai", description="Only 'openai' enables the model path")
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key; empty disables the model path")
    OPENAI_BASE_URL: str | None = Field(default=None, description="Optional OpenAI-compatible base URL")
    LLM_MODEL: str = Field(default="gpt-4o-mini", description="Fast model used for engine ticks")
    TICK_TEMPERATURE: float = Field(default=0.5, description="Temperature for the primary tick call")
    RETRY_TEMPERATURE: float = Field(default=0.45, description="Temperature for the strict retry call")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Semantic retrieval
    SEMANTIC_RETRIEVAL_ENABLED: bool = Field(
        default=False, description="Use vector retrieval before lexical fallback inside ticks"
    )
    RAG_LIMIT: int = Field(default=8, description="Max chunks returned by semantic retrieval")
    RAG_SIMILARITY_THRESHOLD: float = Field(
        default=0.25, description="Minimum cosine similarity for stored chunks"
    )
    RAG_TIMEOUT_MS: int = Field(default=150, description="Latency budget for semantic retrieval")
    RAG_EMBED_TIMEOUT_MS: int = Field(
        default=80, description="Hard cap on the query embedding call"
    )

    # Engine timers
    FINALIZE_DEBOUNCE_MS: int = Field(default=280, description="Customer final-segment debounce")
    SILENCE_TIMEOUT_MS: int = Field(default=1000, description="Silence after partial speech")
    INTERIM_RACE_MS: int = Field(default=900, description="Wait before emitting an interim suggestion")
    LIVENESS_INTERVAL_MS: int = Field(default=15_000, description="Fallback liveness check period")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
