"""
Settings Module
===============

Pydantic-based configuration with environment variable loading.

Version: 0.1.0
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    CLAUDE = "claude"
    OPENAI = "openai"
    OLLAMA = "ollama"


class StoreBackend(str, Enum):
    """Persistence backend for pipeline state."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class QueueBackend(str, Enum):
    """Transport for stage work queues."""

    MEMORY = "memory"
    REDIS = "redis"


class PostgresSettings(BaseSettings):
    """PostgreSQL database configuration."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = "localhost"
    port: int = 5432
    user: str = "regtruth"
    password: SecretStr = SecretStr("regtruth_dev_password")
    db: str = "regulatory_truth"
    pool_size: int = 10

    @property
    def async_url(self) -> str:
        """Generate async SQLAlchemy connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.db}"

    @property
    def sync_url(self) -> str:
        """Generate sync SQLAlchemy connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql://{self.user}:{pwd}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis configuration (stage queues)."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    password: SecretStr = SecretStr("regtruth_redis_password")
    db: int = 0
    queue_prefix: str = "rtl:queue"

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        pwd = self.password.get_secret_value()
        return f"redis://:{pwd}@{self.host}:{self.port}/{self.db}"


class ClaudeSettings(BaseSettings):
    """Anthropic Claude API configuration."""

    model_config = SettingsConfigDict(env_prefix="CLAUDE_")

    api_key: SecretStr = Field(
        default=SecretStr(""),
        alias="ANTHROPIC_API_KEY",
    )
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096


class OpenAISettings(BaseSettings):
    """OpenAI API configuration."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: SecretStr = SecretStr("")
    model: str = "gpt-4o-mini"


class OllamaSettings(BaseSettings):
    """Ollama local LLM configuration."""

    model_config = SettingsConfigDict(env_prefix="OLLAMA_")

    host: str = "http://localhost:11434"
    model: str = "llama3.3:70b"


class LLMSettings(BaseSettings):
    """LLM provider configuration."""

    model_config = SettingsConfigDict(env_prefix="LLM_")

    provider: LLMProvider = LLMProvider.CLAUDE
    temperature: float = 0.1
    max_retries: int = 3
    timeout_seconds: int = 120

    # Provider-specific settings
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)


class PipelineSettings(BaseSettings):
    """Regulatory truth pipeline behaviour."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    store_backend: StoreBackend = StoreBackend.MEMORY
    queue_backend: QueueBackend = QueueBackend.MEMORY

    # Discovery
    endpoints_file: Path | None = None
    endpoint_error_threshold: int = 5
    request_delay_seconds: float = 2.0
    fetch_timeout_seconds: float = 30.0
    max_items_per_endpoint: int = 200
    user_agent: str = "RegTruthSentinel/1.0 (regulatory compliance monitoring)"

    # Extraction
    extractor_max_chars: int = 50_000
    extractor_call_delay_seconds: float = 3.0
    extractor_max_attempts: int = 3
    llm_call_timeout_seconds: float = 120.0

    # Retries
    retry_base_delay_seconds: float = 1.0
    rate_limit_base_delay_seconds: float = 10.0
    retry_max_delay_seconds: float = 120.0

    # Review gate
    confidence_floor: float = 0.6
    auto_approve_min_confidence: float = 0.9
    auto_approver_id: str = "AUTO_APPROVE_SYSTEM"
    max_validation_failures: int = 3
    allow_legacy_t0_t1_auto_approval: bool = False
    disable_legacy_auto_approval: bool = True

    # Composition
    grouping_similarity_threshold: float = 0.35
    model_drafting: bool = True

    # Releases
    release_summaries: bool = False

    # Workers
    claim_timeout_seconds: float = 900.0
    run_timeout_seconds: float = 600.0
    stale_sweep_interval_seconds: float = 60.0
    worker_concurrency: int = 2
    sentinel_interval_seconds: float = 300.0
    run_workers: bool = True


class CORSSettings(BaseSettings):
    """CORS configuration."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    origins: str = "http://localhost:3000,http://localhost:5173"
    allow_credentials: bool = True

    @property
    def origins_list(self) -> list[str]:
        """Parse origins string into list."""
        return [o.strip() for o in self.origins.split(",") if o.strip()]


class ServicePorts(BaseSettings):
    """Service port configuration."""

    regulatory_truth: int = Field(default=8010, alias="REGULATORY_TRUTH_PORT")


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables with sensible defaults.
    Use the global `settings` singleton or call `get_settings()`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: LogLevel = LogLevel.INFO

    # Project paths
    project_root: Path = Field(default_factory=lambda: Path(__file__).parent.parent.parent)

    # Service ports
    ports: ServicePorts = Field(default_factory=ServicePorts)

    # Infrastructure
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    # LLM configuration
    llm: LLMSettings = Field(default_factory=LLMSettings)

    # Pipeline
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)

    # Security
    cors: CORSSettings = Field(default_factory=CORSSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Ensure log level is uppercase."""
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TESTING


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton.
    """
    return Settings()
