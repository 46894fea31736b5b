"""Configuration settings for the orchestration engine."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "ensemble"
    db_user: str = "agent"
    db_password: str = "agent"
    # Full async URL, overrides the discrete fields above when set
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_queue_enabled: bool = False
    redis_queue_max_depth: int = 100
    redis_publish_enabled: bool = True

    # Rate limits (per user, sliding windows)
    rate_max_requests_per_minute: int = 30
    rate_max_requests_per_hour: int = 200
    rate_max_cost_per_hour: Decimal = Decimal("5.00")

    # Advisory pre-check estimates (USD)
    rate_check_estimated_cost: Decimal = Decimal("0.05")
    budget_check_estimated_cost: Decimal = Decimal("0.10")

    # Sessions
    default_max_iterations: int = 10
    default_budget_limit: Decimal = Decimal("10.00")
    auto_role_triggers: bool = True
    stalled_session_minutes: int = 30
    run_lease_minutes: int = 60

    # LLM gateway
    llm_gateway_url: str = "http://localhost:4000/v1"
    llm_timeout: float = 300.0
    llm_max_tokens: int = 4000

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "ENSEMBLE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
