"""Configuration settings for the task execution orchestrator."""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "planroom"
    db_user: str = "planroom"
    db_password: str = "planroom"
    database_url_override: str | None = None

    # Generation backend
    opencode_api_url: str = "http://localhost:4096"
    opencode_directory: str | None = None
    opencode_agent: str = "general"

    # Events
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Workflow
    max_rounds: int = Field(7, gt=0)
    max_reviewers: int = Field(3, gt=0)
    parallel_reviews: bool = True
    placeholder_on_initial_failure: bool = False

    # Timeouts (seconds)
    generation_timeout: float = 300.0

    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "PLANROOM_"
        env_file = ".env"


# Default instance for the CLI; library code receives Settings explicitly.
settings = Settings()
