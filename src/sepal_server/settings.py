import os

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the Sepal server."""

    model_config = SettingsConfigDict(
        env_prefix="SEPAL_",
        env_file=os.getenv("SETTINGS_ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8004, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database settings
    database_url: str = Field(default="sqlite+aiosqlite:///sepal.db", description="Async SQLAlchemy database URL")

    # Completion backend settings
    provider_base_url: str = Field(
        default="http://localhost:8080/v1",
        validation_alias=AliasChoices("LLAMA_BASE_URL", "OPENAI_BASE_URL", "SEPAL_PROVIDER_BASE_URL"),
    )
    provider_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("LLAMA_API_KEY", "OPENAI_API_KEY", "SEPAL_PROVIDER_API_KEY"),
    )
    provider_stream: bool = Field(default=True, description="Request streamed completions from the backend")
    provider_timeout: float = Field(default=300.0, description="Backend request timeout in seconds")

    # Run settings
    run_expires_after: int = Field(default=3600, description="Seconds until a queued run expires")

    @property
    def log_format(self) -> str:
        """Log message format."""
        return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


settings = Settings()
