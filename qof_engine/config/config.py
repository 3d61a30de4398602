"""
Engine configuration with environment-based settings.
All configuration is explicit, validated, and logged when the engine starts.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    All settings have sensible defaults so the engine can be embedded
    without any configuration; the hosting application may override them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = Field(default="QOF Care-Gap Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )

    # Evaluation
    evaluation_workers: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Worker threads per evaluation pass (1 = serial)"
    )
    status_warning_band: int = Field(
        default=20,
        ge=0,
        le=100,
        description="Percentage points below target still reported as 'warning'"
    )
    top_gaps_limit: int = Field(
        default=5,
        ge=1,
        description="Number of indicators shown in the top-gaps rollup"
    )

    # Export
    export_delimiter: str = Field(
        default=",",
        min_length=1,
        max_length=1,
        description="Field delimiter for tabular exports"
    )
    export_encoding: str = Field(default="utf-8", description="Byte encoding for exports")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format"
    )

    def get_safe_config_dict(self) -> dict:
        """Return configuration dict suitable for logging."""
        return self.model_dump()


@lru_cache
def get_settings() -> Settings:
    """
    Get cached engine settings.

    Settings are loaded once and cached for the process lifetime.
    Pass an explicit Settings instance to the engine for testability.
    """
    return Settings()
