"""Base configuration with Pydantic validation.

This module provides the core configuration system for the SIP engine,
loaded from environment variables (and an optional .env file) with
validation and type checking using Pydantic.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TradeApiConfig(BaseModel):
    """Connection settings for the custody/trade service."""

    url: str | None = Field(default=None, description="Base URL of the trade service")
    api_key: str | None = Field(default=None, description="Bearer token for the trade service")
    timeout: float = Field(
        default=120.0, ge=5.0, le=900.0, description="Settlement wait timeout in seconds"
    )


class Config(BaseSettings):
    """Main application configuration with validation.

    Example:
        >>> config = Config()
        >>> print(config.paper_trading)
        True
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///data/databases/sip_engine.db",
        description="Database connection URL (PostgreSQL for production, SQLite for testing)",
    )

    # Trading
    paper_trading: bool = Field(
        default=True, description="Simulate trades instead of calling the trade service"
    )
    trade_api_url: str | None = Field(default=None)
    trade_api_key: str | None = Field(default=None)
    trade_api_timeout: float = Field(default=120.0)

    # Scheduler YAML
    scheduler_config_path: str = Field(
        default="config/scheduler.yaml",
        description="Path to the scheduler/worker tuning file",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/app.log", description="Log file path")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the accepted values."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("trade_api_url")
    @classmethod
    def validate_trade_api_url(cls, v: str | None) -> str | None:
        """Trade service URL must be http(s) when given."""
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("TRADE_API_URL must start with http:// or https://")
        return v.rstrip("/")

    @model_validator(mode="after")
    def require_trade_api_when_live(self) -> "Config":
        """Live mode cannot run without a trade service to call."""
        if not self.paper_trading and not self.trade_api_url:
            raise ValueError("TRADE_API_URL is required when PAPER_TRADING is false")
        return self

    @property
    def trade_api(self) -> TradeApiConfig:
        """Get trade service configuration."""
        return TradeApiConfig(
            url=self.trade_api_url,
            api_key=self.trade_api_key,
            timeout=self.trade_api_timeout,
        )

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            "data/databases",
            "logs",
            "run",
        ]

        for directory in directories:
            Path(directory).mkdir(parents=True, exist_ok=True)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create the global configuration instance.

    Returns:
        Config: The global configuration object
    """
    global _config
    if _config is None:
        _config = Config()
        _config.ensure_directories()
    return _config


def reset_config() -> None:
    """Reset the global configuration instance.

    Useful for testing when you need to reload configuration.
    """
    global _config
    _config = None
