"""Application configuration from environment variables."""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(
        default="sqlite:///./building_ledger.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/ledger.log", description="Log file path")

    # Formatting
    locale: str = Field(default="es_AR", description="Locale for money formatting")
    currency: str = Field(default="ARS", description="ISO currency code")

    # Billing
    default_late_fee_rate: Decimal = Field(
        default=Decimal("10"),
        ge=0,
        description="Late fee percent per month for new settlements",
    )

    # Credit movement history
    credit_movements_default_limit: int = Field(default=25, gt=0)
    credit_movements_max_limit: int = Field(default=100, gt=0)


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()


# Global settings instance
settings = Settings()
