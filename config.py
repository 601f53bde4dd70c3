"""
Configuration management for FolioLedger.
Uses pydantic-settings for type-safe, centralized configuration.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'  # Allow extra fields in .env for flexibility
    )

    # Database
    database_url: str = "sqlite:///folio_ledger.db"
    db_echo: bool = False

    # Portfolio defaults
    base_currency: str = "EUR"  # Used when a portfolio is created without a currency
    default_risk_profile: str = "Balanced"
    rebalance_threshold_percent: float = 5.0
    risk_free_rate: float = 0.02  # Annual, for Sharpe ratio

    # Market data / FX
    fx_cache_ttl_seconds: int = 3600
    market_data_max_workers: int = 5

    # Scheduled price refresh
    price_refresh_cron_hours: str = "9-17"

    # Logging
    log_level: str = "INFO"

    @property
    def log_level_value(self) -> int:
        """Numeric logging level, falling back to INFO for unknown names."""
        import logging
        return getattr(logging, self.log_level.upper(), logging.INFO)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
