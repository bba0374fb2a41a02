"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LamfConfig(BaseSettings):
    """LAMF ledger configuration"""

    # Storage configuration
    storage_url: str = "sqlite:///lamf.db"  # or memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    npa_threshold_days: int = Field(90, gt=0, description="Days past due after which a loan is NPA")
    margin_threshold: Decimal = Field(Decimal("0.8"), gt=0, description="Collateral to outstanding ratio below which a margin call fires")
    application_expiry_days: int = Field(30, gt=0)
    first_emi_offset_months: int = Field(1, ge=1)

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LAMF_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LamfConfig()


def get_config() -> LamfConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LamfConfig:
    """Reload configuration from environment"""
    global config
    config = LamfConfig()
    return config
