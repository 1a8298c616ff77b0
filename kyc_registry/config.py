"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class RegistryConfig(BaseSettings):
    """KYC registry configuration"""

    # Administrator identity, fixed for the lifetime of a registry instance
    admin_id: str = "0x0000000000000000000000000000000000000001"

    # Storage configuration
    database_url: str = "sqlite:///kyc_registry.db"  # or "memory"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Consensus rules
    kyc_rejection_threshold_percent: int = 33
    complaint_threshold_percent: int = 33
    min_banks_for_rejection_ratio: int = 10

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    class Config:
        env_prefix = "KYC_REGISTRY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = RegistryConfig()


def get_config() -> RegistryConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> RegistryConfig:
    """Reload configuration from environment"""
    global config
    config = RegistryConfig()
    return config
