"""
Configuration management using Pydantic settings.
Loads environment variables for Supabase, Shopify and the sync pipeline.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Supabase Configuration
    supabase_url: str = ""
    supabase_service_key: str = ""

    # Shopify Configuration
    shopify_api_version: str = "2024-01"

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"

    # Catalog limits
    max_product_options: int = 3
    max_variant_combinations: int = 1000

    # Sync Configuration
    store_push_timeout_seconds: float = 30.0
    sync_status_poll_interval_seconds: float = 2.0
    sync_status_poll_timeout_seconds: float = 300.0

    # Store adapter retries
    max_retry_attempts: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_initial_delay_seconds: float = 1.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
