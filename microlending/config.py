"""
Configuration Management Module

Centralized environment configuration using pydantic-settings. Business
defaults here seed the SystemSettings store; the store is what operations
read at run time.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Micro-lending core configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "microlending.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Loan defaults (seed values for the SystemSettings store)
    default_min_loan_amount: str = "1000"
    default_max_loan_amount: str = "500000"
    default_application_fee: str = "50"
    default_currency: str = "KES"
    loan_queue_limit: int = 50

    # Payment provider configuration
    payment_timeout_seconds: float = 30.0
    payment_worker_threads: int = 8
    mock_payments: bool = True  # Route every method to the mock provider
    mpesa_base_url: str = ""
    mpesa_api_key: str = ""
    mpesa_shortcode: str = ""
    mpesa_callback_url: str = ""
    flutterwave_base_url: str = "https://api.flutterwave.com/v3"
    flutterwave_secret_key: str = ""
    flutterwave_secret_hash: str = ""

    # Side channels
    enable_notifications: bool = True
    enable_audit_logging: bool = True
    background_events: bool = True
    notification_webhook_url: str = ""

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
