from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./catalogsync.db"
    credentials_secret: str = ""  # derives the Fernet key for stored access tokens

    provider_api_base_production: str = "https://connect.squareup.com"
    provider_api_base_sandbox: str = "https://connect.squareupsandbox.com"
    provider_api_version: str = "2025-07-17"
    http_timeout_seconds: float = 30.0

    # Time budget for one execution context
    import_max_seconds: float = 50.0
    import_safety_margin_seconds: float = 5.0
    import_page_size: int = 100
    variation_batch_size: int = 100
    error_log_cap: int = 500

    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 8.0

    strict_environment: bool = True

    watchdog_threshold_minutes: int = 15
    watchdog_interval_minutes: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
