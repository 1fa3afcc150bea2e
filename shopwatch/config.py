from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Shop under watch
    site_url: str = "http://localhost:8080"
    # Backing-data query (admin REST, not cached) and storefront listing (may be cached)
    catalog_data_url: str = ""
    catalog_shop_url: str = ""
    catalog_api_key: str = ""
    catalog_api_secret: str = ""
    probe_timeout_seconds: float = 10.0

    # Defaults for the runtime-editable settings (overridden by the state store)
    webhook_url: str = ""
    check_interval_minutes: int = 1
    admin_email: str = "admin@localhost"

    # Reconciliation timing
    reprobe_delay_seconds: float = 3.0
    recovery_delay_seconds: float = 10.0
    stall_watchdog_seconds: int = 60

    # Outbound mail (admin alerts)
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False
    smtp_from: str = "shopwatch@localhost"

    # Cache backends (each adapter is active only when configured)
    edge_cache_zone_id: str = ""
    edge_cache_api_token: str = ""
    edge_cache_api_base: str = "https://api.cloudflare.com/client/v4"
    page_cache_purge_url: str = ""
    minify_cache_dir: str = ""
    object_cache_flush_url: str = ""

    # Persistence
    db_path: str = ""  # empty = data/shopwatch.db next to the package

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
