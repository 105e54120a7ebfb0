"""
Configuration Management Module
Loads and manages application configuration from config.yaml.
Secrets (ERP token, admin secret) come from the environment.
"""

from pathlib import Path
from typing import Dict, List, Optional
import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class ErpConfig(BaseModel):
    """ERP connection configuration"""
    account_id: str = ""
    base_url: str = ""
    restlet_url: str = ""
    ui_host: str = ""
    restlet_script: str = "2935"
    restlet_deploy: str = "customdeploy1"
    timeout: float = 60.0
    query_page_size: int = 1000
    file_page_lines: int = 1000
    manifest_folder_id: int = 2279

    @property
    def account_host(self) -> str:
        return self.account_id.lower().replace("_", "-")

    def get_base_url(self) -> str:
        """REST services root, derived from the account when not set"""
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"https://{self.account_host}.suitetalk.api.netsuite.com/services/rest"

    def get_restlet_url(self) -> str:
        if self.restlet_url:
            return self.restlet_url
        return f"{self.get_ui_host()}/app/site/hosting/restlet.nl"

    def get_ui_host(self) -> str:
        if self.ui_host:
            return self.ui_host.rstrip("/")
        return f"https://{self.account_host}.app.netsuite.com"


class ThrottleConfig(BaseModel):
    """Backoff schedule applied when the ERP signals a rate limit"""
    backoff_schedule: List[float] = [0.5, 1.0, 2.0, 4.0, 8.0]
    min_wait: float = 0.25
    max_total_wait: float = 120.0
    jitter: float = 0.25
    statuses: List[int] = [429, 503]
    error_codes: List[str] = [
        "CONCURRENCY_LIMIT_EXCEEDED",
        "SSS_REQUEST_LIMIT_EXCEEDED",
        "SSS_CONCURRENCY_LIMIT_EXCEEDED",
        "Request Limit Exceeded",
    ]


class RetryConfig(BaseModel):
    """Transport-level retry configuration"""
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0


class DatabaseConfig(BaseModel):
    """Database configuration"""
    path: str = "./erp_sync.db"


class SyncConfig(BaseModel):
    """Sync engine tuning"""
    batch_size: int = 1000
    id_batch_size: int = 300
    scope_chunk_size: int = 900
    presence_chunk_size: int = 900
    query_pause: float = 0.12
    batch_pause: float = 0.35
    lookback_days: int = 90
    overlap_minutes: int = 10
    detail_concurrency: int = 5
    grace_period_minutes: int = 90
    grace_provenance: str = "order console"
    numeric_epsilon: float = 0.01
    disabled_strategies: List[str] = []


class NotificationConfig(BaseModel):
    """Outbound notification for first-seen unpaid records"""
    enabled: bool = True
    webhook_url: str = ""
    timeout: float = 10.0
    lookup_batch_size: int = 50


class SchedulerConfig(BaseModel):
    """Cron schedule per stream (crontab syntax)"""
    enabled: bool = False
    jobs: Dict[str, str] = {
        "invoices": "*/15 * * * *",
        "fulfillments": "*/10 * * * *",
        "sales_orders": "0 * * * *",
    }


class ApiConfig(BaseModel):
    """API configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000"]


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    file: str = "./logs/erp_sync.log"
    max_size: int = 10
    backup_count: int = 5
    console: bool = True
    colorize: bool = True


class AppConfig(BaseModel):
    """Main application configuration"""
    erp: ErpConfig = ErpConfig()
    throttle: ThrottleConfig = ThrottleConfig()
    retry: RetryConfig = RetryConfig()
    database: DatabaseConfig = DatabaseConfig()
    sync: SyncConfig = SyncConfig()
    notifications: NotificationConfig = NotificationConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()


class Secrets(BaseSettings):
    """Credentials read from ERP_SYNC_* environment variables or .env"""
    model_config = SettingsConfigDict(env_prefix="ERP_SYNC_", env_file=".env", extra="ignore")

    erp_token: str = ""
    admin_secret: str = ""


def load_config(config_path: str = "config.yaml") -> AppConfig:
    """Load configuration from YAML file"""
    config_file = Path(config_path)

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
            return AppConfig(**config_data)

    return AppConfig()


# Global configuration instance
config = load_config()
secrets = Secrets()
