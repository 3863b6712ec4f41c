import yaml
import os
from typing import List, Optional
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    url: str


class SmtpConfig(BaseModel):
    """SMTP settings for the email channel."""
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: str = "alerts@mention-alerts.app"
    use_tls: bool = True

    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)


class DiscordBotConfig(BaseModel):
    """Discord bot used when a user has connected the Discord integration."""
    bot_token: Optional[str] = None
    api_base_url: str = "https://discord.com/api/v10"


class WebhookDeliveryConfig(BaseModel):
    """
    Delivery settings for user-registered webhooks.

    Retry delay for attempt n is retry_delays_minutes[min(n - 1, len - 1)].
    """
    max_attempts: int = 5
    retry_delays_minutes: List[int] = Field(default_factory=lambda: [1, 5, 15, 60, 240])
    request_timeout_seconds: int = 30
    test_timeout_seconds: int = 10
    response_body_limit: int = 1000
    retention_days: int = 30
    sweep_batch_size: int = 100
    claim_lease_seconds: int = 60  # Keeps an in-flight delivery out of the retry sweep


class NotificationConfig(BaseModel):
    """
    Configuration for alert dispatch and webhook delivery.

    Resolved once per process and injected into the dispatcher, senders
    and delivery tracker.
    """
    enabled: bool = True

    # Base URL for "view in dashboard" links
    dashboard_base_url: str = "http://localhost:3000/dashboard"

    # Per-request timeout for every outbound notification call
    request_timeout_seconds: int = 30

    # Log payloads instead of sending them
    dry_run: bool = False

    # Redis queue settings
    use_async_queue: bool = True
    redis_url: Optional[str] = None
    dispatch_lock_timeout_seconds: int = 300

    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    discord: DiscordBotConfig = Field(default_factory=DiscordBotConfig)
    webhooks: WebhookDeliveryConfig = Field(default_factory=WebhookDeliveryConfig)

    def monitor_dashboard_url(self, monitor_id) -> str:
        return f"{self.dashboard_base_url.rstrip('/')}/monitors/{monitor_id}"


class AppConfig(BaseModel):
    database: DatabaseConfig
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try absolute or adjusted path
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Allow env var override for DB URL
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        data.setdefault('database', {})
        data['database']['url'] = env_db_url

    notifications = data.get('notifications') or {}

    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        notifications['redis_url'] = env_redis_url

    env_dashboard_url = os.environ.get("DASHBOARD_BASE_URL")
    if env_dashboard_url:
        notifications['dashboard_base_url'] = env_dashboard_url

    env_dry_run = os.environ.get("NOTIFICATION_DRY_RUN", "")
    if env_dry_run:
        notifications['dry_run'] = env_dry_run.lower() in ('true', '1', 'yes')

    # Secrets are usually kept out of the YAML file
    env_bot_token = os.environ.get("DISCORD_BOT_TOKEN")
    if env_bot_token:
        notifications.setdefault('discord', {})
        notifications['discord']['bot_token'] = env_bot_token

    env_smtp_password = os.environ.get("SMTP_PASSWORD")
    if env_smtp_password:
        notifications.setdefault('smtp', {})
        notifications['smtp']['password'] = env_smtp_password

    data['notifications'] = notifications

    return AppConfig(**data)
