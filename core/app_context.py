import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from core.config_loader import AppConfig, load_config
from database.database import init_engine
from notification.service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    Config is resolved once per process and injected into the services.
    DB access should be obtained via alert_uow() inside each unit of work.
    """
    config: AppConfig
    notification_service: Optional[NotificationService] = None

    @classmethod
    def build(cls, config: AppConfig) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration

        Returns:
            Fully wired AppContext instance (no DB session attached)
        """
        init_engine(config.database.url)

        # Notification Service (lazy - only if enabled)
        notification_service = None
        if config.notifications and config.notifications.enabled:
            notification_service = NotificationService(config.notifications)

        return cls(config=config, notification_service=notification_service)


CONFIG_PATH_ENV = "MENTION_ALERTS_CONFIG"


def set_config_path(config_path: str) -> None:
    """Select the config file for this process and any worker it forks."""
    os.environ[CONFIG_PATH_ENV] = config_path


def resolve_config_path(config_path: Optional[str] = None) -> str:
    return config_path or os.environ.get(CONFIG_PATH_ENV) or "config.yaml"


def get_app_context(config_path: Optional[str] = None) -> AppContext:
    """Process-wide AppContext for the resolved config path, built on first use."""
    return _build_app_context(resolve_config_path(config_path))


@lru_cache(maxsize=1)
def _build_app_context(config_path: str) -> AppContext:
    ctx = AppContext.build(load_config(config_path))
    if ctx.notification_service is None:
        raise RuntimeError("Notifications are disabled in config")
    logger.info(f"Application context initialised from {config_path}")
    return ctx
