from database.repositories.base import BaseRepository
from database.repositories.alert import AlertRepository
from database.repositories.result import ResultRepository
from database.repositories.webhook import WebhookRepository
from database.repositories.notification import NotificationRepository, IntegrationRepository

__all__ = [
    'BaseRepository',
    'AlertRepository',
    'ResultRepository',
    'WebhookRepository',
    'NotificationRepository',
    'IntegrationRepository',
]
