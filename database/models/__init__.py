from .base import Base, JsonType, utcnow
from .monitor import Monitor, Alert, Result, AlertChannel, AlertFrequency
from .webhook import Webhook, WebhookDelivery, DeliveryStatus
from .notification import AlertDeliveryLog, InAppNotification, UserIntegration

__all__ = [
    'Base',
    'JsonType',
    'utcnow',
    'Monitor',
    'Alert',
    'Result',
    'AlertChannel',
    'AlertFrequency',
    'Webhook',
    'WebhookDelivery',
    'DeliveryStatus',
    'AlertDeliveryLog',
    'InAppNotification',
    'UserIntegration',
]
