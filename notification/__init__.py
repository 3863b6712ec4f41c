"""
Notification Module

Alert dispatch and webhook delivery for monitored results: digest
deduplication, per-destination payload formatting, channel senders,
and the webhook retry state machine.

Usage:
    from notification import NotificationService

    service = NotificationService(config.notifications)
    service.notify_new_results(monitor_id, result_ids)
    service.send_digests('daily')
"""

from notification.destination import (
    Destination,
    DestinationType,
    detect_destination_type,
    validate_destination_url,
)

from notification.formatter import (
    NotificationResult,
    NotificationPayload,
    PayloadFormatter,
    escape_slack_text,
)

from notification.channels import (
    ChannelSender,
    ChannelSenderFactory,
    EmailSender,
    SlackWebhookSender,
    DiscordWebhookSender,
    GenericWebhookSender,
    DiscordBotSender,
    InAppSender,
    SmtpEmailClient,
    SendResult,
    DiscordErrorType,
)

from notification.dedup import DigestDeduplicator

from notification.dispatcher import (
    AlertDispatcher,
    AlertDispatchError,
    DispatchOutcome,
)

from notification.delivery import (
    WebhookDeliveryTracker,
    DeliveryAttempt,
    sign_payload,
)

from notification.service import (
    NotificationService,
    process_alert_dispatch_task,
    process_webhook_delivery_task,
)

__all__ = [
    # Destinations
    'Destination',
    'DestinationType',
    'detect_destination_type',
    'validate_destination_url',
    # Formatting
    'NotificationResult',
    'NotificationPayload',
    'PayloadFormatter',
    'escape_slack_text',
    # Senders
    'ChannelSender',
    'ChannelSenderFactory',
    'EmailSender',
    'SlackWebhookSender',
    'DiscordWebhookSender',
    'GenericWebhookSender',
    'DiscordBotSender',
    'InAppSender',
    'SmtpEmailClient',
    'SendResult',
    'DiscordErrorType',
    # Dedup / dispatch
    'DigestDeduplicator',
    'AlertDispatcher',
    'AlertDispatchError',
    'DispatchOutcome',
    # Webhook delivery
    'WebhookDeliveryTracker',
    'DeliveryAttempt',
    'sign_payload',
    # Service
    'NotificationService',
    'process_alert_dispatch_task',
    'process_webhook_delivery_task',
]
