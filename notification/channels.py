#!/usr/bin/env python3
"""
Channel Senders

One sender per delivery mechanism. Each sender splits its work in two:
- format(): pure, builds the wire payload (errors here propagate)
- send(): performs the single external call and turns the expected
  delivery failures (non-2xx responses, network and SMTP errors, failed
  in-app writes) into a SendResult. Other exceptions raised by an injected
  client propagate to the dispatcher.

Usage:
    from notification.channels import ChannelSenderFactory

    sender = ChannelSenderFactory.for_webhook(destination, config)
    body = sender.format(payload)
    result = sender.send(destination.url, body)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional
import logging
import json
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import requests
from sqlalchemy.exc import SQLAlchemyError

from core.config_loader import NotificationConfig, SmtpConfig
from notification.destination import Destination, DestinationType, safe_url_for_log
from notification.formatter import NotificationPayload, PayloadFormatter

logger = logging.getLogger(__name__)


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


class DiscordErrorType(str, Enum):
    NOT_CONFIGURED = "not_configured"
    MISSING_CHANNEL = "missing_channel"
    NO_RESULTS = "no_results"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    destination_type: Optional[str] = None
    error_type: Optional[DiscordErrorType] = None

    @classmethod
    def ok(cls, status_code: Optional[int] = None, destination_type: Optional[str] = None) -> "SendResult":
        return cls(success=True, status_code=status_code, destination_type=destination_type)

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "SendResult":
        return cls(success=False, error=error, **kwargs)


class ChannelSender(ABC):
    """
    Base class for all senders.

    Configuration is injected at construction; senders do not read the
    process environment.
    """

    def __init__(self, config: NotificationConfig):
        self.config = config

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the sender type identifier."""
        pass

    @abstractmethod
    def format(self, payload: NotificationPayload) -> Any:
        """Build the wire payload for this sender."""
        pass

    @abstractmethod
    def send(self, destination: str, body: Any) -> SendResult:
        """
        Deliver a formatted payload.

        Args:
            destination: Address, webhook URL, channel ID or user ID
            body: Output of format()

        Returns:
            SendResult; failures are reported, not raised
        """
        pass

    def validate_config(self) -> bool:
        return True

    def _dry_run(self, destination: str, body: Any) -> SendResult:
        logger.info(f"[DRY RUN] {self.channel_type} -> {destination}: {json.dumps(body, default=str)[:500]}")
        return SendResult.ok(destination_type=self.channel_type)


class SmtpEmailClient:
    """Thin SMTP wrapper; raises smtplib/OS errors to the caller."""

    def __init__(self, config: SmtpConfig, timeout: int = 30):
        self.config = config
        self.timeout = timeout

    def send(self, to: str, subject: str, html_body: str) -> None:
        msg = MIMEMultipart()
        msg['From'] = self.config.from_email
        msg['To'] = to
        msg['Subject'] = subject
        msg.attach(MIMEText(html_body, 'html', 'utf-8'))

        with smtplib.SMTP(self.config.host, self.config.port, timeout=self.timeout) as server:
            if self.config.use_tls:
                server.starttls()
            server.login(self.config.username, self.config.password)
            server.send_message(msg)


class EmailSender(ChannelSender):
    """HTML alert email via SMTP."""

    def __init__(self, config: NotificationConfig, client: Optional[SmtpEmailClient] = None):
        super().__init__(config)
        self.client = client or SmtpEmailClient(config.smtp, timeout=config.request_timeout_seconds)

    @property
    def channel_type(self) -> str:
        return 'email'

    def validate_config(self) -> bool:
        return self.config.smtp.is_configured()

    def format(self, payload: NotificationPayload) -> Dict[str, str]:
        return {
            'subject': PayloadFormatter.email_subject(payload),
            'html': PayloadFormatter.to_email_html(payload),
        }

    def send(self, destination: str, body: Dict[str, str]) -> SendResult:
        if not destination:
            return SendResult.failed("Email address is required")

        if self.config.dry_run:
            return self._dry_run(_mask_email(destination), body)

        if not self.validate_config():
            logger.error("Email not configured - SMTP settings missing")
            return SendResult.failed("SMTP is not configured")

        try:
            self.client.send(destination, body['subject'], body['html'])
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {_mask_email(destination)}: {e}")
            return SendResult.failed(str(e))

        logger.info(f"Email sent to {_mask_email(destination)}")
        return SendResult.ok(destination_type=self.channel_type)


class HttpWebhookSender(ChannelSender):
    """POST a JSON payload to a webhook URL; 2xx is success, anything else is not."""

    destination_type = DestinationType.GENERIC

    @property
    def channel_type(self) -> str:
        return f"{self.destination_type.value}_webhook"

    def send(self, destination: str, body: Dict[str, Any]) -> SendResult:
        tag = self.destination_type.value
        if not destination:
            return SendResult.failed("Webhook URL is required", destination_type=tag)

        if self.config.dry_run:
            return self._dry_run(safe_url_for_log(destination), body)

        try:
            response = requests.post(
                destination,
                json=body,
                headers={'Content-Type': 'application/json'},
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"{tag} webhook to {safe_url_for_log(destination)} failed: {e}")
            return SendResult.failed(str(e), destination_type=tag)

        if not response.ok:
            error = f"{tag.capitalize()} webhook failed: {response.status_code} - {response.text}"
            logger.error(f"{error[:300]} ({safe_url_for_log(destination)})")
            return SendResult.failed(error, status_code=response.status_code, destination_type=tag)

        logger.info(f"{tag} webhook sent to {safe_url_for_log(destination)}")
        return SendResult.ok(status_code=response.status_code, destination_type=tag)


class SlackWebhookSender(HttpWebhookSender):
    destination_type = DestinationType.SLACK

    def format(self, payload: NotificationPayload) -> Dict[str, Any]:
        return PayloadFormatter.to_slack(payload)


class DiscordWebhookSender(HttpWebhookSender):
    destination_type = DestinationType.DISCORD

    def format(self, payload: NotificationPayload) -> Dict[str, Any]:
        return PayloadFormatter.to_discord(payload)


class GenericWebhookSender(HttpWebhookSender):
    destination_type = DestinationType.GENERIC

    def format(self, payload: NotificationPayload) -> Dict[str, Any]:
        return PayloadFormatter.to_generic(payload)


class DiscordBotSender(ChannelSender):
    """Post embeds into a Discord channel using the application's bot token."""

    @property
    def channel_type(self) -> str:
        return 'discord_bot'

    def validate_config(self) -> bool:
        return bool(self.config.discord.bot_token)

    def format(self, payload: NotificationPayload) -> Dict[str, Any]:
        return PayloadFormatter.to_discord(payload)

    def send(self, destination: str, body: Dict[str, Any]) -> SendResult:
        if not self.validate_config():
            return SendResult.failed("Discord bot token not configured", error_type=DiscordErrorType.NOT_CONFIGURED)
        if not destination:
            return SendResult.failed("Channel ID is required", error_type=DiscordErrorType.MISSING_CHANNEL)
        if not body.get('embeds'):
            return SendResult.failed("No results to send", error_type=DiscordErrorType.NO_RESULTS)

        if self.config.dry_run:
            return self._dry_run(destination, body)

        url = f"{self.config.discord.api_base_url.rstrip('/')}/channels/{destination}/messages"
        try:
            response = requests.post(
                url,
                json=body,
                headers={
                    'Content-Type': 'application/json',
                    'Authorization': f"Bot {self.config.discord.bot_token}",
                },
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"Discord bot message to channel {destination} failed: {e}")
            return SendResult.failed(str(e), error_type=DiscordErrorType.NETWORK_ERROR)

        if not response.ok:
            error = f"Discord bot message failed: {response.status_code} - {response.text}"
            logger.error(error[:300])
            return SendResult.failed(
                error,
                status_code=response.status_code,
                error_type=DiscordErrorType.HTTP_ERROR,
            )

        logger.info(f"Discord bot message sent to channel {destination} ({len(body['embeds'])} embed(s))")
        return SendResult.ok(status_code=response.status_code, destination_type='discord_bot')


class InAppSender(ChannelSender):
    """Stores a notification row for the monitor owner."""

    def __init__(self, config: NotificationConfig, repository):
        super().__init__(config)
        self.repository = repository

    @property
    def channel_type(self) -> str:
        return 'in_app'

    def format(self, payload: NotificationPayload) -> Dict[str, Any]:
        body: Dict[str, Any] = dict(PayloadFormatter.to_in_app(payload))
        body['link'] = payload.dashboard_url
        body['result_ids'] = [r.id for r in payload.results if r.id]
        return body

    def send(self, destination: str, body: Dict[str, Any]) -> SendResult:
        if not destination:
            return SendResult.failed("User ID is required")

        if self.config.dry_run:
            return self._dry_run(destination, body)

        try:
            self.repository.create_in_app_notification(
                user_id=destination,
                title=body['title'],
                message=body['message'],
                monitor_id=body.get('monitor_id'),
                link=body.get('link'),
                result_ids=body.get('result_ids'),
            )
        except SQLAlchemyError as e:
            # dedup claims were committed before send(), only this row is lost
            self.repository.db.rollback()
            logger.error(f"[IN_APP] Failed to store notification for user {destination}: {e}")
            return SendResult.failed(f"Database error: {e}", destination_type=self.channel_type)

        logger.info(f"[IN_APP] User: {destination}, Title: {body['title']}")
        return SendResult.ok(destination_type=self.channel_type)


class ChannelSenderFactory:
    """
    Registry of sender classes.

    URL-based senders are keyed by the destination type stored on the
    Alert, so no URL inspection happens at send time.
    """

    _webhook_senders: Dict[DestinationType, type] = {
        DestinationType.SLACK: SlackWebhookSender,
        DestinationType.DISCORD: DiscordWebhookSender,
        DestinationType.GENERIC: GenericWebhookSender,
    }

    @classmethod
    def for_webhook(cls, destination: Destination, config: NotificationConfig) -> HttpWebhookSender:
        return cls._webhook_senders[destination.type](config)

    @classmethod
    def register_webhook_sender(cls, destination_type: DestinationType, sender_class: type):
        if not issubclass(sender_class, HttpWebhookSender):
            raise ValueError("Sender class must extend HttpWebhookSender")
        cls._webhook_senders[destination_type] = sender_class
        logger.info(f"Registered webhook sender for: {destination_type.value}")

    @staticmethod
    def email(config: NotificationConfig, client: Optional[SmtpEmailClient] = None) -> EmailSender:
        return EmailSender(config, client)

    @staticmethod
    def discord_bot(config: NotificationConfig) -> DiscordBotSender:
        return DiscordBotSender(config)

    @staticmethod
    def in_app(config: NotificationConfig, repository) -> InAppSender:
        return InAppSender(config, repository)
