"""
Destination resolution for URL-based alert channels.

A webhook URL is classified once, when the Alert or Webhook is created,
and the resulting tag is stored alongside it. Senders never re-inspect
the URL.
"""

import logging
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

SLACK_URL_MARKERS = ('hooks.slack.com', 'slack.com/services')
DISCORD_URL_MARKERS = ('discord.com/api/webhooks', 'discordapp.com/api/webhooks')


class DestinationType(str, Enum):
    SLACK = "slack"
    DISCORD = "discord"
    GENERIC = "generic"


def validate_destination_url(url: str) -> str:
    """
    Check that url is an absolute http(s) URL with a host.

    Raises:
        ValueError: if the URL is unusable as a webhook destination
    """
    if not url or not isinstance(url, str):
        raise ValueError("Webhook URL is required")

    parsed = urllib.parse.urlparse(url.strip())
    if parsed.scheme not in ('http', 'https'):
        raise ValueError(f"Invalid webhook URL scheme: {parsed.scheme or '(none)'}")
    if not parsed.hostname:
        raise ValueError("Webhook URL is missing a hostname")

    return url.strip()


def detect_destination_type(url: str) -> DestinationType:
    lowered = url.lower()
    if any(marker in lowered for marker in SLACK_URL_MARKERS):
        return DestinationType.SLACK
    if any(marker in lowered for marker in DISCORD_URL_MARKERS):
        return DestinationType.DISCORD
    return DestinationType.GENERIC


def safe_url_for_log(url: str) -> str:
    """Strip query string and credentials before logging a URL."""
    parsed = urllib.parse.urlparse(url)
    return f"{parsed.scheme}://{parsed.hostname}{parsed.path}"


@dataclass(frozen=True)
class Destination:
    """A resolved webhook destination: Slack(url) | Discord(url) | Generic(url)."""
    type: DestinationType
    url: str

    @classmethod
    def from_url(cls, url: str) -> "Destination":
        url = validate_destination_url(url)
        return cls(type=detect_destination_type(url), url=url)

    @classmethod
    def from_stored(cls, url: str, destination_type: Optional[str]) -> "Destination":
        """Rebuild from a persisted (url, destination_type) pair."""
        if destination_type:
            return cls(type=DestinationType(destination_type), url=url)
        # Rows created before destination_type existed
        logger.warning(f"No stored destination type for {safe_url_for_log(url)}, resolving from URL")
        return cls.from_url(url)

    @property
    def is_slack(self) -> bool:
        return self.type == DestinationType.SLACK

    @property
    def is_discord(self) -> bool:
        return self.type == DestinationType.DISCORD
