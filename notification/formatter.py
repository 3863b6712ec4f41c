"""
Payload Formatter

Pure transformation of (monitor name, results, dashboard URL) into the wire
payload of each destination: Slack Block Kit, Discord embeds, a generic
JSON envelope and the HTML alert email. No I/O.

Usage:
    from notification.formatter import NotificationPayload, PayloadFormatter

    payload = NotificationPayload(monitor_name="Acme", results=results,
                                  dashboard_url=url)
    body = PayloadFormatter.to_slack(payload)
"""

import html
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field

from core.utils import ensure_utc, truncate

MAX_RICH_RESULTS = 5
SLACK_SUMMARY_LIMIT = 200
DISCORD_SUMMARY_LIMIT = 300
DISCORD_TITLE_LIMIT = 256
DEFAULT_COLOR = "#0ea5e9"

CATEGORY_STYLES: Dict[str, Dict[str, str]] = {
    'solution_request': {'color': "#22c55e", 'emoji': "🎯", 'label': "Looking for Solution"},
    'money_talk': {'color': "#f59e0b", 'emoji': "💰", 'label': "Budget Talk"},
    'pain_point': {'color': "#ef4444", 'emoji': "😤", 'label': "Pain Point"},
    'advice_request': {'color': "#3b82f6", 'emoji': "❓", 'label': "Seeking Advice"},
    'hot_discussion': {'color': "#8b5cf6", 'emoji': "🔥", 'label': "Trending"},
}

SENTIMENT_STYLES: Dict[str, Dict[str, str]] = {
    'positive': {'color': "#22c55e", 'emoji': "👍"},
    'negative': {'color': "#ef4444", 'emoji': "👎"},
    'neutral': {'color': "#6b7280", 'emoji': "➖"},
}


class NotificationResult(BaseModel):
    id: Optional[str] = None
    title: str
    source_url: str
    platform: str
    content: Optional[str] = None
    author: Optional[str] = None
    posted_at: Optional[datetime] = None
    sentiment: Optional[str] = None
    conversation_category: Optional[str] = None
    ai_summary: Optional[str] = None

    @classmethod
    def from_record(cls, result: Any) -> "NotificationResult":
        """Build from a Result row (or anything exposing the same attributes)."""
        result_id = getattr(result, 'id', None)
        return cls(
            id=str(result_id) if result_id is not None else None,
            title=getattr(result, 'title', None) or "Untitled",
            source_url=getattr(result, 'source_url', None) or "",
            platform=getattr(result, 'platform', None) or "unknown",
            content=getattr(result, 'content', None),
            author=getattr(result, 'author', None),
            posted_at=ensure_utc(getattr(result, 'posted_at', None)),
            sentiment=getattr(result, 'sentiment', None),
            conversation_category=getattr(result, 'conversation_category', None),
            ai_summary=getattr(result, 'ai_summary', None),
        )


class NotificationPayload(BaseModel):
    monitor_name: str
    results: List[NotificationResult] = Field(default_factory=list)
    dashboard_url: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.results)


def escape_slack_text(text: str) -> str:
    """Escape the three characters Slack mrkdwn treats as control sequences."""
    return (text
        .replace('&', '&amp;')
        .replace('<', '&lt;')
        .replace('>', '&gt;')
    )


def _plural(count: int) -> str:
    return "s" if count != 1 else ""


def _category_style(result: NotificationResult) -> Optional[Dict[str, str]]:
    if not result.conversation_category:
        return None
    return CATEGORY_STYLES.get(result.conversation_category)


def _sentiment_style(result: NotificationResult) -> Optional[Dict[str, str]]:
    if not result.sentiment:
        return None
    return SENTIMENT_STYLES.get(result.sentiment)


def result_color(result: NotificationResult) -> str:
    """Category colour, else sentiment colour, else the default."""
    category = _category_style(result)
    if category:
        return category['color']
    sentiment = _sentiment_style(result)
    if sentiment:
        return sentiment['color']
    return DEFAULT_COLOR


def _format_alert_time(now: datetime) -> str:
    # e.g. "Wed, Oct 18, 9:05 AM"
    hour = now.hour % 12 or 12
    return f"{now:%a, %b} {now.day}, {hour}:{now:%M %p}"


def _format_short_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value.year}"


class PayloadFormatter:
    @staticmethod
    def to_slack(payload: NotificationPayload, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        count = payload.count

        blocks: List[Dict[str, Any]] = [
            {
                'type': "header",
                'text': {
                    'type': "plain_text",
                    'text': f"📡 {payload.monitor_name} - {count} new mention{_plural(count)}",
                    'emoji': True,
                },
            },
            {
                'type': "context",
                'elements': [{'type': "mrkdwn", 'text': f"Monitor Alert • {_format_alert_time(now)}"}],
            },
            {'type': "divider"},
        ]

        attachments = [
            PayloadFormatter._slack_attachment(result)
            for result in payload.results[:MAX_RICH_RESULTS]
        ]

        if payload.dashboard_url:
            blocks.append({
                'type': "section",
                'text': {
                    'type': "mrkdwn",
                    'text': f"<{payload.dashboard_url}|View all results in dashboard>",
                },
            })

        return {
            'text': f"{count} new mention{_plural(count)} for {payload.monitor_name}",
            'blocks': blocks,
            'attachments': attachments,
        }

    @staticmethod
    def _slack_attachment(result: NotificationResult) -> Dict[str, Any]:
        category = _category_style(result)
        sentiment = _sentiment_style(result)

        attachment_blocks: List[Dict[str, Any]] = [
            {
                'type': "section",
                'text': {
                    'type': "mrkdwn",
                    'text': f"*<{result.source_url}|{escape_slack_text(result.title)}>*",
                },
                'accessory': {
                    'type': "button",
                    'text': {'type': "plain_text", 'text': "View", 'emoji': True},
                    'url': result.source_url,
                },
            },
        ]

        badges = [f"`{result.platform}`"]
        if category:
            badges.append(f"{category['emoji']} {category['label']}")
        if sentiment:
            badges.append(f"{sentiment['emoji']} {result.sentiment}")
        attachment_blocks.append({
            'type': "context",
            'elements': [{'type': "mrkdwn", 'text': " • ".join(badges)}],
        })

        if result.ai_summary:
            summary = escape_slack_text(truncate(result.ai_summary, SLACK_SUMMARY_LIMIT, "..."))
            attachment_blocks.append({
                'type': "section",
                'text': {'type': "mrkdwn", 'text': f"> {summary}"},
            })

        meta = []
        if result.author:
            meta.append(f"by {escape_slack_text(result.author)}")
        if result.posted_at:
            meta.append(_format_short_date(result.posted_at))
        if meta:
            attachment_blocks.append({
                'type': "context",
                'elements': [{'type': "mrkdwn", 'text': " • ".join(meta)}],
            })

        return {'color': result_color(result), 'blocks': attachment_blocks}

    @staticmethod
    def to_discord(payload: NotificationPayload) -> Dict[str, Any]:
        count = payload.count
        embeds = [
            PayloadFormatter._discord_embed(result)
            for result in payload.results[:MAX_RICH_RESULTS]
        ]

        if count > MAX_RICH_RESULTS:
            embeds.append({
                'title': f"+ {count - MAX_RICH_RESULTS} more mentions",
                'url': payload.dashboard_url,
                'color': int(DEFAULT_COLOR.lstrip('#'), 16),
                'fields': [],
                'footer': {'text': "View all in dashboard"},
            })

        return {
            'content': f"📡 **{payload.monitor_name}** - {count} new mention{_plural(count)} found!",
            'embeds': embeds,
        }

    @staticmethod
    def _discord_embed(result: NotificationResult) -> Dict[str, Any]:
        category = _category_style(result)
        sentiment = _sentiment_style(result)

        fields = [{
            'name': "Platform",
            'value': result.platform[:1].upper() + result.platform[1:],
            'inline': True,
        }]
        if category:
            fields.append({'name': "Category", 'value': f"{category['emoji']} {category['label']}", 'inline': True})
        if sentiment:
            fields.append({'name': "Sentiment", 'value': f"{sentiment['emoji']} {result.sentiment}", 'inline': True})

        embed: Dict[str, Any] = {
            'title': truncate(result.title, DISCORD_TITLE_LIMIT),
            'url': result.source_url,
            'color': int(result_color(result).lstrip('#'), 16),
            'fields': fields,
        }

        if result.ai_summary:
            embed['description'] = truncate(result.ai_summary, DISCORD_SUMMARY_LIMIT, "...")

        if result.author:
            embed['footer'] = {'text': f"by {result.author}"}
        if result.posted_at:
            embed['timestamp'] = result.posted_at.isoformat()

        return embed

    @staticmethod
    def to_generic(payload: NotificationPayload) -> Dict[str, Any]:
        return {
            'monitorName': payload.monitor_name,
            'resultsCount': payload.count,
            'results': [
                {
                    'title': r.title,
                    'url': r.source_url,
                    'platform': r.platform,
                    'sentiment': r.sentiment,
                    'category': r.conversation_category,
                    'summary': r.ai_summary,
                }
                for r in payload.results
            ],
        }

    @staticmethod
    def email_subject(payload: NotificationPayload) -> str:
        count = payload.count
        return f"{count} new mention{_plural(count)} for \"{payload.monitor_name}\""

    @staticmethod
    def to_email_html(payload: NotificationPayload) -> str:
        """Render the alert email body. Every user-supplied string is HTML-escaped."""
        count = payload.count
        safe_monitor = html.escape(payload.monitor_name)

        rows = []
        for result in payload.results:
            sentiment = _sentiment_style(result)
            sentiment_html = ""
            if result.sentiment:
                color = sentiment['color'] if sentiment else SENTIMENT_STYLES['neutral']['color']
                sentiment_html = f'<span style="color: {color};">{html.escape(result.sentiment)}</span>'

            summary_html = ""
            if result.ai_summary:
                summary_html = f'<p style="margin: 12px 0 0; color: #555; font-size: 14px;">{html.escape(result.ai_summary)}</p>'

            rows.append(f"""        <tr>
            <td style="padding: 16px 20px; border-bottom: 1px solid #e5e7eb;">
                <a href="{html.escape(result.source_url, quote=True)}" style="color: {DEFAULT_COLOR}; font-weight: 500; text-decoration: none;">{html.escape(result.title)}</a>
                <div style="margin-top: 8px; font-size: 12px; color: #6b7280;">
                    <span style="padding: 2px 8px; border: 1px solid #e5e7eb; border-radius: 4px; margin-right: 8px;">{html.escape(result.platform)}</span>
                    {sentiment_html}
                </div>
                {summary_html}
            </td>
        </tr>
""")

        dashboard_html = ""
        if payload.dashboard_url:
            dashboard_html = (
                f'<p style="text-align: center;"><a href="{html.escape(payload.dashboard_url, quote=True)}" '
                f'style="color: {DEFAULT_COLOR};">View all results in dashboard</a></p>'
            )

        return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h1 style="font-size: 20px;">📡 {count} new mention{_plural(count)} for {safe_monitor}</h1>
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0">
{''.join(rows)}    </table>
    {dashboard_html}
</body>
</html>"""

    @staticmethod
    def to_in_app(payload: NotificationPayload) -> Dict[str, str]:
        count = payload.count
        titles = ", ".join(r.title for r in payload.results[:3])
        more = f" and {count - 3} more" if count > 3 else ""
        return {
            'title': f"{count} new mention{_plural(count)} for {payload.monitor_name}",
            'message': f"{titles}{more}",
        }
