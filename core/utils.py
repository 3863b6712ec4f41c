import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime.

    Some drivers (SQLite) hand back naive datetimes for TIMESTAMP WITH
    TIME ZONE columns; those are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate(text: Optional[str], limit: int, suffix: str = "") -> Optional[str]:
    """Cut text to limit characters, appending suffix only when something was cut."""
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + suffix


def as_uuid(value: Any) -> Optional[uuid.UUID]:
    """Coerce an id passed as str (task arguments, JSON) to uuid.UUID.

    Raises:
        ValueError: if value is not a valid UUID string
    """
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))
