import re
from datetime import datetime, timezone
from typing import Any, Optional

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')


def to_camel(name: str) -> str:
    """snake_case -> camelCase"""
    head, *tail = name.split('_')
    return head + ''.join(part[:1].upper() + part[1:] for part in tail)


def to_snake(name: str) -> str:
    """camelCase -> snake_case"""
    return _CAMEL_BOUNDARY.sub('_', name).lower()


def format_date(value: Optional[datetime]) -> Optional[str]:
    """
    Render a datetime as ISO-8601 in UTC with millisecond precision, e.g.
    ``2024-03-15T10:20:30.123Z``. Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S') + f".{value.microsecond // 1000:03d}Z"


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"Cannot parse date from {value!r}")


def truncate_millis(value: Optional[datetime]) -> Optional[datetime]:
    """Drop sub-millisecond precision so values survive a JSON round trip."""
    if value is None:
        return None
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)
