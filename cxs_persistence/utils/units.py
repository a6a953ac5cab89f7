import re

from cxs_exception_model.exception import InvalidConfigurationException

_TIME_UNITS = {
    "nanos": 1e-9, "micros": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0,
}
_BYTE_UNITS = {
    "b": 1, "kb": 1024, "mb": 1024 ** 2, "gb": 1024 ** 3, "tb": 1024 ** 4, "pb": 1024 ** 5,
}
_TIME_RE = re.compile(r'^\s*(-?\d+(?:\.\d+)?)\s*(nanos|micros|ms|s|m|h|d)?\s*$')
_BYTE_RE = re.compile(r'^\s*(-?\d+(?:\.\d+)?)\s*(b|kb|mb|gb|tb|pb)?\s*$', re.IGNORECASE)


def parse_time_value(value, key: str = None) -> float:
    """
    Parse a time value such as ``5s``, ``500ms`` or ``1h`` into seconds. Bare
    numbers are read as milliseconds. ``-1`` disables the timer and is returned as-is.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value / 1000.0 if value >= 0 else -1
    match = _TIME_RE.match(str(value)) if value is not None else None
    if not match:
        raise InvalidConfigurationException("Unparsable time value", key=key, value=value)
    number = float(match.group(1))
    if number < 0:
        return -1
    unit = match.group(2)
    if unit is None:
        return number / 1000.0
    return number * _TIME_UNITS[unit]


def parse_byte_size(value, key: str = None) -> int:
    """Parse a byte size such as ``5MB`` or ``512kb``; ``-1`` disables the limit."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = _BYTE_RE.match(str(value)) if value is not None else None
    if not match:
        raise InvalidConfigurationException("Unparsable byte size", key=key, value=value)
    number = float(match.group(1))
    if number < 0:
        return -1
    unit = (match.group(2) or "b").lower()
    return int(number * _BYTE_UNITS[unit])
