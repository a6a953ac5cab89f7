"""
Dotted-path property writes on items and plain dictionaries.

``set_property(profile, "properties.address.city", "Paris", "setIfMissing")``
walks ``profile.properties`` (attribute names are given in camelCase and map to
the snake_case fields of the item classes), creates the missing intermediate
dictionaries and applies the strategy to the last segment.

Strategies:
    alwaysSet     replace when the value differs (also the default)
    setIfMissing  write only when nothing is stored yet
    setIfGreater  write when missing or greater than the stored value
    setIfLess     write when missing or less than the stored value
    addValues     merge into a list, stored values first, without duplicates
    remove        delete the key
"""
import logging
from typing import Any, List, Optional

from cxs_data_model.data_model_utils import to_snake, parse_date

logger = logging.getLogger(__name__)

ALWAYS_SET = "alwaysSet"
SET_IF_MISSING = "setIfMissing"
SET_IF_GREATER = "setIfGreater"
SET_IF_LESS = "setIfLess"
ADD_VALUES = "addValues"
REMOVE = "remove"

STRATEGIES = (ALWAYS_SET, SET_IF_MISSING, SET_IF_GREATER, SET_IF_LESS, ADD_VALUES, REMOVE)


def get_property(target: Any, property_name: str) -> Any:
    current = target
    for part in property_name.split("."):
        if current is None:
            return None
        current = _get(current, part)
    return current


def set_property(target: Any, property_name: str, value: Any, strategy: Optional[str] = None) -> bool:
    """
    Returns:
        bool: True when ``target`` was modified.
    """
    if target is None or not property_name:
        return False
    if strategy is not None and strategy not in STRATEGIES:
        logger.warning(f"Unknown property strategy {strategy} for {property_name}, nothing written")
        return False

    parts = property_name.split(".")
    if strategy == REMOVE:
        parent = get_property(target, ".".join(parts[:-1])) if len(parts) > 1 else target
        return _remove(parent, parts[-1])

    parent = target
    for part in parts[:-1]:
        child = _get(parent, part)
        if child is None:
            child = {}
            _set(parent, part, child)
        parent = child
    name = parts[-1]
    previous = _get(parent, name)

    if strategy == ADD_VALUES:
        merged = _as_list(previous)
        for new_value in _as_list(value):
            if new_value not in merged:
                merged.append(new_value)
        if isinstance(previous, list) and merged == previous:
            return False
        _set(parent, name, merged)
        return True

    if value is None or value == previous:
        return False
    if strategy in (None, ALWAYS_SET) \
            or (strategy == SET_IF_MISSING and previous is None) \
            or (strategy == SET_IF_GREATER and (previous is None or _compare(value, previous) > 0)) \
            or (strategy == SET_IF_LESS and (previous is None or _compare(value, previous) < 0)):
        _set(parent, name, value)
        return True
    return False


def get_integer(value: Any) -> Optional[int]:
    """Integer of a number or numeric string, None when not convertible."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(float(str(value).strip()))
    except ValueError:
        logger.debug(f"{value!r} is not an integer")
        return None


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, to_snake(name), None)


def _set(obj: Any, name: str, value: Any) -> None:
    if isinstance(obj, dict):
        obj[name] = value
    else:
        setattr(obj, to_snake(name), value)


def _remove(parent: Any, name: str) -> bool:
    if parent is None:
        return False
    if isinstance(parent, dict):
        if name not in parent:
            return False
        del parent[name]
        return True
    if getattr(parent, to_snake(name), None) is None:
        return False
    setattr(parent, to_snake(name), None)
    return True


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _compare(left: Any, right: Any) -> int:
    """Numbers numerically, date strings chronologically, anything else as text."""
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return (left > right) - (left < right)
    if isinstance(left, str) and isinstance(right, str):
        try:
            left_date, right_date = parse_date(left), parse_date(right)
            return (left_date > right_date) - (left_date < right_date)
        except ValueError:
            pass
    left_text, right_text = str(left), str(right)
    return (left_text > right_text) - (left_text < right_text)
