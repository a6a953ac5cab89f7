"""
Pre-processing applied to a condition before it reaches a handler.

Parameter templating
    A parameter value of the form ``"parameter::<name>"`` is replaced by
    ``context[<name>]``. The substitution is applied recursively to nested
    conditions, lists and maps. If any template cannot be resolved the whole
    condition is unresolvable: ``get_contextual_condition`` returns ``None``,
    which evaluators turn into ``False`` and query builders into a no-match
    query.

ASCII folding
    ``fold_to_ascii`` lowercases, NFKD-normalizes and strips combining marks so
    that ``"Élodie"`` and ``"elodie"`` compare equal. The engine applies the same
    folding to indexed keyword fields through the ``folding`` normalizer.

Date math
    ``resolve_date_expr`` understands ``now``, ``now-7d``, ``now+1M/d`` and
    ``2024-01-01||+1M`` with units ``y M w d h H m s``.
"""
import calendar
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cxs_data_model.condition import Condition
from cxs_data_model.data_model_utils import parse_date

PARAMETER_PREFIX = "parameter::"


class _Unresolved(Exception):
    pass


def get_contextual_condition(condition: Condition, context: Optional[Dict[str, Any]]) -> Optional[Condition]:
    """Copy of ``condition`` with every template substituted, or None when one is unresolvable."""
    try:
        return _substitute_condition(condition, context or {})
    except _Unresolved:
        return None


def _substitute_condition(condition: Condition, context: Dict[str, Any]) -> Condition:
    parameters = {k: _substitute(v, context) for k, v in condition.parameters.items()}
    if parameters == condition.parameters:
        return condition
    return condition.with_parameters(parameters)


def _substitute(value: Any, context: Dict[str, Any]) -> Any:
    if isinstance(value, str) and value.startswith(PARAMETER_PREFIX):
        name = value[len(PARAMETER_PREFIX):]
        if name not in context:
            raise _Unresolved(name)
        return context[name]
    if isinstance(value, Condition):
        return _substitute_condition(value, context)
    if isinstance(value, list):
        return [_substitute(v, context) for v in value]
    if isinstance(value, dict):
        return {k: _substitute(v, context) for k, v in value.items()}
    return value


def fold_to_ascii(value: Any) -> Any:
    if isinstance(value, str):
        decomposed = unicodedata.normalize("NFKD", value)
        return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()
    if isinstance(value, (list, tuple)):
        return [fold_to_ascii(v) for v in value]
    return value


_DATE_MATH_RE = re.compile(r'([+-])(\d+)([yMwdhHms])|/([yMwdhHms])')


def resolve_date_expr(expr: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Resolve a date-math expression or a plain date into an aware UTC datetime."""
    if expr is None or isinstance(expr, datetime) or not isinstance(expr, str):
        return parse_date(expr)
    text = expr.strip()
    if text.startswith("now"):
        anchor = now or datetime.now(timezone.utc)
        ops = text[3:]
    elif "||" in text:
        head, ops = text.split("||", 1)
        anchor = parse_date(head)
    else:
        return parse_date(text)

    position = 0
    result = anchor
    while position < len(ops):
        match = _DATE_MATH_RE.match(ops, position)
        if not match:
            raise ValueError(f"Invalid date expression: {expr}")
        if match.group(4):
            result = _round_down(result, match.group(4))
        else:
            amount = int(match.group(2)) * (1 if match.group(1) == "+" else -1)
            result = _shift(result, amount, match.group(3))
        position = match.end()
    return result


def _shift(value: datetime, amount: int, unit: str) -> datetime:
    if unit == "y":
        return _add_months(value, 12 * amount)
    if unit == "M":
        return _add_months(value, amount)
    if unit == "w":
        return value + timedelta(weeks=amount)
    if unit == "d":
        return value + timedelta(days=amount)
    if unit in ("h", "H"):
        return value + timedelta(hours=amount)
    if unit == "m":
        return value + timedelta(minutes=amount)
    return value + timedelta(seconds=amount)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _round_down(value: datetime, unit: str) -> datetime:
    if unit == "y":
        return value.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    if unit == "M":
        return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if unit == "w":
        start = value - timedelta(days=value.weekday())
        return start.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "d":
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit in ("h", "H"):
        return value.replace(minute=0, second=0, microsecond=0)
    if unit == "m":
        return value.replace(second=0, microsecond=0)
    return value.replace(microsecond=0)
