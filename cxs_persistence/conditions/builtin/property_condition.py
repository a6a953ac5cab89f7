"""
Property comparison handlers, shared by ``propertyCondition`` and its
profile/session/event aliases.

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                    Property condition resolution                        │
    └─────────────────────────────────────────────────────────────────────────┘

    parameters ──► ExpectedValues.from_condition()
                   │  value  = first of propertyValue (folded) │
                   │           propertyValueInteger            │
                   │           propertyValueDate               │
                   │           propertyValueDateExpr           │
                   │  values = same order for propertyValues*  │
                   ▼
        ┌──────────────────────┐               ┌──────────────────────────┐
        │ PropertyCondition    │               │ PropertyCondition        │
        │ Evaluator            │               │ QueryBuilder             │
        │  values at dotted    │               │  term / terms / range /  │
        │  path in to_dict()   │               │  exists / prefix /       │
        │  any-match over      │               │  wildcard / regexp       │
        │  multi-valued fields │               │  (keyword fields are     │
        │  values are folded   │               │  folded by normalizer)   │
        └──────────────────────┘               └──────────────────────────┘

    ┌──────────────────────┬────────────────────────────────────────────────┐
    │ operator             │ semantics (both sides)                         │
    ├──────────────────────┼────────────────────────────────────────────────┤
    │ equals / notEquals   │ some value == v / no value == v                │
    │ greaterThan ...      │ some value compares against v                  │
    │ between              │ some value in [vs[0], vs[1]]                   │
    │ exists / missing     │ field holds / lacks a non-null value           │
    │ contains, startsWith │ substring / prefix / suffix, folded            │
    │ endsWith             │                                                │
    │ matchesRegex         │ some folded value fully matches the pattern    │
    │ in / notIn           │ some value in vs / no value in vs              │
    │ all                  │ every element of vs is among the values        │
    │ isDay / isNotDay     │ some value on / no value on v's UTC day        │
    └──────────────────────┴────────────────────────────────────────────────┘
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cxs_data_model.condition import Condition
from cxs_data_model.data_model_utils import format_date, parse_date
from cxs_data_model.item import Item
from cxs_exception_model.exception import MalformedConditionException
from cxs_persistence.conditions.context_helper import fold_to_ascii, resolve_date_expr
from cxs_persistence.conditions.property_accessor import item_source, get_property_values

PROPERTY_CONDITION_IDS = ("propertyCondition", "profilePropertyCondition",
                          "sessionPropertyCondition", "eventPropertyCondition")

OPERATORS = ("equals", "notEquals", "greaterThan", "greaterThanOrEqualTo", "lessThan", "lessThanOrEqualTo",
             "between", "exists", "missing", "contains", "startsWith", "endsWith", "matchesRegex",
             "in", "notIn", "all", "isDay", "isNotDay")


@dataclass
class ExpectedValues:
    """Parameters of a property condition, normalized for comparison."""
    condition_type_id: str
    name: str
    operator: str
    value: Any = None
    values: Optional[List[Any]] = None
    string_value: Optional[str] = None

    @staticmethod
    def from_condition(condition: Condition) -> "ExpectedValues":
        operator = condition.get_parameter("comparisonOperator")
        name = condition.get_parameter("propertyName")
        if operator is None or name is None:
            raise MalformedConditionException("comparisonOperator and propertyName must be provided",
                                              condition.condition_type_id,
                                              "comparisonOperator" if operator is None else "propertyName")
        if operator not in OPERATORS:
            raise MalformedConditionException(f"Unknown comparison operator {operator}",
                                              condition.condition_type_id, "comparisonOperator")

        string_value = fold_to_ascii(condition.get_parameter("propertyValue"))
        date_value = condition.get_parameter("propertyValueDate")
        date_expr = condition.get_parameter("propertyValueDateExpr")
        value = _first_not_none(
            string_value,
            condition.get_parameter("propertyValueInteger"),
            parse_date(date_value) if date_value is not None else None,
            resolve_date_expr(date_expr) if date_expr is not None else None,
        )

        dates = condition.get_parameter("propertyValuesDate")
        date_exprs = condition.get_parameter("propertyValuesDateExpr")
        values = _first_not_none(
            fold_to_ascii(condition.get_parameter("propertyValues")),
            condition.get_parameter("propertyValuesInteger"),
            [parse_date(d) for d in dates] if dates is not None else None,
            [resolve_date_expr(d) for d in date_exprs] if date_exprs is not None else None,
        )
        return ExpectedValues(condition.condition_type_id, name, operator, value,
                              list(values) if values is not None else None,
                              string_value if isinstance(string_value, str) else None)

    def require_value(self) -> Any:
        if self.value is None:
            raise MalformedConditionException(
                f"Missing value for comparisonOperator {self.operator} on {self.name}",
                self.condition_type_id, "propertyValue")
        return self.value

    def require_string_value(self) -> str:
        if self.string_value is None:
            raise MalformedConditionException(
                f"Missing string value for comparisonOperator {self.operator} on {self.name}",
                self.condition_type_id, "propertyValue")
        return self.string_value

    def require_values(self, size: Optional[int] = None) -> List[Any]:
        if not self.values or (size is not None and len(self.values) != size):
            expected = f"{size} values" if size is not None else "values"
            raise MalformedConditionException(
                f"Missing {expected} for comparisonOperator {self.operator} on {self.name}",
                self.condition_type_id, "propertyValues")
        return self.values


class PropertyConditionEvaluator:
    """Local evaluation of property comparisons."""

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        expected = ExpectedValues.from_condition(condition)
        actual = get_property_values(item_source(item), expected.name)
        op = expected.operator

        if op == "exists":
            return len(actual) > 0
        if op == "missing":
            return len(actual) == 0
        if op == "equals":
            return _any_equal(actual, expected.require_value())
        if op == "notEquals":
            return not _any_equal(actual, expected.require_value())
        if op in ("greaterThan", "greaterThanOrEqualTo", "lessThan", "lessThanOrEqualTo"):
            target = expected.require_value()
            return any(_compare(a, target, op) for a in actual)
        if op == "between":
            low, high = expected.require_values(2)
            return any(_compare(a, low, "greaterThanOrEqualTo") and _compare(a, high, "lessThanOrEqualTo")
                       for a in actual)
        if op == "contains":
            needle = expected.require_string_value()
            return any(needle in fold_to_ascii(str(a)) for a in actual)
        if op == "startsWith":
            needle = expected.require_string_value()
            return any(fold_to_ascii(str(a)).startswith(needle) for a in actual)
        if op == "endsWith":
            needle = expected.require_string_value()
            return any(fold_to_ascii(str(a)).endswith(needle) for a in actual)
        if op == "matchesRegex":
            pattern = _compile_regex(condition, expected)
            return any(pattern.fullmatch(fold_to_ascii(str(a))) is not None for a in actual)
        if op == "in":
            values = expected.require_values()
            return any(_any_equal(actual, v) for v in values)
        if op == "notIn":
            values = expected.require_values()
            return not any(_any_equal(actual, v) for v in values)
        if op == "all":
            values = expected.require_values()
            return all(_any_equal(actual, v) for v in values)
        if op == "isDay":
            return _any_same_day(actual, expected.require_value())
        # isNotDay
        return not _any_same_day(actual, expected.require_value())


class PropertyConditionQueryBuilder:
    """Query-side translation of property comparisons."""

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        expected = ExpectedValues.from_condition(condition)
        name = expected.name
        op = expected.operator

        if op == "exists":
            return {"exists": {"field": name}}
        if op == "missing":
            return _must_not({"exists": {"field": name}})
        if op == "equals":
            return {"term": {name: _wire(expected.require_value())}}
        if op == "notEquals":
            return _must_not({"term": {name: _wire(expected.require_value())}})
        if op in _RANGE_KEYS:
            return {"range": {name: {_RANGE_KEYS[op]: _wire(expected.require_value())}}}
        if op == "between":
            low, high = expected.require_values(2)
            return {"range": {name: {"gte": _wire(low), "lte": _wire(high)}}}
        if op == "contains":
            return _wildcard(name, "*" + _escape_wildcard(expected.require_string_value()) + "*")
        if op == "startsWith":
            return {"prefix": {name: {"value": expected.require_string_value(), "case_insensitive": True}}}
        if op == "endsWith":
            return _wildcard(name, "*" + _escape_wildcard(expected.require_string_value()))
        if op == "matchesRegex":
            return {"regexp": {name: {"value": _compile_regex(condition, expected).pattern}}}
        if op == "in":
            return {"terms": {name: [_wire(v) for v in expected.require_values()]}}
        if op == "notIn":
            return _must_not({"terms": {name: [_wire(v) for v in expected.require_values()]}})
        if op == "all":
            return {"bool": {"must": [{"term": {name: _wire(v)}} for v in expected.require_values()]}}
        day_range = _same_day_range(name, expected.require_value())
        if op == "isDay":
            return day_range
        # isNotDay
        return _must_not(day_range)


_RANGE_KEYS = {"greaterThan": "gt", "greaterThanOrEqualTo": "gte", "lessThan": "lt", "lessThanOrEqualTo": "lte"}


def _first_not_none(*candidates):
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _compile_regex(condition: Condition, expected: ExpectedValues) -> "re.Pattern":
    pattern = condition.get_parameter("propertyValue")
    if not isinstance(pattern, str):
        expected.require_string_value()
    try:
        return re.compile(pattern)
    except re.error as e:
        raise MalformedConditionException(f"Invalid regular expression {pattern!r} on {expected.name}: {e}",
                                          condition.condition_type_id, "propertyValue")


def _must_not(query: Dict[str, Any]) -> Dict[str, Any]:
    return {"bool": {"must_not": [query]}}


def _wildcard(name: str, pattern: str) -> Dict[str, Any]:
    return {"wildcard": {name: {"value": pattern, "case_insensitive": True}}}


def _escape_wildcard(value: str) -> str:
    return value.replace("\\", "\\\\").replace("*", "\\*").replace("?", "\\?")


def _wire(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_date(value)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce(actual: Any, expected: Any) -> Any:
    """Bring a stored value to the type of the expected value, or None if impossible."""
    try:
        if isinstance(expected, datetime):
            return parse_date(actual)
        if _is_number(expected):
            if _is_number(actual):
                return actual
            if isinstance(actual, str):
                return float(actual)
            return None
        if isinstance(expected, bool):
            if isinstance(actual, bool):
                return actual
            return str(actual).lower() == "true"
        if isinstance(expected, str):
            if _is_number(actual):
                return fold_to_ascii(str(actual)) if not _looks_numeric(expected) else actual
            if isinstance(actual, bool):
                return "true" if actual else "false"
            return fold_to_ascii(str(actual))
    except (TypeError, ValueError):
        return None
    return actual


def _looks_numeric(value: str) -> bool:
    try:
        float(value)
        return True
    except ValueError:
        return False


def _comparable_expected(actual: Any, expected: Any) -> Any:
    if isinstance(expected, str) and _is_number(actual) and _looks_numeric(expected):
        return float(expected)
    return expected


def _any_equal(actual: List[Any], expected: Any) -> bool:
    for a in actual:
        coerced = _coerce(a, expected)
        if coerced is not None and coerced == _comparable_expected(coerced, expected):
            return True
    return False


def _compare(actual: Any, expected: Any, op: str) -> bool:
    coerced = _coerce(actual, expected)
    if coerced is None:
        return False
    target = _comparable_expected(coerced, expected)
    try:
        if op == "greaterThan":
            return coerced > target
        if op == "greaterThanOrEqualTo":
            return coerced >= target
        if op == "lessThan":
            return coerced < target
        return coerced <= target
    except TypeError:
        return False


def _day_bounds(value: Any):
    day = parse_date(value) if not isinstance(value, datetime) else value
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _any_same_day(actual: List[Any], expected: Any) -> bool:
    start, end = _day_bounds(expected)
    for a in actual:
        try:
            moment = parse_date(a)
        except (TypeError, ValueError):
            continue
        if moment is not None and start <= moment < end:
            return True
    return False


def _same_day_range(name: str, expected: Any) -> Dict[str, Any]:
    start, end = _day_bounds(expected)
    return {"range": {name: {"gte": format_date(start), "lt": format_date(end)}}}
