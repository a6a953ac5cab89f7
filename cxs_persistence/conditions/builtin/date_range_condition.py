from typing import Any, Dict, Optional, Tuple

from cxs_data_model.condition import Condition
from cxs_data_model.data_model_utils import format_date, parse_date
from cxs_data_model.item import Item
from cxs_exception_model.exception import MalformedConditionException
from cxs_persistence.conditions.context_helper import resolve_date_expr
from cxs_persistence.conditions.property_accessor import item_source, get_property_values


def _bounds(condition: Condition) -> Tuple[str, Optional[Any], Optional[Any]]:
    name = condition.get_parameter("propertyName")
    if name is None:
        raise MalformedConditionException("propertyName must be provided",
                                          condition.condition_type_id, "propertyName")
    low = condition.get_parameter("from")
    high = condition.get_parameter("to")
    if low is None and high is None:
        raise MalformedConditionException("At least one of from and to must be provided",
                                          condition.condition_type_id, "from")
    try:
        return name, resolve_date_expr(low), resolve_date_expr(high)
    except ValueError as e:
        raise MalformedConditionException(f"Invalid date bound: {e}", condition.condition_type_id, "from")


class DateRangeConditionEvaluator:
    """Date inside the closed interval [from, to]; a missing bound is open."""

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        name, low, high = _bounds(condition)
        for value in get_property_values(item_source(item), name):
            try:
                moment = parse_date(value)
            except (TypeError, ValueError):
                continue
            if moment is None:
                continue
            if (low is None or moment >= low) and (high is None or moment <= high):
                return True
        return False


class DateRangeConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        name, low, high = _bounds(condition)
        bounds = {}
        if low is not None:
            bounds["gte"] = format_date(low)
        if high is not None:
            bounds["lte"] = format_date(high)
        return {"range": {name: bounds}}
