from typing import Any, Dict, List

from cxs_data_model.condition import Condition
from cxs_data_model.item import Item
from cxs_exception_model.exception import MalformedConditionException


def _sub_conditions(condition: Condition) -> List[Condition]:
    sub_conditions = condition.get_parameter("subConditions")
    if sub_conditions is None:
        return []
    if not isinstance(sub_conditions, list) or not all(isinstance(c, Condition) for c in sub_conditions):
        raise MalformedConditionException("subConditions must be a list of conditions",
                                          condition.condition_type_id, "subConditions")
    return sub_conditions


def _operator(condition: Condition) -> str:
    operator = condition.get_parameter("operator", "and")
    if operator not in ("and", "or"):
        raise MalformedConditionException(f"Unknown boolean operator {operator}",
                                          condition.condition_type_id, "operator")
    return operator


def _sub_condition(condition: Condition) -> Condition:
    sub_condition = condition.get_parameter("subCondition")
    if not isinstance(sub_condition, Condition):
        raise MalformedConditionException("subCondition must be provided",
                                          condition.condition_type_id, "subCondition")
    return sub_condition


class BooleanConditionEvaluator:

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        operator = _operator(condition)
        sub_conditions = _sub_conditions(condition)
        if operator == "and":
            return all(dispatcher.eval(c, item, context) for c in sub_conditions)
        return any(dispatcher.eval(c, item, context) for c in sub_conditions)


class BooleanConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        operator = _operator(condition)
        clauses = [dispatcher.build_query(c, context) for c in _sub_conditions(condition)]
        if operator == "and":
            if not clauses:
                return {"match_all": {}}
            return {"bool": {"must": clauses}}
        if not clauses:
            return {"match_none": {}}
        return {"bool": {"should": clauses, "minimum_should_match": 1}}


class NotConditionEvaluator:

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        return not dispatcher.eval(_sub_condition(condition), item, context)


class NotConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        return {"bool": {"must_not": [dispatcher.build_query(_sub_condition(condition), context)]}}


class MatchAllConditionEvaluator:

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        return True


class MatchAllConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        return {"match_all": {}}


def _ids(condition: Condition) -> List[str]:
    ids = condition.get_parameter("ids")
    if ids is None:
        raise MalformedConditionException("ids must be provided", condition.condition_type_id, "ids")
    return list(ids)


class IdsConditionEvaluator:
    """``match`` (default true) selects membership or exclusion."""

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        contained = item.item_id in _ids(condition)
        return contained if condition.get_parameter("match", True) else not contained


class IdsConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        query = {"terms": {"itemId": _ids(condition)}}
        if condition.get_parameter("match", True):
            return query
        return {"bool": {"must_not": [query]}}
