from typing import runtime_checkable, Any, Dict, Optional, Protocol

from cxs_data_model.condition import Condition
from cxs_data_model.item import Item


@runtime_checkable
class ConditionEvaluator(Protocol):
    """
    Local evaluation of one condition type against an in-memory item. Nested
    conditions are evaluated through ``dispatcher``.
    """
    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        ...


@runtime_checkable
class ConditionQueryBuilder(Protocol):
    """
    Translation of one condition type into a search-engine query clause. Nested
    conditions are built through ``dispatcher``.
    """
    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        ...


@runtime_checkable
class EventQueryService(Protocol):
    """
    Narrow view of the persistence service the past-event handlers need.
    """
    def query_count(self, condition: Condition, item_type: str) -> int:
        ...

    def aggregate_profile_ids(self, condition: Condition, minimum_count: int,
                              maximum_count: Optional[int]) -> list:
        ...
