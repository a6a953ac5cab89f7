import logging
from typing import Any, Dict, Optional

from cxs_data_model.condition import Condition
from cxs_data_model.item import Item
from cxs_exception_model.exception import MalformedConditionException
from cxs_persistence.core.interface.condition_handler_interface import EventQueryService

logger = logging.getLogger(__name__)


def event_condition_in_window(condition: Condition, profile_id: Optional[str] = None) -> Condition:
    """
    The event condition of a past-event condition, restricted to the last
    ``numberOfDays`` days and, when given, to the events of one profile.
    """
    event_condition = condition.get_parameter("eventCondition")
    if not isinstance(event_condition, Condition):
        raise MalformedConditionException("eventCondition must be provided",
                                          condition.condition_type_id, "eventCondition")
    clauses = [event_condition]
    number_of_days = condition.get_parameter("numberOfDays")
    if number_of_days is not None:
        clauses.append(Condition.create("dateRangeCondition", propertyName="timeStamp",
                                        **{"from": f"now-{int(number_of_days)}d"}))
    if profile_id is not None:
        clauses.append(Condition.create("eventPropertyCondition", propertyName="profileId",
                                        comparisonOperator="equals", propertyValue=profile_id))
    return Condition.create("booleanCondition", operator="and", subConditions=clauses)


def _counts(condition: Condition):
    minimum = condition.get_parameter("minimumEventCount", 1)
    maximum = condition.get_parameter("maximumEventCount")
    try:
        minimum = int(minimum)
        maximum = int(maximum) if maximum is not None else None
    except (TypeError, ValueError):
        raise MalformedConditionException("Event counts must be integers",
                                          condition.condition_type_id, "minimumEventCount")
    return minimum, maximum


class PastEventConditionEvaluator:
    """
    A profile matches when it has between ``minimumEventCount`` and
    ``maximumEventCount`` matching events in the window. Counting is delegated to
    the persistence service.
    """

    def __init__(self, event_service: EventQueryService):
        self.event_service = event_service

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        minimum, maximum = _counts(condition)
        count = self.event_service.query_count(event_condition_in_window(condition, item.item_id), "event")
        logger.debug(f"Profile {item.item_id} has {count} matching past events")
        return count >= minimum and (maximum is None or count <= maximum)


class PastEventConditionQueryBuilder:
    """Resolves the matching profiles up front and filters on their ids."""

    def __init__(self, event_service: EventQueryService):
        self.event_service = event_service

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        minimum, maximum = _counts(condition)
        window = event_condition_in_window(condition)
        if minimum <= 0:
            # profiles without any event match too, so exclude those above the maximum
            if maximum is None:
                return {"match_all": {}}
            too_many = self.event_service.aggregate_profile_ids(window, maximum + 1, None)
            return {"bool": {"must_not": [{"terms": {"itemId": too_many}}]}}
        profile_ids = self.event_service.aggregate_profile_ids(window, minimum, maximum)
        return {"terms": {"itemId": profile_ids}}
