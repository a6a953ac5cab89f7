from typing import Dict, Optional

from cxs_persistence.conditions.builtin.composite_conditions import BooleanConditionEvaluator, \
    BooleanConditionQueryBuilder, NotConditionEvaluator, NotConditionQueryBuilder, MatchAllConditionEvaluator, \
    MatchAllConditionQueryBuilder, IdsConditionEvaluator, IdsConditionQueryBuilder
from cxs_persistence.conditions.builtin.date_range_condition import DateRangeConditionEvaluator, \
    DateRangeConditionQueryBuilder
from cxs_persistence.conditions.builtin.geo_distance_condition import GeoDistanceConditionEvaluator, \
    GeoDistanceConditionQueryBuilder
from cxs_persistence.conditions.builtin.past_event_condition import PastEventConditionEvaluator, \
    PastEventConditionQueryBuilder
from cxs_persistence.conditions.builtin.property_condition import PROPERTY_CONDITION_IDS, \
    PropertyConditionEvaluator, PropertyConditionQueryBuilder
from cxs_persistence.core.interface.condition_handler_interface import ConditionEvaluator, \
    ConditionQueryBuilder, EventQueryService


def builtin_evaluators(event_service: Optional[EventQueryService] = None) -> Dict[str, ConditionEvaluator]:
    property_evaluator = PropertyConditionEvaluator()
    evaluators: Dict[str, ConditionEvaluator] = {cid: property_evaluator for cid in PROPERTY_CONDITION_IDS}
    evaluators.update({
        "booleanCondition": BooleanConditionEvaluator(),
        "notCondition": NotConditionEvaluator(),
        "matchAllCondition": MatchAllConditionEvaluator(),
        "idsCondition": IdsConditionEvaluator(),
        "dateRangeCondition": DateRangeConditionEvaluator(),
        "geoDistanceCondition": GeoDistanceConditionEvaluator(),
    })
    if event_service is not None:
        evaluators["pastEventCondition"] = PastEventConditionEvaluator(event_service)
    return evaluators


def builtin_query_builders(event_service: Optional[EventQueryService] = None) -> Dict[str, ConditionQueryBuilder]:
    property_builder = PropertyConditionQueryBuilder()
    builders: Dict[str, ConditionQueryBuilder] = {cid: property_builder for cid in PROPERTY_CONDITION_IDS}
    builders.update({
        "booleanCondition": BooleanConditionQueryBuilder(),
        "notCondition": NotConditionQueryBuilder(),
        "matchAllCondition": MatchAllConditionQueryBuilder(),
        "idsCondition": IdsConditionQueryBuilder(),
        "dateRangeCondition": DateRangeConditionQueryBuilder(),
        "geoDistanceCondition": GeoDistanceConditionQueryBuilder(),
    })
    if event_service is not None:
        builders["pastEventCondition"] = PastEventConditionQueryBuilder(event_service)
    return builders
