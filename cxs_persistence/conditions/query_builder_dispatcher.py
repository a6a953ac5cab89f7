import json
import logging
from typing import Any, Dict, List, Optional

from cxs_data_model.condition import Condition
from cxs_exception_model.exception import UnsupportedConditionException
from cxs_persistence.conditions.context_helper import get_contextual_condition
from cxs_persistence.core.interface.condition_handler_interface import ConditionQueryBuilder
from cxs_persistence.core.registry.handler_registry import HandlerRegistry

logger = logging.getLogger(__name__)

MATCH_NONE: Dict[str, Any] = {"match_none": {}}


class ConditionQueryBuilderDispatcher:
    """
    Compiles conditions into search-engine query clauses by delegating to the
    query builder registered for each condition type.
    """

    def __init__(self):
        self._registry: HandlerRegistry[ConditionQueryBuilder] = HandlerRegistry("query_builders")

    def register(self, condition_type_id: str, owner_bundle_id: str, builder: ConditionQueryBuilder) -> None:
        self._registry.register(condition_type_id, owner_bundle_id, builder)

    def register_all(self, owner_bundle_id: str, builders: Dict[str, ConditionQueryBuilder]) -> None:
        self._registry.register_all(owner_bundle_id, builders)

    def unregister_all_from(self, owner_bundle_id: str) -> List[str]:
        return self._registry.unregister_all_from(owner_bundle_id)

    def is_supported(self, condition_type_id: str) -> bool:
        return condition_type_id in self._registry

    def build_query(self, condition: Condition, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Returns:
            Dict[str, Any]: The query clause; ``match_none`` when a parameter template
            cannot be resolved.

        Raises:
            UnsupportedConditionException: No query builder is registered for the type.
            MalformedConditionException: The handler rejected the parameters.
        """
        context = context or {}
        contextual = get_contextual_condition(condition, context)
        if contextual is None:
            logger.debug(f"Condition {condition.condition_type_id} has unresolved parameters, matching nothing")
            return dict(MATCH_NONE)

        condition_type = contextual.condition_type
        if condition_type is not None and condition_type.parent_condition is not None:
            parent_context = dict(context)
            parent_context.update(contextual.parameters)
            return self.build_query(condition_type.parent_condition, parent_context)

        handler_id = condition_type.query_builder_id() if condition_type is not None else contextual.condition_type_id
        builder = self._registry.get(handler_id)
        if builder is None:
            raise UnsupportedConditionException("No query builder registered", handler_id, "query_builder")
        return builder.build_query(contextual, context, self)

    def build_filter(self, condition: Condition, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Same clause as ``build_query`` wrapped so it runs in filter context."""
        return {"bool": {"filter": [self.build_query(condition, context)]}}

    def get_query(self, condition: Condition, context: Optional[Dict[str, Any]] = None) -> str:
        """Serialized request body, as stored in percolator documents."""
        return json.dumps({"query": self.build_query(condition, context)})
