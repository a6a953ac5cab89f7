import logging
from typing import Any, Dict, List, Optional

from cxs_data_model.condition import Condition
from cxs_data_model.item import Item
from cxs_exception_model.exception import UnsupportedConditionException
from cxs_persistence.conditions.context_helper import get_contextual_condition
from cxs_persistence.core.interface.condition_handler_interface import ConditionEvaluator
from cxs_persistence.core.registry.handler_registry import HandlerRegistry

logger = logging.getLogger(__name__)


class ConditionEvaluatorDispatcher:
    """
    Evaluates conditions against in-memory items by delegating to the evaluator
    registered for each condition type.
    """

    def __init__(self):
        self._registry: HandlerRegistry[ConditionEvaluator] = HandlerRegistry("evaluators")

    def register(self, condition_type_id: str, owner_bundle_id: str, evaluator: ConditionEvaluator) -> None:
        self._registry.register(condition_type_id, owner_bundle_id, evaluator)

    def register_all(self, owner_bundle_id: str, evaluators: Dict[str, ConditionEvaluator]) -> None:
        self._registry.register_all(owner_bundle_id, evaluators)

    def unregister_all_from(self, owner_bundle_id: str) -> List[str]:
        return self._registry.unregister_all_from(owner_bundle_id)

    def is_supported(self, condition_type_id: str) -> bool:
        return condition_type_id in self._registry

    def eval(self, condition: Condition, item: Item, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Returns:
            bool: Whether ``item`` satisfies ``condition``. An unresolvable parameter
            template yields False.

        Raises:
            UnsupportedConditionException: No evaluator is registered for the type.
            MalformedConditionException: The handler rejected the parameters.
        """
        context = context or {}
        contextual = get_contextual_condition(condition, context)
        if contextual is None:
            logger.debug(f"Condition {condition.condition_type_id} has unresolved parameters, evaluating to False")
            return False

        condition_type = contextual.condition_type
        if condition_type is not None and condition_type.parent_condition is not None:
            parent_context = dict(context)
            parent_context.update(contextual.parameters)
            return self.eval(condition_type.parent_condition, item, parent_context)

        handler_id = condition_type.evaluator_id() if condition_type is not None else contextual.condition_type_id
        evaluator = self._registry.get(handler_id)
        if evaluator is None:
            raise UnsupportedConditionException("No evaluator registered", handler_id, "evaluator")
        return evaluator.eval(contextual, item, context, self)
