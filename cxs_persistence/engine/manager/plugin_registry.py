import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cxs_persistence.conditions.evaluator_dispatcher import ConditionEvaluatorDispatcher
from cxs_persistence.conditions.query_builder_dispatcher import ConditionQueryBuilderDispatcher
from cxs_persistence.core.interface.condition_handler_interface import ConditionEvaluator, \
    ConditionQueryBuilder
from cxs_persistence.engine.manager.mapping_loader import load_mappings

logger = logging.getLogger(__name__)


class BundleEvent(Enum):
    STARTING = 1
    STARTED = 2
    STOPPING = 3


@dataclass
class Bundle:
    """
    A plug-in as seen by the persistence core: its identity, where its resources
    live, and the condition handlers it contributes.
    """
    bundle_id: str
    resource_root: Optional[Path] = None
    evaluators: Dict[str, ConditionEvaluator] = field(default_factory=dict)
    query_builders: Dict[str, ConditionQueryBuilder] = field(default_factory=dict)


class PluginRegistry:
    """
    Applies bundle lifecycle events to the condition dispatchers and the mapping
    cache. Each bundle's handlers are registered together and removed together.
    """

    def __init__(self, evaluator_dispatcher: ConditionEvaluatorDispatcher,
                 query_builder_dispatcher: ConditionQueryBuilderDispatcher,
                 mappings_loaded: Optional[Callable[[Dict[str, Dict[str, Any]]], None]] = None):
        self.evaluator_dispatcher = evaluator_dispatcher
        self.query_builder_dispatcher = query_builder_dispatcher
        self.mappings_loaded = mappings_loaded
        self._lock = threading.Lock()
        self._active: Dict[str, Bundle] = {}

    def bundle_changed(self, event: BundleEvent, bundle: Bundle) -> None:
        if event == BundleEvent.STARTING:
            self.load_predefined_mappings(bundle)
        elif event == BundleEvent.STARTED:
            self.register_handlers(bundle)
        elif event == BundleEvent.STOPPING:
            self.unregister_handlers(bundle)

    def load_predefined_mappings(self, bundle: Bundle) -> Dict[str, Dict[str, Any]]:
        mappings = load_mappings(bundle.resource_root)
        if mappings:
            logger.info(f"Bundle {bundle.bundle_id} provides mappings for {sorted(mappings)}")
            if self.mappings_loaded is not None:
                self.mappings_loaded(mappings)
        return mappings

    def register_handlers(self, bundle: Bundle) -> None:
        with self._lock:
            self.evaluator_dispatcher.register_all(bundle.bundle_id, bundle.evaluators)
            self.query_builder_dispatcher.register_all(bundle.bundle_id, bundle.query_builders)
            self._active[bundle.bundle_id] = bundle
        logger.info(f"Registered {len(bundle.evaluators)} evaluators and {len(bundle.query_builders)} "
                    f"query builders of bundle {bundle.bundle_id}")

    def unregister_handlers(self, bundle: Bundle) -> None:
        with self._lock:
            removed_evaluators = self.evaluator_dispatcher.unregister_all_from(bundle.bundle_id)
            removed_builders = self.query_builder_dispatcher.unregister_all_from(bundle.bundle_id)
            self._active.pop(bundle.bundle_id, None)
        logger.info(f"Unregistered {len(removed_evaluators)} evaluators and {len(removed_builders)} "
                    f"query builders of bundle {bundle.bundle_id}")

    def active_bundles(self) -> Dict[str, Bundle]:
        with self._lock:
            return dict(self._active)
