import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

H = TypeVar("H")


class HandlerRegistry(Generic[H]):
    """
    Map of ``condition type id -> (owner bundle id, handler)``.

    Reads go to an immutable snapshot and never take the lock. Writers build a
    new snapshot under the lock and publish it with a single reference swap, so
    a reader sees either the whole of a bundle's registrations or none of them.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._entries: Mapping[str, Tuple[str, H]] = MappingProxyType({})

    def register(self, condition_type_id: str, owner_bundle_id: str, handler: H) -> None:
        with self._lock:
            entries = dict(self._entries)
            entries[condition_type_id] = (owner_bundle_id, handler)
            self._entries = MappingProxyType(entries)
        logger.debug(f"{self.name}: registered {condition_type_id} for bundle {owner_bundle_id}")

    def register_all(self, owner_bundle_id: str, handlers: Dict[str, H]) -> None:
        with self._lock:
            entries = dict(self._entries)
            for condition_type_id, handler in handlers.items():
                entries[condition_type_id] = (owner_bundle_id, handler)
            self._entries = MappingProxyType(entries)
        logger.debug(f"{self.name}: registered {len(handlers)} handlers for bundle {owner_bundle_id}")

    def unregister_all_from(self, owner_bundle_id: str) -> List[str]:
        with self._lock:
            removed = [k for k, (owner, _) in self._entries.items() if owner == owner_bundle_id]
            if removed:
                self._entries = MappingProxyType(
                    {k: v for k, v in self._entries.items() if v[0] != owner_bundle_id})
        if removed:
            logger.debug(f"{self.name}: removed {len(removed)} handlers of bundle {owner_bundle_id}")
        return removed

    def get(self, condition_type_id: str) -> Optional[H]:
        entry = self._entries.get(condition_type_id)
        return entry[1] if entry is not None else None

    def owner_of(self, condition_type_id: str) -> Optional[str]:
        entry = self._entries.get(condition_type_id)
        return entry[0] if entry is not None else None

    def ids(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, condition_type_id: Any) -> bool:
        return condition_type_id in self._entries
