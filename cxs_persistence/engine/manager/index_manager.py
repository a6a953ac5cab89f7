import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, NotFoundError

from cxs_exception_model.exception import PersistenceException
from cxs_persistence import metrics
from cxs_persistence.engine.index_router import IndexRouter
from cxs_persistence.engine.manager.mapping_loader import merge_mappings

logger = logging.getLogger(__name__)

FOLDING_NORMALIZER = "folding_normalizer"

ANALYSIS_SETTINGS: Dict[str, Any] = {
    "analyzer": {
        "folding": {
            "type": "custom",
            "tokenizer": "whole_input",
            "filter": ["lowercase", "asciifolding"],
        }
    },
    "tokenizer": {
        "whole_input": {"type": "pattern", "pattern": ".*", "group": 0}
    },
    "normalizer": {
        FOLDING_NORMALIZER: {
            "type": "custom",
            "filter": ["lowercase", "asciifolding"],
        }
    },
}

COMMON_MAPPING: Dict[str, Any] = {
    "dynamic_templates": [
        {"all_strings": {"match_mapping_type": "string",
                         "mapping": {"type": "keyword", "normalizer": FOLDING_NORMALIZER}}}
    ],
    "properties": {
        "itemId": {"type": "keyword"},
        "itemType": {"type": "keyword"},
        "scope": {"type": "keyword", "normalizer": FOLDING_NORMALIZER},
    },
}

PERCOLATOR_MAPPING: Dict[str, Any] = {"properties": {"query": {"type": "percolator"}}}


def error_type(error: Exception) -> Optional[str]:
    """``error.type`` of an engine error response, if any."""
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        detail = body.get("error")
        if isinstance(detail, dict):
            return detail.get("type")
    return None


class IndexManager:
    """
    Owns index creation, mappings and retention.

    Attributes:
        client: Elasticsearch client.
        router (IndexRouter): Kind to index resolution.
        settings (PersistenceSettings): Shard, replica and window settings.
        mappings (Dict[str, Dict]): Predefined mappings by item kind. Replaced, never
            mutated in place, so readers can use it without locking.
    """

    def __init__(self, client, router: IndexRouter, settings):
        self.client = client
        self.router = router
        self.settings = settings
        self.mappings: Dict[str, Dict[str, Any]] = {}
        self._mappings_lock = threading.Lock()

    def add_mappings(self, mappings: Dict[str, Dict[str, Any]]) -> None:
        with self._mappings_lock:
            updated = dict(self.mappings)
            updated.update(copy.deepcopy(mappings))
            self.mappings = updated

    def index_settings(self, shards: int, replicas: int) -> Dict[str, Any]:
        return {
            "number_of_shards": shards,
            "number_of_replicas": replicas,
            "max_result_window": self.settings.max_result_window,
            "analysis": ANALYSIS_SETTINGS,
            "percolator": {"map_unmapped_fields_as_text": True},
        }

    def mapping_for_kinds(self, kinds: List[str]) -> Dict[str, Any]:
        mappings = self.mappings
        return merge_mappings([COMMON_MAPPING] + [mappings[k] for k in sorted(kinds) if k in mappings])

    def shared_kinds(self) -> List[str]:
        return [k for k in self.mappings if not self.router.is_dedicated(k) and not self.router.is_monthly(k)]

    def monthly_kinds(self) -> List[str]:
        return [k for k in self.router.items_monthly_indexed if not self.router.is_dedicated(k)]

    def index_exists(self, index_name: str) -> bool:
        return bool(self.client.indices.exists(index=index_name))

    def create_index(self, index_name: str, mapping: Optional[Dict[str, Any]] = None,
                     index_settings: Optional[Dict[str, Any]] = None) -> bool:
        """Create ``index_name`` unless it exists. Returns True when it was created."""
        if self.index_exists(index_name):
            return False
        kwargs: Dict[str, Any] = {"index": index_name}
        if index_settings is not None:
            kwargs["settings"] = index_settings
        if mapping is not None:
            kwargs["mappings"] = mapping
        try:
            self.client.indices.create(**kwargs)
        except ApiError as e:
            if error_type(e) == "resource_already_exists_exception":
                logger.debug(f"Index {index_name} was created concurrently")
                return False
            raise PersistenceException("Cannot create index", "create_index", index_name, e)
        logger.info(f"Created index {index_name}")
        return True

    def remove_index(self, index_name: str) -> bool:
        try:
            self.client.indices.delete(index=index_name)
        except NotFoundError:
            logger.debug(f"Index {index_name} does not exist, nothing to remove")
            return False
        logger.info(f"Removed index {index_name}")
        return True

    def ensure_base_index(self) -> bool:
        """Base index holding every shared kind plus the stored percolator queries."""
        mapping = merge_mappings([self.mapping_for_kinds(self.shared_kinds()), PERCOLATOR_MAPPING])
        created = self.create_index(self.settings.index_name, mapping,
                                    self.index_settings(self.settings.number_of_shards,
                                                        self.settings.number_of_replicas))
        if not created:
            self.put_mapping(self.settings.index_name, mapping)
        return created

    def ensure_dedicated_indices(self) -> None:
        for kind, index_name in self.router.index_names.items():
            mapping = self.mapping_for_kinds([kind])
            if not self.create_index(index_name, mapping,
                                     self.index_settings(self.settings.number_of_shards,
                                                         self.settings.number_of_replicas)):
                self.put_mapping(index_name, mapping)

    def ensure_monthly_indices(self, date: datetime) -> str:
        """Current monthly index, plus the loaded monthly mappings pushed to the months already there."""
        index_name = self.create_monthly_index(date)
        self.put_mapping(self.router.monthly_pattern(), self.mapping_for_kinds(self.monthly_kinds()))
        return index_name

    def put_mapping(self, target: str, mapping: Dict[str, Any]) -> None:
        """Push the field definitions of ``mapping`` to the existing indices matching ``target``."""
        body = {k: v for k, v in mapping.items() if k in ("properties", "dynamic_templates", "dynamic")}
        try:
            self.client.indices.put_mapping(index=target, allow_no_indices=True, **body)
        except ApiError as e:
            raise PersistenceException("Cannot update mapping", "put_mapping", target, e)
        logger.info(f"Updated mapping on {target}")

    def install_monthly_template(self) -> None:
        template_name = f"{self.settings.index_name}_monthlyindex"
        monthly = self.settings.monthly_index
        self.client.indices.put_index_template(
            name=template_name,
            index_patterns=[self.router.monthly_pattern()],
            priority=1,
            template={
                "settings": self.index_settings(monthly.number_of_shards, monthly.number_of_replicas),
                "mappings": self.mapping_for_kinds(self.monthly_kinds()),
            },
        )
        logger.info(f"Installed index template {template_name} for {self.router.monthly_pattern()}")

    def create_monthly_index(self, date: datetime) -> str:
        """Create the monthly index covering ``date``; settings and mappings come from the template."""
        index_name = self.router.monthly_index_name(date)
        if self.create_index(index_name):
            metrics.monthly_indices_created.inc()
        return index_name

    def create_mapping(self, kind: str, mapping: Dict[str, Any]) -> None:
        """Record ``mapping`` for ``kind`` and push it to every index holding the kind."""
        self.add_mappings({kind: mapping})
        if self.router.is_monthly(kind):
            self.install_monthly_template()
            target = self.router.monthly_pattern()
        elif self.router.is_dedicated(kind):
            target = self.router.index_names[kind]
        else:
            target = self.settings.index_name
        self.put_mapping(target, mapping)

    def get_properties_mapping(self, kind: str) -> Dict[str, Any]:
        """
        Field definitions of ``kind`` merged across every index holding it. Nested
        attribute maps are merged key by key one level deep; later indices win.
        """
        target = self.router.index_for_read(kind)
        try:
            response = self.client.indices.get_mapping(index=target, allow_no_indices=True)
        except NotFoundError:
            return {}
        merged: Dict[str, Any] = {}
        for index_name in sorted(response.keys()):
            properties = response[index_name].get("mappings", {}).get("properties", {})
            for field_name, attributes in properties.items():
                existing = merged.get(field_name)
                if isinstance(existing, dict) and isinstance(attributes, dict):
                    combined = dict(existing)
                    for key, value in attributes.items():
                        if isinstance(value, dict) and isinstance(combined.get(key), dict):
                            combined[key] = {**combined[key], **value}
                        else:
                            combined[key] = value
                    merged[field_name] = combined
                else:
                    merged[field_name] = attributes
        return merged

    def list_monthly_indices(self) -> List[str]:
        try:
            response = self.client.indices.stats(index=self.router.monthly_pattern(), metric="docs")
        except NotFoundError:
            return []
        return sorted(response.get("indices", {}).keys())

    def purge_before(self, before: datetime) -> List[str]:
        """Delete monthly indices whose month starts strictly before ``before``."""
        start_time = time.time()
        cutoff = before if before.tzinfo is not None else before.replace(tzinfo=timezone.utc)
        removed = []
        for index_name in self.list_monthly_indices():
            month = self.router.month_of_index(index_name)
            if month is not None and month < cutoff:
                self.remove_index(index_name)
                removed.append(index_name)
        logger.info(f"Purged {len(removed)} monthly indices before {before.isoformat()} "
                    f"in {time.time() - start_time:.3f}s")
        return removed

    def refresh_all(self) -> None:
        targets = [self.router.all_indices_pattern()] + sorted(set(self.router.index_names.values()))
        self.client.indices.refresh(index=",".join(targets), ignore_unavailable=True, allow_no_indices=True)
