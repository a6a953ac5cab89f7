"""
ElasticSearchPersistenceService Architecture
============================================

    callers (rules, segments, REST layer, action executors)
        │ items / conditions
        ▼
    ┌───────────────────────────────────────────────────────────────────────┐
    │                   ElasticSearchPersistenceService                     │
    │                                                                       │
    │  writes ───► IndexRouter ───► BulkProcessor ─────────────┐            │
    │   save / update / update_with_script                     │            │
    │                                                          ▼            │
    │  reads ────► QueryBuilderDispatcher ─► IndexRouter ─► Elasticsearch   │
    │   load / query* / count / aggregate / metrics / percolate             │
    │                                                          ▲            │
    │  lifecycle ► IndexManager (base index, template, monthly, purge)      │
    │              MonthlyIndexScheduler (daily roll-forward)               │
    │              PluginRegistry (bundle mappings and handlers)            │
    │              ClusterManager (node inventory)                          │
    └───────────────────────────────────────────────────────────────────────┘

Every remote call runs inside ``component_context`` and is timed. Engine errors
surface as PersistenceException. Hits that cannot be deserialized are logged
and skipped.
"""
import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

from elasticsearch import ApiError, Elasticsearch, NotFoundError, TransportError, helpers

from cxs_data_model.aggregate import BaseAggregate
from cxs_data_model.condition import Condition
from cxs_data_model.data_models import ClusterNode, SavedQueryModel
from cxs_data_model.item import Item, kind_of
from cxs_data_model.partial_list import PartialList
from cxs_exception_model.exception import PersistenceException, UnknownItemTypeException, \
    ItemDeserializationException, IndexNotFoundException, UnsupportedConditionException
from cxs_persistence import metrics
from cxs_persistence.conditions.builtin.builtin_handlers import builtin_evaluators, builtin_query_builders
from cxs_persistence.conditions.context_helper import fold_to_ascii
from cxs_persistence.conditions.evaluator_dispatcher import ConditionEvaluatorDispatcher
from cxs_persistence.conditions.query_builder_dispatcher import ConditionQueryBuilderDispatcher
from cxs_persistence.config import PersistenceSettings
from cxs_persistence.core.context import component_context
from cxs_persistence.engine.index_router import IndexRouter, PERCOLATOR_TYPE
from cxs_persistence.engine.manager.bulk_processor import BulkProcessor, BulkAction, BulkListener
from cxs_persistence.engine.manager.cluster_manager import ClusterManager
from cxs_persistence.engine.manager.index_manager import IndexManager, error_type
from cxs_persistence.engine.manager.monthly_index_scheduler import MonthlyIndexScheduler, utc_now
from cxs_persistence.engine.manager.plugin_registry import PluginRegistry, Bundle, BundleEvent
from cxs_persistence.engine.manager.search_manager import resolve_size, parse_sort, aggregation_request, \
    parse_aggregation_response, metrics_request, parse_metrics_response, UNBOUNDED, MAX_BUCKETS

logger = logging.getLogger(__name__)

COMPONENT_NAME = "cxs-persistence"
CORE_BUNDLE_ID = "cxs-persistence-core"

MONTHLY_SCOPE_ALL = "all"
MONTHLY_SCOPE_CURRENT = "current"

SCROLL_PAGE_SIZE = 1000
PURGE_SCROLL_KEEP_ALIVE = "1h"
PURGE_SCROLL_PAGE_SIZE = 100

ItemType = Union[str, Type[Item]]


class _MonthlyIndexRecovery(BulkListener):
    """Creates a missing monthly index and replays the failed write once, outside the bulk path."""

    def __init__(self, service: "ElasticSearchPersistenceService"):
        self.service = service

    def on_action_failure(self, action: BulkAction, status: Optional[int], error: Any) -> None:
        if action.op_type != "index" or not isinstance(error, dict):
            return
        if error.get("type") != "index_not_found_exception":
            return
        kind = (action.body or {}).get("itemType")
        if kind is None or not self.service.router.is_monthly(kind):
            return
        self.service.retry_save_in_new_index(action)


class ElasticSearchPersistenceService:
    """
    Item store on top of Elasticsearch.

    Attributes:
        settings (PersistenceSettings): Process-wide configuration.
        client (Elasticsearch): Engine client, created on ``start`` unless given.
        router (IndexRouter): Kind to index resolution.
        evaluator_dispatcher (ConditionEvaluatorDispatcher): Local condition evaluation.
        query_builder_dispatcher (ConditionQueryBuilderDispatcher): Condition to query compilation.
        index_manager (IndexManager): Index, template and mapping management.
        plugin_registry (PluginRegistry): Bundle lifecycle handling.
        bulk_processor (Optional[BulkProcessor]): Write batching, None when disabled or stopped.
    """

    def __init__(self, settings: Optional[PersistenceSettings] = None, client: Optional[Elasticsearch] = None,
                 bundles: Optional[List[Bundle]] = None,
                 evaluator_dispatcher: Optional[ConditionEvaluatorDispatcher] = None,
                 query_builder_dispatcher: Optional[ConditionQueryBuilderDispatcher] = None,
                 clock=utc_now):
        self.settings = settings or PersistenceSettings.load()
        self.client = client
        self.clock = clock
        self.router = IndexRouter.from_settings(self.settings)
        self.evaluator_dispatcher = evaluator_dispatcher or ConditionEvaluatorDispatcher()
        self.query_builder_dispatcher = query_builder_dispatcher or ConditionQueryBuilderDispatcher()
        self.index_manager = IndexManager(client, self.router, self.settings)
        self.plugin_registry = PluginRegistry(self.evaluator_dispatcher, self.query_builder_dispatcher,
                                              mappings_loaded=self._on_mappings_loaded)
        self.core_bundle = Bundle(
            bundle_id=CORE_BUNDLE_ID,
            resource_root=Path(__file__).resolve().parent.parent,
            evaluators=builtin_evaluators(self),
            query_builders=builtin_query_builders(self),
        )
        self._bundles: List[Bundle] = [self.core_bundle] + list(bundles or [])
        self.bulk_processor: Optional[BulkProcessor] = None
        self.scheduler: Optional[MonthlyIndexScheduler] = None
        self.cluster_manager: Optional[ClusterManager] = None
        self._started = False

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        start_time = time.time()
        with component_context(COMPONENT_NAME):
            if self.client is None:
                cluster = self.settings.cluster
                self.client = Elasticsearch(cluster.hosts, request_timeout=cluster.request_timeout,
                                            retry_on_timeout=True, max_retries=cluster.max_retries)
            self.index_manager.client = self.client

            for bundle in self._bundles:
                self.plugin_registry.load_predefined_mappings(bundle)

            self.index_manager.ensure_base_index()
            self.index_manager.ensure_dedicated_indices()
            self.index_manager.install_monthly_template()
            if self.index_manager.monthly_kinds():
                self.index_manager.ensure_monthly_indices(self.clock())

            if self.settings.bulk_processor.enabled:
                self.bulk_processor = BulkProcessor.from_settings(self.client, self.settings.bulk_processor,
                                                                  listener=_MonthlyIndexRecovery(self))

            self.cluster_manager = ClusterManager(self.client, self.settings.contextserver)

        for bundle in self._bundles:
            self.plugin_registry.register_handlers(bundle)

        monthly = self.settings.monthly_index
        self.scheduler = MonthlyIndexScheduler(self._create_monthly_index_in_context,
                                               initial_delay=monthly.check_initial_delay,
                                               period=monthly.check_period, clock=self.clock)
        self.scheduler.start()
        self._started = True
        logger.info(f"Persistence service started on index {self.settings.index_name} "
                    f"in {time.time() - start_time:.3f}s")

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel()
            self.scheduler = None
        if self.bulk_processor is not None:
            self.bulk_processor.close()
            self.bulk_processor = None
        if self.client is not None:
            with component_context(COMPONENT_NAME):
                self.client.close()
        self._started = False
        logger.info("Persistence service stopped")

    def bundle_changed(self, event: BundleEvent, bundle: Bundle) -> None:
        """Entry point of the plug-in loader."""
        if event == BundleEvent.STARTING and bundle not in self._bundles:
            self._bundles.append(bundle)
        elif event == BundleEvent.STOPPING and bundle in self._bundles:
            self._bundles.remove(bundle)
        self.plugin_registry.bundle_changed(event, bundle)

    def _on_mappings_loaded(self, mappings: Dict[str, Dict[str, Any]]) -> None:
        if not self._started:
            self.index_manager.add_mappings(mappings)
            return
        for kind, mapping in mappings.items():
            self.create_mapping(kind, mapping)

    def _create_monthly_index_in_context(self, date: datetime) -> str:
        with self._remote_call("create_monthly_index"):
            return self.index_manager.create_monthly_index(date)

    @contextmanager
    def _remote_call(self, operation: str, index_name: Optional[str] = None):
        start_time = time.time()
        with component_context(COMPONENT_NAME):
            try:
                yield
            except (ApiError, TransportError) as e:
                metrics.remote_call_errors.labels(operation=operation).inc()
                logger.error(f"{operation} failed on {index_name}: {e}", exc_info=True)
                raise PersistenceException("Search engine call failed", operation, index_name, e)
            finally:
                metrics.remote_call_latency.labels(operation=operation).observe(time.time() - start_time)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _kind(item_type: ItemType) -> Optional[str]:
        if isinstance(item_type, str):
            return item_type
        kind = kind_of(item_type)
        if kind is None:
            logger.error(f"Cannot determine the item type of {getattr(item_type, '__name__', item_type)}")
        return kind

    @staticmethod
    def _kind_filter(kind: str, *clauses: Dict[str, Any]) -> Dict[str, Any]:
        return {"bool": {"filter": [{"term": {"itemType": kind}}] + list(clauses)}}

    def _hit_to_item(self, hit: Dict[str, Any]) -> Optional[Item]:
        source = dict(hit.get("_source", {}))
        kind = source.get("itemType")
        if "itemId" not in source and kind is not None:
            prefix = f"{kind}_"
            doc_id = hit.get("_id", "")
            shared = not self.router.is_dedicated(kind) and doc_id.startswith(prefix)
            source["itemId"] = doc_id[len(prefix):] if shared else doc_id
        try:
            item = Item.from_dict(source)
        except (ItemDeserializationException, UnknownItemTypeException) as e:
            logger.error(f"Skipping document {hit.get('_id')} of {hit.get('_index')}: {e}")
            return None
        item.version = hit.get("_version", hit.get("_seq_no"))
        return item

    def _hits_to_items(self, hits: List[Dict[str, Any]]) -> List[Item]:
        return [item for item in (self._hit_to_item(h) for h in hits) if item is not None]

    def _locate(self, kind: str, item_id: str, date_hint: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Search hit of a stored item, used where the physical index or routing is not known."""
        index = self.router.index_for_read(kind, date_hint)
        with self._remote_call("locate", index):
            response = self.client.search(index=index, query=self._kind_filter(kind, {"term": {"itemId": item_id}}),
                                          size=1, version=True)
        hits = response["hits"]["hits"]
        return hits[0] if hits else None

    def _needs_lookup(self, kind: str, date_hint: Optional[datetime]) -> bool:
        return (self.router.is_monthly(kind) and date_hint is None) or self.router.routing_field(kind) is not None

    # ------------------------------------------------------------------ writes

    def save(self, item: Item) -> bool:
        """
        Write ``item`` to the index resolved for its kind and date. With bulk
        enabled the call returns once the action is queued.

        Returns:
            bool: True when written or queued, False when the item kind is unknown.
        """
        try:
            kind = item.item_type
        except UnknownItemTypeException as e:
            logger.error(f"Cannot save item {item.item_id}: {e}")
            return False
        source = item.to_dict()
        if self.router.is_monthly(kind) and getattr(item, "time_stamp", None) is None:
            logger.warning(f"Item {item.item_id} of monthly kind {kind} has no timestamp, using current month")
        index = self.router.index_for_write(kind, getattr(item, "time_stamp", None) or self.clock())
        action = BulkAction("index", index, self.router.document_id(kind, item.item_id), source,
                            self.router.routing(kind, source), payload=item)

        if self.bulk_processor is not None:
            self.bulk_processor.add(action)
            return True
        self._index_direct(action, retry_missing_index=self.router.is_monthly(kind))
        return True

    def _index_direct(self, action: BulkAction, retry_missing_index: bool) -> None:
        with self._remote_call("save", action.index):
            try:
                self.client.index(index=action.index, id=action.doc_id, document=action.body, routing=action.routing)
            except NotFoundError as e:
                if error_type(e) != "index_not_found_exception":
                    raise
                if not retry_missing_index:
                    raise IndexNotFoundException(f"Cannot write {action.doc_id}", action.index) from e
                logger.info(f"Index {action.index} missing, creating it and retrying")
                self.index_manager.create_index(action.index)
                self.client.index(index=action.index, id=action.doc_id, document=action.body, routing=action.routing)

    def retry_save_in_new_index(self, action: BulkAction) -> None:
        """Create the monthly index a bulk write failed on and replay the write once."""
        logger.info(f"Index {action.index} missing, creating it and replaying {action.doc_id}")
        try:
            with self._remote_call("save", action.index):
                self.index_manager.create_index(action.index)
                self.client.index(index=action.index, id=action.doc_id, document=action.body, routing=action.routing)
        except PersistenceException as e:
            logger.error(f"Replay of {action.doc_id} in {action.index} failed: {e}")

    def update(self, item_id: str, date_hint: Optional[datetime], item_type: ItemType, source: Dict[str, Any]) -> bool:
        """Partial update merging ``source`` into the stored document."""
        return self._update(item_id, date_hint, item_type, {"doc": source})

    def update_property(self, item_id: str, date_hint: Optional[datetime], item_type: ItemType,
                        property_name: str, property_value: Any) -> bool:
        """Partial update of one (dotted) property."""
        doc: Any = property_value
        for part in reversed(property_name.split(".")):
            doc = {part: doc}
        return self._update(item_id, date_hint, item_type, {"doc": doc})

    def update_with_script(self, item_id: str, date_hint: Optional[datetime], item_type: ItemType,
                           script: str, params: Optional[Dict[str, Any]] = None) -> bool:
        body = {"script": {"source": script, "lang": "painless", "params": params or {}}}
        return self._update(item_id, date_hint, item_type, body)

    def _update(self, item_id: str, date_hint: Optional[datetime], item_type: ItemType,
                body: Dict[str, Any]) -> bool:
        kind = self._kind(item_type)
        if kind is None:
            return False
        index = self.router.index_for_write(kind, date_hint)
        routing = None
        if self._needs_lookup(kind, date_hint):
            hit = self._locate(kind, item_id, date_hint)
            if hit is None:
                logger.warning(f"Cannot update {kind} {item_id}: not found")
                return False
            index, routing = hit["_index"], hit.get("_routing")
        action = BulkAction("update", index, self.router.document_id(kind, item_id), body, routing)

        if self.bulk_processor is not None:
            self.bulk_processor.add(action)
            return True
        with self._remote_call("update", index):
            try:
                self.client.update(index=index, id=action.doc_id, routing=routing, **body)
            except NotFoundError:
                logger.warning(f"Cannot update {kind} {item_id}: not found in {index}")
                return False
        return True

    def remove(self, item_id: str, item_type: ItemType) -> bool:
        """Delete one item directly, bypassing the bulk processor."""
        kind = self._kind(item_type)
        if kind is None:
            return False
        index = self.router.index_for_read(kind)
        if self._needs_lookup(kind, None):
            with self._remote_call("remove", index):
                response = self.client.delete_by_query(
                    index=index, query=self._kind_filter(kind, {"term": {"itemId": item_id}}),
                    conflicts="proceed", refresh=True)
            return response.get("deleted", 0) > 0
        with self._remote_call("remove", index):
            try:
                self.client.delete(index=index, id=self.router.document_id(kind, item_id))
            except NotFoundError:
                return False
        return True

    def remove_by_query(self, condition: Condition, item_type: ItemType, scope: str = MONTHLY_SCOPE_ALL) -> bool:
        """
        Delete every item of the kind matching ``condition``. For monthly kinds
        ``scope`` selects every month (``all``) or the current month (``current``).
        """
        kind = self._kind(item_type)
        if kind is None:
            return False
        if scope == MONTHLY_SCOPE_CURRENT:
            index = self.router.index_for_write(kind, self.clock())
        elif scope == MONTHLY_SCOPE_ALL:
            index = self.router.index_for_read(kind)
        else:
            raise ValueError(f"Unknown scope {scope}, expected {MONTHLY_SCOPE_ALL} or {MONTHLY_SCOPE_CURRENT}")
        query = self._kind_filter(kind, self.query_builder_dispatcher.build_filter(condition))
        start_time = time.time()
        with self._remote_call("remove_by_query", index):
            response = self.client.delete_by_query(index=index, query=query, conflicts="proceed",
                                                   refresh=True, allow_no_indices=True)
        logger.info(f"Removed {response.get('deleted', 0)} {kind} items from {index} "
                    f"in {time.time() - start_time:.3f}s")
        return True

    # ------------------------------------------------------------------ reads

    def load(self, item_id: str, item_type: ItemType, date_hint: Optional[datetime] = None) -> Optional[Item]:
        kind = self._kind(item_type)
        if kind is None:
            return None
        if self._needs_lookup(kind, date_hint):
            hit = self._locate(kind, item_id, date_hint)
            return self._hit_to_item(hit) if hit is not None else None

        index = self.router.index_for_read(kind, date_hint)
        with self._remote_call("load", index):
            try:
                response = self.client.get(index=index, id=self.router.document_id(kind, item_id))
            except NotFoundError:
                return None
        if not response.get("found"):
            return None
        return self._hit_to_item(response)

    def query(self, condition: Condition, sort_by: Optional[str], item_type: ItemType,
              offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        return self._search(item_type, self.query_builder_dispatcher.build_filter(condition), sort_by, offset, size)

    def query_by_field(self, field_name: str, value: Any, sort_by: Optional[str], item_type: ItemType,
                       offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        """Items whose ``field_name`` equals ``value`` (or any element when ``value`` is a list)."""
        if isinstance(value, (list, tuple, set)):
            query = {"terms": {field_name: list(value)}}
        else:
            query = {"term": {field_name: value}}
        return self._search(item_type, query, sort_by, offset, size)

    def query_full_text(self, fulltext: str, sort_by: Optional[str], item_type: ItemType,
                        offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        return self._search(item_type, self._full_text_query(fulltext), sort_by, offset, size)

    def query_full_text_with_condition(self, fulltext: str, condition: Condition, sort_by: Optional[str],
                                       item_type: ItemType, offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        query = {"bool": {"must": [self._full_text_query(fulltext)],
                          "filter": [self.query_builder_dispatcher.build_filter(condition)]}}
        return self._search(item_type, query, sort_by, offset, size)

    def query_full_text_by_field(self, field_name: str, value: Any, fulltext: str, sort_by: Optional[str],
                                 item_type: ItemType, offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        query = {"bool": {"must": [self._full_text_query(fulltext)],
                          "filter": [{"term": {field_name: value}}]}}
        return self._search(item_type, query, sort_by, offset, size)

    def range_query(self, field_name: str, low: Any, high: Any, sort_by: Optional[str], item_type: ItemType,
                    offset: int = 0, size: int = UNBOUNDED) -> PartialList:
        """Items with ``low <= field_name <= high``; a None bound is open."""
        bounds = {}
        if low is not None:
            bounds["gte"] = low
        if high is not None:
            bounds["lte"] = high
        return self._search(item_type, {"range": {field_name: bounds}}, sort_by, offset, size)

    def get_all_items(self, item_type: ItemType, offset: int = 0, size: int = UNBOUNDED,
                      sort_by: Optional[str] = None) -> PartialList:
        return self._search(item_type, {"match_all": {}}, sort_by, offset, size)

    def get_all_items_count(self, item_type: ItemType) -> int:
        return self._count(item_type, {"match_all": {}})

    @staticmethod
    def _full_text_query(fulltext: str) -> Dict[str, Any]:
        return {"query_string": {"query": fold_to_ascii(fulltext), "default_operator": "and"}}

    def _search(self, item_type: ItemType, query: Dict[str, Any], sort_by: Optional[str],
                offset: int, size: int) -> PartialList:
        kind = self._kind(item_type)
        if kind is None:
            return PartialList([], offset, size, 0)
        index = self.router.index_for_read(kind)
        full_query = {"bool": {"filter": [{"term": {"itemType": kind}}], "must": [query]}}
        page_size = resolve_size(size, self.settings.default_query_limit)
        sort = parse_sort(sort_by)
        kwargs: Dict[str, Any] = {"index": index, "query": full_query, "track_total_hits": True,
                                  "version": True, "allow_no_indices": True}
        if sort:
            kwargs["sort"] = sort

        start_time = time.time()
        if page_size == UNBOUNDED:
            hits, total = self._scroll_all(kwargs)
            hits = hits[offset:]
        else:
            with self._remote_call("query", index):
                response = self.client.search(from_=offset, size=page_size, **kwargs)
            hits = response["hits"]["hits"]
            total = response["hits"]["total"]["value"]
        items = self._hits_to_items(hits)
        logger.debug(f"Query on {index} returned {len(items)} of {total} {kind} items "
                     f"in {time.time() - start_time:.3f}s")
        return PartialList(items, offset, page_size, total)

    def _scroll_all(self, kwargs: Dict[str, Any]):
        hits: List[Dict[str, Any]] = []
        scroll_id = None
        with self._remote_call("scroll", kwargs.get("index")):
            try:
                response = self.client.search(size=SCROLL_PAGE_SIZE, scroll="1m", **kwargs)
                scroll_id = response.get("_scroll_id")
                total = response["hits"]["total"]["value"]
                page = response["hits"]["hits"]
                while page:
                    hits.extend(page)
                    response = self.client.scroll(scroll_id=scroll_id, scroll="1m")
                    scroll_id = response.get("_scroll_id", scroll_id)
                    page = response["hits"]["hits"]
            finally:
                if scroll_id is not None:
                    self.client.clear_scroll(scroll_id=scroll_id)
        return hits, total

    def _count(self, item_type: ItemType, query: Dict[str, Any]) -> int:
        kind = self._kind(item_type)
        if kind is None:
            return 0
        index = self.router.index_for_read(kind)
        with self._remote_call("count", index):
            response = self.client.count(index=index, query=self._kind_filter(kind, query),
                                         allow_no_indices=True)
        return response["count"]

    def query_count(self, condition: Condition, item_type: ItemType) -> int:
        return self._count(item_type, self.query_builder_dispatcher.build_filter(condition))

    def aggregate_query(self, condition: Optional[Condition], aggregate: Optional[BaseAggregate],
                        item_type: ItemType) -> Dict[str, int]:
        """
        Returns:
            Dict[str, int]: ``_all`` (items of the kind), ``_filtered`` (items matching
            ``condition``, when given), one entry per bucket and ``_missing`` when
            some items lack the aggregated field.
        """
        kind = self._kind(item_type)
        if kind is None:
            return {}
        index = self.router.index_for_read(kind)
        filter_query = self.query_builder_dispatcher.build_filter(condition) if condition is not None else None
        aggs = aggregation_request(filter_query, aggregate)
        kwargs: Dict[str, Any] = {"index": index, "query": self._kind_filter(kind), "size": 0,
                                  "track_total_hits": True, "allow_no_indices": True}
        if aggs:
            kwargs["aggs"] = aggs
        with self._remote_call("aggregate", index):
            response = self.client.search(**kwargs)
        return parse_aggregation_response(response.get("aggregations", {}), response["hits"]["total"]["value"])

    def get_single_values_metrics(self, condition: Condition, metric_names: List[str], field_name: str,
                                  item_type: ItemType) -> Dict[str, Optional[float]]:
        """``{"_sum": .., "_avg": .., "_min": .., "_max": ..}`` restricted to ``metric_names``."""
        kind = self._kind(item_type)
        if kind is None:
            return {}
        index = self.router.index_for_read(kind)
        aggs = metrics_request(self.query_builder_dispatcher.build_filter(condition), metric_names, field_name)
        with self._remote_call("metrics", index):
            response = self.client.search(index=index, query=self._kind_filter(kind), size=0, aggs=aggs,
                                          allow_no_indices=True)
        return parse_metrics_response(response.get("aggregations", {}), metric_names)

    def aggregate_profile_ids(self, condition: Condition, minimum_count: int,
                              maximum_count: Optional[int]) -> List[str]:
        """Ids of profiles with between ``minimum_count`` and ``maximum_count`` events matching ``condition``."""
        index = self.router.index_for_read("event")
        aggs = {"profiles": {"terms": {"field": "profileId", "size": MAX_BUCKETS,
                                       "min_doc_count": max(1, minimum_count)}}}
        query = self._kind_filter("event", self.query_builder_dispatcher.build_filter(condition))
        with self._remote_call("aggregate_profile_ids", index):
            response = self.client.search(index=index, query=query, size=0, aggs=aggs, allow_no_indices=True)
        buckets = response.get("aggregations", {}).get("profiles", {}).get("buckets", [])
        return [str(b["key"]) for b in buckets if maximum_count is None or b["doc_count"] <= maximum_count]

    def test_match(self, condition: Condition, item: Item) -> bool:
        """
        Evaluate locally; when no evaluator supports the condition, ask the engine
        whether the stored item matches the compiled query.
        """
        try:
            return self.evaluator_dispatcher.eval(condition, item)
        except UnsupportedConditionException as e:
            logger.debug(f"Falling back to a query for {condition.condition_type_id}: {e}")
        try:
            kind = item.item_type
        except UnknownItemTypeException as e:
            logger.error(f"Cannot match item {item.item_id} against the store: {e}")
            return False
        index = self.router.index_for_read(kind, getattr(item, "time_stamp", None))
        query = self._kind_filter(kind, {"term": {"itemId": item.item_id}},
                                  self.query_builder_dispatcher.build_filter(condition))
        with self._remote_call("test_match", index):
            response = self.client.count(index=index, query=query, allow_no_indices=True)
        return response["count"] > 0

    # ------------------------------------------------------------------ percolation

    def save_query(self, query_name: str, query: Union[Condition, str, Dict[str, Any]]) -> bool:
        """Store a query for percolation under ``query_name``; visible immediately."""
        if isinstance(query, Condition):
            clause = self.query_builder_dispatcher.build_query(query)
        else:
            parsed = json.loads(query) if isinstance(query, str) else query
            clause = parsed.get("query", parsed)
        document = SavedQueryModel(itemType=PERCOLATOR_TYPE, query=clause).model_dump()
        index = self.settings.index_name
        with self._remote_call("save_query", index):
            self.client.index(index=index, id=query_name, document=document, refresh=True)
        logger.info(f"Saved percolator query {query_name}")
        return True

    def remove_query(self, query_name: str) -> bool:
        index = self.settings.index_name
        with self._remote_call("remove_query", index):
            try:
                self.client.delete(index=index, id=query_name, refresh=True)
            except NotFoundError:
                return False
        return True

    def get_matching_saved_queries(self, item: Item) -> List[str]:
        index = self.settings.index_name
        query = {"bool": {"filter": [
            {"term": {"itemType": PERCOLATOR_TYPE}},
            {"percolate": {"field": "query", "document": item.to_dict()}},
        ]}}
        hits, _ = self._scroll_all({"index": index, "query": query, "source": False})
        return [hit["_id"] for hit in hits]

    # ------------------------------------------------------------------ indices and mappings

    def create_index(self, index_name: str) -> bool:
        """Create an index with the base settings and the mappings of the shared kinds."""
        manager = self.index_manager
        with self._remote_call("create_index", index_name):
            return manager.create_index(index_name, manager.mapping_for_kinds(manager.shared_kinds()),
                                        manager.index_settings(self.settings.number_of_shards,
                                                               self.settings.number_of_replicas))

    def remove_index(self, index_name: str) -> bool:
        with self._remote_call("remove_index", index_name):
            return self.index_manager.remove_index(index_name)

    def create_mapping(self, item_type: ItemType, mapping: Dict[str, Any]) -> None:
        kind = self._kind(item_type)
        if kind is None:
            return
        with self._remote_call("create_mapping"):
            self.index_manager.create_mapping(kind, mapping)

    def get_properties_mapping(self, item_type: ItemType) -> Dict[str, Any]:
        kind = self._kind(item_type)
        if kind is None:
            return {}
        with self._remote_call("get_mapping", self.router.index_for_read(kind)):
            return self.index_manager.get_properties_mapping(kind)

    def purge(self, before: datetime) -> List[str]:
        """Delete the monthly indices of months starting strictly before ``before``."""
        with self._remote_call("purge", self.router.monthly_pattern()):
            return self.index_manager.purge_before(before)

    def purge_scope(self, scope: str) -> int:
        """Delete every document tagged with ``scope`` across all indices. Returns the number removed."""
        targets = ",".join([self.router.all_indices_pattern()] + sorted(set(self.router.index_names.values())))
        query = {"term": {"scope": fold_to_ascii(scope)}}
        removed = 0
        scroll_id = None
        start_time = time.time()
        with self._remote_call("purge_scope", targets):
            try:
                response = self.client.search(index=targets, query=query, size=PURGE_SCROLL_PAGE_SIZE,
                                              scroll=PURGE_SCROLL_KEEP_ALIVE, source=False,
                                              allow_no_indices=True, ignore_unavailable=True)
                scroll_id = response.get("_scroll_id")
                page = response["hits"]["hits"]
                while page:
                    actions = [{"_op_type": "delete", "_index": h["_index"], "_id": h["_id"],
                                **({"routing": h["_routing"]} if h.get("_routing") else {})} for h in page]
                    success, errors = helpers.bulk(self.client, actions, raise_on_error=False)
                    removed += success
                    if errors:
                        logger.warning(f"Purge of scope {scope}: {len(errors)} deletions failed")
                    response = self.client.scroll(scroll_id=scroll_id, scroll=PURGE_SCROLL_KEEP_ALIVE)
                    scroll_id = response.get("_scroll_id", scroll_id)
                    page = response["hits"]["hits"]
            finally:
                if scroll_id is not None:
                    self.client.clear_scroll(scroll_id=scroll_id)
        logger.info(f"Purged {removed} documents of scope {scope} in {time.time() - start_time:.3f}s")
        return removed

    def flush(self) -> None:
        """Send every queued write and wait for the engine to acknowledge it."""
        if self.bulk_processor is not None:
            self.bulk_processor.flush()

    def refresh(self) -> None:
        """Make every acknowledged or queued write visible to searches."""
        self.flush()
        with self._remote_call("refresh"):
            self.index_manager.refresh_all()

    def get_cluster_nodes(self) -> List[ClusterNode]:
        with self._remote_call("cluster_nodes"):
            return self.cluster_manager.get_cluster_nodes()
