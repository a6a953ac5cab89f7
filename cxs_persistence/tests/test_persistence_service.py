import json
import unittest
from dataclasses import dataclass
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from elasticsearch import ApiError, NotFoundError

from cxs_data_model.aggregate import TermsAggregate
from cxs_data_model.condition import Condition
from cxs_data_model.item import Item, Profile, Event
from cxs_exception_model.exception import PersistenceException, IndexNotFoundException
from cxs_persistence.config import PersistenceSettings, BulkProcessorSettings
from cxs_persistence.engine.manager.bulk_processor import BulkAction
from cxs_persistence.engine.manager.plugin_registry import Bundle, BundleEvent
from cxs_persistence.engine.persistence_service import ElasticSearchPersistenceService, _MonthlyIndexRecovery, \
    MONTHLY_SCOPE_CURRENT

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def api_error(error_class, status, error_type_name):
    meta = MagicMock()
    meta.status = status
    return error_class(error_type_name, meta, {"error": {"type": error_type_name}, "status": status})


def search_response(hits, total=None, scroll_id=None, aggregations=None):
    response = {"hits": {"hits": hits, "total": {"value": len(hits) if total is None else total}}}
    if scroll_id is not None:
        response["_scroll_id"] = scroll_id
    if aggregations is not None:
        response["aggregations"] = aggregations
    return response


def hit(item, index="context", version=1):
    return {"_index": index, "_id": f"{item.item_type}_{item.item_id}", "_version": version,
            "_source": item.to_dict()}


@dataclass
class UnregisteredItem(Item):
    pass


class PersistenceServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.client.indices.exists.return_value = False
        self.settings = PersistenceSettings(
            bulk_processor=BulkProcessorSettings(enabled=False),
            routing_by_type={"session": "profileId"})
        self.service = ElasticSearchPersistenceService(self.settings, client=self.client, clock=lambda: NOW)
        self.service.plugin_registry.register_handlers(self.service.core_bundle)
        self.profile = Profile(item_id="p1", scope="site", properties={"firstName": "Ana"})
        self.event = Event(item_id="e1", event_type="view", profile_id="p1", time_stamp=NOW)


class TestWrites(PersistenceServiceTestCase):

    def test_save_shared_kind(self):
        self.assertTrue(self.service.save(self.profile))

        self.client.index.assert_called_once_with(index="context", id="profile_p1",
                                                  document=self.profile.to_dict(), routing=None)

    def test_save_monthly_kind(self):
        self.service.save(self.event)

        kwargs = self.client.index.call_args.kwargs
        self.assertEqual(kwargs["index"], "context-2024-03")
        self.assertEqual(kwargs["id"], "event_e1")
        self.assertEqual(kwargs["document"]["itemType"], "event")

    def test_save_creates_missing_monthly_index_and_retries(self):
        self.client.index.side_effect = [api_error(NotFoundError, 404, "index_not_found_exception"), {}]

        self.assertTrue(self.service.save(self.event))

        self.assertEqual(self.client.index.call_count, 2)
        self.client.indices.create.assert_called_once_with(index="context-2024-03")

    def test_save_to_missing_shared_index_fails(self):
        self.client.index.side_effect = api_error(NotFoundError, 404, "index_not_found_exception")

        with self.assertRaises(IndexNotFoundException) as ctx:
            self.service.save(self.profile)
        self.assertEqual(ctx.exception.index_name, "context")

    def test_save_through_bulk_processor(self):
        self.service.bulk_processor = MagicMock()

        self.assertTrue(self.service.save(self.event))

        action = self.service.bulk_processor.add.call_args[0][0]
        self.assertEqual((action.op_type, action.index, action.doc_id), ("index", "context-2024-03", "event_e1"))
        self.assertIs(action.payload, self.event)
        self.client.index.assert_not_called()

    def test_bulk_index_not_found_is_replayed_directly(self):
        action = BulkAction("index", "context-2024-04", "event_e2", {"itemType": "event", "itemId": "e2"})

        _MonthlyIndexRecovery(self.service).on_action_failure(action, 404, {"type": "index_not_found_exception"})

        self.client.indices.create.assert_called_once_with(index="context-2024-04")
        self.client.index.assert_called_once_with(index="context-2024-04", id="event_e2",
                                                  document=action.body, routing=None)

    def test_failed_replay_is_logged(self):
        action = BulkAction("index", "context-2024-04", "event_e2", {"itemType": "event", "itemId": "e2"})
        self.client.index.side_effect = api_error(ApiError, 500, "internal_error")

        with self.assertLogs("cxs_persistence.engine.persistence_service", level="ERROR"):
            _MonthlyIndexRecovery(self.service).on_action_failure(action, 404, {"type": "index_not_found_exception"})

        self.assertEqual(self.client.index.call_count, 1)

    def test_other_bulk_failures_are_not_replayed(self):
        action = BulkAction("index", "context", "profile_p1", {"itemType": "profile", "itemId": "p1"})
        recovery = _MonthlyIndexRecovery(self.service)

        recovery.on_action_failure(action, 404, {"type": "index_not_found_exception"})
        recovery.on_action_failure(action, 400, {"type": "mapper_parsing_exception"})

        self.client.index.assert_not_called()

    def test_update(self):
        self.assertTrue(self.service.update("p1", None, Profile, {"properties": {"age": 31}}))

        self.client.update.assert_called_once_with(index="context", id="profile_p1", routing=None,
                                                   doc={"properties": {"age": 31}})

    def test_update_property_builds_nested_document(self):
        self.service.update_property("p1", None, "profile", "properties.address.city", "Lyon")

        self.assertEqual(self.client.update.call_args.kwargs["doc"],
                         {"properties": {"address": {"city": "Lyon"}}})

    def test_update_with_script(self):
        self.service.update_with_script("p1", None, Profile, "ctx._source.count += params.n", {"n": 1})

        self.assertEqual(self.client.update.call_args.kwargs["script"],
                         {"source": "ctx._source.count += params.n", "lang": "painless", "params": {"n": 1}})

    def test_update_monthly_item_without_date_locates_it(self):
        self.client.search.return_value = search_response([hit(self.event, index="context-2024-02")])

        self.assertTrue(self.service.update("e1", None, Event, {"persistent": False}))

        self.assertEqual(self.client.search.call_args.kwargs["index"], "context-*")
        self.assertEqual(self.client.update.call_args.kwargs["index"], "context-2024-02")

    def test_update_of_unknown_item(self):
        self.client.search.return_value = search_response([])

        self.assertFalse(self.service.update("e404", None, Event, {"persistent": False}))
        self.client.update.assert_not_called()

    def test_update_through_bulk_processor(self):
        self.service.bulk_processor = MagicMock()

        self.service.update("p1", None, Profile, {"scope": "other"})

        action = self.service.bulk_processor.add.call_args[0][0]
        self.assertEqual((action.op_type, action.body), ("update", {"doc": {"scope": "other"}}))

    def test_remove(self):
        self.assertTrue(self.service.remove("p1", Profile))
        self.client.delete.assert_called_once_with(index="context", id="profile_p1")

        self.client.delete.side_effect = api_error(NotFoundError, 404, "not_found")
        self.assertFalse(self.service.remove("p2", Profile))

    def test_remove_monthly_item(self):
        self.client.delete_by_query.return_value = {"deleted": 1}

        self.assertTrue(self.service.remove("e1", "event"))

        kwargs = self.client.delete_by_query.call_args.kwargs
        self.assertEqual(kwargs["index"], "context-*")
        self.assertIn({"term": {"itemId": "e1"}}, kwargs["query"]["bool"]["filter"])

    def test_remove_by_query_scopes(self):
        self.client.delete_by_query.return_value = {"deleted": 3}
        condition = Condition.create("eventPropertyCondition", propertyName="eventType",
                                     comparisonOperator="equals", propertyValue="view")

        self.service.remove_by_query(condition, Event)
        self.assertEqual(self.client.delete_by_query.call_args.kwargs["index"], "context-*")

        self.service.remove_by_query(condition, Event, scope=MONTHLY_SCOPE_CURRENT)
        kwargs = self.client.delete_by_query.call_args.kwargs
        self.assertEqual(kwargs["index"], "context-2024-03")
        self.assertEqual(kwargs["query"]["bool"]["filter"][0], {"term": {"itemType": "event"}})

        with self.assertRaises(ValueError):
            self.service.remove_by_query(condition, Event, scope="lastYear")

    def test_unknown_item_class(self):
        self.assertFalse(self.service.remove("x", UnregisteredItem))
        self.assertIsNone(self.service.load("x", UnregisteredItem))
        self.assertFalse(self.service.save(UnregisteredItem(item_id="x")))


class TestReads(PersistenceServiceTestCase):

    def test_load(self):
        self.client.get.return_value = dict(hit(self.profile, version=4), found=True)

        loaded = self.service.load("p1", Profile)

        self.assertEqual(loaded, self.profile)
        self.assertEqual(loaded.version, 4)
        self.client.get.assert_called_once_with(index="context", id="profile_p1")

    def test_dedicated_index_uses_plain_ids(self):
        settings = PersistenceSettings(bulk_processor=BulkProcessorSettings(enabled=False),
                                       index_names={"profile": "profiles"})
        service = ElasticSearchPersistenceService(settings, client=self.client, clock=lambda: NOW)

        service.save(self.profile)
        self.client.index.assert_called_once_with(index="profiles", id="p1", document=self.profile.to_dict(),
                                                  routing=None)

        self.client.get.return_value = {"found": True, "_index": "profiles", "_id": "profile_x", "_version": 1,
                                        "_source": {"itemType": "profile"}}
        loaded = service.load("profile_x", Profile)
        self.assertEqual(loaded.item_id, "profile_x")
        self.client.get.assert_called_once_with(index="profiles", id="profile_x")

    def test_load_missing(self):
        self.client.get.side_effect = api_error(NotFoundError, 404, "not_found")
        self.assertIsNone(self.service.load("p404", Profile))

    def test_load_monthly_with_and_without_date(self):
        self.client.search.return_value = search_response([hit(self.event, index="context-2024-03")])

        self.assertEqual(self.service.load("e1", Event), self.event)
        self.assertEqual(self.client.search.call_args.kwargs["index"], "context-*")

        self.client.get.return_value = dict(hit(self.event, index="context-2024-03"), found=True)
        self.assertEqual(self.service.load("e1", Event, NOW), self.event)
        self.assertEqual(self.client.get.call_args.kwargs["index"], "context-2024-03")

    def test_load_undeserializable_hit(self):
        self.client.get.return_value = {"found": True, "_id": "event_e1", "_index": "context-2024-03",
                                        "_source": {"itemType": "event", "itemId": "e1", "timeStamp": "yesterday"}}

        self.assertIsNone(self.service.load("e1", Event, NOW))

    def test_engine_error_is_wrapped(self):
        self.client.get.side_effect = api_error(ApiError, 500, "internal_error")

        with self.assertRaises(PersistenceException) as ctx:
            self.service.load("p1", Profile)
        self.assertEqual(ctx.exception.operation, "load")
        self.assertEqual(ctx.exception.index_name, "context")

    def test_query_page(self):
        self.client.search.return_value = search_response([hit(self.profile)], total=42)
        condition = Condition.create("profilePropertyCondition", propertyName="properties.firstName",
                                     comparisonOperator="equals", propertyValue="Ana")

        result = self.service.query(condition, "properties.lastName:desc", Profile, offset=20, size=10)

        self.assertEqual(list(result), [self.profile])
        self.assertEqual((result.offset, result.page_size, result.total_size), (20, 10, 42))
        kwargs = self.client.search.call_args.kwargs
        self.assertEqual((kwargs["from_"], kwargs["size"]), (20, 10))
        self.assertEqual(kwargs["sort"], [{"properties.lastName": {"order": "desc", "unmapped_type": "keyword"}}])
        self.assertEqual(kwargs["query"]["bool"]["filter"], [{"term": {"itemType": "profile"}}])
        self.assertEqual(kwargs["query"]["bool"]["must"],
                         [{"bool": {"filter": [{"term": {"properties.firstName": "ana"}}]}}])

    def test_query_default_size(self):
        self.client.search.return_value = search_response([])

        self.service.get_all_items(Profile, size=-(2 ** 31))

        self.assertEqual(self.client.search.call_args.kwargs["size"], 10)

    def test_unbounded_query_scrolls(self):
        second = Profile(item_id="p2")
        self.client.search.return_value = search_response([hit(self.profile)], total=2, scroll_id="s1")
        self.client.scroll.side_effect = [search_response([hit(second)], total=2, scroll_id="s1"),
                                          search_response([], total=2, scroll_id="s1")]

        result = self.service.get_all_items(Profile)

        self.assertEqual([p.item_id for p in result], ["p1", "p2"])
        self.assertEqual(result.total_size, 2)
        self.client.clear_scroll.assert_called_once_with(scroll_id="s1")

    def test_undeserializable_hits_are_skipped(self):
        broken = {"_index": "context-2024-03", "_id": "event_bad",
                  "_source": {"itemType": "event", "itemId": "bad", "timeStamp": "yesterday"}}
        self.client.search.return_value = search_response([broken, hit(self.event, "context-2024-03")])

        result = self.service.query_by_field("profileId", "p1", None, Event, size=10)

        self.assertEqual([e.item_id for e in result], ["e1"])
        self.assertEqual(result.total_size, 2)

    def test_query_by_field_with_values(self):
        self.client.search.return_value = search_response([])

        self.service.query_by_field("segments", ["s1", "s2"], None, Profile, size=5)

        self.assertEqual(self.client.search.call_args.kwargs["query"]["bool"]["must"],
                         [{"terms": {"segments": ["s1", "s2"]}}])

    def test_full_text_queries(self):
        self.client.search.return_value = search_response([])

        self.service.query_full_text("Élodie", None, Profile, size=5)
        must = self.client.search.call_args.kwargs["query"]["bool"]["must"][0]
        self.assertEqual(must["query_string"]["query"], "elodie")

        self.service.query_full_text_by_field("scope", "site", "ana", None, Profile, size=5)
        must = self.client.search.call_args.kwargs["query"]["bool"]["must"][0]
        self.assertEqual(must["bool"]["filter"], [{"term": {"scope": "site"}}])

        self.service.query_full_text_with_condition("ana", Condition.create("matchAllCondition"), None,
                                                    Profile, size=5)
        must = self.client.search.call_args.kwargs["query"]["bool"]["must"][0]
        self.assertEqual(must["bool"]["filter"], [{"bool": {"filter": [{"match_all": {}}]}}])

    def test_range_query(self):
        self.client.search.return_value = search_response([])

        self.service.range_query("properties.age", 18, None, None, Profile, size=5)

        self.assertEqual(self.client.search.call_args.kwargs["query"]["bool"]["must"],
                         [{"range": {"properties.age": {"gte": 18}}}])

    def test_counts(self):
        self.client.count.return_value = {"count": 7}

        self.assertEqual(self.service.get_all_items_count(Profile), 7)
        self.assertEqual(self.service.query_count(Condition.create("matchAllCondition"), "event"), 7)
        kwargs = self.client.count.call_args.kwargs
        self.assertEqual(kwargs["index"], "context-*")
        self.assertEqual(kwargs["query"]["bool"]["filter"][0], {"term": {"itemType": "event"}})

    def test_aggregate_query(self):
        self.client.search.return_value = search_response([], total=10, aggregations={"filtered": {
            "doc_count": 6,
            "buckets": {"buckets": [{"key": "view", "doc_count": 5}]},
            "missing": {"doc_count": 1}}})
        condition = Condition.create("matchAllCondition")

        result = self.service.aggregate_query(condition, TermsAggregate("eventType"), Event)

        self.assertEqual(result, {"_all": 10, "_filtered": 6, "view": 5, "_missing": 1})
        kwargs = self.client.search.call_args.kwargs
        self.assertEqual(kwargs["size"], 0)
        self.assertIn("filtered", kwargs["aggs"])

    def test_single_value_metrics(self):
        self.client.search.return_value = search_response([], aggregations={"metrics": {
            "sum": {"value": 12.5}, "avg": {"value": 2.5}}})

        result = self.service.get_single_values_metrics(Condition.create("matchAllCondition"), ["sum", "avg"],
                                                        "properties.amount", Event)

        self.assertEqual(result, {"_sum": 12.5, "_avg": 2.5})

    def test_aggregate_profile_ids(self):
        self.client.search.return_value = search_response([], aggregations={"profiles": {"buckets": [
            {"key": "p1", "doc_count": 2}, {"key": "p2", "doc_count": 9}]}})

        ids = self.service.aggregate_profile_ids(Condition.create("matchAllCondition"), 2, 5)

        self.assertEqual(ids, ["p1"])
        terms = self.client.search.call_args.kwargs["aggs"]["profiles"]["terms"]
        self.assertEqual((terms["field"], terms["min_doc_count"]), ("profileId", 2))

    def test_test_match_evaluates_locally(self):
        condition = Condition.create("profilePropertyCondition", propertyName="properties.firstName",
                                     comparisonOperator="equals", propertyValue="ana")

        self.assertTrue(self.service.test_match(condition, self.profile))
        self.client.count.assert_not_called()

    def test_test_match_falls_back_to_query(self):
        builder = MagicMock()
        builder.build_query.return_value = {"term": {"properties.vip": True}}
        self.service.query_builder_dispatcher.register("vipCondition", "plugin", builder)
        self.client.count.return_value = {"count": 1}

        self.assertTrue(self.service.test_match(Condition.create("vipCondition"), self.profile))

        filters = self.client.count.call_args.kwargs["query"]["bool"]["filter"]
        self.assertIn({"term": {"itemId": "p1"}}, filters)

    def test_test_match_unknown_kind(self):
        builder = MagicMock()
        builder.build_query.return_value = {"term": {"properties.vip": True}}
        self.service.query_builder_dispatcher.register("vipCondition", "plugin", builder)

        with self.assertLogs("cxs_persistence.engine.persistence_service", level="ERROR"):
            self.assertFalse(self.service.test_match(Condition.create("vipCondition"), UnregisteredItem(item_id="x")))
        self.client.count.assert_not_called()

class TestPercolation(PersistenceServiceTestCase):

    def test_save_condition_query(self):
        condition = Condition.create("matchAllCondition")

        self.assertTrue(self.service.save_query("everyone", condition))

        self.client.index.assert_called_once_with(index="context", id="everyone", refresh=True, document={
            "itemType": ".percolator", "query": {"match_all": {}}})

    def test_save_json_query(self):
        self.service.save_query("views", json.dumps({"query": {"term": {"eventType": "view"}}}))

        self.assertEqual(self.client.index.call_args.kwargs["document"]["query"], {"term": {"eventType": "view"}})

    def test_remove_query(self):
        self.assertTrue(self.service.remove_query("views"))
        self.client.delete.assert_called_once_with(index="context", id="views", refresh=True)

        self.client.delete.side_effect = api_error(NotFoundError, 404, "not_found")
        self.assertFalse(self.service.remove_query("views"))

    def test_matching_saved_queries(self):
        self.client.search.return_value = search_response([{"_id": "views"}, {"_id": "everyone"}], total=3,
                                                          scroll_id="s1")
        self.client.scroll.side_effect = [search_response([{"_id": "buyers"}], scroll_id="s1"),
                                          search_response([], scroll_id="s1")]

        names = self.service.get_matching_saved_queries(self.event)

        self.assertEqual(names, ["views", "everyone", "buyers"])
        self.assertEqual(self.client.search.call_args.kwargs["scroll"], "1m")
        self.assertFalse(self.client.search.call_args.kwargs["source"])
        self.client.clear_scroll.assert_called_once_with(scroll_id="s1")
        filters = self.client.search.call_args.kwargs["query"]["bool"]["filter"]
        self.assertEqual(filters[0], {"term": {"itemType": ".percolator"}})
        self.assertEqual(filters[1]["percolate"]["document"], self.event.to_dict())


class TestMaintenance(PersistenceServiceTestCase):

    @patch("cxs_persistence.engine.persistence_service.helpers.bulk")
    def test_purge_scope(self, bulk):
        bulk.return_value = (2, [])
        self.client.search.return_value = search_response([
            {"_index": "context", "_id": "profile_p1"},
            {"_index": "context-2024-03", "_id": "session_s1", "_routing": "p1"},
        ], scroll_id="s1")
        self.client.scroll.return_value = search_response([], scroll_id="s1")

        self.assertEqual(self.service.purge_scope("Site"), 2)

        self.assertEqual(self.client.search.call_args.kwargs["query"], {"term": {"scope": "site"}})
        self.assertEqual(self.client.search.call_args.kwargs["size"], 100)
        actions = bulk.call_args[0][1]
        self.assertEqual(actions[1], {"_op_type": "delete", "_index": "context-2024-03", "_id": "session_s1",
                                      "routing": "p1"})
        self.client.clear_scroll.assert_called_once_with(scroll_id="s1")

    def test_purge_by_date(self):
        self.client.indices.stats.return_value = {"indices": {"context-2024-01": {}, "context-2024-03": {}}}

        self.assertEqual(self.service.purge(datetime(2024, 2, 1, tzinfo=timezone.utc)), ["context-2024-01"])

    def test_refresh_flushes_bulk_first(self):
        calls = []
        self.service.bulk_processor = MagicMock()
        self.service.bulk_processor.flush.side_effect = lambda: calls.append("flush")
        self.client.indices.refresh.side_effect = lambda **kwargs: calls.append("refresh")

        self.service.refresh()

        self.assertEqual(calls, ["flush", "refresh"])

    def test_create_and_remove_index(self):
        self.assertTrue(self.service.create_index("archive"))
        kwargs = self.client.indices.create.call_args.kwargs
        self.assertEqual(kwargs["index"], "archive")
        self.assertIn("analysis", kwargs["settings"])

        self.assertTrue(self.service.remove_index("archive"))
        self.client.indices.delete.assert_called_once_with(index="archive")


class TestLifecycle(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.client.indices.exists.return_value = False
        self.settings = PersistenceSettings(bulk_processor=BulkProcessorSettings(flush_interval="-1"))
        self.service = ElasticSearchPersistenceService(self.settings, client=self.client, clock=lambda: NOW)

    def test_start_and_stop(self):
        self.service.start()
        try:
            created = [c.kwargs["index"] for c in self.client.indices.create.call_args_list]
            self.assertEqual(created, ["context", "context-2024-03"])
            self.client.indices.put_index_template.assert_called_once()
            for kind in ("profile", "session", "event", "segment", "propertyType"):
                self.assertIn(kind, self.service.index_manager.mappings)
            self.assertIsNotNone(self.service.bulk_processor)
            self.assertTrue(self.service.evaluator_dispatcher.is_supported("pastEventCondition"))
            self.assertTrue(self.service.query_builder_dispatcher.is_supported("booleanCondition"))
        finally:
            self.service.stop()

        self.client.close.assert_called_once()
        self.assertIsNone(self.service.bulk_processor)

    def test_restart_pushes_mappings_to_existing_indices(self):
        self.client.indices.exists.return_value = True

        self.service.start()
        self.addCleanup(self.service.stop)

        self.client.indices.create.assert_not_called()
        pushed = {c.kwargs["index"]: c.kwargs for c in self.client.indices.put_mapping.call_args_list}
        self.assertEqual(set(pushed), {"context", "context-*"})
        self.assertEqual(pushed["context"]["properties"]["query"], {"type": "percolator"})
        self.assertIn("profileId", pushed["context-*"]["properties"])
        self.assertTrue(pushed["context-*"]["allow_no_indices"])

    def test_bundle_started_after_service(self):
        self.service.start()
        self.addCleanup(self.service.stop)
        evaluator = MagicMock()
        bundle = Bundle("scoring-plugin", evaluators={"scoringCondition": evaluator})

        self.service.bundle_changed(BundleEvent.STARTED, bundle)
        self.assertTrue(self.service.evaluator_dispatcher.is_supported("scoringCondition"))

        self.service.bundle_changed(BundleEvent.STOPPING, bundle)
        self.assertFalse(self.service.evaluator_dispatcher.is_supported("scoringCondition"))
        self.assertTrue(self.service.evaluator_dispatcher.is_supported("booleanCondition"))

    def test_cluster_nodes(self):
        self.service.start()
        self.addCleanup(self.service.stop)
        self.client.nodes.info.return_value = {"nodes": {"n1": {"host": "es1", "roles": ["master"]}}}
        self.client.nodes.stats.return_value = {"nodes": {}}

        nodes = self.service.get_cluster_nodes()

        self.assertEqual([n.hostName for n in nodes], ["es1"])


if __name__ == '__main__':
    unittest.main()
