import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from cxs_data_model.condition import Condition
from cxs_data_model.item import Profile
from cxs_exception_model.exception import UnsupportedConditionException
from cxs_persistence.conditions.evaluator_dispatcher import ConditionEvaluatorDispatcher
from cxs_persistence.conditions.query_builder_dispatcher import ConditionQueryBuilderDispatcher
from cxs_persistence.engine.manager.mapping_loader import load_mappings, MAPPINGS_PATH
from cxs_persistence.engine.manager.plugin_registry import PluginRegistry, Bundle, BundleEvent


class TestPluginRegistry(unittest.TestCase):

    def setUp(self):
        self.evaluators = ConditionEvaluatorDispatcher()
        self.builders = ConditionQueryBuilderDispatcher()
        self.mappings_loaded = MagicMock()
        self.registry = PluginRegistry(self.evaluators, self.builders, mappings_loaded=self.mappings_loaded)

        self.resource_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.resource_dir.cleanup)
        mappings_dir = Path(self.resource_dir.name) / MAPPINGS_PATH
        os.makedirs(mappings_dir)
        with open(mappings_dir / "geonameEntry.json", "w") as f:
            json.dump({"properties": {"location": {"type": "geo_point"}}}, f)

        evaluator = MagicMock()
        evaluator.eval.return_value = True
        builder = MagicMock()
        builder.build_query.return_value = {"match_all": {}}
        self.bundle = Bundle("geo-plugin", Path(self.resource_dir.name),
                             evaluators={"nearCondition": evaluator}, query_builders={"nearCondition": builder})

    def test_load_mappings_from_bundle_folder(self):
        mappings = load_mappings(Path(self.resource_dir.name))

        self.assertEqual(mappings, {"geonameEntry": {"properties": {"location": {"type": "geo_point"}}}})
        self.assertEqual(load_mappings(None), {})
        self.assertEqual(load_mappings(Path(self.resource_dir.name) / "nowhere"), {})

    def test_bundle_lifecycle(self):
        """STARTING pushes mappings, STARTED registers handlers, STOPPING removes every one of them."""
        condition = Condition.create("nearCondition")
        profile = Profile(item_id="p1")

        self.registry.bundle_changed(BundleEvent.STARTING, self.bundle)
        self.mappings_loaded.assert_called_once_with(
            {"geonameEntry": {"properties": {"location": {"type": "geo_point"}}}})
        self.assertFalse(self.evaluators.is_supported("nearCondition"))

        self.registry.bundle_changed(BundleEvent.STARTED, self.bundle)
        self.assertTrue(self.evaluators.eval(condition, profile))
        self.assertEqual(self.builders.build_query(condition), {"match_all": {}})
        self.assertIn("geo-plugin", self.registry.active_bundles())

        self.registry.bundle_changed(BundleEvent.STOPPING, self.bundle)
        with self.assertRaises(UnsupportedConditionException):
            self.evaluators.eval(condition, profile)
        with self.assertRaises(UnsupportedConditionException):
            self.builders.build_query(condition)
        self.assertEqual(self.registry.active_bundles(), {})

    def test_bundle_without_mappings(self):
        bundle = Bundle("empty")

        self.assertEqual(self.registry.load_predefined_mappings(bundle), {})
        self.mappings_loaded.assert_not_called()


if __name__ == '__main__':
    unittest.main()
