import unittest
from datetime import datetime, timezone, timedelta

from cxs_data_model.item import Event, Profile
from cxs_persistence.config import PersistenceSettings
from cxs_persistence.engine.index_router import IndexRouter


class TestIndexRouter(unittest.TestCase):

    def setUp(self):
        self.router = IndexRouter("context", index_names={"geonameEntry": "geonames"},
                                  items_monthly_indexed=["event", "session"],
                                  routing_by_type={"event": "profileId"})
        self.date = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)

    def test_dedicated_index_wins(self):
        self.assertEqual(self.router.index_for_write("geonameEntry", self.date), "geonames")
        self.assertEqual(self.router.index_for_read("geonameEntry"), "geonames")
        self.assertFalse(self.router.is_monthly("geonameEntry"))
        self.assertEqual(self.router.document_id("geonameEntry", "g1"), "g1")
        self.assertEqual(self.router.document_id("profile", "p1"), "profile_p1")

    def test_monthly_kinds(self):
        self.assertEqual(self.router.index_for_write("event", self.date), "context-2024-03")
        self.assertEqual(self.router.index_for_read("event", self.date), "context-2024-03")
        self.assertEqual(self.router.index_for_read("event"), "context-*")

    def test_monthly_name_uses_utc(self):
        late_evening = datetime(2024, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
        self.assertEqual(self.router.monthly_index_name(late_evening), "context-2024-04")

    def test_shared_kinds(self):
        self.assertEqual(self.router.index_for_write("profile", self.date), "context")
        self.assertEqual(self.router.index_for_read("profile"), "context")

    def test_routing_is_deterministic(self):
        """The same item always lands in the same index with the same id."""
        event = Event(item_id="e1", event_type="view", profile_id="p1", time_stamp=self.date)

        self.assertEqual(self.router.index_for_item(event), self.router.index_for_item(event))
        self.assertEqual(self.router.index_for_item(event), "context-2024-03")
        self.assertEqual(self.router.document_id("event", "e1"), "event_e1")
        self.assertEqual(self.router.routing("event", event), "p1")
        self.assertIsNone(self.router.routing("profile", Profile(item_id="p1")))

    def test_month_of_index(self):
        self.assertEqual(self.router.month_of_index("context-2024-03"), datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.assertIsNone(self.router.month_of_index("context-2024-13"))
        self.assertIsNone(self.router.month_of_index("other-2024-03"))
        self.assertIsNone(self.router.month_of_index("context"))

    def test_indices_for_kinds(self):
        self.assertEqual(self.router.indices_for_kinds(["profile", "event", "session"]), ["context", "context-*"])

    def test_from_settings(self):
        settings = PersistenceSettings(index_name="cxs", items_monthly_indexed=["event"])
        router = IndexRouter.from_settings(settings)

        self.assertEqual(router.index_for_write("event", self.date), "cxs-2024-03")
        self.assertEqual(router.index_for_write("session", self.date), "cxs")
        self.assertEqual(router.all_indices_pattern(), "cxs*")


if __name__ == '__main__':
    unittest.main()
