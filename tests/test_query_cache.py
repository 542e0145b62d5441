import unittest

from pulse.cache.query_cache import QueryCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class QueryCacheTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = QueryCache(default_ttl=60.0, max_entries=3, clock=self.clock)

    def test_get_within_ttl(self):
        self.cache.set("a", {"x": 1})
        self.clock.now += 59
        self.assertEqual(self.cache.get("a"), {"x": 1})

    def test_expired_entry_is_evicted(self):
        self.cache.set("a", 1, ttl=10)
        self.clock.now += 11
        self.assertIsNone(self.cache.get("a"))
        self.assertEqual(self.cache.stats()["size"], 0)

    def test_clear_by_pattern_and_all(self):
        self.cache.set("dashboard:acme:2025-07:All:All", 1)
        self.cache.set("dashboard:globex:2025-07:All:All", 2)
        self.assertEqual(self.cache.clear("acme"), 1)
        self.assertIsNone(self.cache.get("dashboard:acme:2025-07:All:All"))
        self.assertEqual(self.cache.clear(), 1)
        self.assertEqual(self.cache.stats()["keys"], [])

    def test_max_entries_evicts_oldest(self):
        for i, key in enumerate("abcd"):
            self.clock.now += 1
            self.cache.set(key, i)
        self.assertIsNone(self.cache.get("a"))
        self.assertEqual(sorted(self.cache.stats()["keys"]), ["b", "c", "d"])

    def test_invalidate_client_only_touches_that_client(self):
        self.cache.set(QueryCache.dashboard_key("acme", ["2025-06", "2025-07"], "All", "Retail"), 1)
        self.cache.set(QueryCache.dashboard_key("acme-2", ["2025-07"], "All", "All"), 2)
        self.assertEqual(self.cache.invalidate_client("acme"), 1)
        self.assertEqual(self.cache.stats()["keys"], ["dashboard:acme-2:2025-07:All:All:months"])

    def test_dashboard_key_format(self):
        self.assertEqual(
            QueryCache.dashboard_key("acme", ["2025-06", "2025-07"], "Small", "Retail"),
            "dashboard:acme:2025-06,2025-07:Small:Retail:months",
        )
        self.assertEqual(
            QueryCache.dashboard_key("acme", ["2025-07"], "All", "All", bucketed=True),
            "dashboard:acme:2025-07:All:All:buckets",
        )


if __name__ == "__main__":
    unittest.main()
