import math
import unittest
from datetime import datetime, timedelta, timezone

from loadwarden.collectors.sample_reader import Sample
from loadwarden.config import AggregationConfig
from loadwarden.errors import ValidationError
from loadwarden.metrics.aggregator import SampleAggregator

BASE = datetime(2025, 11, 14, tzinfo=timezone.utc)


def make_sample(trigger, plugins, *, kind="ajax", offset=0):
    costs = {plugin: (ms, 1) for plugin, ms in plugins.items()}
    return Sample(
        kind=kind,
        trigger=trigger,
        timestamp=BASE + timedelta(seconds=offset),
        total_ms=sum(plugins.values()),
        total_queries=len(plugins),
        plugins=costs,
    )


class SampleAggregatorTests(unittest.TestCase):
    def test_running_mean_and_deviation(self):
        aggregator = SampleAggregator()
        aggregator.record_many(make_sample("heartbeat", {"a/a.php": ms}, offset=i) for i, ms in enumerate((10, 20, 30)))
        trigger = aggregator.report().kinds["ajax"]["heartbeat"]
        stats = trigger.plugin("a/a.php")
        assert stats is not None
        self.assertEqual(stats.samples, 3)
        self.assertAlmostEqual(stats.avg_ms, 20.0)
        self.assertAlmostEqual(stats.stddev_ms, math.sqrt(200 / 3))
        self.assertAlmostEqual(stats.avg_queries, 1.0)
        self.assertEqual(trigger.first_sample, BASE)
        self.assertEqual(trigger.last_sample, BASE + timedelta(seconds=2))

    def test_plugins_sorted_by_cost(self):
        aggregator = SampleAggregator()
        aggregator.record(make_sample("heartbeat", {"cheap/cheap.php": 1, "slow/slow.php": 9}))
        trigger = aggregator.report().kinds["ajax"]["heartbeat"]
        self.assertEqual([stats.plugin for stats in trigger.plugins], ["slow/slow.php", "cheap/cheap.php"])
        self.assertAlmostEqual(trigger.avg_ms, 10.0)

    def test_request_totals_are_tracked_per_trigger(self):
        aggregator = SampleAggregator()
        for offset, (total_ms, total_queries) in enumerate(((40.0, 10), (60.0, 14))):
            aggregator.record(
                Sample(
                    kind="rest",
                    trigger="wc/v3",
                    timestamp=BASE + timedelta(seconds=offset),
                    total_ms=total_ms,
                    total_queries=total_queries,
                    plugins={"a/a.php": (5.0, 1)},
                )
            )
        trigger = aggregator.report().kinds["rest"]["wc/v3"]
        self.assertEqual(trigger.requests, 2)
        self.assertAlmostEqual(trigger.avg_request_ms, 50.0)
        self.assertAlmostEqual(trigger.avg_request_queries, 12.0)
        self.assertAlmostEqual(trigger.avg_ms, 5.0)
        payload = trigger.to_dict()
        self.assertEqual(payload["avg_request_ms"], 50.0)
        self.assertEqual(payload["requests"], 2)

    def test_sample_count_is_capped(self):
        aggregator = SampleAggregator(AggregationConfig(max_samples_per_trigger=3))
        aggregator.record_many(make_sample("heartbeat", {"a/a.php": 5}, offset=i) for i in range(10))
        stats = aggregator.report().kinds["ajax"]["heartbeat"].plugin("a/a.php")
        assert stats is not None
        self.assertEqual(stats.samples, 3)
        self.assertAlmostEqual(stats.avg_ms, 5.0)

    def test_least_recent_trigger_is_evicted(self):
        aggregator = SampleAggregator(AggregationConfig(max_triggers_per_kind=2))
        aggregator.record(make_sample("first", {"a/a.php": 1}, offset=1))
        aggregator.record(make_sample("second", {"a/a.php": 1}, offset=2))
        aggregator.record(make_sample("first", {"a/a.php": 1}, offset=3))
        aggregator.record(make_sample("third", {"a/a.php": 1}, offset=4))
        self.assertEqual(sorted(aggregator.report().kinds["ajax"]), ["first", "third"])

    def test_clear_one_kind_or_everything(self):
        aggregator = SampleAggregator()
        aggregator.record(make_sample("heartbeat", {"a/a.php": 1}))
        aggregator.record(make_sample("edit-post", {"a/a.php": 1}, kind="screen"))
        aggregator.clear("ajax")
        self.assertEqual(list(aggregator.report().kinds), ["screen"])
        aggregator.clear()
        self.assertEqual(aggregator.report().to_dict(), {})

    def test_rejects_non_positive_caps(self):
        with self.assertRaises(ValidationError):
            SampleAggregator(AggregationConfig(max_samples_per_trigger=0))


if __name__ == "__main__":
    unittest.main()
