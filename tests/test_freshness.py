import unittest

from pulse.engine.freshness import FreshnessAction, resolve_freshness
from pulse.models.engine_models import DataStatus, PeriodDescriptor
from pulse.models.metric_models import Granularity


def _period(granularity, key="2025-07"):
    year, month = (int(p) for p in key.split("-"))
    return PeriodDescriptor(year=year, month=month, period_key=key, granularity=granularity)


def _status(granularity, count, key="2025-07", metric="Bounce Rate"):
    return DataStatus(period=key, metric_name=metric, granularity=granularity, record_count=count)


class ResolveFreshnessTests(unittest.TestCase):
    def test_no_data_fetches_at_any_target(self):
        for target in (Granularity.DAILY, Granularity.MONTHLY):
            with self.subTest(target=target):
                decision = resolve_freshness(_period(target), [_status(Granularity.NONE, 0)])
                self.assertEqual(decision.action, FreshnessAction.FETCH)
                decision = resolve_freshness(_period(target), [])
                self.assertEqual(decision.action, FreshnessAction.FETCH)

    def test_no_data_monthly_target_never_converts(self):
        decision = resolve_freshness(_period(Granularity.MONTHLY), [_status(Granularity.NONE, 0)] * 4)
        self.assertNotEqual(decision.action, FreshnessAction.CONVERT)

    def test_matching_granularity_skips(self):
        daily = resolve_freshness(_period(Granularity.DAILY), [_status(Granularity.DAILY, 31)])
        monthly = resolve_freshness(_period(Granularity.MONTHLY), [_status(Granularity.MONTHLY, 1)])
        self.assertEqual(daily.action, FreshnessAction.SKIP)
        self.assertEqual(monthly.action, FreshnessAction.SKIP)

    def test_daily_on_monthly_target_converts(self):
        decision = resolve_freshness(_period(Granularity.MONTHLY), [_status(Granularity.DAILY, 30)])
        self.assertEqual(decision.action, FreshnessAction.CONVERT)
        self.assertEqual(decision.existing, Granularity.DAILY)

    def test_monthly_on_daily_target_upgrades(self):
        decision = resolve_freshness(_period(Granularity.DAILY), [_status(Granularity.MONTHLY, 1)])
        self.assertEqual(decision.action, FreshnessAction.UPGRADE)

    def test_any_daily_metric_wins(self):
        statuses = [
            _status(Granularity.MONTHLY, 1, metric="Bounce Rate"),
            _status(Granularity.DAILY, 28, metric="Session Duration"),
        ]
        decision = resolve_freshness(_period(Granularity.DAILY), statuses)
        self.assertEqual(decision.action, FreshnessAction.SKIP)

    def test_corrupt_status_fails_open(self):
        corrupt = [
            [_status(Granularity.DAILY, 10, key="2025-06")],
            [_status(Granularity.DAILY, -1)],
            [_status(Granularity.MONTHLY, 0)],
            [_status(Granularity.NONE, 5)],
        ]
        for statuses in corrupt:
            with self.subTest(statuses=statuses):
                decision = resolve_freshness(_period(Granularity.MONTHLY), statuses)
                self.assertEqual(decision.action, FreshnessAction.FETCH)

    def test_unreadable_status_fails_open(self):
        decision = resolve_freshness(_period(Granularity.MONTHLY), [object()])
        self.assertEqual(decision.action, FreshnessAction.FETCH)


if __name__ == "__main__":
    unittest.main()
