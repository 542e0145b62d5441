import os
import tempfile
import unittest

from sqlmodel import SQLModel, Session, select

from pulse.database import build_engine
from pulse.engine.rollup import GranularityConverter, aggregate_metric, coalesce_daily_to_monthly
from pulse.models.metric_models import MetricRecord, SourceType
from pulse.store.metric_store import SqlMetricStore
from fakes import InMemoryMetricStore, record


def _daily(metric, value, day, month="2025-07"):
    return record(metric, value, f"{month}-daily-{month.replace('-', '')}{day:02d}")


class AggregateMetricTests(unittest.TestCase):
    def test_equal_sessions_bounce_rate_is_plain_mean(self):
        rows = [
            _daily("Bounce Rate", {"value": v, "sessions": 100}, d)
            for d, v in enumerate((40.0, 50.0, 60.0, 70.0), start=1)
        ]
        self.assertAlmostEqual(aggregate_metric("Bounce Rate", rows).value, 55.0)

    def test_session_weighting(self):
        rows = [
            _daily("Bounce Rate", {"value": 40.0, "sessions": 300}, 1),
            _daily("Bounce Rate", {"value": 80.0, "sessions": 100}, 2),
        ]
        self.assertAlmostEqual(aggregate_metric("Bounce Rate", rows).value, 50.0)

    def test_missing_sessions_weigh_one(self):
        rows = [_daily("Session Duration", 40.0, 1), _daily("Session Duration", 60.0, 2)]
        self.assertAlmostEqual(aggregate_metric("Session Duration", rows).value, 50.0)

    def test_alternating_days_over_a_month(self):
        rows = [
            _daily("Bounce Rate", {"value": 40.0 if d % 2 else 60.0, "sessions": 50}, d)
            for d in range(1, 31)
        ]
        self.assertAlmostEqual(aggregate_metric("Bounce Rate", rows).value, 50.0)

    def test_sessions_per_user_is_ratio_of_sums(self):
        rows = [
            _daily("Sessions per User", {"sessions": 10, "users": 5}, 1),
            _daily("Sessions per User", {"sessions": 20, "users": 5}, 2),
        ]
        self.assertAlmostEqual(aggregate_metric("Sessions per User", rows).value, 3.0)

    def test_sessions_per_user_without_counts_is_mean(self):
        rows = [_daily("Sessions per User", 1.5, 1), _daily("Sessions per User", 2.5, 2)]
        self.assertAlmostEqual(aggregate_metric("Sessions per User", rows).value, 2.0)

    def test_zero_session_days_carry_no_weight(self):
        rows = [
            _daily("Bounce Rate", {"value": 0.0, "sessions": 0}, 1),
            _daily("Bounce Rate", {"value": 60.0, "sessions": 100}, 2),
        ]
        self.assertAlmostEqual(aggregate_metric("Bounce Rate", rows).value, 60.0)

    def test_all_zero_sessions_give_zero(self):
        rows = [
            _daily("Bounce Rate", {"value": 40.0, "sessions": 0}, 1),
            _daily("Bounce Rate", {"value": 60.0, "sessions": 0}, 2),
        ]
        self.assertEqual(aggregate_metric("Bounce Rate", rows).value, 0.0)

    def test_sessions_per_user_without_users_is_zero(self):
        rows = [
            _daily("Sessions per User", {"sessions": 10}, 1),
            _daily("Sessions per User", {"sessions": 20}, 2),
        ]
        self.assertEqual(aggregate_metric("Sessions per User", rows).value, 0.0)

    def test_sessions_per_user_sums_only_present_counts(self):
        rows = [
            _daily("Sessions per User", {"value": 4.0, "users": 5}, 1),
            _daily("Sessions per User", {"sessions": 20, "users": 5}, 2),
        ]
        self.assertAlmostEqual(aggregate_metric("Sessions per User", rows).value, 2.0)

    def test_unknown_metric_uses_mean(self):
        rows = [_daily("Conversions", 1, 1), _daily("Conversions", 3, 2)]
        self.assertAlmostEqual(aggregate_metric("Conversions", rows).value, 2.0)

    def test_undecodable_rows_are_skipped_not_zero(self):
        rows = [_daily("Bounce Rate", "n/a", 1), _daily("Bounce Rate", 60.0, 2)]
        result = aggregate_metric("Bounce Rate", rows)
        self.assertAlmostEqual(result.value, 60.0)
        self.assertEqual((result.used, result.skipped), (1, 1))

    def test_nothing_decodable(self):
        result = aggregate_metric("Bounce Rate", [_daily("Bounce Rate", None, 1)])
        self.assertIsNone(result.value)


class CoalesceTests(unittest.TestCase):
    def test_groups_by_metric_and_source(self):
        rows = [
            _daily("Bounce Rate", 40.0, 1),
            _daily("Bounce Rate", 60.0, 2),
            _daily("Pages per Session", 2.0, 1),
        ]
        monthly = coalesce_daily_to_monthly(rows, "2025-07")
        by_name = {m.metric_name: m for m in monthly}
        self.assertEqual(set(by_name), {"Bounce Rate", "Pages per Session"})
        self.assertEqual(by_name["Bounce Rate"].value, {"value": 50.0})
        self.assertEqual(by_name["Bounce Rate"].time_period, "2025-07")
        self.assertEqual(len(rows), 3)


class ConverterTests(unittest.IsolatedAsyncioTestCase):
    async def test_convert_replaces_daily_with_monthly(self):
        store = InMemoryMetricStore(
            [_daily("Bounce Rate", {"value": 40.0, "sessions": 10}, d) for d in (1, 2)]
            + [_daily("Bounce Rate", {"value": 60.0, "sessions": 10}, d) for d in (3, 4)]
        )
        conversion = await GranularityConverter(store).convert_period("acme", "2025-07", ["Bounce Rate"])
        self.assertTrue(conversion.success)
        self.assertEqual(len(store.rows), 1)
        self.assertEqual(store.rows[0].time_period, "2025-07")
        self.assertEqual(store.rows[0].value, {"value": 50.0})

    async def test_convert_replaces_existing_monthly_row(self):
        store = InMemoryMetricStore(
            [record("Bounce Rate", {"value": 70.0}, "2025-07")]
            + [_daily("Bounce Rate", {"value": v, "sessions": 10}, d) for d, v in ((1, 40.0), (2, 40.0))]
        )
        conversion = await GranularityConverter(store).convert_period("acme", "2025-07", ["Bounce Rate"])
        self.assertTrue(conversion.success)
        self.assertEqual(
            [(r.time_period, r.value) for r in store.rows], [("2025-07", {"value": 40.0})]
        )

    async def test_failed_write_keeps_daily_rows_and_reports(self):
        rows = [_daily("Bounce Rate", 50.0, d) for d in (1, 2)]
        store = InMemoryMetricStore(rows)
        store.fail_replace = True
        conversion = await GranularityConverter(store).convert_period("acme", "2025-07", ["Bounce Rate"])
        self.assertFalse(conversion.success)
        self.assertIn("write failed", conversion.errors[0])
        self.assertEqual(len(store.rows), 2)

    async def test_undecodable_daily_data_is_a_conversion_failure(self):
        store = InMemoryMetricStore([_daily("Bounce Rate", "garbage", 1)])
        conversion = await GranularityConverter(store).convert_period("acme", "2025-07", ["Bounce Rate"])
        self.assertFalse(conversion.success)
        self.assertEqual(len(store.rows), 1)

    async def test_metric_without_daily_rows_is_a_no_op(self):
        store = InMemoryMetricStore()
        conversion = await GranularityConverter(store).convert_period("acme", "2025-07", ["Bounce Rate"])
        self.assertTrue(conversion.success)
        self.assertEqual(store.rows, [])


class _FailingDeleteStore(SqlMetricStore):
    def _delete_statement(self, client_id, time_period, metric_name):
        raise RuntimeError("delete failed")


class SqlRollupTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine = build_engine(f"sqlite:///{self.path}")
        SQLModel.metadata.create_all(self.engine)
        self.store = SqlMetricStore(self.engine)
        with Session(self.engine) as session:
            for day, value in ((1, 40.0), (2, 60.0)):
                session.add(_daily("Bounce Rate", {"value": value, "sessions": 10}, day))
            session.add(_daily("Session Duration", 120.0, 1))
            session.commit()

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.path)

    def _periods(self, metric_name):
        with Session(self.engine) as session:
            rows = session.exec(select(MetricRecord).where(MetricRecord.metric_name == metric_name)).all()
            return sorted(r.time_period for r in rows)

    async def test_daily_prefix_read(self):
        rows = await self.store.get_metrics_for_period("acme", "2025-07-daily", "Bounce Rate")
        self.assertEqual(len(rows), 2)
        self.assertEqual(await self.store.get_metrics_for_period("acme", "2025-07", "Bounce Rate"), [])

    async def test_replace_with_rollup_commits_both_steps(self):
        conversion = await GranularityConverter(self.store).convert_period(
            "acme", "2025-07", ["Bounce Rate"]
        )
        self.assertTrue(conversion.success)
        self.assertEqual(self._periods("Bounce Rate"), ["2025-07"])
        self.assertEqual(len(self._periods("Session Duration")), 1)

    async def test_rollup_replaces_existing_monthly_row(self):
        await self.store.create_metric(record("Bounce Rate", {"value": 70.0}, "2025-07"))
        await self.store.create_metric(
            record("Bounce Rate", 30.0, "2025-07", source_type=SourceType.COMPETITOR, competitor_id="rival")
        )
        conversion = await GranularityConverter(self.store).convert_period(
            "acme", "2025-07", ["Bounce Rate"]
        )
        self.assertTrue(conversion.success)
        monthly = await self.store.get_metrics_for_period("acme", "2025-07", "Bounce Rate")
        self.assertEqual([r.value for r in monthly], [{"value": 50.0}])
        competitors = await self.store.get_metrics_by_competitors("acme", "2025-07")
        self.assertEqual(len(competitors), 1)

    async def test_failed_delete_rolls_back_monthly_insert(self):
        store = _FailingDeleteStore(self.engine)
        monthly = record("Bounce Rate", {"value": 50.0}, "2025-07")
        with self.assertRaises(RuntimeError):
            await store.replace_with_rollup("acme", "2025-07", "Bounce Rate", monthly)
        self.assertEqual(
            self._periods("Bounce Rate"), ["2025-07-daily-20250701", "2025-07-daily-20250702"]
        )

    async def test_client_read_includes_portfolio_rows(self):
        await self.store.create_metric(
            MetricRecord(
                client_id=None,
                metric_name="Bounce Rate",
                value=45.0,
                source_type=SourceType.CD_PORTFOLIO,
                time_period="2025-06",
            )
        )
        await self.store.create_metric(record("Bounce Rate", 50.0, "2025-06"))
        await self.store.create_metric(
            record("Bounce Rate", 70.0, "2025-06", source_type=SourceType.COMPETITOR, competitor_id="rival")
        )
        client_rows = await self.store.get_metrics_by_client("acme", "2025-06")
        competitor_rows = await self.store.get_metrics_by_competitors("acme", "2025-06")
        self.assertCountEqual(
            [r.source_type for r in client_rows], [SourceType.CLIENT, SourceType.CD_PORTFOLIO]
        )
        self.assertEqual([r.competitor_id for r in competitor_rows], ["rival"])

    async def test_industry_read_averages_segments(self):
        for size, value in (("Small", 40.0), ("Large", 60.0)):
            await self.store.create_metric(
                MetricRecord(
                    metric_name="Bounce Rate",
                    value=value,
                    source_type=SourceType.INDUSTRY_AVG,
                    time_period="2025-06",
                    business_size=size,
                    industry_vertical="Retail",
                )
            )
        rows = await self.store.get_filtered_industry_metrics("2025-06", {"business_size": "All"})
        self.assertEqual([(r.metric_name, r.value) for r in rows], [("Bounce Rate", 50.0)])
        small = await self.store.get_filtered_industry_metrics("2025-06", {"business_size": "Small"})
        self.assertEqual([r.value for r in small], [40.0])


if __name__ == "__main__":
    unittest.main()
