"""
Tests for execution metrics aggregation.

Covers:
- Daily counts and execution time statistics
- Invalid-row routing for out-of-order timestamps and negative durations
- Idempotent recomputation
- Day-over-day execution time change
- Weekly rollups
- All-or-nothing partition writes
- Performance category counts
"""
from datetime import date, datetime, timedelta

import pytest

from observability.metrics import (
    MODEL,
    PIPELINE,
    DailyMetric,
    performance_category,
    rollup_weekly,
    success_rate,
    week_start,
)


DAY = date(2024, 1, 10)
MORNING = datetime(2024, 1, 10, 6, 0, 0)


def daily_for(result, entity_type, entity_key):
    return [m for m in result.daily if m.entity_type == entity_type and m.entity_key == entity_key]


def stored_daily(db):
    """Derived rows without the generation column."""
    return db.connect().execute("""
        SELECT entity_type, entity_key, metric_date, total_runs, successful_runs, failed_runs,
               invalid_runs, timed_runs, avg_execution_time, max_execution_time,
               min_execution_time, execution_time_change
        FROM daily_metrics
        ORDER BY entity_type, entity_key, metric_date
    """).fetchall()


class TestPureFunctions:

    def test_success_rate(self):
        assert success_rate(19, 20) == 95.0
        assert success_rate(2, 3) == 66.67
        assert success_rate(0, 5) == 0.0

    def test_success_rate_undefined_without_runs(self):
        assert success_rate(0, 0) is None

    def test_performance_category(self):
        assert performance_category(3601) == "slow"
        assert performance_category(3600) == "medium"
        assert performance_category(1801) == "medium"
        assert performance_category(1800) == "fast"
        assert performance_category(None) is None

    def test_week_starts_monday(self):
        assert week_start(date(2024, 1, 8)) == date(2024, 1, 8)
        assert week_start(date(2024, 1, 14)) == date(2024, 1, 8)
        assert week_start(date(2024, 1, 15)) == date(2024, 1, 15)

    def test_weekly_average_weighted_by_timed_runs(self):
        monday = DailyMetric(PIPELINE, "daily_etl", date(2024, 1, 8), 1, 1, 0, 0, 1, 600.0, 600.0, 600.0)
        tuesday = DailyMetric(PIPELINE, "daily_etl", date(2024, 1, 9), 3, 3, 0, 0, 3, 1200.0, 1500.0, 900.0)

        weekly = rollup_weekly([monday, tuesday])

        assert len(weekly) == 1
        week = weekly[0]
        assert week.week_start == date(2024, 1, 8)
        assert week.total_runs == 4
        assert week.timed_runs == 4
        assert week.avg_execution_time == pytest.approx(1050.0)
        assert week.max_execution_time == 1500.0
        assert week.min_execution_time == 600.0

    def test_weekly_rollup_without_timed_runs(self):
        running = DailyMetric(PIPELINE, "daily_etl", date(2024, 1, 8), 2, 0, 0, 0, 0)
        week = rollup_weekly([running])[0]
        assert week.total_runs == 2
        assert week.avg_execution_time is None


class TestDailyMetrics:

    def test_counts_and_times(self, aggregator, record_run):
        record_run("daily_etl", MORNING, minutes=10)
        record_run("daily_etl", MORNING + timedelta(hours=1), minutes=20)
        record_run("daily_etl", MORNING + timedelta(hours=2), minutes=30, status="failed")

        result = aggregator.recompute(DAY, DAY)
        [metric] = daily_for(result, PIPELINE, "daily_etl")

        assert metric.metric_date == DAY
        assert metric.total_runs == 3
        assert metric.successful_runs == 2
        assert metric.failed_runs == 1
        assert metric.invalid_runs == 0
        assert metric.avg_execution_time == pytest.approx(1200.0)
        assert metric.max_execution_time == 1800.0
        assert metric.min_execution_time == 600.0
        assert metric.success_rate == 66.67

    def test_model_executions_aggregated(self, aggregator, record_execution):
        record_execution("fct_orders", MORNING, seconds=30.0)
        record_execution("fct_orders", MORNING + timedelta(hours=1), status="failed", seconds=90.0)

        result = aggregator.recompute(DAY, DAY)
        [metric] = daily_for(result, MODEL, "fct_orders")

        assert metric.total_runs == 2
        assert metric.failed_runs == 1
        assert metric.avg_execution_time == pytest.approx(60.0)

    def test_running_runs_count_without_time(self, aggregator, store, clock):
        clock.set(MORNING)
        store.record_pipeline_start("daily_etl")
        clock.set(datetime(2024, 1, 15, 12, 0, 0))

        [metric] = daily_for(aggregator.recompute(DAY, DAY), PIPELINE, "daily_etl")

        assert metric.total_runs == 1
        assert metric.successful_runs == 0
        assert metric.failed_runs == 0
        assert metric.timed_runs == 0
        assert metric.avg_execution_time is None

    def test_completed_before_started_goes_to_invalid_sink(self, temp_db, aggregator, record_run):
        record_run("daily_etl", MORNING, minutes=10)
        bad_run = record_run("daily_etl", MORNING + timedelta(hours=1), minutes=-5)

        result = aggregator.recompute(DAY, DAY)
        [metric] = daily_for(result, PIPELINE, "daily_etl")

        assert metric.total_runs == 1
        assert metric.invalid_runs == 1
        assert metric.avg_execution_time == pytest.approx(600.0)

        invalid = temp_db.connect().execute(
            "SELECT source_table, source_id, entity_key, reason FROM invalid_rows"
        ).fetchall()
        assert invalid == [("pipeline_runs", bad_run, "daily_etl", "completed_at before started_at")]

    def test_negative_execution_time_excluded_from_average(self, temp_db, aggregator, record_execution):
        record_execution("fct_orders", MORNING, seconds=100.0)
        record_execution("fct_orders", MORNING + timedelta(hours=1), seconds=200.0)
        bad = record_execution("fct_orders", MORNING + timedelta(hours=2), seconds=-50.0)

        [metric] = daily_for(aggregator.recompute(DAY, DAY), MODEL, "fct_orders")

        assert metric.avg_execution_time == pytest.approx(150.0)
        assert metric.invalid_runs == 1
        assert temp_db.connect().execute(
            "SELECT source_id FROM invalid_rows WHERE source_table = 'model_execution_logs'"
        ).fetchall() == [(bad,)]

    def test_invalid_rows_routed_once(self, temp_db, aggregator, record_run):
        record_run("daily_etl", MORNING, minutes=-5)
        aggregator.recompute(DAY, DAY)
        aggregator.recompute(DAY, DAY)

        assert temp_db.connect().execute("SELECT count(*) FROM invalid_rows").fetchone()[0] == 1

    def test_recompute_is_idempotent(self, temp_db, aggregator, record_run, record_execution):
        for day in range(5):
            start = MORNING + timedelta(days=day - 4)
            record_run("daily_etl", start, minutes=10 + day)
            record_execution("fct_orders", start + timedelta(minutes=5), rows=1000 + day, seconds=30.0 + day)

        first = aggregator.recompute(date(2024, 1, 6), DAY)
        rows_first = stored_daily(temp_db)
        second = aggregator.recompute(date(2024, 1, 6), DAY)
        rows_second = stored_daily(temp_db)

        assert second.generation > first.generation
        assert first.daily == second.daily
        assert rows_first == rows_second
        assert len(rows_first) == 10

    def test_execution_time_change(self, aggregator, record_run):
        record_run("daily_etl", MORNING - timedelta(days=1), minutes=10)
        record_run("daily_etl", MORNING, minutes=15)

        result = aggregator.recompute(date(2024, 1, 9), DAY)
        series = daily_for(result, PIPELINE, "daily_etl")

        assert [m.execution_time_change for m in series] == [None, pytest.approx(300.0)]

    def test_execution_time_change_looks_back_before_range(self, aggregator, record_run):
        record_run("daily_etl", MORNING - timedelta(days=3), minutes=10)
        record_run("daily_etl", MORNING, minutes=15)

        [metric] = daily_for(aggregator.recompute(DAY, DAY), PIPELINE, "daily_etl")
        assert metric.execution_time_change == pytest.approx(300.0)

    def test_weekly_metrics_written(self, temp_db, aggregator, record_run):
        record_run("daily_etl", datetime(2024, 1, 8, 6, 0), minutes=10)
        record_run("daily_etl", datetime(2024, 1, 9, 6, 0), minutes=20)

        result = aggregator.recompute(date(2024, 1, 8), date(2024, 1, 9))

        [week] = [w for w in result.weekly if w.entity_type == PIPELINE]
        assert week.week_start == date(2024, 1, 8)
        assert week.total_runs == 2
        assert week.avg_execution_time == pytest.approx(900.0)
        assert temp_db.connect().execute("SELECT count(*) FROM weekly_metrics").fetchone()[0] == 1

    def test_stale_pass_skips_partitions(self, temp_db, aggregator, writer, record_run):
        record_run("daily_etl", MORNING, minutes=10)
        older = writer.allocate_generation()
        newer = writer.allocate_generation()

        aggregator.recompute(DAY, DAY, generation=newer)
        result = aggregator.recompute(DAY, DAY, generation=older)

        assert result.partitions_written == 0
        assert "daily_metrics:pipeline:daily_etl" in result.stale_partitions
        generations = temp_db.connect().execute("SELECT DISTINCT generation FROM daily_metrics").fetchall()
        assert generations == [(newer,)]

    def test_failed_write_keeps_every_entity_unchanged(self, temp_db, aggregator, writer, record_run, monkeypatch):
        record_run("a_pipe", MORNING, minutes=10)
        record_run("b_pipe", MORNING, minutes=10)
        aggregator.recompute(DAY, DAY)
        before = stored_daily(temp_db)

        record_run("a_pipe", MORNING + timedelta(hours=2), minutes=10)
        record_run("b_pipe", MORNING + timedelta(hours=2), minutes=10)
        replace = writer.replace_partition

        def fail_on_b(cursor, snapshot, generation):
            if snapshot.partition_key == "pipeline:b_pipe":
                raise IOError("disk full")
            return replace(cursor, snapshot, generation)

        monkeypatch.setattr(writer, "replace_partition", fail_on_b)

        with pytest.raises(IOError):
            aggregator.recompute(DAY, DAY)

        assert stored_daily(temp_db) == before
        counts = temp_db.connect().execute(
            "SELECT entity_key, total_runs FROM weekly_metrics WHERE entity_type = 'pipeline' ORDER BY 1"
        ).fetchall()
        assert counts == [("a_pipe", 1), ("b_pipe", 1)]

    def test_performance_counts_cover_range(self, aggregator, record_run):
        record_run("daily_etl", MORNING, minutes=10)
        record_run("daily_etl", MORNING + timedelta(hours=1), minutes=45)
        record_run("daily_etl", MORNING + timedelta(hours=2), minutes=90)
        record_run("daily_etl", MORNING + timedelta(hours=3), minutes=-5)
        record_run("daily_etl", MORNING - timedelta(days=1), minutes=10)

        result = aggregator.compute(DAY, DAY)

        assert result.performance_counts == {"fast": 1, "medium": 1, "slow": 1}

    def test_end_before_start_rejected(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.compute(DAY, DAY - timedelta(days=1))


def test_window_summary(aggregator, record_run):
    record_run("daily_etl", MORNING, minutes=10)
    record_run("daily_etl", MORNING + timedelta(hours=1), minutes=10, status="failed")
    record_run("daily_etl", MORNING + timedelta(hours=2), minutes=-1)

    summary = aggregator.window_summary(PIPELINE, "daily_etl", MORNING, MORNING + timedelta(days=1))

    assert summary.total_runs == 2
    assert summary.successful_runs == 1
    assert summary.failed_runs == 1
    assert summary.invalid_runs == 1
    assert summary.success_rate == 50.0
