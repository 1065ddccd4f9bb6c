"""
Tests for alert generation.
"""
from datetime import date, datetime, timedelta

import pytest

from alerting import MODEL_FAILURE, STALE_DATA, TEST_FAILURE, AlertGenerator, WatchedTable
from observability.anomaly import HIGH_VOLUME_ALERT, INSUFFICIENT_BASELINE, LOW_VOLUME_ALERT, NORMAL, AnomalyRecord


NOW = datetime(2024, 1, 15, 12, 0, 0)


def anomaly(entity_key, status):
    return AnomalyRecord(
        entity_key=entity_key,
        evaluation_date=date(2024, 1, 15),
        observed_value=2500.0,
        baseline_mean=1000.0,
        baseline_stddev=100.0,
        history_days=20,
        status=status,
    )


@pytest.fixture
def generator(temp_db, store, clock):
    return AlertGenerator(temp_db, store, clock)


class TestFailureAlerts:

    def test_failed_model_in_window(self, generator, record_execution):
        executed_at = NOW - timedelta(minutes=20)
        record_execution("fct_orders", executed_at, status="failed")

        [alert] = generator.generate()

        assert alert.alert_type == MODEL_FAILURE
        assert alert.entity_key == "fct_orders"
        assert alert.raised_at == executed_at
        assert "fct_orders" in alert.message

    def test_successful_and_old_executions_ignored(self, generator, record_execution):
        record_execution("fct_orders", NOW - timedelta(minutes=10))
        record_execution("stg_orders", NOW - timedelta(minutes=61), status="failed")

        assert generator.generate() == []

    def test_failure_exactly_at_now_included(self, generator, record_execution):
        record_execution("fct_orders", NOW, status="failed")
        assert len(generator.generate()) == 1

    def test_each_failure_is_a_separate_alert(self, generator, record_execution):
        """The generator does not deduplicate."""
        record_execution("fct_orders", NOW - timedelta(minutes=30), status="failed")
        record_execution("fct_orders", NOW - timedelta(minutes=10), status="failed")

        alerts = generator.generate()
        assert [a.raised_at for a in alerts] == [NOW - timedelta(minutes=30), NOW - timedelta(minutes=10)]

    def test_failed_test_alert(self, generator, record_test):
        record_test("fct_orders", "unique_order_id", "fail", NOW - timedelta(minutes=5))
        record_test("fct_orders", "not_null_order_id", "pass", NOW - timedelta(minutes=5))

        [alert] = generator.generate()

        assert alert.alert_type == TEST_FAILURE
        assert alert.entity_key == "fct_orders:unique_order_id"
        assert alert.message == "Test unique_order_id failed for model fct_orders"

    def test_window_override(self, generator, record_execution):
        record_execution("fct_orders", NOW - timedelta(hours=3), status="failed")

        assert generator.generate() == []
        assert len(generator.generate(window_minutes=240)) == 1


class TestStaleDataAlerts:

    def test_watched_model_older_than_threshold(self, temp_db, store, clock, record_execution):
        record_execution("fct_orders", NOW - timedelta(hours=25))
        record_execution("stg_orders", NOW - timedelta(hours=23))
        generator = AlertGenerator(temp_db, store, clock, watched_models=["fct_orders", "stg_orders"])

        [alert] = generator.generate()

        assert alert.alert_type == STALE_DATA
        assert alert.entity_key == "fct_orders"
        assert alert.raised_at == NOW

    def test_never_updated_model_is_stale(self, temp_db, store, clock):
        generator = AlertGenerator(temp_db, store, clock, watched_models=["dim_customers"])

        [alert] = generator.generate()
        assert alert.alert_type == STALE_DATA
        assert "never" in alert.message

    def test_watched_table(self, temp_db, store, clock):
        conn = temp_db.connect()
        conn.execute("CREATE TABLE raw_orders (order_id INTEGER, loaded_at TIMESTAMP)")
        conn.execute("CREATE TABLE raw_customers (customer_id INTEGER, loaded_at TIMESTAMP)")
        conn.execute("INSERT INTO raw_orders VALUES (1, ?)", [NOW - timedelta(hours=30)])
        conn.execute("INSERT INTO raw_customers VALUES (1, ?)", [NOW - timedelta(hours=1)])

        generator = AlertGenerator(temp_db, store, clock, watched_tables=[
            WatchedTable("raw_orders", "loaded_at"),
            WatchedTable("raw_customers", "loaded_at", entity_key="customers"),
        ])

        assert [(a.alert_type, a.entity_key) for a in generator.generate()] == [(STALE_DATA, "raw_orders")]

    def test_empty_watched_table_is_stale(self, temp_db, store, clock):
        temp_db.connect().execute("CREATE TABLE raw_orders (order_id INTEGER, loaded_at TIMESTAMP)")
        generator = AlertGenerator(temp_db, store, clock, watched_tables=[WatchedTable("raw_orders", "loaded_at")])

        [alert] = generator.generate()
        assert alert.entity_key == "raw_orders"

    def test_watched_date_column(self, temp_db, store, clock):
        conn = temp_db.connect()
        conn.execute("CREATE TABLE sales (id INTEGER, updated_at DATE)")
        conn.execute("CREATE TABLE refunds (id INTEGER, updated_at DATE)")
        conn.execute("INSERT INTO sales VALUES (1, DATE '2024-01-14')")
        conn.execute("INSERT INTO refunds VALUES (1, DATE '2024-01-15')")

        generator = AlertGenerator(temp_db, store, clock, watched_tables=[
            WatchedTable("sales", "updated_at"),
            WatchedTable("refunds", "updated_at"),
        ])

        [alert] = generator.generate()
        assert alert.entity_key == "sales"
        assert "2024-01-14T00:00:00" in alert.message

    def test_watched_timestamptz_column_compared_in_utc(self, temp_db, store, clock):
        conn = temp_db.connect()
        conn.execute("CREATE TABLE events (id INTEGER, loaded_at TIMESTAMPTZ)")
        conn.execute("CREATE TABLE orders (id INTEGER, loaded_at TIMESTAMPTZ)")
        # 08:30 and 10:30 UTC; the cutoff is 09:00 UTC
        conn.execute("INSERT INTO events VALUES (1, TIMESTAMPTZ '2024-01-15 10:30:00+02')")
        conn.execute("INSERT INTO orders VALUES (1, TIMESTAMPTZ '2024-01-15 12:30:00+02')")

        generator = AlertGenerator(temp_db, store, clock, stale_after_hours=3, watched_tables=[
            WatchedTable("events", "loaded_at"),
            WatchedTable("orders", "loaded_at"),
        ])

        [alert] = generator.generate()
        assert alert.entity_key == "events"
        assert "2024-01-15T08:30:00" in alert.message

    def test_custom_staleness_threshold(self, temp_db, store, clock, record_execution):
        record_execution("fct_orders", NOW - timedelta(hours=3))
        generator = AlertGenerator(temp_db, store, clock, stale_after_hours=2, watched_models=["fct_orders"])

        [alert] = generator.generate()
        assert "2 hours" in alert.message

    def test_watched_table_identifiers_validated(self):
        with pytest.raises(ValueError):
            WatchedTable("raw_orders where 1=1", "loaded_at")


class TestVolumeAlerts:

    def test_only_alert_statuses_become_alerts(self, generator):
        alerts = generator.generate([
            anomaly("fct_orders", HIGH_VOLUME_ALERT),
            anomaly("stg_orders", LOW_VOLUME_ALERT),
            anomaly("dim_customers", NORMAL),
            anomaly("dim_products", INSUFFICIENT_BASELINE),
        ])

        assert sorted((a.alert_type, a.entity_key) for a in alerts) == [
            (HIGH_VOLUME_ALERT, "fct_orders"),
            (LOW_VOLUME_ALERT, "stg_orders"),
        ]
        assert all(a.raised_at == NOW for a in alerts)
