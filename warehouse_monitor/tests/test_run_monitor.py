"""
Tests for configuration loading and the monitoring pass orchestrator.
"""
import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import yaml

from alerting import MODEL_FAILURE
from monitor_config import AlertSettings, MonitorConfig, load_config
from run_monitor import MonitorPipeline, main


NOW = datetime(2024, 1, 15, 12, 0, 0)

SAMPLE_CONFIG = Path(__file__).parent.parent / "config.yaml"


def write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


def passes(db):
    rows = db.connect().execute(
        "SELECT status, metrics FROM monitor_passes ORDER BY started_at, pass_id"
    ).fetchall()
    return [(status, json.loads(metrics) if metrics else None) for status, metrics in rows]


class TestConfig:

    def test_sample_config_loads(self):
        config = load_config(SAMPLE_CONFIG)

        assert config.pipelines["daily_etl"] == ["stg_orders", "stg_customers", "fct_orders"]
        assert config.health.min_success_rate == 95.0
        assert config.baseline.exclude_recent_days == 7
        assert config.alerts.watched_models == ["fct_orders"]

    def test_defaults(self, tmp_path):
        path = write_config(tmp_path / "config.yaml", {
            "database": {"path": "monitor.duckdb"},
            "pipelines": {"daily_etl": ["fct_orders"], "empty": None},
        })

        config = load_config(path)

        assert config.metrics.recompute_days == 7
        assert config.quality_window_days == 30
        assert config.alerts.stale_after_hours == 24
        assert config.pipelines["empty"] == []
        assert config.mapped_models == ["fct_orders"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    @pytest.mark.parametrize("data", [
        {"pipelines": {}},
        {"database": {}, "pipelines": {}},
        {"database": {"path": "x"}, "pipelines": ["daily_etl"]},
        {"database": {"path": "x"}, "pipelines": {"daily_etl": "fct_orders"}},
        {"database": {"path": "x"}, "pipelines": {}, "health": {"min_succes_rate": 90}},
        {"database": {"path": "x"}, "pipelines": {}, "volume_tables": [{"name": "raw_orders"}]},
    ])
    def test_invalid_config(self, tmp_path, data):
        path = write_config(tmp_path / "config.yaml", data)
        with pytest.raises(ValueError):
            load_config(path)

    def test_watched_tables(self, tmp_path):
        path = write_config(tmp_path / "config.yaml", {
            "database": {"path": "x"},
            "pipelines": {},
            "alerts": {"watched_tables": [{"name": "raw.orders", "timestamp_column": "loaded_at"}]},
            "volume_tables": [{"name": "raw.orders", "timestamp_column": "loaded_at", "entity_key": "orders"}],
        })

        config = load_config(path)

        assert config.alerts.watched_tables[0].key == "raw.orders"
        assert config.volume_tables[0].key == "orders"


class TestMonitorPipeline:

    @pytest.fixture
    def pipeline(self, temp_db, clock, recording_sink, tmp_path):
        config = MonitorConfig(
            database_path=temp_db.db_path,
            pipelines={"daily_etl": ["stg_orders", "fct_orders"]},
            alerts=AlertSettings(watched_models=["fct_orders"]),
            report_dir=str(tmp_path / "reports"),
        )
        return MonitorPipeline(config, clock=clock, database=temp_db, sink=recording_sink)

    def test_full_pass(self, temp_db, pipeline, recording_sink, record_run, record_execution, record_test, tmp_path):
        record_run("daily_etl", NOW - timedelta(hours=5))
        record_run("daily_etl", NOW - timedelta(hours=3), minutes=-1)
        record_execution("fct_orders", NOW - timedelta(minutes=10), status="failed", rows=0, seconds=12.0)
        record_test("fct_orders", "unique_order_id", "pass", NOW - timedelta(minutes=9))

        metrics = pipeline.run(days=3)

        assert metrics.start_date == "2024-01-13"
        assert metrics.end_date == "2024-01-15"
        assert metrics.generation is not None
        assert metrics.rows_written > 0
        assert metrics.invalid_events == 1
        assert metrics.models_scored == 2
        assert metrics.alerts_delivered == 1
        assert dict(metrics.health_counts) == {"HEALTHY": 1}
        assert [a.alert_type for a in recording_sink.delivered] == [MODEL_FAILURE]

        [(status, stored)] = passes(temp_db)
        assert status == "completed"
        assert stored["pass_id"] == metrics.pass_id

        report = tmp_path / "reports" / "health-report-20240115-120000.md"
        assert report.exists()
        assert "daily_etl" in report.read_text(encoding="utf-8")

    def test_repeated_pass_suppresses_delivered_alerts(self, temp_db, pipeline, recording_sink, record_execution):
        record_execution("fct_orders", NOW - timedelta(minutes=10), status="failed")

        first = pipeline.run(days=1)
        second = pipeline.run(days=1)

        assert first.alerts_delivered == 1
        assert second.alerts_delivered == 0
        assert second.alerts_suppressed == 1
        assert len(recording_sink.delivered) == 1
        assert second.generation > first.generation

    def test_repeated_pass_leaves_metrics_unchanged(self, temp_db, pipeline, record_run):
        record_run("daily_etl", NOW - timedelta(hours=5))
        query = """
            SELECT entity_type, entity_key, metric_date, total_runs, avg_execution_time
            FROM daily_metrics ORDER BY entity_type, entity_key, metric_date
        """

        pipeline.run(days=2)
        first = temp_db.connect().execute(query).fetchall()
        pipeline.run(days=2)

        assert temp_db.connect().execute(query).fetchall() == first

    def test_failed_pass_is_recorded(self, temp_db, pipeline, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(pipeline.service.aggregator, "compute", broken)

        with pytest.raises(RuntimeError, match="disk full"):
            pipeline.run(days=1)

        [(status, stored)] = passes(temp_db)
        assert status == "failed"
        assert stored["errors"] == 1

    def test_late_failure_keeps_previous_derived_state(self, temp_db, pipeline, record_run, record_test, monkeypatch):
        record_run("daily_etl", NOW - timedelta(hours=5))
        record_test("fct_orders", "unique_order_id", "pass", NOW - timedelta(hours=4))
        pipeline.run(days=1)
        daily = temp_db.connect().execute("SELECT * FROM daily_metrics ORDER BY ALL").fetchall()
        quality = temp_db.connect().execute("SELECT * FROM quality_scores ORDER BY ALL").fetchall()

        record_run("daily_etl", NOW - timedelta(hours=2), status="failed")
        record_test("fct_orders", "unique_order_id", "fail", NOW - timedelta(hours=1))

        def broken(*args, **kwargs):
            raise OSError("report directory is read-only")

        monkeypatch.setattr(pipeline.reporter, "save_report", broken)

        with pytest.raises(RuntimeError, match="read-only"):
            pipeline.run(days=1)

        assert temp_db.connect().execute("SELECT * FROM daily_metrics ORDER BY ALL").fetchall() == daily
        assert temp_db.connect().execute("SELECT * FROM quality_scores ORDER BY ALL").fetchall() == quality
        assert sorted(status for status, _ in passes(temp_db)) == ["completed", "failed"]

    def test_pass_reports_performance_counts(self, pipeline, record_run):
        record_run("daily_etl", NOW - timedelta(hours=5), minutes=10)
        record_run("daily_etl", NOW - timedelta(hours=4), minutes=90)

        metrics = pipeline.run(days=1)

        assert dict(metrics.performance_counts) == {"fast": 1, "slow": 1}

    def test_invalid_day_count(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.run(days=0)


class TestMain:

    def test_exit_zero_on_success(self, tmp_path):
        path = write_config(tmp_path / "config.yaml", {
            "database": {"path": str(tmp_path / "monitor.duckdb")},
            "pipelines": {"daily_etl": ["fct_orders"]},
            "report": {"dir": str(tmp_path / "reports")},
        })

        with pytest.raises(SystemExit) as exc:
            main(["--config", str(path), "--days", "1"])

        assert exc.value.code == 0
        assert list((tmp_path / "reports").glob("health-report-*.md"))

    def test_exit_one_on_missing_config(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(tmp_path / "missing.yaml")])

        assert exc.value.code == 1
