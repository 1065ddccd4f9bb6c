#!/usr/bin/env python3
"""
Monitoring pass orchestrator for the warehouse monitor.

One pass:
1. Metrics: Compute daily/weekly metrics for the trailing range
2. Quality: Score every known model
3. Anomalies: Evaluate volume baselines
4. Health: Classify every pipeline
5. Alerts: Generate and dispatch (duplicates suppressed)
6. Publish: Replace the derived partitions in one transaction
7. Integrity: Run consistency checks on the uncommitted writes
8. Reporting: Write the Markdown health report and record the pass

Stages 6-8 share the publishing transaction, so a pass that fails at any
stage leaves the previously committed derived tables as they were.

The orchestrator is designed to be:
- Idempotent: Re-running a pass over the same logs yields the same derived rows
- Observable: Pass counters are stored in monitor_passes and reported
- Deterministic: All time comes from the injected clock

Usage:
    python run_monitor.py [--config config.yaml] [--as-of YYYY-MM-DD] [--days N] [--report-dir DIR]
"""
import argparse
import json
import logging
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

from alerting.dispatcher import AlertDispatcher, AlertSink, LoggingAlertSink, WebhookAlertSink
from clock import Clock, SystemClock
from monitor_config import MonitorConfig, load_config
from monitor_service import MonitoringService
from observability.integrity_checks import IntegrityChecker
from observability.reporter import HealthReporter
from observability.run_metrics import PassMetrics
from storage.database import Database


logger = logging.getLogger(__name__)


class MonitorPipeline:
    """
    Runs monitoring passes.

    Design decisions:
    - One generation per pass, allocated before any write
    - Stale partitions are skipped and counted, not treated as failures
    - Nothing derived is committed until every stage has succeeded
    - Any other failure marks the pass failed and is re-raised as RuntimeError
    """

    def __init__(
        self,
        config: MonitorConfig,
        clock: Optional[Clock] = None,
        database: Optional[Database] = None,
        sink: Optional[AlertSink] = None
    ):
        """
        Initialize the pipeline.

        Args:
            config: Loaded monitor configuration
            clock: Clock for every timestamp (system clock by default)
            database: Database override (defaults to config.database_path)
            sink: Alert sink override (defaults to webhook if configured, else log)
        """
        self.config = config
        self.clock = clock or SystemClock()
        self.db = database or Database(config.database_path)
        self.db.initialize_schema()

        self.service = MonitoringService.from_config(self.db, config, self.clock)

        if sink is None:
            sink = WebhookAlertSink(config.alerts.webhook_url) if config.alerts.webhook_url else LoggingAlertSink()
        self.dispatcher = AlertDispatcher(
            self.db, sink, self.clock,
            bucket_minutes=config.alerts.bucket_minutes,
            lookback_hours=config.alerts.lookback_hours,
        )
        self.integrity_checker = IntegrityChecker(self.db, self.clock)
        self.reporter = HealthReporter()

        logger.info(f"Monitor initialized with database: {config.database_path}")

    @classmethod
    def from_config_file(cls, config_path: str = "config.yaml", clock: Optional[Clock] = None) -> "MonitorPipeline":
        return cls(load_config(config_path), clock=clock)

    def run(
        self,
        as_of: Optional[date] = None,
        days: Optional[int] = None,
        report_dir: Optional[str] = None
    ) -> PassMetrics:
        """
        Execute one monitoring pass.

        Args:
            as_of: Last day to recompute and evaluate (defaults to today)
            days: Number of days to recompute, ending at as_of
            report_dir: Report directory override

        Returns:
            PassMetrics with the pass's counters

        Raises:
            RuntimeError: If any stage fails
        """
        days = days if days is not None else self.config.metrics.recompute_days
        if days < 1:
            raise ValueError(f"days must be at least 1, got {days}")

        started_at = self.clock.now()
        end_date = as_of or started_at.date()
        start_date = end_date - timedelta(days=days - 1)

        metrics = PassMetrics(
            pass_id=self.db.new_pass_id(started_at),
            started_at=started_at,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        self._start_pass(metrics)
        logger.info(f"=== Starting Monitor Pass: {metrics.pass_id} ({start_date}..{end_date}) ===")

        try:
            metrics.generation = self.service.writer.allocate_generation()

            logger.info("Stage 1: Computing execution metrics")
            aggregation = self.service.aggregator.compute(start_date, end_date)
            aggregation.generation = metrics.generation
            metrics.invalid_events = len(aggregation.invalid_events)
            metrics.performance_counts.update(aggregation.performance_counts)

            logger.info("Stage 2: Scoring model quality")
            scores = self.service.scorer.score_all(self.config.mapped_models)
            metrics.models_scored = len(scores)

            logger.info("Stage 3: Evaluating volume anomalies")
            anomalies = self.service.current_anomalies(end_date)
            for record in anomalies:
                metrics.record_anomaly(record.status)

            logger.info("Stage 4: Classifying pipeline health")
            by_key = {record.entity_key: record for record in anomalies}
            health = self.service.classifier.classify_all(self.service.pipeline_names(), by_key)
            for entry in health.values():
                metrics.record_health(entry.status)

            logger.info("Stage 5: Generating and dispatching alerts")
            alerts = self.service.generator.generate(anomalies)
            metrics.alerts_raised = len(alerts)
            dispatch = self.dispatcher.dispatch(alerts)
            metrics.alerts_delivered = len(dispatch.delivered)
            metrics.alerts_suppressed = len(dispatch.suppressed)
            metrics.alerts_failed = len(dispatch.failed)
            for alert in dispatch.failed:
                metrics.record_error(
                    f"Alert delivery failed: {alert.alert_type}",
                    {"entity_key": alert.entity_key}
                )

            # Derived rows, invalid-row routing and the pass record commit together
            logger.info("Stage 6: Publishing derived tables")
            report_paths = []

            def finalize(cursor, batch):
                metrics.partitions_written = batch.partitions_written
                metrics.rows_written = batch.rows_written
                metrics.stale_partitions.extend(batch.stale_partitions)
                self.service.aggregator.route_invalid(aggregation.invalid_events, cursor)
                self.service.scorer.log_missing(scores)

                logger.info("Stage 7: Running integrity checks")
                integrity_results = self.integrity_checker.run_all_checks(conn=cursor)
                for result in integrity_results:
                    if not result.passed:
                        logger.warning(f"Integrity check {result.check_name} failed: {result.message}")

                logger.info("Stage 8: Generating report")
                metrics.completed_at = self.clock.now()
                report = self.reporter.generate_report(
                    metrics,
                    health=health.values(),
                    quality_scores=scores,
                    anomalies=anomalies,
                    alerts=alerts,
                    integrity_results=integrity_results,
                )
                report_paths.append(self.reporter.save_report(
                    report, Path(report_dir or self.config.report_dir), timestamp=started_at
                ))
                self._finish_pass(metrics, "completed", cursor)

            snapshots = (
                self.service.aggregator.partition_snapshots(aggregation)
                + self.service.scorer.partition_snapshots(scores, metrics.generation)
            )
            self.service.writer.write_many(snapshots, metrics.generation, before_commit=finalize)

            logger.info("=== Monitor Pass Complete ===")
            logger.info(f"Rows written: {metrics.rows_written}")
            logger.info(f"Alerts delivered: {metrics.alerts_delivered}")
            logger.info(f"Report: {report_paths[0]}")

        except Exception as e:
            metrics.record_error(str(e))
            metrics.completed_at = self.clock.now()
            logger.error(f"Monitor pass failed: {e}", exc_info=True)
            self._finish_pass(metrics, "failed")
            raise RuntimeError(f"Monitor pass failed: {e}") from e

        return metrics

    def _start_pass(self, metrics: PassMetrics):
        self.db.connect().execute("""
            INSERT INTO monitor_passes (pass_id, started_at, status)
            VALUES (?, ?, 'running')
        """, [metrics.pass_id, metrics.started_at])

    def _finish_pass(self, metrics: PassMetrics, status: str, conn=None):
        if conn is None:
            conn = self.db.connect()
        conn.execute("""
            UPDATE monitor_passes
            SET completed_at = ?, status = ?, metrics = ?
            WHERE pass_id = ?
        """, [metrics.completed_at, status, json.dumps(metrics.to_dict()), metrics.pass_id])


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run a warehouse monitoring pass"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Last day to recompute, YYYY-MM-DD (default: today)"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Number of days to recompute (default: metrics.recompute_days)"
    )
    parser.add_argument(
        "--report-dir",
        default=None,
        help="Directory for the health report (default: report.dir)"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        pipeline = MonitorPipeline.from_config_file(args.config)
        metrics = pipeline.run(as_of=args.as_of, days=args.days, report_dir=args.report_dir)

        print("\n" + "=" * 60)
        print("Monitor Pass Summary")
        print("=" * 60)
        print(f"Pass ID: {metrics.pass_id}")
        print(f"Range: {metrics.start_date} .. {metrics.end_date}")
        print(f"Rows Written: {metrics.rows_written}")
        print(f"Invalid Events: {metrics.invalid_events}")
        print(f"Alerts Delivered: {metrics.alerts_delivered}")
        print(f"Errors: {metrics.errors}")
        print("\nPipeline Health:")
        for status, count in sorted(metrics.health_counts.items()):
            print(f"  {status:20} {count:4}")
        print("=" * 60)

        sys.exit(0)

    except Exception as e:
        logger.error(f"Monitor pass failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
