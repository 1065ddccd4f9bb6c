"""
Generate human-readable monitoring reports in Markdown format.

This module provides HealthReporter, which turns one pass's metrics and
results into a Markdown report.

Report sections:
- Header with pass metadata (ID, generation, range, duration)
- Summary table with core counters
- Run counts per performance category
- Pipeline health
- Quality scores
- Volume anomalies (alerts only; NORMAL rows are omitted)
- Alerts raised in the pass
- Integrity check results

Design decisions:
- Uses tabulate library for table formatting (GitHub-flavored)
- Reports saved with timestamp for historical tracking
- Undefined rates and scores render as "n/a", never as 0
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from tabulate import tabulate

from .anomaly import AnomalyRecord
from .metrics import PERFORMANCE_CATEGORIES
from .integrity_checks import IntegrityCheckResult
from .quality import QualityScore
from .run_metrics import PassMetrics


def _pct(value: Optional[float]) -> str:
    return f"{value:.2f}%" if value is not None else "n/a"


class HealthReporter:
    """
    Generates Markdown reports from monitoring pass results.

    Health entries and alerts are read by attribute, so any object with
    the PipelineHealth / Alert fields can be reported.
    """

    def generate_report(
        self,
        metrics: PassMetrics,
        health: Iterable = (),
        quality_scores: Iterable[QualityScore] = (),
        anomalies: Iterable[AnomalyRecord] = (),
        alerts: Iterable = (),
        integrity_results: Iterable[IntegrityCheckResult] = ()
    ) -> str:
        """
        Generate full pass report in Markdown format.

        Returns:
            Markdown-formatted report as string
        """
        lines: List[str] = []

        lines.append("# Warehouse Health Report")
        lines.append(f"**Pass ID:** {metrics.pass_id}")
        lines.append(f"**Started:** {metrics.started_at.isoformat()}")
        if metrics.generation is not None:
            lines.append(f"**Generation:** {metrics.generation}")
        if metrics.start_date and metrics.end_date:
            lines.append(f"**Range:** {metrics.start_date} .. {metrics.end_date}")
        if metrics.duration_seconds is not None:
            lines.append(f"**Duration:** {metrics.duration_seconds:.1f} seconds")
        lines.append("")

        lines.append("## Summary")
        summary_data = [
            ["Partitions Written", metrics.partitions_written],
            ["Rows Written", metrics.rows_written],
            ["Invalid Events", metrics.invalid_events],
            ["Stale Partitions", len(metrics.stale_partitions)],
            ["Models Scored", metrics.models_scored],
            ["Alerts Raised", metrics.alerts_raised],
            ["Alerts Delivered", metrics.alerts_delivered],
            ["Alerts Suppressed", metrics.alerts_suppressed],
            ["Alerts Failed", metrics.alerts_failed],
            ["Errors", metrics.errors],
        ]
        lines.append(tabulate(summary_data, headers=["Metric", "Value"], tablefmt="github"))
        lines.append("")

        if metrics.performance_counts:
            lines.append("## Run Performance")
            performance_data = [
                [category, metrics.performance_counts.get(category, 0)]
                for category in PERFORMANCE_CATEGORIES
            ]
            lines.append(tabulate(performance_data, headers=["Category", "Runs"], tablefmt="github"))
            lines.append("")

        health = list(health)
        if health:
            lines.append("## Pipeline Health")
            health_data = [
                [h.status, h.pipeline_name, _pct(h.success_rate), h.recent_failures, h.total_runs, h.explanation]
                for h in sorted(health, key=lambda h: h.pipeline_name)
            ]
            lines.append(tabulate(
                health_data,
                headers=["Status", "Pipeline", "Success Rate", "Failures", "Runs", "Reason"],
                tablefmt="github"
            ))
            lines.append("")

        quality_scores = list(quality_scores)
        if quality_scores:
            lines.append("## Quality Scores")
            quality_data = [
                [q.model_name, _pct(q.score), q.rating or "n/a", q.passed_tests, q.total_tests]
                for q in sorted(quality_scores, key=lambda q: q.model_name)
            ]
            lines.append(tabulate(
                quality_data,
                headers=["Model", "Score", "Rating", "Passed", "Total"],
                tablefmt="github"
            ))
            lines.append("")

        flagged = [a for a in anomalies if a.is_alert]
        if flagged:
            lines.append("## Volume Anomalies")
            anomaly_data = [
                [a.status, a.entity_key, a.evaluation_date.isoformat(), f"{a.observed_value:.0f}",
                 f"{a.baseline_mean:.1f}", f"{a.baseline_stddev:.1f}"]
                for a in sorted(flagged, key=lambda a: a.entity_key)
            ]
            lines.append(tabulate(
                anomaly_data,
                headers=["Status", "Entity", "Date", "Observed", "Mean", "Std Dev"],
                tablefmt="github"
            ))
            lines.append("")

        alerts = list(alerts)
        if alerts:
            lines.append("## Alerts")
            alert_data = [[a.alert_type, a.entity_key, a.raised_at.isoformat(), a.message] for a in alerts]
            lines.append(tabulate(alert_data, headers=["Type", "Entity", "Raised", "Message"], tablefmt="github"))
            lines.append("")

        integrity_results = list(integrity_results)
        if integrity_results:
            lines.append("## Integrity Checks")
            check_data = [
                ["✓" if r.passed else "✗", r.check_name, r.message] for r in integrity_results
            ]
            lines.append(tabulate(check_data, headers=["Status", "Check", "Details"], tablefmt="github"))
            lines.append("")

        return "\n".join(lines)

    def save_report(self, report: str, output_dir: Path, timestamp: Optional[datetime] = None) -> Path:
        """
        Save report to file with timestamp.

        Args:
            report: Markdown report content
            output_dir: Directory to save report in
            timestamp: Time used in the filename (usually the pass start)

        Returns:
            Path to saved report file
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        stamp = (timestamp or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")
        filepath = output_dir / f"health-report-{stamp}.md"
        filepath.write_text(report, encoding="utf-8")
        return filepath
