"""
Data quality scoring per model.

This module implements QualityScorer, which turns the test_results log into
a score and rating per model:

    score = round(passed_tests / total_tests * 100, 2)

Ratings (lower bounds inclusive):
- >= 90: Excellent
- >= 80: Good
- >= 70: Fair
- otherwise: Poor

Design decisions:
- A model with no tests has an undefined score (None) and no rating, never 0
- Scores cover test runs in a trailing window ending at the clock's now
- Every known model gets a row, including models with no tests, so that
  "no data" is visible downstream instead of a missing row
- Scores are written as one snapshot per model, all in one SnapshotWriter batch
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from clock import Clock, SystemClock, trailing_window
from storage.database import Database
from storage.event_log import EventLogStore, TestResult
from storage.snapshots import PartitionSnapshot, SnapshotWriter


logger = logging.getLogger(__name__)

RATING_THRESHOLDS = (
    (90.0, "Excellent"),
    (80.0, "Good"),
    (70.0, "Fair"),
)
LOWEST_RATING = "Poor"

QUALITY_COLUMNS = (
    "model_name", "window_start", "window_end", "total_tests",
    "passed_tests", "score", "rating", "generation",
)


@dataclass
class QualityScore:
    """
    Test pass-rate score of one model.

    Attributes:
        model_name: Model the tests belong to
        total_tests: Test runs in the scoring window
        passed_tests: Test runs with status pass
        score: Percentage in [0, 100], or None when total_tests is 0
        rating: Excellent | Good | Fair | Poor, or None when score is None
    """
    model_name: str
    total_tests: int
    passed_tests: int
    score: Optional[float]
    rating: Optional[str]

    @property
    def has_data(self) -> bool:
        return self.score is not None


def quality_score(passed_tests: int, total_tests: int) -> Optional[float]:
    if total_tests == 0:
        return None
    return round(passed_tests / total_tests * 100, 2)


def quality_rating(score: Optional[float]) -> Optional[str]:
    if score is None:
        return None
    for threshold, rating in RATING_THRESHOLDS:
        if score >= threshold:
            return rating
    return LOWEST_RATING


def score_model(model_name: str, results: Iterable[TestResult]) -> QualityScore:
    """Score a model from its test results."""
    results = list(results)
    total = len(results)
    passed = sum(1 for r in results if r.status == "pass")
    score = quality_score(passed, total)
    return QualityScore(
        model_name=model_name,
        total_tests=total,
        passed_tests=passed,
        score=score,
        rating=quality_rating(score),
    )


class QualityScorer:
    """
    Computes and persists quality scores.

    Each score is computed over test results executed in
    [now - window_days, now].
    """

    def __init__(
        self,
        database: Database,
        store: EventLogStore,
        writer: SnapshotWriter,
        clock: Optional[Clock] = None,
        window_days: int = 30
    ):
        """
        Initialize quality scorer.

        Args:
            database: Database instance with active connection
            store: Event log reader
            writer: Snapshot writer for the quality_scores table
            clock: Clock defining the end of the scoring window
            window_days: Length of the scoring window
        """
        self.db = database
        self.store = store
        self.writer = writer
        self.clock = clock or SystemClock()
        self.window_days = window_days

    def window(self) -> Tuple[datetime, datetime]:
        return trailing_window(self.clock.now(), timedelta(days=self.window_days))

    def score_all(self, model_names: Iterable[str] = ()) -> List[QualityScore]:
        """
        Score every known model without writing.

        Args:
            model_names: Extra models to include (e.g. from the pipeline
                mapping) even if they have no logged events

        Returns:
            Scores sorted by model name
        """
        start, end = self.window()
        results = self.store.test_results(start, end)

        by_model: Dict[str, List[TestResult]] = {}
        for name in set(self.store.model_names()) | set(model_names):
            by_model[name] = []
        for result in results:
            by_model.setdefault(result.model_name, []).append(result)

        return [score_model(name, by_model[name]) for name in sorted(by_model)]

    def partition_snapshots(self, scores: Iterable[QualityScore], generation: int) -> List[PartitionSnapshot]:
        """One replacement snapshot per scored model, stamped with generation."""
        start, _ = self.window()
        now = self.clock.now()
        return [
            PartitionSnapshot(
                table_name="quality_scores",
                partition_key=score.model_name,
                delete_where="model_name = ?",
                delete_params=[score.model_name],
                columns=QUALITY_COLUMNS,
                rows=[(
                    score.model_name, start, now, score.total_tests,
                    score.passed_tests, score.score, score.rating, generation,
                )],
            )
            for score in scores
        ]

    def recompute(self, model_names: Iterable[str] = (), generation: Optional[int] = None) -> List[QualityScore]:
        """
        Score every known model and overwrite quality_scores in one transaction.

        Returns:
            Scores sorted by model name
        """
        scores = self.score_all(model_names)
        generation = generation if generation is not None else self.writer.allocate_generation()
        self.writer.write_many(self.partition_snapshots(scores, generation), generation)
        self.log_missing(scores)
        return scores

    def log_missing(self, scores: Iterable[QualityScore]):
        no_data = [s.model_name for s in scores if not s.has_data]
        if no_data:
            logger.info(f"No test results in window for: {', '.join(no_data)}")

    def get_score(self, model_name: str) -> QualityScore:
        """
        Read the persisted score of a model.

        A model that was never scored is reported with no data.
        """
        row = self.db.connect().execute("""
            SELECT total_tests, passed_tests, score, rating
            FROM quality_scores WHERE model_name = ?
        """, [model_name]).fetchone()

        if row is None:
            return QualityScore(model_name=model_name, total_tests=0, passed_tests=0, score=None, rating=None)

        total, passed, score, rating = row
        return QualityScore(model_name=model_name, total_tests=total, passed_tests=passed, score=score, rating=rating)

