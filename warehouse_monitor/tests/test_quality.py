"""
Tests for model quality scoring.
"""
from datetime import datetime, timedelta

import pytest

from observability.quality import QualityScorer, quality_rating, quality_score, score_model
from storage.event_log import TestResult as LoggedTestResult


NOW = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def scorer(temp_db, store, writer, clock):
    return QualityScorer(temp_db, store, writer, clock)


def stored_scores(db):
    return db.connect().execute("""
        SELECT model_name, total_tests, passed_tests, score, rating
        FROM quality_scores ORDER BY model_name
    """).fetchall()


class TestScoreAndRating:

    def test_score_rounded_to_two_decimals(self):
        assert quality_score(2, 3) == 66.67
        assert quality_score(9, 10) == 90.0

    def test_no_tests_is_undefined(self):
        assert quality_score(0, 0) is None
        assert quality_rating(None) is None

    @pytest.mark.parametrize("score,rating", [
        (100.0, "Excellent"),
        (90.0, "Excellent"),
        (89.99, "Good"),
        (80.0, "Good"),
        (79.99, "Fair"),
        (70.0, "Fair"),
        (69.99, "Poor"),
        (0.0, "Poor"),
    ])
    def test_rating_thresholds(self, score, rating):
        assert quality_rating(score) == rating

    def test_score_model(self):
        results = [
            LoggedTestResult(f"r{i}", "fct_orders", f"test_{i}", "pass" if i < 8 else "fail", NOW)
            for i in range(10)
        ]
        score = score_model("fct_orders", results)

        assert score.total_tests == 10
        assert score.passed_tests == 8
        assert score.score == 80.0
        assert score.rating == "Good"
        assert score.has_data


class TestQualityScorer:

    def test_recompute_persists_scores(self, temp_db, scorer, record_test):
        for i in range(9):
            record_test("fct_orders", f"test_{i}", "pass", NOW - timedelta(hours=i + 1))
        record_test("fct_orders", "unique_order_id", "fail", NOW - timedelta(hours=12))

        scores = scorer.recompute()

        assert [(s.model_name, s.score, s.rating) for s in scores] == [("fct_orders", 90.0, "Excellent")]
        assert stored_scores(temp_db) == [("fct_orders", 10, 9, 90.0, "Excellent")]

    def test_model_without_tests_has_no_score(self, temp_db, scorer, record_execution):
        record_execution("stg_orders", NOW - timedelta(hours=1))

        [score] = scorer.recompute()

        assert score.model_name == "stg_orders"
        assert score.score is None
        assert score.rating is None
        assert stored_scores(temp_db) == [("stg_orders", 0, 0, None, None)]

    def test_mapped_models_scored_without_events(self, scorer):
        scores = scorer.recompute(model_names=["dim_customers"])
        assert [s.model_name for s in scores] == ["dim_customers"]
        assert not scores[0].has_data

    def test_results_outside_window_excluded(self, scorer, record_test):
        record_test("fct_orders", "old_test", "fail", NOW - timedelta(days=31))
        record_test("fct_orders", "new_test", "pass", NOW - timedelta(days=1))

        [score] = scorer.recompute()
        assert score.total_tests == 1
        assert score.score == 100.0

    def test_recompute_is_idempotent(self, temp_db, scorer, record_test):
        record_test("fct_orders", "a", "pass", NOW - timedelta(hours=1))
        record_test("fct_orders", "b", "fail", NOW - timedelta(hours=2))
        record_test("stg_orders", "c", "pass", NOW - timedelta(hours=3))

        first = scorer.recompute()
        rows_first = stored_scores(temp_db)
        second = scorer.recompute()

        assert first == second
        assert stored_scores(temp_db) == rows_first

    def test_get_score(self, scorer, record_test):
        record_test("fct_orders", "a", "pass", NOW - timedelta(hours=1))
        scorer.recompute()

        assert scorer.get_score("fct_orders").score == 100.0

        unknown = scorer.get_score("never_scored")
        assert unknown.score is None
        assert unknown.total_tests == 0
