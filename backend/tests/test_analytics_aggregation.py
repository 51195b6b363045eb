"""
Tests for the stability and coverage calculators and the per-user aggregates.
"""

import math
import pytest
from datetime import date, datetime, timedelta
from sqlalchemy.orm import Session

from app.models.models import DailyMetricsSnapshot, RecallIntelligence, User
from app.services.analytics_aggregation import (
    AnalyticsAggregationService,
    CoverageCalculator,
    StabilityCalculator,
    coverage_from_counts,
    stability_from_scores,
)
from tests.factories import create_attempt, create_catalog, create_mock_exam, create_question


class TestStabilityFromScores:

    @pytest.mark.unit
    def test_too_few_exams_is_neutral(self):
        result = stability_from_scores([90.0, 20.0], min_exams=3)
        assert result.stability_score == 50.0
        assert result.trend == "stable"
        assert result.variance == 0.0

    @pytest.mark.unit
    def test_population_variance(self):
        result = stability_from_scores([60.0, 70.0, 80.0])
        expected_std = math.sqrt(200 / 3)
        assert result.variance == pytest.approx(66.67, abs=0.01)
        assert result.std_dev == pytest.approx(round(expected_std, 2))
        assert result.stability_score == pytest.approx(round(100 - expected_std / 40 * 100, 2))
        assert result.trend == "stable"

    @pytest.mark.unit
    def test_identical_scores_are_fully_stable(self):
        assert stability_from_scores([72.0] * 4).stability_score == 100.0

    @pytest.mark.unit
    def test_wild_scores_clamp_at_zero(self):
        assert stability_from_scores([0.0, 100.0, 0.0, 100.0]).stability_score == 0.0

    @pytest.mark.unit
    def test_improving_and_declining_trends(self):
        improving = stability_from_scores([50.0, 50.0, 50.0, 60.0, 60.0, 60.0, 60.0, 60.0])
        declining = stability_from_scores([70.0, 70.0, 70.0, 60.0, 60.0, 60.0, 60.0, 60.0])
        assert improving.trend == "improving"
        assert declining.trend == "declining"

    @pytest.mark.unit
    def test_small_shift_within_margin_is_stable(self):
        result = stability_from_scores([60.0, 60.0, 60.0, 61.0, 61.0, 61.0, 61.0, 61.0])
        assert result.trend == "stable"


class TestCoverageFromCounts:

    @pytest.mark.unit
    def test_no_attempts_is_zero(self):
        result = coverage_from_counts({}, ["Cardiology", "Renal"])
        assert result.overall_coverage == 0.0
        assert result.by_category == {}

    @pytest.mark.unit
    def test_only_full_categories_count_as_covered(self):
        counts = {"Cardiology": 5, "Renal": 4, "Neurology": 12}
        result = coverage_from_counts(counts, ["Cardiology", "Renal", "Neurology", "Endocrine"], 5)

        assert result.overall_coverage == 50.0
        assert result.by_category["Renal"]["coverage"] == 80.0
        assert result.by_category["Neurology"]["coverage"] == 100.0
        assert result.uncovered == ["Endocrine", "Renal"]

    @pytest.mark.unit
    def test_top_covered_is_ranked_and_limited(self):
        categories = [f"Cat{i}" for i in range(8)]
        counts = {f"Cat{i}": i for i in range(8)}
        result = coverage_from_counts(counts, categories, 5)

        assert len(result.top_covered) == 5
        coverages = [entry["coverage"] for entry in result.top_covered]
        assert coverages == sorted(coverages, reverse=True)
        assert result.top_covered[-1]["coverage"] == 60


class TestCalculators:

    @pytest.mark.integration
    def test_stability_reads_completed_exams_oldest_first(self, db: Session, test_user: User):
        now = datetime.utcnow()
        for days_ago, score in ((3, 60.0), (2, 70.0), (1, 80.0)):
            create_mock_exam(db, test_user, score, completed_at=now - timedelta(days=days_ago))

        result = StabilityCalculator(db).calculate_stability(test_user.id)

        assert [point["score"] for point in result.series] == [60.0, 70.0, 80.0]
        assert result.variance == pytest.approx(66.67, abs=0.01)

    @pytest.mark.integration
    def test_stability_without_exams(self, db: Session, test_user: User):
        result = StabilityCalculator(db).calculate_stability(test_user.id)
        assert result.stability_score == 50.0
        assert result.series == []

    @pytest.mark.integration
    def test_coverage_for_scenario(self, db: Session, test_user: User, scenario_history):
        result = CoverageCalculator(db).calculate_coverage(test_user.id)

        assert result.overall_coverage == 20.0
        assert result.by_category["Cardiology"]["attempted"] == 5
        assert "Neurology" in result.uncovered

    @pytest.mark.integration
    def test_coverage_falls_back_to_catalog_category(self, db: Session, test_user: User):
        question = create_question(db, category="Renal")
        attempt = create_attempt(db, test_user, question, True, commit=False)
        attempt.category = None
        db.commit()

        counts = CoverageCalculator(db).get_category_counts(test_user.id)
        assert counts == {"Renal": 1}


class TestAnalyticsAggregationService:

    @pytest.mark.integration
    def test_daily_metrics_snapshot_is_upserted(self, db: Session, test_user: User):
        day = date(2026, 3, 10)
        catalog = create_catalog(db, ["Cardiology", "Renal"])
        create_attempt(db, test_user, catalog["Cardiology"][0], True,
                       time_taken_seconds=60, attempted_at=datetime(2026, 3, 9, 12))
        create_attempt(db, test_user, catalog["Cardiology"][0], True,
                       time_taken_seconds=60, attempted_at=datetime(2026, 3, 10, 9))
        create_attempt(db, test_user, catalog["Renal"][0], False,
                       time_taken_seconds=120, attempted_at=datetime(2026, 3, 10, 18))

        service = AnalyticsAggregationService(db)
        metrics = service.aggregate_daily_metrics(test_user.id, day)
        db.commit()

        assert metrics["total_attempts"] == 2
        assert metrics["accuracy"] == 0.5
        assert metrics["avg_time_per_question_ms"] == 90000
        assert metrics["categories_attempted"] == 2
        assert metrics["new_categories_explored"] == 1

        service.aggregate_daily_metrics(test_user.id, day)
        db.commit()
        rows = db.query(DailyMetricsSnapshot).filter(DailyMetricsSnapshot.user_id == test_user.id).all()
        assert len(rows) == 1

    @pytest.mark.integration
    def test_recall_heatmap_respects_period(self, db: Session, test_user: User):
        catalog = create_catalog(db, ["Cardiology", "Renal"])
        now = datetime.utcnow()
        create_attempt(db, test_user, catalog["Cardiology"][0], True, attempted_at=now - timedelta(hours=1))
        create_attempt(db, test_user, catalog["Cardiology"][0], False, attempted_at=now - timedelta(hours=2))
        create_attempt(db, test_user, catalog["Renal"][0], True, attempted_at=now - timedelta(days=3))

        service = AnalyticsAggregationService(db)
        assert service.update_recall_heatmap(test_user.id, "daily") == {"Cardiology": 2}
        assert service.update_recall_heatmap(test_user.id, "weekly") == {"Cardiology": 2, "Renal": 1}
        db.commit()

        rows = db.query(RecallIntelligence).filter(RecallIntelligence.user_id == test_user.id).all()
        assert {r.topic: r.period for r in rows} == {"Cardiology": "weekly", "Renal": "weekly"}

    @pytest.mark.integration
    def test_repeated_heatmap_refresh_keeps_one_row_per_topic(self, db: Session, test_user: User):
        catalog = create_catalog(db, ["Cardiology"])
        create_attempt(db, test_user, catalog["Cardiology"][0], True)

        service = AnalyticsAggregationService(db)
        service.update_recall_heatmap(test_user.id, "daily")
        service.update_recall_heatmap(test_user.id, "weekly")
        service.update_recall_heatmap(test_user.id, "weekly")
        db.commit()

        rows = db.query(RecallIntelligence).filter(RecallIntelligence.user_id == test_user.id).all()
        assert len(rows) == 1
        assert rows[0].frequency == 1

    @pytest.mark.unit
    def test_unknown_heatmap_period(self, db: Session):
        with pytest.raises(ValueError):
            AnalyticsAggregationService(db).update_recall_heatmap("anyone", "yearly")

    @pytest.mark.integration
    def test_hot_topics_ranked_by_frequency(self, db: Session, test_user: User):
        catalog = create_catalog(db, ["Cardiology", "Renal"])
        for outcome in (True, False, True):
            create_attempt(db, test_user, catalog["Cardiology"][0], outcome)
        create_attempt(db, test_user, catalog["Renal"][0], False)

        service = AnalyticsAggregationService(db)
        service.update_recall_heatmap(test_user.id, "weekly")
        db.commit()

        topics = service.get_hot_topics(test_user.id)
        assert [t["topic"] for t in topics] == ["Cardiology", "Renal"]
        assert topics[0]["success_rate"] == pytest.approx(66.67, abs=0.01)
        assert topics[1]["success_rate"] == 0.0

    @pytest.mark.integration
    def test_performance_summary(self, db: Session, test_user: User, scenario_history):
        summary = AnalyticsAggregationService(db).get_performance_summary(test_user.id)
        assert summary == {"total_attempts": 5, "correct_answers": 3, "accuracy": 60.0}
