"""
Tests for the readiness aggregator.

Covers:
- Component weights and the reference scenario
- Cache round trip and history persistence
- Insufficient data and IRT fallback
- Interpretation ladder, report recommendations and trends
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy.orm import Session

from app.models.models import ReadinessScoreHistory, UserCognitiveProfile, User
from app.services.readiness import (
    COMPONENT_MAXIMUMS,
    INSUFFICIENT_DATA_MESSAGE,
    ReadinessService,
    consistency_component,
    get_next_steps,
    interpret_readiness,
    irt_weighted_accuracy,
    speed_component,
)
from tests.factories import create_attempt, create_mock_exam, create_question, create_user


class TestComponentFunctions:

    @pytest.mark.unit
    def test_irt_weighting_is_capped(self):
        assert irt_weighted_accuracy(60.0, 1.2) == pytest.approx(61.2)
        assert irt_weighted_accuracy(99.0, 2.5) == 100.0

    @pytest.mark.unit
    def test_speed_component(self):
        assert speed_component(60.0) == 10.0
        assert speed_component(180.0) == pytest.approx(5.0)
        assert speed_component(0.0) == 10.0

    @pytest.mark.unit
    def test_consistency_component(self):
        assert consistency_component([]) == 5.0
        assert consistency_component([70.0]) == 10.0
        assert consistency_component([60.0, 70.0, 80.0]) == pytest.approx(10 - 20 / 3)
        assert consistency_component([0.0, 100.0]) == 0.0

    @pytest.mark.unit
    def test_interpretation_ladder(self):
        label, _, days = interpret_readiness(39.99, 50.0)
        assert label == "Not Ready - Focus Required"
        assert days is None

        label, recommendation, days = interpret_readiness(40.0, 50.0)
        assert label == "Borderline - Delay Exam"
        assert days == 90
        assert "60% accuracy" in recommendation

        label, _, days = interpret_readiness(70.0, 80.0)
        assert label == "Exam Ready - Book Your Exam"
        assert days is None

    @pytest.mark.unit
    def test_next_steps_add_extension_and_speed_advice(self):
        steps = get_next_steps(30.0, 40.0, 60.0)
        assert steps[-1] == "Consider extending exam date by 2-3 months"

        steps = get_next_steps(65.0, 70.0, 150.0)
        assert steps[-1] == "Work on speed - aim for 90-120 seconds per question"


class TestComputeReadiness:

    @pytest.mark.integration
    def test_reference_scenario(self, db: Session, test_user: User, scenario_history):
        result = ReadinessService(db).compute_readiness(test_user.id)

        components = result["components"]
        assert components["accuracy"] == pytest.approx(24.48, abs=0.01)
        assert components["stability"] == pytest.approx(10.0, abs=0.01)
        assert components["coverage"] == pytest.approx(4.0, abs=0.01)
        assert components["speed"] == pytest.approx(10.0, abs=0.01)
        assert components["consistency"] == pytest.approx(5.0, abs=0.01)
        assert result["overall_score"] == pytest.approx(53.48, abs=0.01)
        assert result["interpretation"] == "Borderline - Delay Exam"
        assert result["days_until_ready"] == 50
        assert result["details"]["raw_accuracy"] == 60.0
        assert result["is_cached"] is False

    @pytest.mark.integration
    def test_components_sum_to_overall_and_stay_bounded(self, db: Session, test_user: User, scenario_history):
        create_mock_exam(db, test_user, 55.0, completed_at=datetime.utcnow() - timedelta(days=3))
        create_mock_exam(db, test_user, 75.0, completed_at=datetime.utcnow() - timedelta(days=2))
        create_mock_exam(db, test_user, 62.0, completed_at=datetime.utcnow() - timedelta(days=1))

        result = ReadinessService(db).compute_readiness(test_user.id)

        assert result["overall_score"] == pytest.approx(sum(result["components"].values()), abs=1e-9)
        for name, value in result["components"].items():
            assert 0.0 <= value <= COMPONENT_MAXIMUMS[name]
        assert 0.0 <= result["overall_score"] <= 100.0

    @pytest.mark.integration
    def test_strong_learner_is_exam_ready(self, db: Session):
        user = create_user(db)
        for _ in range(6):
            create_attempt(db, user, create_question(db, category="Cardiology"), True, time_taken_seconds=90)
        for days_ago in (3, 2, 1):
            create_mock_exam(db, user, 90.0, completed_at=datetime.utcnow() - timedelta(days=days_ago))

        result = ReadinessService(db).compute_readiness(user.id)

        assert result["components"]["speed"] == 10.0
        assert result["overall_score"] >= 95.0
        assert result["interpretation"] == "Exam Ready - Book Your Exam"

    @pytest.mark.integration
    def test_second_call_is_served_from_cache(self, db: Session, test_user: User, scenario_history):
        service = ReadinessService(db)
        first = service.compute_readiness(test_user.id)
        second = service.compute_readiness(test_user.id)

        assert second["is_cached"] is True
        assert second["overall_score"] == first["overall_score"]
        assert second["components"] == first["components"]
        history = db.query(ReadinessScoreHistory).filter(ReadinessScoreHistory.user_id == test_user.id).count()
        assert history == 1

    @pytest.mark.integration
    def test_bypassing_cache_recomputes(self, db: Session, test_user: User, scenario_history):
        service = ReadinessService(db)
        service.compute_readiness(test_user.id)
        result = service.compute_readiness(test_user.id, use_cache=False)

        assert result["is_cached"] is False
        history = db.query(ReadinessScoreHistory).filter(ReadinessScoreHistory.user_id == test_user.id).count()
        assert history == 2

    @pytest.mark.integration
    def test_stale_cache_recomputes(self, db: Session, test_user: User, scenario_history):
        now = datetime.utcnow()
        ReadinessService(db, clock=lambda: now - timedelta(hours=2)).compute_readiness(test_user.id)

        result = ReadinessService(db, clock=lambda: now).compute_readiness(test_user.id)
        assert result["is_cached"] is False

    @pytest.mark.integration
    def test_no_attempts_is_insufficient_data(self, db: Session, test_user: User):
        result = ReadinessService(db).compute_readiness(test_user.id)

        assert result["overall_score"] == 0.0
        assert result["message"] == INSUFFICIENT_DATA_MESSAGE
        assert all(v == 0.0 for v in result["components"].values())
        assert db.query(ReadinessScoreHistory).filter(ReadinessScoreHistory.user_id == test_user.id).count() == 0

    @pytest.mark.integration
    def test_irt_failure_falls_back_to_raw_accuracy(self, db: Session, test_user: User, scenario_history):
        service = ReadinessService(db)

        def broken(question_ids):
            raise ZeroDivisionError("degenerate item set")

        service.irt.estimate_parameters_for_questions = broken
        result = service.compute_readiness(test_user.id)

        assert result["components"]["accuracy"] == pytest.approx(24.0)
        assert result["details"]["irt_ability"] is None

    @pytest.mark.integration
    def test_profile_categories_are_updated(self, db: Session, test_user: User, scenario_history):
        ReadinessService(db).compute_readiness(test_user.id)

        profile = db.query(UserCognitiveProfile).filter(UserCognitiveProfile.user_id == test_user.id).first()
        assert profile is not None
        assert profile.strength_categories == ["Cardiology"]
        assert "Neurology" in profile.weakness_categories
        assert "Cardiology" not in profile.weakness_categories
        assert profile.readiness_score == pytest.approx(53.48, abs=0.01)


class TestReadinessReport:

    @pytest.mark.integration
    def test_report_for_scenario(self, db: Session, test_user: User, scenario_history):
        report = ReadinessService(db).get_readiness_report(test_user.id)

        assert report["overall"]["overall_score"] == pytest.approx(53.48, abs=0.01)
        assert report["breakdown"]["Cardiology"] == {"attempted": 5, "correct": 3, "accuracy": 0.6}
        assert report["coverage"]["overall_coverage"] == 20.0
        assert report["stability"]["trend"] == "stable"
        assert len(report["trends"]) == 1

        recommendations = report["recommendations"]
        assert recommendations[0] == "Increase practice volume on challenging topics to improve accuracy."
        assert recommendations[1].startswith("Expand your practice to include uncovered topics: Endocrine")
        assert recommendations[-1] == "You are making progress but still below target. Intensify your practice."
        assert report["next_steps"][0] == "Consolidate knowledge in weak areas"

    @pytest.mark.integration
    def test_trend_summary(self, db: Session, test_user: User, scenario_history):
        now = datetime.utcnow()
        service = ReadinessService(db, clock=lambda: now - timedelta(days=2))
        service.compute_readiness(test_user.id, use_cache=False)
        create_attempt(db, test_user, scenario_history[2].question, True, time_taken_seconds=60)
        ReadinessService(db, clock=lambda: now).compute_readiness(test_user.id, use_cache=False)

        summary = ReadinessService(db, clock=lambda: now).get_trend_summary(test_user.id, days=30)

        assert summary["summary"]["data_points"] == 2
        assert summary["summary"]["trend"] > 0

    @pytest.mark.integration
    def test_trends_exclude_old_history(self, db: Session, test_user: User, scenario_history):
        now = datetime.utcnow()
        ReadinessService(db, clock=lambda: now - timedelta(days=40)).compute_readiness(test_user.id)

        assert ReadinessService(db, clock=lambda: now).get_readiness_trends(test_user.id, 30) == []
