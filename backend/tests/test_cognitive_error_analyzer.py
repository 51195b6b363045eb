"""
Tests for error classification, clinical pattern mining and the cognitive profile.
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy.orm import Session

from app.config import AnalyticsSettings
from app.models.models import ErrorClassification, User
from app.services.cognitive_error_analyzer import (
    ERROR_RULES,
    CognitiveErrorAnalyzer,
    ErrorContext,
    ErrorKind,
    build_pattern_recommendations,
    classify_error,
    count_clinical_values,
    impact_for,
    significant_words,
)
from app.utils.cache import cache, profile_cache_key
from tests.factories import create_attempt, create_catalog, create_question, create_user


VITALS_STEM = (
    "A 67-year-old woman has a pulse of 118 bpm, blood pressure 88/52 mmHg "
    "and temperature 38.9°C. Which of the following is the most likely diagnosis?"
)

SETTINGS = AnalyticsSettings()


class TestErrorHelpers:

    @pytest.mark.unit
    def test_counts_clinical_values(self):
        assert count_clinical_values(VITALS_STEM) == 3
        assert count_clinical_values("Sodium 128 mEq/L and glucose 45 mg/dL") == 2
        assert count_clinical_values("A 30-year-old man with a cough") == 0

    @pytest.mark.unit
    def test_significant_words_skip_short_and_stop_words(self):
        assert significant_words("The beta blocker for an MI") == {"beta", "blocker"}

    @pytest.mark.unit
    def test_decision_table_ends_with_catch_all(self):
        assert ERROR_RULES[-1].kind == ErrorKind.KNOWLEDGE_GAP


class TestClassifyError:

    @pytest.mark.unit
    def test_time_pressure_after_prior_success(self):
        ctx = ErrorContext("Heparin", "Aspirin", 130, answered_correctly_before=True)
        result = classify_error(ctx, SETTINGS)
        assert result.error_kind == ErrorKind.TIME_PRESSURE
        assert result.confidence == 0.7

    @pytest.mark.unit
    def test_severe_time_pressure_raises_confidence(self):
        ctx = ErrorContext("Heparin", "Aspirin", 160, answered_correctly_before=True)
        result = classify_error(ctx, SETTINGS)
        assert result.error_kind == ErrorKind.TIME_PRESSURE
        assert result.confidence == 0.95
        assert "160s" in result.reasoning

    @pytest.mark.unit
    def test_slow_answer_without_prior_success_is_not_time_pressure(self):
        ctx = ErrorContext("Heparin", "Aspirin", 200, answered_correctly_before=False)
        assert classify_error(ctx, SETTINGS).error_kind == ErrorKind.KNOWLEDGE_GAP

    @pytest.mark.unit
    def test_data_interpretation(self):
        ctx = ErrorContext("Septic shock", "Cardiogenic shock", 90, stem=VITALS_STEM)
        result = classify_error(ctx, SETTINGS)
        assert result.error_kind == ErrorKind.DATA_INTERPRETATION
        assert result.confidence == 0.7

    @pytest.mark.unit
    def test_reasoning_error_needs_shared_terms_and_speed(self):
        quick = ErrorContext("Beta adrenergic receptor blocker", "Alpha adrenergic receptor blocker", 45)
        slow = ErrorContext("Beta adrenergic receptor blocker", "Alpha adrenergic receptor blocker", 75)
        assert classify_error(quick, SETTINGS).error_kind == ErrorKind.REASONING_ERROR
        assert classify_error(slow, SETTINGS).error_kind == ErrorKind.KNOWLEDGE_GAP

    @pytest.mark.unit
    def test_knowledge_gap_confidence(self):
        result = classify_error(ErrorContext("Heparin", "Aspirin", 80), SETTINGS)
        assert result.error_kind == ErrorKind.KNOWLEDGE_GAP
        assert result.confidence == 0.55

    @pytest.mark.unit
    def test_rule_priority(self):
        both_data_and_reasoning = ErrorContext(
            "Beta adrenergic receptor blocker", "Alpha adrenergic receptor blocker", 45, stem=VITALS_STEM
        )
        assert classify_error(both_data_and_reasoning, SETTINGS).error_kind == ErrorKind.DATA_INTERPRETATION

        everything = ErrorContext(
            "Beta adrenergic receptor blocker", "Alpha adrenergic receptor blocker", 130,
            stem=VITALS_STEM, answered_correctly_before=True
        )
        assert classify_error(everything, SETTINGS).error_kind == ErrorKind.TIME_PRESSURE


class TestPatternHelpers:

    @pytest.mark.unit
    def test_impact_tiers(self):
        assert impact_for(5) == "high"
        assert impact_for(3) == "medium"
        assert impact_for(2) == "low"

    @pytest.mark.unit
    def test_recommendations_are_limited(self):
        recommendations = build_pattern_recommendations(["Cardiology", "Renal"], ["Neurology"], limit=2)
        assert len(recommendations) == 2
        assert recommendations[0].startswith("Focus on Cardiology")
        assert recommendations[1].startswith("Secondary focus on Renal")


class TestCognitiveErrorAnalyzer:

    @pytest.mark.integration
    def test_missing_question_returns_default_and_stores_nothing(self, db: Session, test_user: User):
        result = CognitiveErrorAnalyzer(db).analyze_error(test_user.id, "missing", "Heparin", "Aspirin", 40)

        assert result["error_kind"] == "knowledge_gap"
        assert result["confidence"] == 0.5
        assert result["reasoning"] == "Error analysis not available"
        assert db.query(ErrorClassification).count() == 0

    @pytest.mark.integration
    def test_prior_correct_attempt_drives_time_pressure(self, db: Session, test_user: User, test_question):
        create_attempt(db, test_user, test_question, True, attempted_at=datetime.utcnow() - timedelta(days=2))

        result = CognitiveErrorAnalyzer(db).analyze_error(
            test_user.id, test_question.id, "Heparin", "Aspirin", 135
        )

        assert result["error_kind"] == "time_pressure"
        stored = db.query(ErrorClassification).filter(ErrorClassification.user_id == test_user.id).one()
        assert stored.error_kind == "time_pressure"
        assert stored.question_id == test_question.id

    @pytest.mark.integration
    def test_clinical_patterns(self, db: Session, test_user: User):
        catalog = create_catalog(db, ["Cardiology", "Renal", "Neurology"])
        for _ in range(5):
            create_attempt(db, test_user, catalog["Cardiology"][0], False)
            create_attempt(db, test_user, catalog["Neurology"][0], True)
        for _ in range(3):
            create_attempt(db, test_user, catalog["Renal"][0], False)
        create_attempt(db, test_user, catalog["Neurology"][0], False)
        create_attempt(
            db, test_user, catalog["Renal"][0], False,
            attempted_at=datetime.utcnow() - timedelta(days=45),
        )

        result = CognitiveErrorAnalyzer(db).analyze_clinical_patterns(test_user.id)

        assert [(p["category"], p["frequency"], p["impact"]) for p in result["patterns"]] == [
            ("Cardiology", 5, "high"),
            ("Renal", 3, "medium"),
            ("Neurology", 1, "low"),
        ]
        assert result["stretch_areas"] == ["Cardiology"]
        assert result["strength_areas"] == ["Neurology"]
        assert result["recommendations"][0].startswith("Focus on Cardiology")
        assert result["recommendations"][1].startswith("Maintain strength in Neurology")

    @pytest.mark.integration
    def test_no_errors_means_no_patterns(self, db: Session, test_user: User, test_question):
        create_attempt(db, test_user, test_question, True)
        result = CognitiveErrorAnalyzer(db).analyze_clinical_patterns(test_user.id)
        assert result == {"patterns": [], "stretch_areas": [], "strength_areas": [], "recommendations": []}

    @pytest.mark.integration
    def test_error_counts_prefer_classifications_over_declared_kinds(self, db: Session, test_user: User):
        classified = create_question(db)
        declared_only = create_question(db)
        create_attempt(db, test_user, classified, False, declared_error_kind="reasoning_error")
        create_attempt(db, test_user, declared_only, False, declared_error_kind="reasoning_error")

        analyzer = CognitiveErrorAnalyzer(db)
        analyzer.analyze_error(test_user.id, classified.id, "Heparin", "Aspirin", 80)

        counts = analyzer.get_error_pattern_counts(test_user.id)
        assert counts == {
            "knowledge_gap": 1,
            "reasoning_error": 1,
            "data_interpretation": 0,
            "time_pressure": 0,
        }

    @pytest.mark.integration
    def test_profile_is_built_and_cached(self, db: Session, test_user: User):
        catalog = create_catalog(db, ["Cardiology"])
        for _ in range(5):
            create_attempt(db, test_user, catalog["Cardiology"][0], False)

        analyzer = CognitiveErrorAnalyzer(db)
        profile = analyzer.get_cognitive_profile(test_user.id)

        assert profile["user_id"] == test_user.id
        assert profile["weakness_categories"] == ["Cardiology"]
        assert set(profile["error_pattern_counts"]) == {kind.value for kind in ErrorKind}
        assert cache.get(profile_cache_key(test_user.id)) == profile

    @pytest.mark.integration
    def test_profile_update_invalidates_cache(self, db: Session):
        user = create_user(db)
        question = create_question(db, category="Renal")
        create_attempt(db, user, question, False)

        analyzer = CognitiveErrorAnalyzer(db)
        analyzer.get_cognitive_profile(user.id)
        assert cache.get(profile_cache_key(user.id)) is not None

        analyzer.analyze_error(user.id, question.id, "Heparin", "Aspirin", 80)
        assert cache.get(profile_cache_key(user.id)) is None

        profile = analyzer.update_cognitive_profile(user.id)
        assert profile["error_pattern_counts"]["knowledge_gap"] == 1
