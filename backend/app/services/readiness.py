"""
Readiness Score Service

Composite exam-readiness score (0-100) built from five bounded components:

- Accuracy (40): IRT-weighted accuracy on attempted questions
- Stability (20): consistency across recent mock exams
- Coverage (20): breadth of category coverage
- Speed (10): time per question against a 90 second ideal
- Consistency (10): mean absolute deviation of recent test scores

Each computation appends a history row, refreshes the readiness cache and
updates the user's strength/weakness categories. A fresh cached payload is
returned unchanged with is_cached=True.

Usage:
    service = ReadinessService(db)
    readiness = service.compute_readiness(user_id)
    report = service.get_readiness_report(user_id)
"""

import math
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from collections import defaultdict

from sqlalchemy.orm import Session

from app.config import AnalyticsSettings, get_settings
from app.models.models import (
    QuestionAttempt,
    ReadinessScoreHistory,
    UserCognitiveProfile,
)
from app.services.item_response_theory import (
    DEFAULT_DISCRIMINATION,
    IRTEstimator,
    estimate_ability,
)
from app.services.analytics_aggregation import (
    CoverageCalculator,
    CoverageResult,
    StabilityCalculator,
    StabilityResult,
)
from app.services.readiness_cache import FreshnessPolicy, ReadinessScoreCache
from app.utils.cache import invalidate_user_cache

logger = logging.getLogger(__name__)

COMPONENT_MAXIMUMS = {
    "accuracy": 40.0,
    "stability": 20.0,
    "coverage": 20.0,
    "speed": 10.0,
    "consistency": 10.0,
}

READY_THRESHOLD = 70.0
NOT_READY_THRESHOLD = 40.0
# Rough days of study per readiness point below the ready threshold
DAYS_PER_POINT = 3

INSUFFICIENT_DATA_MESSAGE = "Insufficient data for readiness calculation"


def irt_weighted_accuracy(raw_accuracy: float, avg_discrimination: float) -> float:
    """
    Nudge raw accuracy by average item discrimination.

    Heuristic approximation kept for score compatibility, not a derived IRT
    quantity: raw * (1 + (a - 1) * 0.1), capped at 100.
    """
    return min(100.0, raw_accuracy * (1 + (avg_discrimination - 1) * 0.1))


def speed_component(avg_time_seconds: float, ideal_seconds: float = 90.0) -> float:
    return min(1.0, ideal_seconds / max(1.0, avg_time_seconds)) * COMPONENT_MAXIMUMS["speed"]


def consistency_component(test_scores: List[float]) -> float:
    """Half marks without any completed test, else 10 - MAD (points)."""
    if not test_scores:
        return COMPONENT_MAXIMUMS["consistency"] / 2

    mean = sum(test_scores) / len(test_scores)
    mad = sum(abs(s - mean) for s in test_scores) / len(test_scores)
    return max(0.0, 10 - (mad / 10) * 10)


def interpret_readiness(overall_score: float, raw_accuracy: float) -> Tuple[str, str, Optional[int]]:
    """Map an overall score to (interpretation, recommendation, days_until_ready)."""
    if overall_score < NOT_READY_THRESHOLD:
        return (
            "Not Ready - Focus Required",
            "Your exam readiness is low. Focus on building foundational knowledge. "
            "Increase daily practice to 100+ questions. Target weak categories first.",
            None,
        )

    if overall_score < READY_THRESHOLD:
        days = math.ceil((READY_THRESHOLD - overall_score) * DAYS_PER_POINT)
        target = min(100, round(raw_accuracy + 10))
        return (
            "Borderline - Delay Exam",
            f"You're borderline. Delay your exam by approximately {days} days. "
            f"Focus on high-yield topics and improve weak categories to {target}% accuracy.",
            days,
        )

    return (
        "Exam Ready - Book Your Exam",
        "You are well-prepared! You can confidently schedule your exam. "
        "Continue targeted revision of weak areas and maintain your study momentum.",
        None,
    )


def get_next_steps(readiness_score: float, accuracy: float, avg_time_seconds: float) -> List[str]:
    """Fixed next-step ladder for a readiness score."""
    if readiness_score < NOT_READY_THRESHOLD:
        steps = [
            "Focus on foundational knowledge - build accuracy to 60%+",
            "Do 50-100 questions daily, grouped by category",
            "Review weak categories thoroughly after each session",
            "Target: Reach 60% accuracy in next 2 weeks",
        ]
    elif readiness_score < READY_THRESHOLD:
        steps = [
            "Consolidate knowledge in weak areas",
            "Practice 80-100 questions daily, mixed difficulty",
            "Take 2-3 mock exams to build confidence",
            "Target: Reach 70%+ accuracy in next 3 weeks",
        ]
    else:
        steps = [
            "Maintain momentum with 60-80 questions daily",
            "Focus on problem areas identified in mocks",
            "Practice time management under exam conditions",
            "Take final mock exam 1 week before real exam",
        ]

    if accuracy < 50:
        steps.append("Consider extending exam date by 2-3 months")

    if avg_time_seconds > 120 and readiness_score > 60:
        steps.append("Work on speed - aim for 90-120 seconds per question")

    return steps


def generate_recommendations(
    readiness: Dict[str, Any],
    stability: StabilityResult,
    coverage: CoverageResult
) -> List[str]:
    """Ordered recommendation templates for a readiness report."""
    components = readiness.get("components", {})
    recommendations = []

    accuracy = components.get("accuracy", 0.0)
    if accuracy < 20:
        recommendations.append("Focus on mastering fundamental concepts. Your accuracy is below target.")
    elif accuracy < 30:
        recommendations.append("Increase practice volume on challenging topics to improve accuracy.")

    if stability.stability_score < 40:
        recommendations.append("Your performance is inconsistent. Practice mock exams under timed conditions.")
    elif stability.trend == "declining":
        recommendations.append(
            "Your recent performance is declining. Review recent mistakes and adjust study strategy."
        )
    elif stability.trend == "improving":
        recommendations.append("Great progress! Your performance is improving. Continue current study approach.")

    if coverage.overall_coverage < 50:
        recommendations.append(
            f"Expand your practice to include uncovered topics: {', '.join(coverage.uncovered[:3])}"
        )

    if components.get("speed", 0.0) < 5:
        recommendations.append("Practice time management. Aim to complete questions within 90 seconds each.")

    overall = readiness.get("overall_score", 0.0)
    if overall < 40:
        recommendations.append("You need significant improvement. Focus on basics before attempting full exams.")
    elif overall < 60:
        recommendations.append("You are making progress but still below target. Intensify your practice.")
    elif overall < 80:
        recommendations.append("Good progress! You are approaching exam readiness. Continue focused practice.")
    else:
        recommendations.append(
            "Excellent! You are well-prepared for the exam. Maintain this level with light revision."
        )

    return recommendations


class ReadinessService:
    """Readiness aggregator over the attempt log and mock exam history."""

    def __init__(
        self,
        db: Session,
        settings: Optional[AnalyticsSettings] = None,
        cache: Optional[ReadinessScoreCache] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.cache = cache or ReadinessScoreCache(
            db, FreshnessPolicy(self.settings.readiness_cache_ttl_seconds), clock
        )
        self.stability_calculator = StabilityCalculator(db, self.settings)
        self.coverage_calculator = CoverageCalculator(db, self.settings)
        self.irt = IRTEstimator(db)

    def _recent_attempts(self, user_id: str) -> List[QuestionAttempt]:
        return self.db.query(QuestionAttempt).filter(
            QuestionAttempt.user_id == user_id
        ).order_by(
            QuestionAttempt.attempted_at.desc()
        ).limit(self.settings.analytics_attempt_window).all()

    def _weighted_accuracy(
        self,
        user_id: str,
        attempts: List[QuestionAttempt],
        raw_accuracy: float
    ) -> Tuple[float, Optional[Any]]:
        """IRT-weighted accuracy and ability, falling back to raw accuracy."""
        try:
            item_params = self.irt.estimate_parameters_for_questions(a.question_id for a in attempts)
            ability = estimate_ability(user_id, attempts, item_params)
            if item_params:
                avg_discrimination = sum(p.discrimination for p in item_params.values()) / len(item_params)
            else:
                avg_discrimination = DEFAULT_DISCRIMINATION
            weighted = irt_weighted_accuracy(raw_accuracy, avg_discrimination)
            if math.isnan(weighted) or math.isinf(weighted):
                raise ValueError(f"non-finite weighted accuracy {weighted}")
            return weighted, ability
        except (ArithmeticError, ValueError) as e:
            logger.warning(f"IRT weighting failed for user {user_id}, using raw accuracy: {e}")
            return raw_accuracy, None

    def compute_readiness(self, user_id: str, use_cache: bool = True) -> Dict[str, Any]:
        """
        Compute (or serve from cache) the readiness payload for a user.

        Empty attempt history yields a zero score with an insufficient-data
        message and persists nothing.
        """
        if use_cache:
            cached = self.cache.get(user_id)
            if cached is not None:
                return {**cached, "is_cached": True}

        attempts = self._recent_attempts(user_id)
        if not attempts:
            return {
                "user_id": user_id,
                "overall_score": 0.0,
                "components": {name: 0.0 for name in COMPONENT_MAXIMUMS},
                "details": {"irt_ability": None, "attempts_analyzed": 0},
                "interpretation": None,
                "recommendation": None,
                "days_until_ready": None,
                "message": INSUFFICIENT_DATA_MESSAGE,
                "computed_at": None,
                "is_cached": False,
            }

        raw_accuracy = sum(1 for a in attempts if a.is_correct) / len(attempts) * 100
        weighted_accuracy, ability = self._weighted_accuracy(user_id, attempts, raw_accuracy)

        stability = self.stability_calculator.calculate_stability(user_id)
        coverage = self.coverage_calculator.calculate_coverage(user_id)

        avg_time_seconds = sum(a.time_taken_seconds for a in attempts) / len(attempts)
        recent_tests = self.stability_calculator.get_completed_exams(
            user_id, limit=self.settings.consistency_test_window
        )

        components = {
            "accuracy": round((weighted_accuracy / 100) * COMPONENT_MAXIMUMS["accuracy"], 2),
            "stability": round((stability.stability_score / 100) * COMPONENT_MAXIMUMS["stability"], 2),
            "coverage": round((coverage.overall_coverage / 100) * COMPONENT_MAXIMUMS["coverage"], 2),
            "speed": round(speed_component(avg_time_seconds, self.settings.ideal_time_per_question_seconds), 2),
            "consistency": round(consistency_component([t.percentage_score for t in recent_tests]), 2),
        }
        # Sum of rounded components, so the parts always add up to the total
        overall_score = round(sum(components.values()), 2)

        interpretation, recommendation, days_until_ready = interpret_readiness(overall_score, raw_accuracy)
        computed_at = self.clock()

        payload = {
            "user_id": user_id,
            "overall_score": overall_score,
            "components": components,
            "details": {
                "raw_accuracy": round(raw_accuracy, 2),
                "irt_weighted_accuracy": round(weighted_accuracy, 2),
                "irt_ability": round(ability.theta, 2) if ability else None,
                "ability_standard_error": round(ability.standard_error, 2) if ability else None,
                "ability_confidence": round(ability.confidence, 2) if ability else None,
                "stability_trend": stability.trend,
                "avg_time_per_question": round(avg_time_seconds, 1),
                "attempts_analyzed": len(attempts),
            },
            "interpretation": interpretation,
            "recommendation": recommendation,
            "days_until_ready": days_until_ready,
            "computed_at": computed_at.isoformat(),
        }

        self.db.add(ReadinessScoreHistory(
            user_id=user_id,
            overall_score=overall_score,
            components=components,
            interpretation=interpretation,
            recommendation=recommendation,
            computed_at=computed_at,
        ))
        self.cache.put(user_id, payload, computed_at)
        self._update_profile_categories(user_id, overall_score, payload["details"]["irt_ability"], coverage)
        self.db.commit()

        logger.info(f"Readiness for user {user_id}: {overall_score} ({interpretation})")
        return {**payload, "is_cached": False}

    def _update_profile_categories(
        self,
        user_id: str,
        overall_score: float,
        irt_ability: Optional[float],
        coverage: CoverageResult
    ) -> None:
        weak = [c for c, data in coverage.by_category.items() if data["coverage"] < 50]
        strong = [t["category"] for t in coverage.top_covered if t["coverage"] > 0]

        profile = self.db.query(UserCognitiveProfile).filter(
            UserCognitiveProfile.user_id == user_id
        ).first()
        if profile is None:
            profile = UserCognitiveProfile(user_id=user_id)
            self.db.add(profile)

        profile.strength_categories = strong
        profile.weakness_categories = weak
        profile.readiness_score = overall_score
        profile.irt_ability = irt_ability
        profile.last_updated = self.clock()
        invalidate_user_cache(user_id)

    def get_readiness_breakdown(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Attempted/correct/accuracy per category over the analytics window."""
        breakdown = defaultdict(lambda: {"attempted": 0, "correct": 0, "accuracy": 0.0})
        for attempt in self._recent_attempts(user_id):
            entry = breakdown[attempt.category or "Unknown"]
            entry["attempted"] += 1
            if attempt.is_correct:
                entry["correct"] += 1

        for entry in breakdown.values():
            entry["accuracy"] = round(entry["correct"] / max(1, entry["attempted"]), 4)

        return dict(breakdown)

    def get_readiness_trends(self, user_id: str, days: int = 30) -> List[Dict[str, Any]]:
        """History entries from the last `days` days, oldest first."""
        cutoff = self.clock() - timedelta(days=days)
        history = self.db.query(ReadinessScoreHistory).filter(
            ReadinessScoreHistory.user_id == user_id,
            ReadinessScoreHistory.computed_at >= cutoff
        ).order_by(ReadinessScoreHistory.computed_at).all()

        return [
            {
                "date": h.computed_at.isoformat(),
                "score": h.overall_score,
                "components": h.components,
                "interpretation": h.interpretation,
            }
            for h in history
        ]

    def get_trend_summary(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        trends = self.get_readiness_trends(user_id, days)
        scores = [t["score"] for t in trends]

        if not scores:
            return {
                "scores": [],
                "summary": {"average": 0.0, "trend": 0.0, "highest": 0.0, "lowest": 0.0, "data_points": 0},
            }

        return {
            "scores": trends,
            "summary": {
                "average": round(sum(scores) / len(scores), 2),
                "trend": round(scores[-1] - scores[0], 2),
                "highest": max(scores),
                "lowest": min(scores),
                "data_points": len(scores),
            },
        }

    def get_readiness_report(self, user_id: str) -> Dict[str, Any]:
        """Score, per-category breakdown, 30-day trend, stability and coverage in one payload."""
        readiness = self.compute_readiness(user_id)
        stability = self.stability_calculator.calculate_stability(user_id)
        coverage = self.coverage_calculator.calculate_coverage(user_id)
        details = readiness.get("details", {})

        return {
            "overall": readiness,
            "breakdown": self.get_readiness_breakdown(user_id),
            "trends": self.get_readiness_trends(user_id, 30),
            "stability": stability.to_dict(),
            "coverage": coverage.to_dict(),
            "recommendations": generate_recommendations(readiness, stability, coverage),
            "next_steps": get_next_steps(
                readiness.get("overall_score", 0.0),
                details.get("raw_accuracy", 0.0),
                details.get("avg_time_per_question", 0.0),
            ),
        }
