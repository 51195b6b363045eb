"""
Analytics Aggregation

Stability and coverage calculators used by the readiness engine, plus the
per-user aggregates the background job caches (daily metrics, recall heatmap).

- StabilityCalculator: variance and trend of recent mock-exam scores
- CoverageCalculator: share of the category space practiced past a minimum
- AnalyticsAggregationService: daily metrics snapshot, topic heatmap, hot topics

Usage:
    from app.services.analytics_aggregation import StabilityCalculator, CoverageCalculator

    stability = StabilityCalculator(db).calculate_stability(user_id)
    coverage = CoverageCalculator(db).calculate_coverage(user_id)
"""

import math
import logging
from typing import Any, Dict, List, Optional, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from collections import Counter

from sqlalchemy.orm import Session
from sqlalchemy import case, func

from app.config import AnalyticsSettings, get_settings
from app.models.models import (
    DailyMetricsSnapshot,
    Question,
    QuestionAttempt,
    RecallIntelligence,
    TestSession,
)

logger = logging.getLogger(__name__)

# Standard deviation (percentage points) treated as maximal instability
MAX_SCORE_STD_DEV = 40.0
TREND_RECENT_WINDOW = 5
TREND_MARGIN = 2.0
TOP_COVERED_LIMIT = 5

PERIOD_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}


@dataclass
class StabilityResult:
    stability_score: float  # 0-100
    variance: float
    std_dev: float
    trend: str  # "improving", "declining", "stable"
    series: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stability_score": self.stability_score,
            "variance": self.variance,
            "std_dev": self.std_dev,
            "trend": self.trend,
            "series": self.series,
        }


@dataclass
class CoverageResult:
    overall_coverage: float  # 0-100
    by_category: Dict[str, Dict[str, float]] = field(default_factory=dict)
    uncovered: List[str] = field(default_factory=list)
    top_covered: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_coverage": self.overall_coverage,
            "by_category": self.by_category,
            "uncovered": self.uncovered,
            "top_covered": self.top_covered,
        }


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def stability_from_scores(
    scores: Sequence[float],
    min_exams: int = 3,
    series: Optional[List[Dict[str, Any]]] = None
) -> StabilityResult:
    """
    Stability of an oldest-first series of percentage scores.

    Fewer than min_exams scores is not an error: the neutral score 50 with a
    stable trend is returned.
    """
    series = series if series is not None else [{"score": s} for s in scores]

    if len(scores) < min_exams:
        return StabilityResult(
            stability_score=50.0, variance=0.0, std_dev=0.0, trend="stable", series=series
        )

    mean = _mean(scores)
    variance = sum((s - mean) ** 2 for s in scores) / len(scores)
    std_dev = math.sqrt(variance)
    stability_score = max(0.0, min(100.0, 100 - (std_dev / MAX_SCORE_STD_DEV) * 100))

    recent = scores[-TREND_RECENT_WINDOW:]
    older = scores[:-TREND_RECENT_WINDOW] or scores
    recent_mean = _mean(recent)
    older_mean = _mean(older)

    trend = "stable"
    if recent_mean > older_mean + TREND_MARGIN:
        trend = "improving"
    elif recent_mean < older_mean - TREND_MARGIN:
        trend = "declining"

    return StabilityResult(
        stability_score=round(stability_score, 2),
        variance=round(variance, 2),
        std_dev=round(std_dev, 2),
        trend=trend,
        series=series,
    )


def coverage_from_counts(
    category_counts: Dict[str, int],
    all_categories: Sequence[str],
    min_questions_per_topic: int = 5
) -> CoverageResult:
    """
    Coverage of the category space given attempt counts per category.

    A category is covered only when it reaches 100%, i.e. at least
    min_questions_per_topic attempts.
    """
    if not category_counts:
        return CoverageResult(overall_coverage=0.0)

    minimum = max(1, min_questions_per_topic)
    categories = sorted(set(c for c in all_categories if c))

    by_category = {}
    covered = 0
    for category in categories:
        attempted = category_counts.get(category, 0)
        coverage = min(100.0, (attempted / minimum) * 100)
        by_category[category] = {"attempted": attempted, "coverage": coverage}
        if coverage >= 100.0:
            covered += 1

    overall = (covered / len(categories)) * 100 if categories else 0.0
    uncovered = [c for c in categories if category_counts.get(c, 0) < minimum]

    ranked = sorted(by_category.items(), key=lambda item: item[1]["coverage"], reverse=True)
    top_covered = [
        {"category": category, "coverage": round(data["coverage"])}
        for category, data in ranked[:TOP_COVERED_LIMIT]
    ]

    return CoverageResult(
        overall_coverage=round(overall, 2),
        by_category=by_category,
        uncovered=uncovered,
        top_covered=top_covered,
    )


class StabilityCalculator:
    """Performance stability across a user's completed mock exams."""

    def __init__(self, db: Session, settings: Optional[AnalyticsSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def get_completed_exams(self, user_id: str, limit: Optional[int] = None) -> List[TestSession]:
        """Most recent completed sessions, newest first."""
        return self.db.query(TestSession).filter(
            TestSession.user_id == user_id,
            TestSession.status == "completed",
            TestSession.completed_at.isnot(None)
        ).order_by(
            TestSession.completed_at.desc()
        ).limit(limit or self.settings.mock_exam_window).all()

    def calculate_stability(self, user_id: str, min_exams: Optional[int] = None) -> StabilityResult:
        if min_exams is None:
            min_exams = self.settings.min_exams_for_stability

        sessions = list(reversed(self.get_completed_exams(user_id)))
        series = [
            {"date": s.completed_at.isoformat(), "score": s.percentage_score}
            for s in sessions
        ]
        return stability_from_scores([s["score"] for s in series], min_exams, series)


class CoverageCalculator:
    """Breadth of topic coverage against the question catalog."""

    def __init__(self, db: Session, settings: Optional[AnalyticsSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def get_all_categories(self) -> List[str]:
        rows = self.db.query(Question.category).filter(Question.category.isnot(None)).distinct().all()
        return [r[0] for r in rows if r[0]]

    def get_category_counts(self, user_id: str) -> Dict[str, int]:
        """Attempt counts per category, falling back to the catalog category."""
        category = func.coalesce(QuestionAttempt.category, Question.category)
        rows = self.db.query(
            category,
            func.count(QuestionAttempt.id)
        ).outerjoin(
            Question, Question.id == QuestionAttempt.question_id
        ).filter(
            QuestionAttempt.user_id == user_id
        ).group_by(category).all()

        return {cat: int(count) for cat, count in rows if cat}

    def calculate_coverage(self, user_id: str, min_questions_per_topic: Optional[int] = None) -> CoverageResult:
        if min_questions_per_topic is None:
            min_questions_per_topic = self.settings.min_questions_per_topic

        counts = self.get_category_counts(user_id)
        if not counts:
            return CoverageResult(overall_coverage=0.0)

        return coverage_from_counts(counts, self.get_all_categories(), min_questions_per_topic)


class AnalyticsAggregationService:
    """Per-user aggregates refreshed by the background job."""

    def __init__(self, db: Session):
        self.db = db

    def _attempts_between(self, user_id: str, start: datetime, end: datetime) -> List[QuestionAttempt]:
        return self.db.query(QuestionAttempt).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.attempted_at >= start,
            QuestionAttempt.attempted_at < end
        ).all()

    def aggregate_daily_metrics(self, user_id: str, day: Optional[date] = None) -> Dict[str, Any]:
        """
        Aggregate one day of attempts and store it as a DailyMetricsSnapshot.

        Caller commits.
        """
        day = day or datetime.utcnow().date()
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)

        attempts = self._attempts_between(user_id, start, end)
        metrics = {
            "date": day.isoformat(),
            "total_attempts": 0,
            "correct_answers": 0,
            "accuracy": 0.0,
            "avg_time_per_question_ms": 0,
            "categories_attempted": 0,
            "new_categories_explored": 0,
        }

        if attempts:
            previous = self._attempts_between(user_id, start - timedelta(days=1), start)
            previous_categories = {a.category for a in previous}
            today_categories = {a.category for a in attempts}
            correct = sum(1 for a in attempts if a.is_correct)
            total_time = sum(a.time_taken_ms or 0 for a in attempts)

            metrics.update({
                "total_attempts": len(attempts),
                "correct_answers": correct,
                "accuracy": round(correct / len(attempts), 4),
                "avg_time_per_question_ms": round(total_time / len(attempts)),
                "categories_attempted": len(today_categories),
                "new_categories_explored": len(today_categories - previous_categories),
            })

        snapshot = self.db.query(DailyMetricsSnapshot).filter(
            DailyMetricsSnapshot.user_id == user_id,
            DailyMetricsSnapshot.metrics_date == day
        ).first()
        if snapshot is None:
            snapshot = DailyMetricsSnapshot(user_id=user_id, metrics_date=day)
            self.db.add(snapshot)

        snapshot.total_attempts = metrics["total_attempts"]
        snapshot.correct_answers = metrics["correct_answers"]
        snapshot.accuracy = metrics["accuracy"]
        snapshot.avg_time_per_question_ms = metrics["avg_time_per_question_ms"]
        snapshot.categories_attempted = metrics["categories_attempted"]
        snapshot.new_categories_explored = metrics["new_categories_explored"]

        return metrics

    def update_recall_heatmap(self, user_id: str, period: str = "daily") -> Dict[str, int]:
        """
        Refresh topic frequency rows for attempts within the period.

        Returns the topic -> frequency map written. Caller commits.
        """
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown heatmap period: {period}")

        now = datetime.utcnow()
        attempts = self.db.query(QuestionAttempt).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.attempted_at >= now - timedelta(days=PERIOD_DAYS[period])
        ).all()
        frequency = Counter(a.category for a in attempts if a.category)

        existing = {
            row.topic: row
            for row in self.db.query(RecallIntelligence).filter(
                RecallIntelligence.user_id == user_id,
                RecallIntelligence.topic.in_(list(frequency.keys()))
            ).all()
        } if frequency else {}

        for topic, count in frequency.items():
            row = existing.get(topic)
            if row is None:
                row = RecallIntelligence(user_id=user_id, topic=topic)
                self.db.add(row)
            row.frequency = count
            row.period = period
            row.last_seen = now

        # Later calls in the same session must see these rows
        self.db.flush()
        return dict(frequency)

    def get_hot_topics(self, user_id: str, limit: int = 10, days_back: int = 30) -> List[Dict[str, Any]]:
        """Most frequently recalled topics with their recent success rate."""
        heatmap = self.db.query(RecallIntelligence).filter(
            RecallIntelligence.user_id == user_id
        ).order_by(
            RecallIntelligence.frequency.desc(),
            RecallIntelligence.topic
        ).limit(limit).all()

        if not heatmap:
            return []

        cutoff = datetime.utcnow() - timedelta(days=days_back)
        topics = [h.topic for h in heatmap]

        rows = self.db.query(
            QuestionAttempt.category,
            QuestionAttempt.is_correct
        ).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.category.in_(topics),
            QuestionAttempt.attempted_at >= cutoff
        ).all()

        totals = Counter(category for category, _ in rows)
        corrects = Counter(category for category, is_correct in rows if is_correct)

        return [
            {
                "topic": h.topic,
                "frequency": h.frequency,
                "success_rate": round(corrects[h.topic] / totals[h.topic] * 100, 2) if totals[h.topic] else 0.0,
                "last_seen": h.last_seen.isoformat() if h.last_seen else None,
            }
            for h in heatmap
        ]

    def get_performance_summary(self, user_id: str) -> Dict[str, Any]:
        total, correct = self.db.query(
            func.count(QuestionAttempt.id),
            func.sum(case((QuestionAttempt.is_correct.is_(True), 1), else_=0))
        ).filter(QuestionAttempt.user_id == user_id).one()

        total = int(total or 0)
        correct = int(correct or 0)
        return {
            "total_attempts": total,
            "correct_answers": correct,
            "accuracy": round(correct / total * 100, 2) if total else 0.0,
        }
