"""
Cognitive Error Analyzer

Classifies each incorrect attempt into one of four error kinds and mines
recurring weak categories over a rolling window.

Error kinds (first matching rule wins):
- time_pressure: answered this question correctly before, but took >120s now
- data_interpretation: stem carries 3+ numeric vitals/lab values and the answer is wrong
- reasoning_error: wrong answer shares 2+ significant words with the correct one, answered in <60s
- knowledge_gap: everything else

The rules live in an ordered decision table so the priority is explicit and
each predicate can be tested on its own.

Usage:
    analyzer = CognitiveErrorAnalyzer(db)
    result = analyzer.analyze_error(user_id, question_id, "Beta blocker", "Calcium channel blocker", 45)
    profile = analyzer.get_cognitive_profile(user_id)
"""

import re
import logging
from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from collections import Counter
from enum import Enum

from sqlalchemy.orm import Session

from app.config import AnalyticsSettings, get_settings
from app.models.models import (
    ErrorClassification,
    Question,
    QuestionAttempt,
    UserCognitiveProfile,
)
from app.utils.cache import cache, invalidate_user_cache, profile_cache_key

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    KNOWLEDGE_GAP = "knowledge_gap"
    REASONING_ERROR = "reasoning_error"
    DATA_INTERPRETATION = "data_interpretation"
    TIME_PRESSURE = "time_pressure"


BASE_CONFIDENCE = 0.7
SEVERE_TIME_PRESSURE_CONFIDENCE = 0.95
KNOWLEDGE_GAP_CONFIDENCE = 0.55
UNAVAILABLE_CONFIDENCE = 0.5

MIN_CLINICAL_VALUES = 3
MIN_SHARED_WORDS = 2
PRIOR_ATTEMPTS_CHECKED = 5

HIGH_IMPACT_ERRORS = 5
MEDIUM_IMPACT_ERRORS = 3
STRENGTH_MIN_CORRECT = 5

# A number followed by a vitals/lab unit, e.g. "110 bpm", "7.2 g/dL", "38.5°C"
CLINICAL_VALUE_PATTERN = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:bpm|mmhg|meq/l|meq|mmol/l|mg/dl|g/dl|u/l|iu/l|°c|°f|/min|breaths/min|%)",
    re.IGNORECASE,
)

WORD_PATTERN = re.compile(r"[a-z0-9]+")

STOP_WORDS = {
    "the", "and", "for", "with", "from", "that", "this", "are", "was", "were",
    "has", "have", "had", "not", "but", "its", "into", "than", "then", "which",
    "who", "what", "when", "where", "any", "all", "due", "per", "via",
}

REASONING_TEMPLATES = {
    ErrorKind.KNOWLEDGE_GAP: (
        "You may lack fundamental knowledge or definitions needed to answer this question. "
        "Review core concepts."
    ),
    ErrorKind.REASONING_ERROR: (
        "Your logic was sound but you missed a key clinical discriminator. "
        "Practice systematic differential diagnosis."
    ),
    ErrorKind.DATA_INTERPRETATION: (
        "You may have misread clinical data (vitals, labs). "
        "Practice extracting key values from complex cases."
    ),
    ErrorKind.TIME_PRESSURE: (
        "You have answered this correctly before ({time_taken:.0f}s taken this time). "
        "Focus on speed optimization for this topic."
    ),
}


@dataclass
class ErrorContext:
    """Everything the decision table looks at for one incorrect answer."""
    user_answer: str
    correct_answer: str
    time_taken_seconds: float
    stem: str = ""
    answered_correctly_before: bool = False


@dataclass
class ErrorRule:
    kind: ErrorKind
    predicate: Callable[[ErrorContext, AnalyticsSettings], bool]
    evidence: str


@dataclass
class ErrorAnalysis:
    error_kind: ErrorKind
    confidence: float
    reasoning: str
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_kind": self.error_kind.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "evidence": self.evidence,
        }


def significant_words(text: str) -> Set[str]:
    return {
        w for w in WORD_PATTERN.findall((text or "").lower())
        if len(w) >= 3 and w not in STOP_WORDS
    }


def count_clinical_values(stem: str) -> int:
    return len(CLINICAL_VALUE_PATTERN.findall(stem or ""))


def is_wrong_answer(user_answer: str, correct_answer: str) -> bool:
    return (correct_answer or "").strip().lower() not in (user_answer or "").strip().lower()


def _time_pressure(ctx: ErrorContext, settings: AnalyticsSettings) -> bool:
    return ctx.answered_correctly_before and ctx.time_taken_seconds > settings.time_pressure_threshold_seconds


def _data_interpretation(ctx: ErrorContext, settings: AnalyticsSettings) -> bool:
    return (
        count_clinical_values(ctx.stem) >= MIN_CLINICAL_VALUES
        and is_wrong_answer(ctx.user_answer, ctx.correct_answer)
    )


def _reasoning_error(ctx: ErrorContext, settings: AnalyticsSettings) -> bool:
    shared = significant_words(ctx.user_answer) & significant_words(ctx.correct_answer)
    return len(shared) >= MIN_SHARED_WORDS and ctx.time_taken_seconds < settings.quick_answer_threshold_seconds


ERROR_RULES: List[ErrorRule] = [
    ErrorRule(ErrorKind.TIME_PRESSURE, _time_pressure,
              "answered correctly before but exceeded the time-pressure threshold"),
    ErrorRule(ErrorKind.DATA_INTERPRETATION, _data_interpretation,
              "stem contains several numeric clinical values"),
    ErrorRule(ErrorKind.REASONING_ERROR, _reasoning_error,
              "wrong answer shares key terms with the correct answer and was answered quickly"),
    ErrorRule(ErrorKind.KNOWLEDGE_GAP, lambda ctx, settings: True,
              "no behavioural signal beyond the wrong answer"),
]


def classify_error(ctx: ErrorContext, settings: Optional[AnalyticsSettings] = None) -> ErrorAnalysis:
    """Evaluate the decision table top-down and return the first match."""
    settings = settings or get_settings()

    for rule in ERROR_RULES:
        if not rule.predicate(ctx, settings):
            continue

        confidence = BASE_CONFIDENCE
        if rule.kind == ErrorKind.TIME_PRESSURE and ctx.time_taken_seconds > settings.severe_time_pressure_seconds:
            confidence = SEVERE_TIME_PRESSURE_CONFIDENCE
        elif rule.kind == ErrorKind.KNOWLEDGE_GAP:
            confidence = KNOWLEDGE_GAP_CONFIDENCE

        return ErrorAnalysis(
            error_kind=rule.kind,
            confidence=confidence,
            reasoning=REASONING_TEMPLATES[rule.kind].format(time_taken=ctx.time_taken_seconds),
            evidence=[rule.evidence],
        )

    # ERROR_RULES ends with a catch-all
    raise AssertionError("error decision table has no default rule")


def impact_for(error_count: int) -> str:
    if error_count >= HIGH_IMPACT_ERRORS:
        return "high"
    if error_count >= MEDIUM_IMPACT_ERRORS:
        return "medium"
    return "low"


def build_pattern_recommendations(stretch_areas: List[str], strength_areas: List[str], limit: int = 5) -> List[str]:
    recommendations = []

    if stretch_areas:
        recommendations.append(
            f"Focus on {stretch_areas[0]}: Your highest error category. Spend 40% of study time here."
        )
    if len(stretch_areas) > 1:
        recommendations.append(
            f"Secondary focus on {stretch_areas[1]}: Your second weakest area. Allocate 30% of study time."
        )
    if strength_areas:
        recommendations.append(
            f"Maintain strength in {strength_areas[0]}: You're doing well here. Light weekly reinforcement only."
        )

    recommendations.append("Practice mixed questions to develop rapid topic-switching ability.")
    recommendations.append("Review each missed question to understand the reasoning, not just the answer.")

    return recommendations[:limit]


class CognitiveErrorAnalyzer:
    """
    Error classification and pattern mining for one database session.

    Profiles are rebuilt whole on every update and read through the hybrid
    cache.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[AnalyticsSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def analyze_error(
        self,
        user_id: str,
        question_id: str,
        user_answer: str,
        correct_answer: str,
        time_taken_seconds: float,
        explanation: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Classify one incorrect answer and store the classification.

        A question missing from the catalog yields the default knowledge_gap
        classification at confidence 0.5 and nothing is stored.
        """
        question = self.db.query(Question).filter(Question.id == question_id).first()
        if question is None:
            logger.warning(f"Question {question_id} not found, returning default classification for {user_id}")
            return ErrorAnalysis(
                error_kind=ErrorKind.KNOWLEDGE_GAP,
                confidence=UNAVAILABLE_CONFIDENCE,
                reasoning="Error analysis not available",
            ).to_dict()

        prior_attempts = self.db.query(QuestionAttempt).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.question_id == question_id
        ).order_by(
            QuestionAttempt.attempted_at.desc()
        ).limit(PRIOR_ATTEMPTS_CHECKED).all()

        ctx = ErrorContext(
            user_answer=user_answer or "",
            correct_answer=correct_answer or question.correct_answer or "",
            time_taken_seconds=float(time_taken_seconds or 0),
            stem=question.stem or "",
            answered_correctly_before=any(a.is_correct for a in prior_attempts),
        )
        analysis = classify_error(ctx, self.settings)

        self.db.add(ErrorClassification(
            user_id=user_id,
            question_id=question_id,
            error_kind=analysis.error_kind.value,
            confidence=analysis.confidence,
            evidence=analysis.evidence,
            reasoning=analysis.reasoning,
            created_at=self.clock(),
        ))
        self.db.commit()
        invalidate_user_cache(user_id)

        return analysis.to_dict()

    def _attempts_with_category_since(self, user_id: str, cutoff: datetime) -> List[Any]:
        return self.db.query(
            QuestionAttempt,
            Question.category
        ).outerjoin(
            Question, Question.id == QuestionAttempt.question_id
        ).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.attempted_at >= cutoff
        ).all()

    def analyze_clinical_patterns(self, user_id: str, days_back: Optional[int] = None) -> Dict[str, Any]:
        """
        Rank categories by recent error frequency and find strength categories.

        Returns patterns (highest frequency first), stretch_areas (high impact),
        strength_areas (5+ correct answers) and recommendations.
        """
        days_back = days_back or self.settings.pattern_window_days
        cutoff = self.clock() - timedelta(days=days_back)
        rows = self._attempts_with_category_since(user_id, cutoff)

        errors = Counter()
        correct = Counter()
        for attempt, question_category in rows:
            category = attempt.category or question_category or "Unknown"
            if attempt.is_correct:
                correct[category] += 1
            else:
                errors[category] += 1

        if not errors:
            return {"patterns": [], "stretch_areas": [], "strength_areas": [], "recommendations": []}

        patterns = [
            {
                "category": category,
                "type": "weak_performance",
                "frequency": count,
                "impact": impact_for(count),
            }
            for category, count in sorted(errors.items(), key=lambda item: (-item[1], item[0]))
        ]

        stretch_areas = [p["category"] for p in patterns if p["impact"] == "high"]
        strength_areas = sorted(c for c, count in correct.items() if count >= STRENGTH_MIN_CORRECT)

        return {
            "patterns": patterns,
            "stretch_areas": stretch_areas,
            "strength_areas": strength_areas,
            "recommendations": build_pattern_recommendations(
                stretch_areas, strength_areas, self.settings.max_profile_recommendations
            ),
        }

    def get_error_pattern_counts(self, user_id: str, days_back: Optional[int] = None) -> Dict[str, int]:
        """
        Error kind counts over the window.

        Stored classifications win; wrong attempts on questions without one
        fall back to the learner's declared error kind.
        """
        days_back = days_back or self.settings.pattern_window_days
        cutoff = self.clock() - timedelta(days=days_back)

        classifications = self.db.query(ErrorClassification).filter(
            ErrorClassification.user_id == user_id,
            ErrorClassification.created_at >= cutoff
        ).all()

        counts = Counter(c.error_kind for c in classifications)
        classified = {c.question_id for c in classifications}

        declared = self.db.query(QuestionAttempt).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.is_correct.is_(False),
            QuestionAttempt.declared_error_kind.isnot(None),
            QuestionAttempt.attempted_at >= cutoff
        ).all()
        counts.update(a.declared_error_kind for a in declared if a.question_id not in classified)

        return {kind.value: counts.get(kind.value, 0) for kind in ErrorKind}

    def update_cognitive_profile(self, user_id: str) -> Dict[str, Any]:
        """Recompute the whole profile from the window and upsert it."""
        analysis = self.analyze_clinical_patterns(user_id)
        counts = self.get_error_pattern_counts(user_id)

        profile = self.db.query(UserCognitiveProfile).filter(
            UserCognitiveProfile.user_id == user_id
        ).first()
        if profile is None:
            profile = UserCognitiveProfile(user_id=user_id)
            self.db.add(profile)

        profile.strength_categories = analysis["strength_areas"]
        profile.weakness_categories = analysis["stretch_areas"]
        profile.error_patterns = analysis["patterns"]
        profile.error_pattern_counts = counts
        profile.recommendations = analysis["recommendations"]
        profile.last_updated = self.clock()

        self.db.commit()
        invalidate_user_cache(user_id)

        return self.profile_to_dict(profile)

    @staticmethod
    def profile_to_dict(profile: UserCognitiveProfile) -> Dict[str, Any]:
        return {
            "user_id": profile.user_id,
            "strength_categories": profile.strength_categories or [],
            "weakness_categories": profile.weakness_categories or [],
            "error_patterns": profile.error_patterns or [],
            "error_pattern_counts": profile.error_pattern_counts or {},
            "recommendations": profile.recommendations or [],
            "readiness_score": profile.readiness_score,
            "irt_ability": profile.irt_ability,
            "last_updated": profile.last_updated.isoformat() if profile.last_updated else None,
        }

    def get_cognitive_profile(self, user_id: str) -> Dict[str, Any]:
        """Cached profile read; builds the profile on first access."""
        def load() -> Dict[str, Any]:
            profile = self.db.query(UserCognitiveProfile).filter(
                UserCognitiveProfile.user_id == user_id
            ).first()
            if profile is None or not profile.error_pattern_counts:
                return self.update_cognitive_profile(user_id)
            return self.profile_to_dict(profile)

        return cache.get_or_set(profile_cache_key(user_id), load, ttl=self.settings.profile_cache_ttl_seconds)
