"""
Item Response Theory (IRT) Estimator

Simplified 3-parameter logistic (3PL) model used by the readiness engine:

    P(theta) = c + (1 - c) / (1 + exp(-a * (theta - b)))

- Difficulty (b): logit transform of the observed pass rate, -3..+3
- Discrimination (a): 1.2 by default, grows with the correct/incorrect ratio once
  enough responses exist, capped at 2.5
- Guessing (c): 1 / number of answer options

Item parameters are derived data: they are recomputed from the attempt log on
demand and never stored as authoritative state.
"""

import math
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set
from dataclasses import dataclass
from enum import Enum
from sqlalchemy.orm import Session
from sqlalchemy import func, case

from app.models.models import Question, QuestionAttempt

logger = logging.getLogger(__name__)

# Proportions are clamped into (EPSILON, 1 - EPSILON) before the logit transform
EPSILON = 1e-4

THETA_MIN = -3.0
THETA_MAX = 3.0
THETA_GRID = (-3.0, -2.0, -1.0, 0.0, 1.0, 2.0, 3.0)

DEFAULT_DISCRIMINATION = 1.2
MAX_DISCRIMINATION = 2.5
MIN_RESPONSES_FOR_DISCRIMINATION = 20
DEFAULT_OPTION_COUNT = 5

LABEL_DIFFICULTY = {
    "easy": -1.0,
    "medium": 0.0,
    "hard": 1.0,
}


class DifficultyLevel(Enum):
    """Difficulty bands on the b-parameter scale"""
    VERY_EASY = "very_easy"   # b <= -1.5
    EASY = "easy"             # b <= -0.5
    MEDIUM = "medium"         # b <= 0.5
    HARD = "hard"             # b <= 1.5
    VERY_HARD = "very_hard"   # b > 1.5


@dataclass(frozen=True)
class ItemParameters:
    """3PL parameters for a question"""
    question_id: str
    difficulty: float        # b: -3 (very easy) .. +3 (very hard)
    discrimination: float    # a: 0 .. 3
    guessing: float          # c: 1 / option count
    response_count: int = 0


@dataclass(frozen=True)
class AbilityEstimate:
    """Scalar ability estimate for a learner"""
    user_id: str
    theta: float
    standard_error: float
    confidence: float
    attempts_used: int
    weighted_accuracy: Optional[float] = None  # Discrimination-weighted proportion correct


# ============================================================================
# PURE MODEL FUNCTIONS
# ============================================================================

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def proportion_to_logit(proportion: float) -> float:
    """
    Map an observed proportion correct onto the -3..+3 logit scale.

    The proportion is clamped away from 0 and 1 first so a perfect or empty
    record never produces an infinite value.
    """
    p = clamp(proportion, EPSILON, 1 - EPSILON)
    return clamp(-2 * math.log(1 / p - 1), THETA_MIN, THETA_MAX)


def guessing_for_options(option_count: Optional[int]) -> float:
    return 1 / max(2, option_count or DEFAULT_OPTION_COUNT)


def three_pl_model(theta: float, params: ItemParameters) -> float:
    """Probability of a correct response at ability theta, clamped to [0, 1]."""
    exponent = -params.discrimination * (theta - params.difficulty)
    try:
        probability = params.guessing + (1 - params.guessing) / (1 + math.exp(exponent))
    except OverflowError:
        probability = params.guessing
    return clamp(probability, 0.0, 1.0)


def question_information(theta: float, params: ItemParameters) -> float:
    """
    Fisher-style information a question provides at ability theta.

    Uses the guessing-corrected probability p' = (P - c) / (1 - c):
        I(theta) = a^2 * p' * (1 - p')
    """
    p = three_pl_model(theta, params)
    if p <= params.guessing or p >= 1:
        return 0.0

    p_adjusted = (p - params.guessing) / (1 - params.guessing)
    information = params.discrimination ** 2 * p_adjusted * (1 - p_adjusted)
    return max(0.0, information)


def select_optimal_question(
    theta: float,
    candidates: Iterable[ItemParameters],
    used_question_ids: Optional[Set[str]] = None
) -> Optional[ItemParameters]:
    """Return the unused candidate with maximum information at theta."""
    used = used_question_ids or set()
    best = None
    max_information = 0.0

    for params in candidates:
        if params.question_id in used:
            continue
        information = question_information(theta, params)
        if information > max_information:
            max_information = information
            best = params

    return best


def compute_test_information(
    params_list: Sequence[ItemParameters],
    theta_grid: Sequence[float] = THETA_GRID
) -> Dict[float, float]:
    """Sum of question information at each theta on the grid."""
    return {
        theta: sum(question_information(theta, params) for params in params_list)
        for theta in theta_grid
    }


def predict_exam_score(theta: float, exam_items: Sequence[ItemParameters]) -> Dict:
    """
    Expected score on a set of items for a learner at ability theta.

    The 95% interval uses the binomial normal approximation on the expected
    proportion correct.
    """
    if not exam_items:
        return {
            "expected_score": 0,
            "expected_proportion_correct": 0.0,
            "confidence_95_interval": (0.0, 0.0),
        }

    expected = sum(three_pl_model(theta, params) for params in exam_items)
    proportion = expected / len(exam_items)
    margin = 1.96 * math.sqrt(proportion * (1 - proportion) / len(exam_items))

    return {
        "expected_score": round(expected),
        "expected_proportion_correct": round(proportion, 4),
        "confidence_95_interval": (max(0.0, proportion - margin), min(1.0, proportion + margin)),
    }


def get_difficulty_category(difficulty: float) -> DifficultyLevel:
    if difficulty <= -1.5:
        return DifficultyLevel.VERY_EASY
    if difficulty <= -0.5:
        return DifficultyLevel.EASY
    if difficulty <= 0.5:
        return DifficultyLevel.MEDIUM
    if difficulty <= 1.5:
        return DifficultyLevel.HARD
    return DifficultyLevel.VERY_HARD


def estimate_item_parameters(
    question_id: str,
    outcomes: Sequence[bool],
    difficulty_label: Optional[str] = None,
    option_count: Optional[int] = None
) -> ItemParameters:
    """
    Estimate 3PL parameters for one question from its attempt outcomes.

    With no attempts the difficulty comes from the editorial label
    (easy -1, medium 0, hard +1).
    """
    guessing = guessing_for_options(option_count)

    if not outcomes:
        return ItemParameters(
            question_id=question_id,
            difficulty=LABEL_DIFFICULTY.get((difficulty_label or "").lower(), 0.0),
            discrimination=DEFAULT_DISCRIMINATION,
            guessing=guessing,
            response_count=0,
        )

    correct = sum(1 for o in outcomes if o)
    wrong = len(outcomes) - correct
    difficulty = proportion_to_logit(correct / len(outcomes))

    discrimination = DEFAULT_DISCRIMINATION
    if len(outcomes) >= MIN_RESPONSES_FOR_DISCRIMINATION and correct > 0 and wrong > 0:
        discrimination = min(MAX_DISCRIMINATION, 0.8 + (correct / (wrong + 1)) * 0.5)

    return ItemParameters(
        question_id=question_id,
        difficulty=difficulty,
        discrimination=discrimination,
        guessing=guessing,
        response_count=len(outcomes),
    )


def estimate_ability(
    user_id: str,
    attempts: Sequence,
    item_params: Optional[Dict[str, ItemParameters]] = None
) -> AbilityEstimate:
    """
    Estimate ability from a learner's attempts.

    theta is the logit of overall proportion correct; the standard error
    shrinks as max(0.4, 2 / sqrt(n)) and confidence grows as min(1, n / 100).
    Attempts whose question has no parameters are ignored for the weighted
    accuracy only.
    """
    n = len(attempts)
    if n == 0:
        return AbilityEstimate(
            user_id=user_id, theta=0.0, standard_error=2.0, confidence=0.0, attempts_used=0
        )

    correct = sum(1 for a in attempts if a.is_correct)
    theta = proportion_to_logit(correct / n)

    weighted_accuracy = None
    if item_params:
        weighted_score = 0.0
        total_weight = 0.0
        for attempt in attempts:
            params = item_params.get(attempt.question_id)
            if params is None:
                continue
            total_weight += params.discrimination
            if attempt.is_correct:
                weighted_score += params.discrimination
        if total_weight > 0:
            weighted_accuracy = weighted_score / total_weight

    return AbilityEstimate(
        user_id=user_id,
        theta=theta,
        standard_error=max(0.4, 2 / math.sqrt(n)),
        confidence=min(1.0, n / 100),
        attempts_used=n,
        weighted_accuracy=weighted_accuracy,
    )


def calculate_weighted_accuracy(
    attempts: Sequence,
    item_params: Dict[str, ItemParameters]
) -> float:
    """
    Difficulty-weighted accuracy (0-100): harder questions count for more.

    Weight is 1 + b / 3, so roughly 0.67 for the easiest items and 1.33 for
    the hardest.
    """
    weighted_score = 0.0
    total_weight = 0.0

    for attempt in attempts:
        params = item_params.get(attempt.question_id)
        if params is None:
            continue
        weight = 1 + params.difficulty / 3
        total_weight += weight
        if attempt.is_correct:
            weighted_score += weight

    return (weighted_score / total_weight) * 100 if total_weight > 0 else 0.0


# ============================================================================
# DATABASE-BACKED ESTIMATOR
# ============================================================================

class IRTEstimator:
    """
    Estimate item parameters and learner ability from the attempt log.

    Usage:
        estimator = IRTEstimator(db)
        params = estimator.estimate_parameters_for_questions(["q1", "q2"])
        ability = estimator.estimate_user_ability("user-1", params)
    """

    def __init__(self, db: Session):
        self.db = db

    def get_question_outcomes(self, question_id: str) -> List[bool]:
        rows = self.db.query(QuestionAttempt.is_correct).filter(
            QuestionAttempt.question_id == question_id
        ).all()
        return [bool(r[0]) for r in rows]

    def estimate_item_parameters(self, question_id: str) -> Optional[ItemParameters]:
        """
        Estimate parameters for one question.

        Returns None when the question no longer exists in the catalog.
        """
        question = self.db.query(Question).filter(Question.id == question_id).first()
        if not question:
            logger.debug("Question %s not in catalog, skipping IRT estimation", question_id)
            return None

        return estimate_item_parameters(
            question_id,
            self.get_question_outcomes(question_id),
            difficulty_label=question.difficulty_level,
            option_count=question.option_count,
        )

    def estimate_parameters_for_questions(self, question_ids: Iterable[str]) -> Dict[str, ItemParameters]:
        """
        Estimate parameters for many questions with two queries.

        Questions missing from the catalog are left out of the result.
        """
        ids = list(set(question_ids))
        if not ids:
            return {}

        questions = self.db.query(Question).filter(Question.id.in_(ids)).all()

        # BATCH QUERY: correct/total per question in one round-trip
        counts = self.db.query(
            QuestionAttempt.question_id,
            func.count(QuestionAttempt.id),
            func.sum(case((QuestionAttempt.is_correct.is_(True), 1), else_=0))
        ).filter(
            QuestionAttempt.question_id.in_(ids)
        ).group_by(
            QuestionAttempt.question_id
        ).all()
        count_map = {qid: (int(total), int(correct or 0)) for qid, total, correct in counts}

        result = {}
        for question in questions:
            total, correct = count_map.get(question.id, (0, 0))
            outcomes = [True] * correct + [False] * (total - correct)
            result[question.id] = estimate_item_parameters(
                question.id,
                outcomes,
                difficulty_label=question.difficulty_level,
                option_count=question.option_count,
            )
        return result

    def estimate_user_ability(
        self,
        user_id: str,
        item_params: Optional[Dict[str, ItemParameters]] = None,
        attempts: Optional[Sequence[QuestionAttempt]] = None
    ) -> AbilityEstimate:
        if attempts is None:
            attempts = self.db.query(QuestionAttempt).filter(
                QuestionAttempt.user_id == user_id
            ).all()
        return estimate_ability(user_id, attempts, item_params)
