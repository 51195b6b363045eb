"""
Smart Revision Service

Partitions a learner's recent attempts into revision buckets and lays them
out as a day-by-day schedule before the exam.

Buckets (emitted in this priority order):
- high_yield_low_accuracy: categories with 10+ attempts and <70% accuracy
- incorrect_confident: wrong answers given with confidence >= 0.7
- almost_correct: wrong answers within 50 characters of the correct answer's length
- slow_correct: correct answers slower than the learner's own 90th percentile

Each (user, bucket_type) row is replaced wholesale on regeneration, and
bucket types that no longer apply are removed, so mastered questions never
linger.

Usage:
    service = SmartRevisionService(db)
    buckets = service.generate_revision_buckets(user_id)
    schedule = service.get_revision_schedule(user_id, days_until_exam=30)
"""

import math
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from collections import defaultdict

from sqlalchemy.orm import Session
from sqlalchemy import func

from app.config import AnalyticsSettings, get_settings
from app.models.models import Question, QuestionAttempt, RevisionBucket

logger = logging.getLogger(__name__)

HIGH_YIELD_LOW_ACCURACY = "high_yield_low_accuracy"
INCORRECT_CONFIDENT = "incorrect_confident"
ALMOST_CORRECT = "almost_correct"
SLOW_CORRECT = "slow_correct"

# Priority order; metadata per bucket type
BUCKET_SPECS = {
    HIGH_YIELD_LOW_ACCURACY: {
        "priority": "high",
        "suggested_duration_minutes": 40,
        "reason": "High-yield topics with low accuracy - critical for score improvement",
    },
    INCORRECT_CONFIDENT: {
        "priority": "high",
        "suggested_duration_minutes": 35,
        "reason": "You were confident but wrong - identify reasoning gaps",
    },
    ALMOST_CORRECT: {
        "priority": "medium",
        "suggested_duration_minutes": 30,
        "reason": "Fine-tune discrimination between similar answers",
    },
    SLOW_CORRECT: {
        "priority": "medium",
        "suggested_duration_minutes": 25,
        "reason": "You scored correctly but slowly - speed optimization needed",
    },
}
BUCKET_ORDER = list(BUCKET_SPECS.keys())

# Fallback 90th-percentile time when the attempt log has no timings
DEFAULT_P90_SECONDS = 120.0
QUESTION_TEXT_PREVIEW = 100

HIGH_PRIORITY_LAST_DAY = 14
HIGH_PRIORITY_STEP = 3
HIGH_PRIORITY_SESSION_MINUTES = 45
MEDIUM_PRIORITY_LAST_DAY = 21
MEDIUM_PRIORITY_STEP = 2
MEDIUM_PRIORITY_SESSION_MINUTES = 30


def percentile_time(times: List[float], fraction: float = 0.9) -> float:
    """Nearest-rank percentile: the value at floor(n * fraction) of the sorted list."""
    if not times:
        return DEFAULT_P90_SECONDS
    ordered = sorted(times)
    return ordered[min(len(ordered) - 1, int(math.floor(len(ordered) * fraction)))]


def build_schedule(buckets: List[Dict[str, Any]], days_until_exam: int = 30) -> List[Dict[str, Any]]:
    """
    Greedy revision schedule.

    High-priority buckets go on days 1, 4, 7, ... up to day 14; medium-priority
    buckets continue every second day up to day 21. Days after the exam are
    dropped.
    """
    schedule = []
    day = 1

    def entry(bucket: Dict[str, Any], minutes: int) -> Dict[str, Any]:
        bucket_type = bucket["bucket_type"]
        return {
            "day": day,
            "bucket_type": bucket_type,
            "session_duration_minutes": minutes,
            "focus_area": bucket_type,
            "instructions": f"Review {bucket_type.replace('_', ' ')} questions",
            "question_count": bucket.get("count", 0),
        }

    for bucket in (b for b in buckets if b["priority"] == "high"):
        if day > HIGH_PRIORITY_LAST_DAY:
            break
        schedule.append(entry(bucket, HIGH_PRIORITY_SESSION_MINUTES))
        day += HIGH_PRIORITY_STEP

    for bucket in (b for b in buckets if b["priority"] == "medium"):
        if day > MEDIUM_PRIORITY_LAST_DAY:
            break
        schedule.append(entry(bucket, MEDIUM_PRIORITY_SESSION_MINUTES))
        day += MEDIUM_PRIORITY_STEP

    return [s for s in schedule if s["day"] <= days_until_exam]


class SmartRevisionService:
    """Revision bucket generation, scheduling and mastery tracking."""

    def __init__(
        self,
        db: Session,
        settings: Optional[AnalyticsSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def _recent_attempts(self, user_id: str) -> List[Tuple[QuestionAttempt, Question]]:
        """Most recent attempts with their catalog question; orphaned attempts are skipped."""
        return self.db.query(QuestionAttempt, Question).join(
            Question, Question.id == QuestionAttempt.question_id
        ).filter(
            QuestionAttempt.user_id == user_id
        ).order_by(
            QuestionAttempt.attempted_at.desc()
        ).limit(self.settings.revision_attempt_window).all()

    @staticmethod
    def _question_entry(attempt: QuestionAttempt, question: Question, **extra) -> Dict[str, Any]:
        entry = {
            "question_id": question.id,
            "question_text": (question.stem or "")[:QUESTION_TEXT_PREVIEW],
            "category": attempt.category or question.category,
        }
        entry.update(extra)
        return entry

    @staticmethod
    def _unique(entries: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
        """First entry per question (attempts are newest first), capped at limit."""
        seen = set()
        result = []
        for entry in entries:
            if entry["question_id"] in seen:
                continue
            seen.add(entry["question_id"])
            result.append(entry)
            if len(result) >= limit:
                break
        return result

    def _slow_correct(self, rows, limit: int) -> List[Dict[str, Any]]:
        p90 = percentile_time([a.time_taken_seconds for a, _ in rows])
        return self._unique([
            self._question_entry(a, q, time_taken_seconds=a.time_taken_seconds)
            for a, q in rows
            if a.is_correct and a.time_taken_seconds > p90
        ], limit)

    def _incorrect_confident(self, rows, limit: int) -> List[Dict[str, Any]]:
        return self._unique([
            self._question_entry(
                a, q, confidence=a.confidence, user_answer=a.user_answer, correct_answer=q.correct_answer
            )
            for a, q in rows
            if not a.is_correct and (a.confidence or 0) >= self.settings.confident_threshold
        ], limit)

    def _high_yield_low_accuracy(self, rows, limit: int) -> List[Dict[str, Any]]:
        by_category = defaultdict(list)
        for a, q in rows:
            by_category[a.category or q.category or "Unknown"].append((a, q))

        entries = []
        for category in sorted(by_category):
            attempts = by_category[category]
            if len(attempts) < self.settings.high_yield_min_attempts:
                continue
            accuracy = sum(1 for a, _ in attempts if a.is_correct) / len(attempts)
            if accuracy >= self.settings.high_yield_accuracy_threshold:
                continue

            wrong = self._unique([
                self._question_entry(a, q, category=category, accuracy=round(accuracy * 100))
                for a, q in attempts
                if not a.is_correct
            ], self.settings.high_yield_questions_per_category)
            entries.extend(wrong)

        return entries[:limit]

    def _almost_correct(self, rows, limit: int) -> List[Dict[str, Any]]:
        # Length proximity is a weak proxy for a near-miss answer
        return self._unique([
            self._question_entry(a, q, user_answer=a.user_answer, correct_answer=q.correct_answer)
            for a, q in rows
            if not a.is_correct
            and abs(len(a.user_answer or "") - len(q.correct_answer or "")) < self.settings.almost_correct_length_delta
        ], limit)

    def generate_revision_buckets(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Build and persist the user's non-empty buckets in priority order.

        Returns [] (and clears stored buckets) when there are no attempts.
        """
        rows = self._recent_attempts(user_id)

        selected = {}
        if rows:
            selected = {
                HIGH_YIELD_LOW_ACCURACY: self._high_yield_low_accuracy(rows, limit),
                INCORRECT_CONFIDENT: self._incorrect_confident(rows, limit),
                ALMOST_CORRECT: self._almost_correct(rows, limit),
                SLOW_CORRECT: self._slow_correct(rows, limit),
            }

        generated_at = self.clock()
        buckets = [
            {
                "bucket_type": bucket_type,
                "questions": selected[bucket_type],
                "count": len(selected[bucket_type]),
                "generated_at": generated_at.isoformat(),
                **BUCKET_SPECS[bucket_type],
            }
            for bucket_type in BUCKET_ORDER
            if selected.get(bucket_type)
        ]

        self._save_buckets(user_id, buckets, generated_at)
        logger.info(f"Generated {len(buckets)} revision buckets for user {user_id}")
        return buckets

    def _save_buckets(self, user_id: str, buckets: List[Dict[str, Any]], generated_at: datetime) -> None:
        existing = {
            b.bucket_type: b
            for b in self.db.query(RevisionBucket).filter(RevisionBucket.user_id == user_id).all()
        }

        for bucket in buckets:
            row = existing.pop(bucket["bucket_type"], None)
            if row is None:
                row = RevisionBucket(user_id=user_id, bucket_type=bucket["bucket_type"])
                self.db.add(row)
            row.questions = bucket["questions"]
            row.count = bucket["count"]
            row.priority = bucket["priority"]
            row.suggested_duration_minutes = bucket["suggested_duration_minutes"]
            row.reason = bucket["reason"]
            row.generated_at = generated_at

        # Types that no longer apply
        for stale in existing.values():
            self.db.delete(stale)

        self.db.commit()

    @staticmethod
    def bucket_to_dict(bucket: RevisionBucket) -> Dict[str, Any]:
        return {
            "bucket_type": bucket.bucket_type,
            "questions": bucket.questions or [],
            "count": bucket.count,
            "priority": bucket.priority,
            "suggested_duration_minutes": bucket.suggested_duration_minutes,
            "reason": bucket.reason,
            "generated_at": bucket.generated_at.isoformat() if bucket.generated_at else None,
        }

    def get_buckets(self, user_id: str) -> List[Dict[str, Any]]:
        """Stored buckets in priority order."""
        rows = self.db.query(RevisionBucket).filter(RevisionBucket.user_id == user_id).all()
        rank = {bucket_type: i for i, bucket_type in enumerate(BUCKET_ORDER)}
        rows.sort(key=lambda b: rank.get(b.bucket_type, len(rank)))
        return [self.bucket_to_dict(b) for b in rows]

    def get_revision_schedule(self, user_id: str, days_until_exam: int = 30) -> List[Dict[str, Any]]:
        return build_schedule(self.get_buckets(user_id), days_until_exam)

    def set_revision_reminder(self, user_id: str, bucket_type: str, day_offset: int) -> Dict[str, Any]:
        """
        Compute when to remind the user about a bucket.

        Delivery is handled elsewhere; this only resolves and logs the time.
        """
        if bucket_type not in BUCKET_SPECS:
            raise ValueError(f"Unknown bucket type: {bucket_type}")

        remind_at = self.clock() + timedelta(days=day_offset)
        logger.info(f"Revision reminder for user {user_id}: {bucket_type} at {remind_at.isoformat()}")
        return {"user_id": user_id, "bucket_type": bucket_type, "remind_at": remind_at.isoformat()}

    def mark_question_mastered(self, user_id: str, question_id: str) -> Dict[str, Any]:
        """
        Remove a question from every bucket once it has enough recent correct answers.

        Mastery needs 3 correct attempts within the trailing 7 days.
        """
        cutoff = self.clock() - timedelta(days=self.settings.mastery_window_days)
        recent_correct = self.db.query(func.count(QuestionAttempt.id)).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.question_id == question_id,
            QuestionAttempt.is_correct.is_(True),
            QuestionAttempt.attempted_at >= cutoff
        ).scalar() or 0

        mastered = recent_correct >= self.settings.mastery_correct_attempts
        updated = 0

        if mastered:
            for bucket in self.db.query(RevisionBucket).filter(RevisionBucket.user_id == user_id).all():
                remaining = [q for q in (bucket.questions or []) if q.get("question_id") != question_id]
                if len(remaining) == len(bucket.questions or []):
                    continue
                updated += 1
                if remaining:
                    bucket.questions = remaining
                    bucket.count = len(remaining)
                else:
                    self.db.delete(bucket)
            self.db.commit()
            logger.info(f"Question {question_id} mastered by user {user_id}, removed from {updated} buckets")

        return {
            "question_id": question_id,
            "mastered": mastered,
            "recent_correct_attempts": int(recent_correct),
            "buckets_updated": updated,
        }
