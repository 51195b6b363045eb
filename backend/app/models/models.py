from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, Date, JSON, ForeignKey, Text, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from app.database import Base

def generate_uuid():
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)

    # Profile
    exam_date = Column(DateTime, nullable=True)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    attempts = relationship("QuestionAttempt", back_populates="user")
    test_sessions = relationship("TestSession", back_populates="user")


class Question(Base):
    """Question catalog entry. Read-only from the analytics engine's point of view."""
    __tablename__ = "questions"

    id = Column(String, primary_key=True, default=generate_uuid)
    stem = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)  # List of answer option texts
    correct_answer = Column(Text, nullable=False)  # Text of the correct option
    category = Column(String, nullable=True, index=True)
    difficulty_level = Column(String, nullable=True, index=True)  # "easy", "medium", "hard"
    tags = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    attempts = relationship("QuestionAttempt", back_populates="question")

    @property
    def option_count(self) -> int:
        return max(2, len(self.options or []) or 5)


class QuestionAttempt(Base):
    """Append-only attempt log. Never updated after insert."""
    __tablename__ = "question_attempts"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    question_id = Column(String, ForeignKey("questions.id"), nullable=False, index=True)
    session_id = Column(String, ForeignKey("test_sessions.id"), nullable=True)
    category = Column(String, nullable=True, index=True)
    difficulty_label = Column(String, nullable=True)
    user_answer = Column(Text, nullable=True)
    is_correct = Column(Boolean, nullable=False)
    time_taken_ms = Column(Integer, nullable=False, default=0)
    confidence = Column(Float, nullable=True)  # Declared confidence 0-1
    declared_error_kind = Column(String, nullable=True)
    attempted_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="attempts")
    question = relationship("Question", back_populates="attempts")

    __table_args__ = (
        Index("ix_attempts_user_attempted_at", "user_id", "attempted_at"),
        Index("ix_attempts_question_attempted_at", "question_id", "attempted_at"),
    )

    @property
    def time_taken_seconds(self) -> float:
        return (self.time_taken_ms or 0) / 1000.0


class TestSession(Base):
    """Mock exam session. Completed sessions feed stability and consistency."""
    __tablename__ = "test_sessions"
    __test__ = False  # Not a pytest test class

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, default="in_progress", index=True)  # "in_progress", "completed", "abandoned"
    total_questions = Column(Integer, default=0)
    correct_answers = Column(Integer, default=0)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True, index=True)

    # Relationships
    user = relationship("User", back_populates="test_sessions")

    @property
    def percentage_score(self) -> float:
        return ((self.correct_answers or 0) / (self.total_questions or 1)) * 100


class ReadinessScoreHistory(Base):
    """Write-once readiness snapshots. One row per computation."""
    __tablename__ = "readiness_score_history"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    overall_score = Column(Float, nullable=False)
    components = Column(JSON, nullable=False)
    interpretation = Column(String, nullable=True)
    recommendation = Column(Text, nullable=True)
    computed_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_readiness_history_user_computed", "user_id", "computed_at"),
    )


class ReadinessCache(Base):
    """Latest readiness payload per user. Replaced on every computation."""
    __tablename__ = "readiness_cache"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    overall_score = Column(Float, nullable=False)
    payload = Column(JSON, nullable=False)
    computed_at = Column(DateTime, nullable=False, index=True)


class UserCognitiveProfile(Base):
    """Upsert-by-user cognitive profile. Always rewritten whole."""
    __tablename__ = "user_cognitive_profiles"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    strength_categories = Column(JSON, default=list)
    weakness_categories = Column(JSON, default=list)
    error_patterns = Column(JSON, default=list)  # Per-category pattern entries
    error_pattern_counts = Column(JSON, default=dict)  # error kind -> count
    recommendations = Column(JSON, default=list)
    readiness_score = Column(Float, nullable=True)
    irt_ability = Column(Float, nullable=True)
    last_updated = Column(DateTime, default=datetime.utcnow)


class ErrorClassification(Base):
    """Rule-based classification of one incorrect attempt."""
    __tablename__ = "error_classifications"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    question_id = Column(String, ForeignKey("questions.id"), nullable=False, index=True)
    error_kind = Column(String, nullable=False, index=True)  # knowledge_gap, reasoning_error, ...
    confidence = Column(Float, nullable=False)
    evidence = Column(JSON, default=list)
    reasoning = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class RevisionBucket(Base):
    """One row per (user, bucket_type); replaced wholesale on regeneration."""
    __tablename__ = "revision_buckets"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    bucket_type = Column(String, nullable=False)
    questions = Column(JSON, default=list)
    count = Column(Integer, default=0)
    priority = Column(String, nullable=False)  # "high", "medium", "low"
    suggested_duration_minutes = Column(Integer, default=30)
    reason = Column(Text, nullable=True)
    generated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "bucket_type", name="uq_revision_bucket_user_type"),
    )


class RecallIntelligence(Base):
    """Topic recall frequency per user, refreshed by the aggregation job."""
    __tablename__ = "recall_intelligence"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    topic = Column(String, nullable=False)
    frequency = Column(Integer, default=0)
    period = Column(String, default="daily")  # "daily", "weekly", "monthly"
    last_seen = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "topic", name="uq_recall_user_topic"),
    )


class DailyMetricsSnapshot(Base):
    """Per-day attempt aggregates cached by the aggregation job."""
    __tablename__ = "daily_metrics_snapshots"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    metrics_date = Column(Date, nullable=False)
    total_attempts = Column(Integer, default=0)
    correct_answers = Column(Integer, default=0)
    accuracy = Column(Float, default=0.0)  # 0-1
    avg_time_per_question_ms = Column(Integer, default=0)
    categories_attempted = Column(Integer, default=0)
    new_categories_explored = Column(Integer, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "metrics_date", name="uq_daily_metrics_user_date"),
    )
