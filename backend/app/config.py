"""
Analytics policy settings.

Every threshold the readiness, error-analysis and revision services rely on
lives here so it can be tuned per deployment through environment variables.

Usage:
    from app.config import get_settings

    settings = get_settings()
    settings.readiness_cache_ttl_seconds  # 3600
"""

import os
from dataclasses import dataclass, fields
from functools import lru_cache


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class AnalyticsSettings:
    """Named policy values for the readiness & cognitive analytics engine."""

    # Readiness
    readiness_cache_ttl_seconds: int = 3600
    analytics_attempt_window: int = 2000
    consistency_test_window: int = 50
    ideal_time_per_question_seconds: float = 90.0

    # Stability / coverage
    mock_exam_window: int = 20
    min_exams_for_stability: int = 3
    min_questions_per_topic: int = 5

    # Error analysis
    time_pressure_threshold_seconds: float = 120.0
    severe_time_pressure_seconds: float = 150.0
    quick_answer_threshold_seconds: float = 60.0
    pattern_window_days: int = 30
    max_profile_recommendations: int = 5
    profile_cache_ttl_seconds: int = 300

    # Revision buckets
    revision_attempt_window: int = 300
    confident_threshold: float = 0.7
    high_yield_min_attempts: int = 10
    high_yield_accuracy_threshold: float = 0.7
    high_yield_questions_per_category: int = 5
    almost_correct_length_delta: int = 50
    mastery_correct_attempts: int = 3
    mastery_window_days: int = 7

    @classmethod
    def from_env(cls) -> "AnalyticsSettings":
        """Build settings from environment variables, falling back to defaults."""
        values = {}
        for f in fields(cls):
            env_name = f.name.upper()
            if isinstance(f.default, float):
                values[f.name] = _env_float(env_name, f.default)
            else:
                values[f.name] = _env_int(env_name, f.default)
        return cls(**values)


@lru_cache()
def get_settings() -> AnalyticsSettings:
    return AnalyticsSettings.from_env()
