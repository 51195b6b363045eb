# Services module

# IRT estimation
from app.services.item_response_theory import (
    IRTEstimator,
    ItemParameters,
    AbilityEstimate,
    three_pl_model,
    question_information,
    select_optimal_question,
    compute_test_information,
)

# Stability / coverage
from app.services.analytics_aggregation import (
    StabilityCalculator,
    CoverageCalculator,
    AnalyticsAggregationService,
)

# Readiness
from app.services.readiness_cache import ReadinessScoreCache, FreshnessPolicy
from app.services.readiness import ReadinessService

# Error analysis and revision
from app.services.cognitive_error_analyzer import CognitiveErrorAnalyzer, ErrorKind
from app.services.smart_revision import SmartRevisionService

__all__ = [
    "IRTEstimator",
    "ItemParameters",
    "AbilityEstimate",
    "three_pl_model",
    "question_information",
    "select_optimal_question",
    "compute_test_information",
    "StabilityCalculator",
    "CoverageCalculator",
    "AnalyticsAggregationService",
    "ReadinessScoreCache",
    "FreshnessPolicy",
    "ReadinessService",
    "CognitiveErrorAnalyzer",
    "ErrorKind",
    "SmartRevisionService",
]
