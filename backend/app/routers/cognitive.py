"""
Cognitive Analytics API Router

Error classification, cognitive profile and clinical error patterns.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Dict, Optional, List, Any

from app.database import get_db
from app.dependencies.users import get_user_or_404
from app.models.models import User
from app.services.cognitive_error_analyzer import CognitiveErrorAnalyzer
from app.services.analytics_aggregation import AnalyticsAggregationService
from app.utils.cache import cache, hot_topics_cache_key, patterns_cache_key


router = APIRouter(prefix="/api/cognitive", tags=["cognitive"])

PATTERNS_CACHE_TTL = 300


class AnalyzeErrorRequest(BaseModel):
    """An incorrect answer to classify."""
    question_id: str = Field(..., min_length=1)
    user_answer: str
    correct_answer: str
    time_taken_seconds: float = Field(..., ge=0)
    explanation: Optional[str] = None


class ErrorAnalysisResponse(BaseModel):
    error_kind: str
    confidence: float
    reasoning: str
    evidence: List[str] = []


class CognitiveProfileResponse(BaseModel):
    user_id: str
    strength_categories: List[str]
    weakness_categories: List[str]
    error_patterns: List[Dict[str, Any]]
    error_pattern_counts: Dict[str, int]
    recommendations: List[str]
    readiness_score: Optional[float] = None
    irt_ability: Optional[float] = None
    last_updated: Optional[str] = None


class ClinicalPatternsResponse(BaseModel):
    patterns: List[Dict[str, Any]]
    stretch_areas: List[str]
    strength_areas: List[str]
    recommendations: List[str]


class HotTopic(BaseModel):
    topic: str
    frequency: int
    success_rate: float
    last_seen: Optional[str] = None


@router.get("/{user_id}/profile", response_model=CognitiveProfileResponse)
def get_cognitive_profile(
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Strength/weakness categories, error pattern counts and recommendations."""
    return CognitiveErrorAnalyzer(db).get_cognitive_profile(user.id)


@router.get("/{user_id}/patterns", response_model=ClinicalPatternsResponse)
def get_clinical_patterns(
    days_back: int = Query(30, ge=1, le=365),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Categories ranked by recent error frequency with impact tiers."""
    return cache.get_or_set(
        patterns_cache_key(user.id, days_back),
        lambda: CognitiveErrorAnalyzer(db).analyze_clinical_patterns(user.id, days_back),
        ttl=PATTERNS_CACHE_TTL,
    )


@router.post("/{user_id}/analyze-error", response_model=ErrorAnalysisResponse)
def analyze_error(
    request: AnalyzeErrorRequest,
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Classify an incorrect answer as knowledge gap, reasoning, data interpretation or time pressure."""
    return CognitiveErrorAnalyzer(db).analyze_error(
        user.id,
        request.question_id,
        request.user_answer,
        request.correct_answer,
        request.time_taken_seconds,
        request.explanation,
    )


@router.get("/{user_id}/hot-topics", response_model=List[HotTopic])
def get_hot_topics(
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Most frequently practiced topics with their 30-day success rate."""
    topics = cache.get(hot_topics_cache_key(user.id))
    if topics is None:
        topics = AnalyticsAggregationService(db).get_hot_topics(user.id, limit=50)
        cache.set(hot_topics_cache_key(user.id), topics, ttl=PATTERNS_CACHE_TTL)
    return topics[:limit]
