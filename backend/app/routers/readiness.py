"""
Readiness API Router

Composite exam-readiness score, full report, per-category breakdown and
score history.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Dict, Optional, List, Any

from app.database import get_db
from app.dependencies.users import get_user_or_404
from app.models.models import User
from app.services.readiness import ReadinessService


router = APIRouter(prefix="/api/readiness", tags=["readiness"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class ReadinessComponents(BaseModel):
    """Component scores; maximums are 40/20/20/10/10."""
    accuracy: float
    stability: float
    coverage: float
    speed: float
    consistency: float


class ReadinessResponse(BaseModel):
    """Latest readiness score for a user."""
    user_id: str
    overall_score: float
    components: ReadinessComponents
    details: Dict[str, Any]
    interpretation: Optional[str] = None
    recommendation: Optional[str] = None
    days_until_ready: Optional[int] = None
    computed_at: Optional[str] = None
    message: Optional[str] = None
    is_cached: bool


class CategoryBreakdown(BaseModel):
    attempted: int
    correct: int
    accuracy: float


class ReadinessTrendPoint(BaseModel):
    date: str
    score: float
    components: Dict[str, float]
    interpretation: Optional[str] = None


class ReadinessTrendsResponse(BaseModel):
    scores: List[ReadinessTrendPoint]
    summary: Dict[str, float]


class ReadinessReportResponse(BaseModel):
    overall: ReadinessResponse
    breakdown: Dict[str, CategoryBreakdown]
    trends: List[ReadinessTrendPoint]
    stability: Dict[str, Any]
    coverage: Dict[str, Any]
    recommendations: List[str]
    next_steps: List[str]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/{user_id}", response_model=ReadinessResponse)
def get_readiness(
    use_cache: bool = Query(True, description="Serve a score computed within the last hour"),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """
    Get the composite readiness score (0-100).

    Served from cache when a score was computed within the last hour.
    """
    return ReadinessService(db).compute_readiness(user.id, use_cache=use_cache)


@router.get("/{user_id}/report", response_model=ReadinessReportResponse)
def get_readiness_report(
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Score, per-category breakdown, 30-day trend, stability, coverage and recommendations."""
    return ReadinessService(db).get_readiness_report(user.id)


@router.get("/{user_id}/breakdown", response_model=Dict[str, CategoryBreakdown])
def get_readiness_breakdown(
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    return ReadinessService(db).get_readiness_breakdown(user.id)


@router.get("/{user_id}/trends", response_model=ReadinessTrendsResponse)
def get_readiness_trends(
    days_back: int = Query(30, ge=1, le=365, description="Days of history to include"),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Readiness history with average, change, highest and lowest score."""
    return ReadinessService(db).get_trend_summary(user.id, days_back)
