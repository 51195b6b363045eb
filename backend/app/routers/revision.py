"""
Smart Revision API Router

Revision buckets, day-by-day revision schedule, reminders and mastery.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Dict, Optional, List, Any

from app.database import get_db
from app.dependencies.users import get_user_or_404
from app.models.models import User
from app.services.smart_revision import BUCKET_ORDER, SmartRevisionService


router = APIRouter(prefix="/api/revision", tags=["revision"])


class RevisionBucketResponse(BaseModel):
    bucket_type: str
    questions: List[Dict[str, Any]]
    count: int
    priority: str
    suggested_duration_minutes: int
    reason: str
    generated_at: Optional[str] = None


class ScheduleEntry(BaseModel):
    day: int
    bucket_type: str
    session_duration_minutes: int
    focus_area: str
    instructions: str
    question_count: int


class RevisionScheduleResponse(BaseModel):
    days_until_exam: int
    schedule: List[ScheduleEntry]


class ReminderRequest(BaseModel):
    bucket_type: str = Field(..., pattern="^(" + "|".join(BUCKET_ORDER) + ")$")
    day_offset: int = Field(..., ge=0, le=365)


class ReminderResponse(BaseModel):
    user_id: str
    bucket_type: str
    remind_at: str


class MasteryResponse(BaseModel):
    question_id: str
    mastered: bool
    recent_correct_attempts: int
    buckets_updated: int


@router.get("/{user_id}/buckets", response_model=List[RevisionBucketResponse])
def get_revision_buckets(
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Stored revision buckets in priority order."""
    return SmartRevisionService(db).get_buckets(user.id)


@router.post("/{user_id}/buckets/generate", response_model=List[RevisionBucketResponse])
def generate_revision_buckets(
    limit: int = Query(100, ge=1, le=300, description="Maximum questions per bucket"),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Rebuild the user's revision buckets from their recent attempts."""
    return SmartRevisionService(db).generate_revision_buckets(user.id, limit=limit)


@router.get("/{user_id}/schedule", response_model=RevisionScheduleResponse)
def get_revision_schedule(
    days_until_exam: int = Query(30, ge=1, le=365),
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """
    Day-by-day revision plan.

    High-priority buckets land every third day through day 14, medium-priority
    buckets every second day through day 21.
    """
    schedule = SmartRevisionService(db).get_revision_schedule(user.id, days_until_exam)
    return {"days_until_exam": days_until_exam, "schedule": schedule}


@router.post("/{user_id}/reminders", response_model=ReminderResponse)
def set_revision_reminder(
    request: ReminderRequest,
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    try:
        return SmartRevisionService(db).set_revision_reminder(user.id, request.bucket_type, request.day_offset)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/{user_id}/mastered/{question_id}", response_model=MasteryResponse)
def mark_question_mastered(
    question_id: str,
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db)
):
    """Drop a question from every bucket once it has 3 correct answers in the last 7 days."""
    return SmartRevisionService(db).mark_question_mastered(user.id, question_id)
