"""
Aggregation API Router

Manual trigger and status for the background aggregation job.
"""

from fastapi import APIRouter, Query
from pydantic import BaseModel
from typing import Dict, Optional, Any

from app.services.background_tasks import get_scheduler_status, run_aggregation


router = APIRouter(prefix="/api/aggregation", tags=["aggregation"])


class AggregationRunResponse(BaseModel):
    cadence: str
    processed: int
    failed: int
    started_at: str
    finished_at: str


class SchedulerStatusResponse(BaseModel):
    running: bool
    started_at: Optional[str] = None
    last_runs: Dict[str, Dict[str, Any]]
    schedule: Dict[str, str]


@router.post("/run", response_model=AggregationRunResponse)
def run_aggregation_now(
    cadence: str = Query("daily", pattern="^(hourly|daily|weekly)$")
):
    """
    Run one aggregation pass immediately.

    Per-user failures are counted, not raised.
    """
    return run_aggregation(cadence)


@router.get("/status", response_model=SchedulerStatusResponse)
def aggregation_status():
    return get_scheduler_status()
