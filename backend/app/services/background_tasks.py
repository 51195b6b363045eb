"""
Background Aggregation Job

Recomputes and caches per-user analytics on a schedule so read paths stay
cheap:

- hourly: refresh readiness for users active in the last hour
- daily: full pipeline for every user (readiness, cognitive profile,
  revision buckets, daily metrics, daily recall heatmap)
- weekly: daily pipeline plus the weekly recall heatmap

Every user runs in its own session. A failure for one user is logged and
counted, and the loop moves on; the next scheduled run self-heals.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.models import QuestionAttempt, User
from app.services.readiness import ReadinessService
from app.services.cognitive_error_analyzer import CognitiveErrorAnalyzer
from app.services.smart_revision import SmartRevisionService
from app.services.analytics_aggregation import AnalyticsAggregationService

logger = logging.getLogger(__name__)

CADENCES = ("hourly", "daily", "weekly")
SLOTTED_CADENCES = ("daily", "weekly")

# Daily run at 02:00 UTC, weekly run on Sunday at 03:00 UTC
DAILY_RUN_HOUR = 2
WEEKLY_RUN_HOUR = 3
WEEKLY_RUN_WEEKDAY = 6

TICK_SECONDS = 3600

_scheduler_state: Dict[str, Any] = {
    "running": False,
    "started_at": None,
    "last_runs": {},
}


# ============================================================================
# PER-USER PIPELINE
# ============================================================================

def get_users_for_cadence(db: Session, cadence: str, now: Optional[datetime] = None) -> List[str]:
    """Hourly runs only touch recently active users; the others cover everyone."""
    now = now or datetime.utcnow()

    if cadence == "hourly":
        rows = db.query(QuestionAttempt.user_id).filter(
            QuestionAttempt.attempted_at >= now - timedelta(hours=1)
        ).distinct().all()
    else:
        rows = db.query(User.id).all()

    return sorted(r[0] for r in rows)


def run_user_pipeline(db: Session, user_id: str, cadence: str = "daily") -> None:
    """Recompute every derived entity for one user, in dependency order."""
    ReadinessService(db).compute_readiness(user_id, use_cache=False)

    if cadence == "hourly":
        return

    CognitiveErrorAnalyzer(db).update_cognitive_profile(user_id)
    SmartRevisionService(db).generate_revision_buckets(user_id)

    aggregation = AnalyticsAggregationService(db)
    aggregation.aggregate_daily_metrics(user_id)
    aggregation.update_recall_heatmap(user_id, "daily")
    if cadence == "weekly":
        aggregation.update_recall_heatmap(user_id, "weekly")

    db.commit()


def run_aggregation(
    cadence: str = "daily",
    session_factory: Callable[[], Session] = SessionLocal
) -> Dict[str, Any]:
    """
    Run one aggregation pass over the users the cadence covers.

    Returns {cadence, processed, failed, started_at, finished_at}.
    """
    if cadence not in CADENCES:
        raise ValueError(f"Unknown aggregation cadence: {cadence}")

    started_at = datetime.utcnow()
    db = session_factory()
    try:
        user_ids = get_users_for_cadence(db, cadence, started_at)
    finally:
        db.close()

    logger.info(f"Aggregation ({cadence}) starting for {len(user_ids)} users")

    processed = 0
    failed = 0
    for user_id in user_ids:
        db = session_factory()
        try:
            run_user_pipeline(db, user_id, cadence)
            processed += 1
        except Exception as e:
            db.rollback()
            failed += 1
            logger.error(f"Aggregation ({cadence}) failed for user {user_id}: {e}")
        finally:
            db.close()

    result = {
        "cadence": cadence,
        "processed": processed,
        "failed": failed,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.utcnow().isoformat(),
    }
    _scheduler_state["last_runs"][cadence] = result

    logger.info(f"Aggregation ({cadence}) finished: {processed} processed, {failed} failed")
    return result


# ============================================================================
# SCHEDULER
# ============================================================================

def latest_slot(cadence: str, now: datetime) -> datetime:
    """Most recent scheduled start of a daily or weekly run at or before now."""
    if cadence == "daily":
        slot = now.replace(hour=DAILY_RUN_HOUR, minute=0, second=0, microsecond=0)
        if slot > now:
            slot -= timedelta(days=1)
        return slot
    if cadence == "weekly":
        slot = now.replace(hour=WEEKLY_RUN_HOUR, minute=0, second=0, microsecond=0)
        slot -= timedelta(days=(now.weekday() - WEEKLY_RUN_WEEKDAY) % 7)
        if slot > now:
            slot -= timedelta(days=7)
        return slot
    raise ValueError(f"Cadence has no fixed slot: {cadence}")


def initial_slots(now: datetime) -> Dict[str, datetime]:
    """
    Slots treated as already served when the scheduler starts.

    A slot that began within the last hour is left open so a process started
    at 02:10 still runs the daily pipeline.
    """
    return {c: latest_slot(c, now - timedelta(hours=1)) for c in SLOTTED_CADENCES}


def due_cadences(now: datetime, last_fired: Optional[Dict[str, datetime]] = None) -> List[str]:
    """
    Cadences due at this tick.

    A daily or weekly run is due whenever its latest slot has not been served
    yet, so a late tick still picks up a slot it stepped over.
    """
    if last_fired is None:
        last_fired = initial_slots(now)

    due = ["hourly"]
    for cadence in SLOTTED_CADENCES:
        served = last_fired.get(cadence)
        if served is None or served < latest_slot(cadence, now):
            due.append(cadence)
    return due


def seconds_until_next_tick(now: datetime) -> float:
    """Seconds to the next top of the hour."""
    elapsed = now.minute * 60 + now.second + now.microsecond / 1_000_000
    return TICK_SECONDS - elapsed


async def run_aggregation_scheduler(clock: Callable[[], datetime] = datetime.utcnow):
    """
    Background task that wakes at the top of every hour and runs whichever
    cadences are due. Designed to run continuously within the FastAPI process.
    """
    logger.info("Readiness aggregation scheduler started")
    _scheduler_state["running"] = True
    _scheduler_state["started_at"] = clock().isoformat()
    last_fired = initial_slots(clock())

    try:
        while True:
            now = clock()
            for cadence in due_cadences(now, last_fired):
                try:
                    # DB work is blocking; keep the event loop free
                    await asyncio.to_thread(run_aggregation, cadence)
                except Exception as e:
                    logger.error(f"Error in {cadence} aggregation run: {e}")
                    continue
                if cadence in SLOTTED_CADENCES:
                    last_fired[cadence] = latest_slot(cadence, now)

            await asyncio.sleep(seconds_until_next_tick(clock()))
    finally:
        _scheduler_state["running"] = False
        logger.info("Readiness aggregation scheduler stopped")


def get_scheduler_status() -> Dict[str, Any]:
    return {
        "running": _scheduler_state["running"],
        "started_at": _scheduler_state["started_at"],
        "last_runs": dict(_scheduler_state["last_runs"]),
        "schedule": {
            "hourly": "every hour",
            "daily": f"{DAILY_RUN_HOUR:02d}:00 UTC",
            "weekly": f"Sunday {WEEKLY_RUN_HOUR:02d}:00 UTC",
        },
    }
