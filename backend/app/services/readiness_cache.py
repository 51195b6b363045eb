"""
Readiness score cache.

Holds only the latest readiness payload per user in the `readiness_cache`
table. Freshness is decided by a swappable policy so the 1-hour window can be
tuned or replaced without touching the aggregator.

Usage:
    cache = ReadinessScoreCache(db)
    payload = cache.get(user_id)      # None when missing or stale
    cache.put(user_id, payload, computed_at)
    cache.invalidate(user_id)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.models import ReadinessCache

logger = logging.getLogger(__name__)


class FreshnessPolicy:
    """A cached entry is fresh while it is younger than ttl_seconds."""

    def __init__(self, ttl_seconds: int):
        self.ttl = timedelta(seconds=ttl_seconds)

    def is_fresh(self, computed_at: Optional[datetime], now: datetime) -> bool:
        if computed_at is None:
            return False
        return now - computed_at < self.ttl


class ReadinessScoreCache:
    """Database-backed latest-value cache for readiness payloads."""

    def __init__(
        self,
        db: Session,
        policy: Optional[FreshnessPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.policy = policy or FreshnessPolicy(get_settings().readiness_cache_ttl_seconds)
        self.clock = clock

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return the cached payload if present and fresh."""
        entry = self.db.query(ReadinessCache).filter(ReadinessCache.user_id == user_id).first()
        if entry is None:
            return None

        if not self.policy.is_fresh(entry.computed_at, self.clock()):
            logger.debug("Readiness cache stale for user %s (computed %s)", user_id, entry.computed_at)
            return None

        return dict(entry.payload)

    def put(self, user_id: str, payload: Dict[str, Any], computed_at: datetime) -> None:
        """Replace the cached payload for a user. Caller commits."""
        self.db.merge(ReadinessCache(
            user_id=user_id,
            overall_score=payload.get("overall_score", 0.0),
            payload=payload,
            computed_at=computed_at,
        ))

    def invalidate(self, user_id: str) -> bool:
        deleted = self.db.query(ReadinessCache).filter(
            ReadinessCache.user_id == user_id
        ).delete(synchronize_session=False)
        return deleted > 0
