"""
User lookup dependency for analytics routes.
"""

from fastapi import Depends, HTTPException, Path
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.models import User


def get_user_or_404(
    user_id: str = Path(..., min_length=1, description="User ID"),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the path user or raise 404."""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user
