"""
FastAPI Dependencies for the readiness engine
"""

from app.dependencies.users import get_user_or_404

__all__ = [
    "get_user_or_404",
]
