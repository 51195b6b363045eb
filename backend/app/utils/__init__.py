"""
Readiness Engine Utilities Package

Contains:
- cache: Hybrid Redis / in-memory TTL cache for analytics payloads
"""

from app.utils.cache import cache, invalidate_user_cache, profile_cache_key

__all__ = [
    "cache",
    "invalidate_user_cache",
    "profile_cache_key",
]
