"""
Attempt limiting.
"""

from .limiter import AttemptLimiter, RateLimitInfo

__all__ = ["AttemptLimiter", "RateLimitInfo"]
