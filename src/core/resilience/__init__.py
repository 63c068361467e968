"""
Resilience primitives module.

Components:
    - RateLimiter: shared byte-rate throttle applying backpressure on
      streamed downloads (non-positive rate = unlimited)
"""

from core.resilience.rate_limiter import UNLIMITED, RateLimiter

__all__ = ["RateLimiter", "UNLIMITED"]
