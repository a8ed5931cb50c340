"""Rate limiting for the external image generation API."""

from idphoto.services.rate_limiter.constants import ModelRateLimits
from idphoto.services.rate_limiter.counter_store import (
    CounterIncrement,
    CounterStore,
    RedisCounterStore,
)
from idphoto.services.rate_limiter.limiter import (
    MetricUsage,
    ModelSelection,
    ModelStatus,
    RateLimiter,
)

__all__ = [
    "CounterIncrement",
    "CounterStore",
    "MetricUsage",
    "ModelRateLimits",
    "ModelSelection",
    "ModelStatus",
    "RateLimiter",
    "RedisCounterStore",
]
