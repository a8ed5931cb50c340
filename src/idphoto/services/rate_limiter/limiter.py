"""Sliding-window rate limiter with primary/fallback model selection.

Usage is tracked per model in three windowed counters:
- rpm: requests in the current minute (window key = floor(now / 60))
- tpm: tokens in the current minute
- rpd: requests in the current UTC calendar day

Counters live in a shared CounterStore, so any worker process can check and
record usage without coordination beyond the store's atomic increments.
Windows are fixed buckets rather than a true token bucket; a burst straddling
a minute boundary may briefly exceed the nominal rate.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal

import structlog

from idphoto.services.exceptions import (
    RateLimitErrorCode,
    RateLimitExceededError,
    UnknownModelError,
)
from idphoto.services.rate_limiter.constants import (
    DAY_WINDOW_TTL_SECONDS,
    DEFAULT_TOKEN_ESTIMATE,
    MINUTE_WINDOW_TTL_SECONDS,
    RATE_LIMIT_KEY_PREFIX,
    ModelRateLimits,
)
from idphoto.services.rate_limiter.counter_store import CounterIncrement, CounterStore

logger = structlog.get_logger(__name__)

Metric = Literal["rpm", "tpm", "rpd"]


@dataclass
class MetricUsage:
    """Usage of one metric in its current window."""

    current: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


@dataclass
class ModelStatus:
    """Snapshot of a model's three windows."""

    model: str
    rpm: MetricUsage
    tpm: MetricUsage
    rpd: MetricUsage

    @property
    def is_available(self) -> bool:
        return (
            self.rpm.current < self.rpm.limit
            and self.tpm.current < self.tpm.limit
            and self.rpd.current < self.rpd.limit
        )


@dataclass(frozen=True)
class ModelSelection:
    """Model chosen for the next request."""

    model: str
    is_fallback: bool


class RateLimiter:
    """Per-model request/token/day limiter over a shared counter store."""

    def __init__(
        self,
        counter_store: CounterStore,
        model_limits: dict[str, ModelRateLimits],
        primary_model: str,
        fallback_model: str,
        default_token_estimate: int = DEFAULT_TOKEN_ESTIMATE,
        clock: Callable[[], float] = time.time,
        key_prefix: str = RATE_LIMIT_KEY_PREFIX,
    ):
        """Initialize rate limiter.

        Args:
            counter_store: Atomic counter backend (Redis in production)
            model_limits: Ceilings per model name
            primary_model: Model tried first
            fallback_model: Model used once the primary is exhausted
            default_token_estimate: Token cost assumed when callers pass none
            clock: Epoch-seconds source (injectable for tests)
            key_prefix: Namespace for counter keys
        """
        self.counter_store = counter_store
        self.model_limits = dict(model_limits)
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.default_token_estimate = default_token_estimate
        self.clock = clock
        self.key_prefix = key_prefix

    def _minute_key(self) -> str:
        return str(int(self.clock() // 60))

    def _day_key(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    def _build_key(self, model: str, metric: Metric, window: str) -> str:
        return f"{self.key_prefix}:{model}:{metric}:{window}"

    def _window_keys(self, model: str) -> dict[Metric, str]:
        minute_key = self._minute_key()
        return {
            "rpm": self._build_key(model, "rpm", minute_key),
            "tpm": self._build_key(model, "tpm", minute_key),
            "rpd": self._build_key(model, "rpd", self._day_key()),
        }

    def get_model_config(self, model: str) -> ModelRateLimits | None:
        return self.model_limits.get(model)

    def get_configured_models(self) -> list[str]:
        return list(self.model_limits)

    def _require_config(self, model: str) -> ModelRateLimits:
        config = self.model_limits.get(model)
        if config is None:
            raise UnknownModelError(f"Unknown model: {model}")
        return config

    async def get_model_status(self, model: str) -> ModelStatus:
        """Read the current window counters for a model.

        Raises:
            UnknownModelError: If the model has no configured limits
        """
        config = self._require_config(model)
        keys = self._window_keys(model)

        rpm, tpm, rpd = await asyncio.gather(
            self.counter_store.get(keys["rpm"]),
            self.counter_store.get(keys["tpm"]),
            self.counter_store.get(keys["rpd"]),
        )

        return ModelStatus(
            model=model,
            rpm=MetricUsage(current=max(0, rpm), limit=config.rpm),
            tpm=MetricUsage(current=max(0, tpm), limit=config.tpm),
            rpd=MetricUsage(current=max(0, rpd), limit=config.rpd),
        )

    async def can_make_request(self, model: str, estimated_tokens: int | None = None) -> bool:
        """Check whether one more request of ``estimated_tokens`` fits every window."""
        tokens = self.default_token_estimate if estimated_tokens is None else estimated_tokens
        status = await self.get_model_status(model)
        return (
            status.rpm.remaining > 0
            and status.tpm.remaining >= tokens
            and status.rpd.remaining > 0
        )

    async def get_available_model(
        self, estimated_tokens: int | None = None
    ) -> ModelSelection | None:
        """Pick the primary model, else the fallback; None if both are exhausted."""
        if await self.can_make_request(self.primary_model, estimated_tokens):
            return ModelSelection(model=self.primary_model, is_fallback=False)

        logger.warning("rate_limit.primary_exhausted", model=self.primary_model)

        if await self.can_make_request(self.fallback_model, estimated_tokens):
            logger.info("rate_limit.fallback_selected", model=self.fallback_model)
            return ModelSelection(model=self.fallback_model, is_fallback=True)

        logger.error(
            "rate_limit.all_models_exhausted",
            primary=self.primary_model,
            fallback=self.fallback_model,
        )
        return None

    async def record_request(self, model: str, token_count: int | None = None) -> None:
        """Count one request and its tokens against the model's current windows."""
        tokens = self.default_token_estimate if token_count is None else max(0, token_count)
        keys = self._window_keys(model)

        await self.counter_store.increment(
            [
                CounterIncrement(keys["rpm"], 1, MINUTE_WINDOW_TTL_SECONDS),
                CounterIncrement(keys["tpm"], tokens, MINUTE_WINDOW_TTL_SECONDS),
                CounterIncrement(keys["rpd"], 1, DAY_WINDOW_TTL_SECONDS),
            ]
        )

        logger.debug("rate_limit.request_recorded", model=model, tokens=tokens)

    async def acquire_slot(self, estimated_tokens: int | None = None) -> ModelSelection:
        """Return the model to use next or raise if none has capacity.

        Raises:
            RateLimitExceededError: RPD_EXCEEDED when both models are out of
                daily requests, ALL_MODELS_EXHAUSTED otherwise
        """
        available = await self.get_available_model(estimated_tokens)
        if available is not None:
            return available

        primary_status, fallback_status = await asyncio.gather(
            self.get_model_status(self.primary_model),
            self.get_model_status(self.fallback_model),
        )

        if primary_status.rpd.remaining == 0 and fallback_status.rpd.remaining == 0:
            raise RateLimitExceededError(
                RateLimitErrorCode.RPD_EXCEEDED,
                "Daily rate limit exceeded for all models. Please try again tomorrow.",
            )

        raise RateLimitExceededError(
            RateLimitErrorCode.ALL_MODELS_EXHAUSTED,
            "Rate limit exceeded for all models. Please try again in a minute.",
        )

    async def wait_for_availability(
        self,
        estimated_tokens: int | None = None,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> ModelSelection:
        """Poll until a model has capacity or ``timeout`` seconds elapse.

        Raises:
            RateLimitExceededError: ALL_MODELS_EXHAUSTED after the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            available = await self.get_available_model(estimated_tokens)
            if available is not None:
                return available
            await asyncio.sleep(poll_interval)

        raise RateLimitExceededError(
            RateLimitErrorCode.ALL_MODELS_EXHAUSTED,
            f"Timed out waiting for rate limit availability after {timeout}s",
        )

    async def get_time_until_reset(self, model: str) -> dict[Metric, int]:
        """Seconds until each of the model's current counters expires."""
        keys = self._window_keys(model)
        rpm, tpm, rpd = await asyncio.gather(
            self.counter_store.ttl(keys["rpm"]),
            self.counter_store.ttl(keys["tpm"]),
            self.counter_store.ttl(keys["rpd"]),
        )
        return {"rpm": max(0, rpm), "tpm": max(0, tpm), "rpd": max(0, rpd)}

    async def get_rate_limit_status(self) -> dict[str, ModelStatus]:
        """Status of the primary and fallback models."""
        primary, fallback = await asyncio.gather(
            self.get_model_status(self.primary_model),
            self.get_model_status(self.fallback_model),
        )
        return {"primary": primary, "fallback": fallback}
