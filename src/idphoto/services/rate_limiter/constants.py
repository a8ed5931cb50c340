"""Rate limit configuration for image generation models."""

from dataclasses import dataclass

RATE_LIMIT_KEY_PREFIX = "ratelimit"

# Counter TTLs are longer than their windows to tolerate clock skew between workers
MINUTE_WINDOW_TTL_SECONDS = 120
DAY_WINDOW_TTL_SECONDS = 90_000

# Used when the API response carries no usage metadata
DEFAULT_TOKEN_ESTIMATE = 1500


@dataclass(frozen=True)
class ModelRateLimits:
    """Per-model ceilings: requests/minute, tokens/minute, requests/day."""

    rpm: int
    tpm: int
    rpd: int


DEFAULT_PRIMARY_MODEL = "gemini-3-pro-image-preview"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash-image"

DEFAULT_MODEL_RATE_LIMITS: dict[str, ModelRateLimits] = {
    DEFAULT_PRIMARY_MODEL: ModelRateLimits(rpm=20, tpm=100_000, rpd=250),
    DEFAULT_FALLBACK_MODEL: ModelRateLimits(rpm=500, tpm=500_000, rpd=2_000),
}
