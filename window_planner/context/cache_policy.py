"""Cache policies: what to do with the provider cache at lifecycle events.

The planner decides *where* cache boundaries go; a policy decides *whether*
to create, reuse, refresh or rebuild the cache on first request, after a
rotation, and when the provider's cache lifetime has run out.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, Field

from window_planner.context.models import Message
from window_planner.context.token_estimator import TokenEstimator, get_token_estimator
from window_planner.core.config import get_settings


class CacheEvent(str, Enum):
    """Outcome of comparing this turn's prefix to the last one."""

    MISS = "miss"
    HIT = "hit"
    EXPIRED = "expired"
    SKIP = "skip"


class CacheAction(str, Enum):
    """What the provider client should do with the cache this turn."""

    CREATE = "create"
    REBUILD = "rebuild"
    REFRESH = "refresh"
    SKIP = "skip"
    USE = "use"


class CacheDecision(BaseModel):
    """A policy decision with the reason it was taken."""

    action: CacheAction
    reason: str
    tokens_to_cache: int | None = Field(default=None)
    refresh_tokens: int | None = Field(default=None, description="Minimal tokens to resend")
    expected_ttl_minutes: int | None = Field(default=None)


class CacheMetrics(BaseModel):
    """Counters a policy can analyze."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    total_saved: int = 0


def has_extended_cache(model_id: str | None) -> bool:
    """Whether the model keeps its prompt cache for the extended lifetime."""
    return bool(model_id) and "opus" in model_id.lower()


def cache_ttl_minutes(model_id: str | None) -> int:
    """Provider cache lifetime for the model."""
    settings = get_settings()
    if has_extended_cache(model_id):
        return settings.EXTENDED_CACHE_TTL_MINUTES
    return settings.CACHE_TTL_MINUTES


class DefaultCachePolicy:
    """Cache whenever it is likely to pay off."""

    MIN_FIRST_REQUEST_TOKENS = 500
    REFRESH_TOKENS = 100
    # Extended caches expired less than this many minutes ago are refreshed
    REFRESH_WINDOW_MINUTES = 65

    def __init__(self, estimator: TokenEstimator | None = None):
        self._estimator = estimator

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator or get_token_estimator()

    def on_cache_expired(
        self,
        messages: Sequence[Message],
        last_cache_time: datetime,
        model_id: str | None,
        now: datetime | None = None,
    ) -> CacheDecision:
        now = now or datetime.now(timezone.utc)
        minutes_since = (now - last_cache_time).total_seconds() / 60

        if has_extended_cache(model_id) and minutes_since < self.REFRESH_WINDOW_MINUTES:
            return CacheDecision(
                action=CacheAction.REFRESH,
                reason="Cache recently expired, attempting refresh",
                refresh_tokens=self.REFRESH_TOKENS,
                expected_ttl_minutes=cache_ttl_minutes(model_id),
            )

        return CacheDecision(
            action=CacheAction.REBUILD,
            reason=f"Cache expired ({minutes_since:.1f} minutes old)",
            expected_ttl_minutes=cache_ttl_minutes(model_id),
        )

    def on_first_request(
        self, messages: Sequence[Message], model_id: str | None
    ) -> CacheDecision:
        tokens = self.estimator.total_tokens(messages)
        if tokens < self.MIN_FIRST_REQUEST_TOKENS:
            return CacheDecision(
                action=CacheAction.SKIP,
                reason="Conversation too small to benefit from caching",
            )
        return CacheDecision(
            action=CacheAction.CREATE,
            reason="Creating initial cache",
            tokens_to_cache=tokens,
            expected_ttl_minutes=cache_ttl_minutes(model_id),
        )

    def on_context_rotation(
        self,
        dropped_count: int,
        kept_messages: Sequence[Message],
        model_id: str | None,
    ) -> CacheDecision:
        return CacheDecision(
            action=CacheAction.REBUILD,
            reason=f"Context rotated, dropped {dropped_count} messages",
            tokens_to_cache=self.estimator.total_tokens(kept_messages),
            expected_ttl_minutes=cache_ttl_minutes(model_id),
        )

    def analyze_cache_performance(self, metrics: CacheMetrics) -> list[str]:
        """Human-readable suggestions from cache counters."""
        total = metrics.hits + metrics.misses + metrics.expired
        if total == 0:
            return ["No cache data yet"]

        suggestions = []
        hit_rate = metrics.hits / total * 100
        expire_rate = metrics.expired / total * 100

        if hit_rate < 50:
            suggestions.append(
                "Low cache hit rate - consider longer conversations before breaks"
            )
        if expire_rate > 30:
            suggestions.append(
                "High expiration rate - consider models with extended cache lifetime"
            )
        if metrics.total_saved > 0:
            suggestions.append(f"Total tokens saved: {metrics.total_saved:,}")

        return suggestions


class AggressiveCachePolicy(DefaultCachePolicy):
    """Keeps the cache alive at all costs: always refresh on expiry."""

    REFRESH_TOKENS = 50

    def on_cache_expired(
        self,
        messages: Sequence[Message],
        last_cache_time: datetime,
        model_id: str | None,
        now: datetime | None = None,
    ) -> CacheDecision:
        return CacheDecision(
            action=CacheAction.REFRESH,
            reason="Attempting cache refresh to maintain continuity",
            refresh_tokens=self.REFRESH_TOKENS,
            expected_ttl_minutes=cache_ttl_minutes(model_id),
        )


class CostOptimizedCachePolicy(DefaultCachePolicy):
    """Only caches when the savings clearly outweigh the cache write cost."""

    EXTENDED_MODEL_THRESHOLD = 2000
    STANDARD_MODEL_THRESHOLD = 5000

    def on_first_request(
        self, messages: Sequence[Message], model_id: str | None
    ) -> CacheDecision:
        tokens = self.estimator.total_tokens(messages)
        threshold = (
            self.EXTENDED_MODEL_THRESHOLD
            if has_extended_cache(model_id)
            else self.STANDARD_MODEL_THRESHOLD
        )
        if tokens < threshold:
            return CacheDecision(
                action=CacheAction.SKIP,
                reason=f"Not enough tokens ({tokens}) to justify caching cost",
            )
        return super().on_first_request(messages, model_id)
