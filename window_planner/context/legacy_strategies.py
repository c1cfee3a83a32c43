"""Message-count based strategies kept for conversations configured before
token-aware planning existed. None of them places cache markers; the split
between cacheable prefix and active window is a message count.
"""

from datetime import datetime, timezone
from typing import Sequence

from window_planner.context.models import CacheMarker, ContextWindow, Message, WindowMetadata
from window_planner.context.strategies import ContextStrategy, with_new_message
from window_planner.context.token_estimator import TokenEstimator

# Recent messages the legacy rolling window never caches
LEGACY_UNCACHED_TAIL = 10


class LegacyRollingContextStrategy(ContextStrategy):
    """Rolling window measured in messages, rotated in fixed intervals."""

    name = "legacy_rolling"

    def __init__(
        self,
        max_messages: int = 100,
        rotation_interval: int = 20,
        cache_ratio: float = 0.8,
        estimator: TokenEstimator | None = None,
    ):
        super().__init__(estimator)
        self.max_messages = max_messages
        self.rotation_interval = rotation_interval
        self.cache_ratio = cache_ratio

    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        all_messages = with_new_message(messages, new_message)

        if len(all_messages) <= self.max_messages:
            # Under the limit: cache everything but the last few messages
            breakpoint_ = max(0, len(all_messages) - LEGACY_UNCACHED_TAIL)
            return ContextWindow(
                messages=all_messages,
                cacheable_prefix=all_messages[:breakpoint_],
                active_window=all_messages[breakpoint_:],
                metadata=WindowMetadata(
                    total_messages=len(all_messages),
                    total_tokens=self.estimator.total_tokens(all_messages),
                    window_start=0,
                    window_end=len(all_messages),
                ),
            )

        cache_size = int(self.max_messages * self.cache_ratio)
        window_size = self.max_messages - cache_size

        rotations = (len(all_messages) - cache_size) // self.rotation_interval
        start = rotations * self.rotation_interval
        kept = all_messages[start:][-self.max_messages :]
        breakpoint_ = max(0, min(cache_size, len(kept) - window_size))

        return ContextWindow(
            messages=kept,
            cacheable_prefix=kept[:breakpoint_],
            active_window=kept[breakpoint_:],
            metadata=WindowMetadata(
                total_messages=len(all_messages),
                total_tokens=self.estimator.total_tokens(kept),
                window_start=start,
                window_end=start + len(kept),
                last_rotation=datetime.now(timezone.utc) if rotations > 0 else None,
                dropped_messages=len(all_messages) - len(kept),
            ),
        )

    def should_rotate(self, window: ContextWindow) -> bool:
        return len(window.active_window) >= self.rotation_interval

    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        cache_size = int(self.max_messages * self.cache_ratio)
        return max(0, min(cache_size, len(messages) - LEGACY_UNCACHED_TAIL))


class StaticContextStrategy(ContextStrategy):
    """Caches a fixed fraction of the history and never rotates."""

    name = "static"

    def __init__(
        self,
        max_messages: int = 200,
        always_cache_ratio: float = 0.9,
        estimator: TokenEstimator | None = None,
    ):
        super().__init__(estimator)
        self.max_messages = max_messages
        self.always_cache_ratio = always_cache_ratio

    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        all_messages = with_new_message(messages, new_message)
        breakpoint_ = self.get_cache_breakpoint(all_messages)
        kept = all_messages[-self.max_messages :] if all_messages else []
        start = max(0, len(all_messages) - self.max_messages)

        return ContextWindow(
            messages=kept,
            cacheable_prefix=all_messages[:breakpoint_],
            active_window=all_messages[breakpoint_:],
            metadata=WindowMetadata(
                total_messages=len(all_messages),
                total_tokens=self.estimator.total_tokens(kept),
                window_start=start,
                window_end=len(all_messages),
                dropped_messages=start,
            ),
        )

    def should_rotate(self, window: ContextWindow) -> bool:
        return False

    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        return int(len(messages) * self.always_cache_ratio)


class AdaptiveContextStrategy(ContextStrategy):
    """Keeps high-importance messages plus the most recent ones.

    Importance starts at 0.5 and is raised by recency (up to +0.2), length
    over 500 characters (+0.1), code fences (+0.2) and a user role (+0.1),
    capped at 1.0.
    """

    name = "adaptive"

    ALWAYS_KEEP_RECENT = 20
    ROTATE_ABOVE_ACTIVE = 30

    def __init__(
        self,
        max_messages: int = 100,
        importance_threshold: float = 0.7,
        estimator: TokenEstimator | None = None,
    ):
        super().__init__(estimator)
        self.max_messages = max_messages
        self.importance_threshold = importance_threshold

    def score_messages(self, messages: Sequence[Message]) -> list[tuple[Message, float]]:
        scored = []
        for index, message in enumerate(messages):
            score = 0.5
            score += (index / len(messages)) * 0.2
            content = message.content
            if len(content) > 500:
                score += 0.1
            if "```" in content:
                score += 0.2
            if message.role == "user":
                score += 0.1
            scored.append((message, min(1.0, score)))
        return scored

    def _important(self, messages: Sequence[Message]) -> list[Message]:
        return [
            message
            for message, score in self.score_messages(messages)
            if score >= self.importance_threshold
        ]

    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        all_messages = with_new_message(messages, new_message)
        important = self._important(all_messages)
        keep_ids = {message.id for message in important}
        keep_ids.update(message.id for message in all_messages[-self.ALWAYS_KEEP_RECENT :])

        kept = [message for message in all_messages if message.id in keep_ids]
        kept = kept[-self.max_messages :] if kept else []
        breakpoint_ = min(len(important), len(kept))

        return ContextWindow(
            messages=kept,
            cacheable_prefix=kept[:breakpoint_],
            active_window=kept[breakpoint_:],
            metadata=WindowMetadata(
                total_messages=len(all_messages),
                total_tokens=self.estimator.total_tokens(kept),
                window_start=0,
                window_end=len(kept),
                last_rotation=datetime.now(timezone.utc) if all_messages else None,
                dropped_messages=len(all_messages) - len(kept),
            ),
        )

    def should_rotate(self, window: ContextWindow) -> bool:
        return len(window.active_window) > self.ROTATE_ABOVE_ACTIVE

    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        return len(self._important(messages))
