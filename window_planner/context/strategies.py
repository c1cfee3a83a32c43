"""Context strategies: the common interface and the append strategy.

A strategy turns the ordered conversation history into the ContextWindow
sent to the provider on each turn. Strategies never raise on message
content: unresolvable branches count as zero tokens and an exhausted
marker search simply yields fewer markers.
"""

import logging
from abc import ABC, abstractmethod
from typing import Sequence

from window_planner.context.cache_markers import (
    MAX_CACHE_POINTS,
    plan_cache_markers,
    split_at_marker,
)
from window_planner.context.models import (
    AppendContextConfig,
    CacheMarker,
    ContextWindow,
    Message,
    WindowMetadata,
)
from window_planner.context.token_estimator import TokenEstimator, get_token_estimator
from window_planner.core.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Tokens left uncached at the tail by the single-breakpoint helper
UNCACHED_TAIL_TOKENS = 1000


class ContextStrategy(ABC):
    """Base class for context strategies.

    Each conversation/participant pair owns its own instance. Instances are
    not thread-safe; calls for one conversation must be made serially.
    """

    name: str = ""

    def __init__(self, estimator: TokenEstimator | None = None):
        self._estimator = estimator

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator or get_token_estimator()

    @abstractmethod
    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        """Build the window for this turn.

        Args:
            messages: Ordered history from the conversation store
            new_message: Message being added this turn, if any
            previous_marker: Legacy marker returned by the previous call

        Returns:
            ContextWindow with kept messages, markers and metadata
        """

    @abstractmethod
    def should_rotate(self, window: ContextWindow) -> bool:
        """Whether the given window is due for a rotation."""

    @abstractmethod
    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        """Single breakpoint index for callers that don't need full markers."""

    def reset_state(self) -> None:
        """Clear per-conversation state (no-op for stateless strategies)."""


def with_new_message(
    messages: Sequence[Message], new_message: Message | None
) -> list[Message]:
    """History plus the message being added this turn."""
    all_messages = list(messages)
    if new_message is not None:
        all_messages.append(new_message)
    return all_messages


class AppendContextStrategy(ContextStrategy):
    """
    Keeps every message; cache boundaries advance in discrete jumps.

    Below tokens_before_caching nothing is cached. Above it, the cached span
    is floor(total / tokens_before_caching) * tokens_before_caching, split
    into up to four arithmetic breakpoints. Because the span only grows in
    whole multiples of the threshold, an established breakpoint stays valid
    until the conversation grows by another full threshold.
    """

    name = "append"

    def __init__(
        self,
        config: AppendContextConfig | None = None,
        estimator: TokenEstimator | None = None,
    ):
        super().__init__(estimator)
        self.config = config or AppendContextConfig()

    @property
    def tokens_before_caching(self) -> int:
        return self.config.tokens_before_caching

    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        all_messages = with_new_message(messages, new_message)
        total = self.estimator.total_tokens(all_messages)

        metadata = WindowMetadata(
            total_messages=len(all_messages),
            total_tokens=total,
            window_start=0,
            window_end=len(all_messages),
        )

        if total < self.tokens_before_caching:
            return ContextWindow(
                messages=all_messages,
                cacheable_prefix=[],
                active_window=all_messages,
                metadata=metadata,
            )

        current_window = (total // self.tokens_before_caching) * self.tokens_before_caching
        markers = plan_cache_markers(
            all_messages,
            total,
            step_size=current_window // MAX_CACHE_POINTS,
            max_points=MAX_CACHE_POINTS,
            estimator=self.estimator,
        )
        log_with_context(
            logger,
            logging.DEBUG,
            "Append window planned",
            strategy=self.name,
            tokens=total,
            cached_span=current_window,
            markers=len(markers),
        )

        prefix, active = split_at_marker(all_messages, markers)
        return ContextWindow(
            messages=all_messages,
            cacheable_prefix=prefix,
            active_window=active,
            cache_markers=markers,
            metadata=metadata,
        )

    def should_rotate(self, window: ContextWindow) -> bool:
        # Append never drops messages
        return False

    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        """Index after which at most the final ~1000 tokens stay uncached."""
        total = self.estimator.total_tokens(messages)
        target = total - UNCACHED_TAIL_TOKENS
        if target <= 0:
            return 0

        running = 0
        for index, message in enumerate(messages):
            running += self.estimator.estimate(message)
            if running >= target:
                return index
        return 0
