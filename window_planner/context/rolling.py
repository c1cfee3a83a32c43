"""Rolling context strategy.

A bounded window with hysteresis. The window may grow past ``max_tokens``
(the grace period) up to ``max_tokens + max_grace_tokens``; crossing that
ceiling rotates the window, dropping the oldest messages until what is
kept is just at or above ``max_tokens``. Rotating rarely keeps the cached
prefix stable for as long as possible.

State machine (per conversation/participant):

    NORMAL --(total > max_tokens)--> GRACE
    NORMAL/GRACE --(total > max_tokens + max_grace_tokens)--> rotate --> NORMAL
    any --(active branch of an evaluated message changed)--> reset --> NORMAL

A window over the ceiling that still needs its oldest message to reach
max_tokens has nothing to drop; it stays in (or enters) GRACE instead of
rotating on every call.

The transition itself is ``plan_rolling_window``, a pure function of
(state, input). ``RollingContextStrategy`` only holds the latest state so
it can sit behind the common strategy interface.
"""

import logging
from datetime import datetime, timezone
from typing import Sequence

from window_planner.context.cache_markers import (
    MAX_CACHE_POINTS,
    PROVIDER_MIN_CACHE_TOKENS,
    plan_cache_markers,
    split_at_marker,
)
from window_planner.context.models import (
    CacheMarker,
    ContextWindow,
    Message,
    RollingContextConfig,
    RollingState,
    WindowMetadata,
)
from window_planner.context.strategies import ContextStrategy, with_new_message
from window_planner.context.token_estimator import TokenEstimator, get_token_estimator
from window_planner.core.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Marker step is the working window divided into (points + 1) slices
MARKER_STEP_DIVISOR = MAX_CACHE_POINTS + 1


def branch_signature(messages: Sequence[Message]) -> str:
    """Fingerprint of which branch is active for each message."""
    return ",".join(message.active_branch_id for message in messages)


def rotation_start(sizes: Sequence[int], floor: int) -> tuple[int, int]:
    """
    Walk back from the newest message until ``floor`` tokens are kept.

    Returns:
        Tuple of (index of the first kept message, tokens kept)
    """
    running = 0
    start = len(sizes)
    for position in range(len(sizes) - 1, -1, -1):
        running += sizes[position]
        start = position
        if running >= floor:
            break
    return start, running


def plan_rolling_window(
    state: RollingState,
    config: RollingContextConfig,
    messages: Sequence[Message],
    new_message: Message | None = None,
    previous_marker: CacheMarker | None = None,
    *,
    estimator: TokenEstimator | None = None,
    now: datetime | None = None,
    conversation_id: str | None = None,
) -> tuple[ContextWindow, RollingState]:
    """
    Plan one turn of the rolling window.

    Args:
        state: State returned by the previous call (RollingState() initially)
        config: max_tokens / max_grace_tokens
        messages: Ordered history from the conversation store
        new_message: Message being added this turn, if any
        previous_marker: Legacy marker returned by the previous call
        estimator: Token estimator (configured default if None)
        now: Rotation timestamp (defaults to current UTC time)
        conversation_id: Used for logging only

    Returns:
        Tuple of (window for this turn, state for the next call)
    """
    estimator = estimator or get_token_estimator()
    history = list(messages)
    all_messages = with_new_message(history, new_message)

    # 1. A changed branch pointer on any evaluated message invalidates everything.
    # Only the previously seen prefix is compared, so appending is never a change.
    branch_reset = False
    if state.last_message_count > 0:
        seen = history[: state.last_message_count]
        if (
            len(seen) < state.last_message_count
            or branch_signature(seen) != state.last_branch_signature
        ):
            branch_reset = True
            log_with_context(
                logger,
                logging.INFO,
                "Branch change detected, resetting rolling state",
                conversation_id=conversation_id,
                previous_count=state.last_message_count,
            )
            state = RollingState(last_rotation=state.last_rotation)

    # 2. Previously dropped messages stay dropped
    if state.window_message_ids:
        scope_indices = [
            index
            for index, message in enumerate(all_messages)
            if message.id in state.window_message_ids
            or index >= state.last_message_count
        ]
    else:
        scope_indices = list(range(len(all_messages)))

    scope = [all_messages[index] for index in scope_indices]
    sizes = [estimator.estimate(message) for message in scope]
    total = sum(sizes)

    # 3. Hysteresis
    in_grace = state.in_grace_period
    baseline = state.baseline_tokens
    last_rotation = state.last_rotation
    start = 0
    running = total
    if total > config.max_total_tokens:
        start, running = rotation_start(sizes, config.max_tokens)

    if start > 0:
        # 4. Only a walk that actually drops something counts as a rotation
        in_grace = False
        baseline = running
        last_rotation = now or datetime.now(timezone.utc)
        log_with_context(
            logger,
            logging.INFO,
            "Rolling window rotated",
            conversation_id=conversation_id,
            tokens_before=total,
            tokens_after=running,
            dropped=start,
        )
    elif not in_grace and total > config.max_tokens:
        in_grace = True
        baseline = total
        log_with_context(
            logger,
            logging.DEBUG,
            "Entering grace period",
            conversation_id=conversation_id,
            tokens=total,
            ceiling=config.max_total_tokens,
        )

    dropped = start
    kept = scope[start:]
    kept_sizes = sizes[start:]
    kept_tokens = sum(kept_sizes)
    window_ids = frozenset(message.id for message in kept)

    # 6. Drop a stale marker from the previous turn
    marker = previous_marker
    if marker is not None and (
        branch_reset or dropped > 0 or marker.message_id not in window_ids
    ):
        marker = None

    # 7. Recompute; deterministic, so a stable prefix keeps its markers
    markers: list[CacheMarker] = []
    if kept_tokens >= PROVIDER_MIN_CACHE_TOKENS:
        step_size = max(
            config.max_total_tokens // MARKER_STEP_DIVISOR, PROVIDER_MIN_CACHE_TOKENS
        )
        markers = plan_cache_markers(
            kept,
            kept_tokens,
            step_size=step_size,
            max_points=MAX_CACHE_POINTS,
            estimator=estimator,
        )
    if not markers and marker is not None:
        reanchored = _reanchor_marker(marker, kept, kept_sizes)
        if reanchored is not None:
            markers = [reanchored]

    # 8. Split after the last marker
    prefix, active = split_at_marker(kept, markers)
    window_start = scope_indices[start] if kept else len(all_messages)

    window = ContextWindow(
        messages=kept,
        cacheable_prefix=prefix,
        active_window=active,
        cache_markers=markers,
        metadata=WindowMetadata(
            total_messages=len(all_messages),
            total_tokens=kept_tokens,
            window_start=window_start,
            window_end=window_start + len(kept),
            last_rotation=last_rotation,
            dropped_messages=dropped,
            in_grace_period=in_grace,
            branch_reset=branch_reset,
        ),
    )

    # 5. The full count bounds the next branch comparison
    next_state = RollingState(
        in_grace_period=in_grace,
        baseline_tokens=baseline,
        last_message_count=len(all_messages),
        last_branch_signature=branch_signature(all_messages),
        window_message_ids=window_ids,
        last_rotation=last_rotation,
    )
    return window, next_state


def _reanchor_marker(
    marker: CacheMarker, kept: list[Message], kept_sizes: list[int]
) -> CacheMarker | None:
    """Re-derive a surviving marker's index and count against the kept window."""
    for index, message in enumerate(kept):
        if message.id != marker.message_id:
            continue
        tokens_at = sum(kept_sizes[: index + 1])
        if message.role != "user" or tokens_at < PROVIDER_MIN_CACHE_TOKENS:
            return None
        return CacheMarker(
            message_id=message.id, message_index=index, token_count=tokens_at
        )
    return None


class RollingContextStrategy(ContextStrategy):
    """Holds one conversation's RollingState behind the strategy interface."""

    name = "rolling"

    def __init__(
        self,
        config: RollingContextConfig,
        estimator: TokenEstimator | None = None,
        conversation_id: str | None = None,
    ):
        super().__init__(estimator)
        self.config = config
        self.conversation_id = conversation_id
        self._state = RollingState()

    @property
    def state(self) -> RollingState:
        return self._state

    def prepare_context(
        self,
        messages: Sequence[Message],
        new_message: Message | None = None,
        previous_marker: CacheMarker | None = None,
    ) -> ContextWindow:
        window, self._state = plan_rolling_window(
            self._state,
            self.config,
            messages,
            new_message,
            previous_marker,
            estimator=self.estimator,
            conversation_id=self.conversation_id,
        )
        return window

    def should_rotate(self, window: ContextWindow) -> bool:
        """True when re-planning this window would drop messages from it."""
        sizes = [self.estimator.estimate(message) for message in window.messages]
        if sum(sizes) <= self.config.max_total_tokens:
            return False
        start, _ = rotation_start(sizes, self.config.max_tokens)
        return start > 0

    def get_cache_breakpoint(self, messages: Sequence[Message]) -> int:
        """Index where the cumulative count reaches half the working window."""
        total = self.estimator.total_tokens(messages)
        if total < PROVIDER_MIN_CACHE_TOKENS:
            return 0

        target = self.config.max_total_tokens // 2
        if total < target:
            return len(messages) // 2

        running = 0
        for index, message in enumerate(messages):
            running += self.estimator.estimate(message)
            if running >= target:
                return index
        return len(messages) // 2

    def reset_state(self) -> None:
        """Forget everything (used on conversation switch)."""
        self._state = RollingState()
