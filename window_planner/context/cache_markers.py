"""Cache breakpoint planning.

Places up to ``max_points`` cache markers at arithmetic token targets
(``step_size``, ``2 * step_size``, ...) over an ordered message list,
honoring the provider placement rules:

- a marker may only sit on a message whose active branch role is "user";
  a candidate on any other role is moved back to the nearest user message
  within MARKER_LOOKBACK_MESSAGES, or dropped
- a marker must cover at least PROVIDER_MIN_CACHE_TOKENS
- markers strictly increase in index and token count

Planning is deterministic, so a stable prefix keeps stable markers.
"""

from typing import Sequence

from window_planner.context.models import CacheMarker, Message
from window_planner.context.token_estimator import TokenEstimator, get_token_estimator

# Smallest segment the provider will cache
PROVIDER_MIN_CACHE_TOKENS = 1024

# Provider breakpoint limit
MAX_CACHE_POINTS = 4

# How far back a non-user candidate may move to find a user message.
# Long runs of non-user messages (chained tool output) beyond this lose the marker.
MARKER_LOOKBACK_MESSAGES = 5


def plan_cache_markers(
    messages: Sequence[Message],
    total_tokens: int,
    step_size: int,
    max_points: int = MAX_CACHE_POINTS,
    estimator: TokenEstimator | None = None,
    lookback: int = MARKER_LOOKBACK_MESSAGES,
    min_tokens: int = PROVIDER_MIN_CACHE_TOKENS,
) -> list[CacheMarker]:
    """
    Compute cache markers at multiples of step_size.

    Args:
        messages: Messages that will be sent, in order
        total_tokens: Estimated tokens of messages
        step_size: Token distance between targets
        max_points: Maximum markers to place
        estimator: Token estimator (configured default if None)
        lookback: Max messages to walk back to reach a user message
        min_tokens: Minimum cumulative tokens a marker must cover

    Returns:
        Accepted markers in increasing order; empty means no caching this turn
    """
    if step_size <= 0 or max_points <= 0 or not messages:
        return []

    estimator = estimator or get_token_estimator()
    sizes = [estimator.estimate(message) for message in messages]

    markers: list[CacheMarker] = []
    used_indices: set[int] = set()
    cursor = 0  # next message to add to the running sum
    running = 0

    for point in range(1, max_points + 1):
        target = point * step_size
        if target > total_tokens:
            continue

        while cursor < len(messages) and running < target:
            running += sizes[cursor]
            cursor += 1
        if running < target:
            break

        index = cursor - 1
        tokens_at = running

        if messages[index].role != "user":
            user_index = _find_user_message(messages, index, lookback)
            if user_index is None:
                continue
            tokens_at -= sum(sizes[user_index + 1 : index + 1])
            index = user_index
            # Resume the forward walk right after the relocated marker
            running = tokens_at
            cursor = user_index + 1

        if index in used_indices or tokens_at < min_tokens:
            continue
        if markers and tokens_at <= markers[-1].token_count:
            continue

        used_indices.add(index)
        markers.append(
            CacheMarker(
                message_id=messages[index].id,
                message_index=index,
                token_count=tokens_at,
            )
        )

    return markers


def _find_user_message(
    messages: Sequence[Message], index: int, lookback: int
) -> int | None:
    """Nearest index <= lookback messages before index with a user role."""
    for offset in range(1, lookback + 1):
        candidate = index - offset
        if candidate < 0:
            break
        if messages[candidate].role == "user":
            return candidate
    return None


def legacy_marker(markers: Sequence[CacheMarker]) -> CacheMarker | None:
    """The last marker, for callers that only understand one breakpoint."""
    return markers[-1] if markers else None


def split_at_marker(
    messages: list[Message], markers: Sequence[CacheMarker]
) -> tuple[list[Message], list[Message]]:
    """Split into (cacheable_prefix, active_window) after the last marker."""
    marker = legacy_marker(markers)
    if marker is None:
        return [], list(messages)
    boundary = marker.message_index + 1
    return list(messages[:boundary]), list(messages[boundary:])
