"""Per-conversation context planning.

ContextManager owns the planning state for every conversation/participant
pair: one strategy instance (and so one RollingState) per key, created on
first use and evicted with clear_state(). It resolves which strategy a
conversation uses, feeds the previous turn's marker back in, derives a
cache key for the cacheable prefix and keeps cache statistics.

Not thread-safe: calls for one key must be serialized by the caller.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Sequence

from pydantic import BaseModel, Field

from window_planner.context.cache_policy import (
    CacheAction,
    CacheDecision,
    CacheEvent,
    DefaultCachePolicy,
    cache_ttl_minutes,
)
from window_planner.context.legacy_strategies import (
    AdaptiveContextStrategy,
    LegacyRollingContextStrategy,
    StaticContextStrategy,
)
from window_planner.context.models import (
    STRATEGY_NAMES,
    AdaptiveContextConfig,
    AppendContextConfig,
    CacheMarker,
    CacheStatistics,
    ContextWindow,
    Conversation,
    InferenceUsage,
    LegacyRollingContextConfig,
    Message,
    Participant,
    RollingContextConfig,
    StaticContextConfig,
    StrategyConfig,
    parse_context_management,
)
from window_planner.context.rolling import RollingContextStrategy
from window_planner.context.strategies import AppendContextStrategy, ContextStrategy
from window_planner.context.token_estimator import TokenEstimator
from window_planner.core.config import get_settings
from window_planner.core.logging import get_logger, log_with_context

logger = get_logger(__name__)


class ContextManagerConfig(BaseModel):
    """Defaults applied when a conversation has no context_management."""

    default_strategy: Literal["append", "rolling"] = "append"
    enable_caching: bool = True
    cache_prefix: str = "arc-cache"
    tokens_before_caching: int = Field(default=10_000, gt=0)
    rolling_max_tokens: int = Field(default=50_000, gt=0)
    rolling_grace_tokens: int = Field(default=10_000, ge=0)

    @classmethod
    def from_settings(cls) -> "ContextManagerConfig":
        settings = get_settings()
        return cls(
            default_strategy=settings.DEFAULT_CONTEXT_STRATEGY,
            enable_caching=settings.ENABLE_PROMPT_CACHING,
            cache_prefix=settings.CACHE_KEY_PREFIX,
            tokens_before_caching=settings.DEFAULT_TOKENS_BEFORE_CACHING,
            rolling_max_tokens=settings.DEFAULT_ROLLING_MAX_TOKENS,
            rolling_grace_tokens=settings.DEFAULT_ROLLING_GRACE_TOKENS,
        )

    def default_context_management(self) -> StrategyConfig:
        if self.default_strategy == "rolling":
            return RollingContextConfig(
                max_tokens=self.rolling_max_tokens,
                max_grace_tokens=self.rolling_grace_tokens,
            )
        return AppendContextConfig(tokens_before_caching=self.tokens_before_caching)


class PreparedContext(BaseModel):
    """Everything the provider client needs for one request."""

    formatted_messages: list[dict[str, Any]] = Field(default_factory=list)
    cache_key: str | None = None
    window: ContextWindow
    cache_event: CacheEvent
    cache_decision: CacheDecision


@dataclass
class ContextState:
    """Planning state for one conversation/participant."""

    conversation_id: str
    participant_id: str | None
    context_management: StrategyConfig
    strategy: ContextStrategy
    override: StrategyConfig | None = None
    last_window: ContextWindow | None = None
    cache_marker: CacheMarker | None = None
    last_cache_time: datetime | None = None
    statistics: CacheStatistics = field(default_factory=CacheStatistics)


def state_key(conversation_id: str, participant_id: str | None = None) -> str:
    """Key of the state map: conversation, or conversation:participant."""
    if participant_id:
        return f"{conversation_id}:{participant_id}"
    return conversation_id


def build_strategy(
    config: StrategyConfig,
    estimator: TokenEstimator | None = None,
    conversation_id: str | None = None,
) -> ContextStrategy:
    """Instantiate the strategy a configuration describes."""
    if isinstance(config, RollingContextConfig):
        return RollingContextStrategy(
            config, estimator=estimator, conversation_id=conversation_id
        )
    if isinstance(config, LegacyRollingContextConfig):
        return LegacyRollingContextStrategy(
            config.max_messages,
            config.rotation_interval,
            config.cache_ratio,
            estimator=estimator,
        )
    if isinstance(config, StaticContextConfig):
        return StaticContextStrategy(
            config.max_messages, config.always_cache_ratio, estimator=estimator
        )
    if isinstance(config, AdaptiveContextConfig):
        return AdaptiveContextStrategy(
            config.max_messages, config.importance_threshold, estimator=estimator
        )
    return AppendContextStrategy(config, estimator=estimator)


def format_messages(window: ContextWindow) -> list[dict[str, Any]]:
    """Provider-neutral role/content dicts with cache breakpoints flagged."""
    marked = {marker.message_index for marker in window.cache_markers}
    formatted = []
    for index, message in enumerate(window.messages):
        branch = message.active_branch
        if branch is None:
            continue
        entry: dict[str, Any] = {"role": branch.role, "content": branch.content}
        if index in marked:
            entry["cache_breakpoint"] = True
        formatted.append(entry)
    return formatted


class ContextManager:
    """
    Plans context windows for many conversations.

    Strategy resolution per call, highest priority first:
    1. the participant's context_management
    2. a configuration pinned with set_context_management()
    3. the conversation's context_management
    4. the manager default
    """

    def __init__(
        self,
        config: ContextManagerConfig | None = None,
        policy: DefaultCachePolicy | None = None,
        estimator: TokenEstimator | None = None,
    ):
        self.config = config or ContextManagerConfig.from_settings()
        self.policy = policy or DefaultCachePolicy(estimator)
        self._estimator = estimator
        self._states: dict[str, ContextState] = {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def prepare_context(
        self,
        conversation: Conversation,
        messages: Sequence[Message],
        new_message: Message | None = None,
        participant: Participant | None = None,
        now: datetime | None = None,
    ) -> PreparedContext:
        """
        Plan this turn's window for a conversation (and participant).

        Args:
            conversation: Conversation being answered
            messages: Ordered history from the conversation store
            new_message: Message being added this turn, if any
            participant: Participant the request is made for, if any
            now: Current time (defaults to UTC now)

        Returns:
            PreparedContext with formatted messages, cache key and decision
        """
        now = now or datetime.now(timezone.utc)
        participant_id = participant.id if participant else None
        state = self._states.get(state_key(conversation.id, participant_id))

        requested = (
            (participant.context_management if participant else None)
            or (state.override if state else None)
            or conversation.context_management
            or self.config.default_context_management()
        )
        if state is None:
            state = self._create_state(conversation.id, participant_id, requested)
        elif state.context_management != requested:
            self._switch_strategy(state, requested)

        window = state.strategy.prepare_context(messages, new_message, state.cache_marker)
        dropped = window.metadata.dropped_messages
        rotated = dropped > 0 or (
            state.last_window is not None and state.strategy.should_rotate(window)
        )
        if rotated:
            state.statistics.rotation_count += 1

        cache_key = self.generate_cache_key(window.cacheable_prefix)
        event, decision = self._track_cache(
            state, window, cache_key, rotated, conversation.model, now
        )

        window.metadata.cache_key = cache_key
        state.last_window = window
        state.cache_marker = window.cache_marker

        log_with_context(
            logger,
            logging.DEBUG,
            "Prepared context window",
            conversation_id=conversation.id,
            participant_id=participant_id,
            strategy=state.strategy.name,
            messages=len(window.messages),
            tokens=window.metadata.total_tokens,
            markers=len(window.cache_markers),
            event=event.value,
            action=decision.action.value,
        )

        return PreparedContext(
            formatted_messages=format_messages(window),
            cache_key=cache_key if self.config.enable_caching else None,
            window=window,
            cache_event=event,
            cache_decision=decision,
        )

    def _track_cache(
        self,
        state: ContextState,
        window: ContextWindow,
        cache_key: str,
        rotated: bool,
        model_id: str | None,
        now: datetime,
    ) -> tuple[CacheEvent, CacheDecision]:
        """Update hit/miss/expired counters and pick the cache action."""
        if not self.config.enable_caching:
            return CacheEvent.SKIP, CacheDecision(
                action=CacheAction.SKIP, reason="Prompt caching disabled"
            )

        stats = state.statistics
        previous_key = state.last_window.metadata.cache_key if state.last_window else None
        last_cache_time = state.last_cache_time
        if cache_key:
            state.last_cache_time = now

        if cache_key and cache_key == previous_key:
            ttl = timedelta(minutes=cache_ttl_minutes(model_id))
            if last_cache_time is not None and now - last_cache_time > ttl:
                event = CacheEvent.EXPIRED
                stats.cache_expired += 1
                decision = self.policy.on_cache_expired(
                    window.messages, last_cache_time, model_id, now
                )
            else:
                event = CacheEvent.HIT
                stats.cache_hits += 1
                decision = CacheDecision(
                    action=CacheAction.USE, reason="Cacheable prefix unchanged"
                )
        else:
            event = CacheEvent.MISS
            stats.cache_misses += 1
            if rotated:
                decision = self.policy.on_context_rotation(
                    window.metadata.dropped_messages, window.messages, model_id
                )
            elif state.last_window is None:
                decision = self.policy.on_first_request(window.messages, model_id)
            elif cache_key:
                decision = CacheDecision(
                    action=CacheAction.CREATE, reason="Cacheable prefix advanced"
                )
            else:
                decision = CacheDecision(
                    action=CacheAction.SKIP, reason="No cacheable prefix this turn"
                )

        return event, decision

    def generate_cache_key(self, prefix: Sequence[Message]) -> str:
        """Stable key for a cacheable prefix ('' when there is none)."""
        if not prefix:
            return ""
        content = "|".join(f"{message.role}:{message.content}" for message in prefix)
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
        return f"{self.config.cache_prefix}-{digest}"

    # ------------------------------------------------------------------
    # Feedback and configuration
    # ------------------------------------------------------------------

    def update_after_inference(
        self,
        conversation_id: str,
        usage: InferenceUsage,
        participant_id: str | None = None,
    ) -> None:
        """Record provider-reported cache usage. Unknown keys are ignored."""
        state = self._states.get(state_key(conversation_id, participant_id))
        if state is None:
            return
        saved = usage.cached_tokens or usage.cache_read or 0
        state.statistics.total_tokens_saved += saved

    def get_statistics(
        self, conversation_id: str, participant_id: str | None = None
    ) -> CacheStatistics | None:
        state = self._states.get(state_key(conversation_id, participant_id))
        return state.statistics.model_copy() if state else None

    def get_cache_marker(
        self, conversation_id: str, participant_id: str | None = None
    ) -> CacheMarker | None:
        state = self._states.get(state_key(conversation_id, participant_id))
        return state.cache_marker if state else None

    def set_context_management(
        self,
        conversation_id: str,
        context_management: dict | StrategyConfig,
        participant_id: str | None = None,
    ) -> None:
        """
        Pin a strategy configuration for a conversation (and participant).

        Raises:
            ValueError: unknown strategy name
            pydantic.ValidationError: invalid parameters for a known strategy
        """
        if isinstance(context_management, dict):
            name = context_management.get("strategy")
            if name not in STRATEGY_NAMES:
                raise ValueError(f"Unknown context strategy: {name}")
        config = parse_context_management(context_management)

        key = state_key(conversation_id, participant_id)
        state = self._states.get(key)
        if state is None:
            state = self._create_state(conversation_id, participant_id, config)
        else:
            self._switch_strategy(state, config)
        state.override = config

    def clear_state(
        self, conversation_id: str | None = None, participant_id: str | None = None
    ) -> None:
        """Evict one participant, every key of a conversation, or everything."""
        if conversation_id is None:
            self._states.clear()
            return
        if participant_id is not None:
            self._states.pop(state_key(conversation_id, participant_id), None)
            return
        for key in list(self._states):
            if key == conversation_id or key.startswith(f"{conversation_id}:"):
                del self._states[key]

    def export_state(self) -> dict[str, dict[str, Any]]:
        """JSON-friendly snapshot of all states, for debugging."""
        exported: dict[str, dict[str, Any]] = {}
        for key, state in self._states.items():
            entry: dict[str, Any] = {
                "conversation_id": state.conversation_id,
                "participant_id": state.participant_id,
                "strategy": state.strategy.name,
                "context_management": state.context_management.model_dump(),
                "statistics": state.statistics.model_dump(),
                "cache_marker": state.cache_marker.model_dump() if state.cache_marker else None,
                "last_cache_key": (
                    state.last_window.metadata.cache_key if state.last_window else None
                ),
            }
            if isinstance(state.strategy, RollingContextStrategy):
                rolling = state.strategy.state
                entry["rolling_state"] = {
                    "in_grace_period": rolling.in_grace_period,
                    "baseline_tokens": rolling.baseline_tokens,
                    "last_message_count": rolling.last_message_count,
                    "window_size": len(rolling.window_message_ids),
                    "last_rotation": (
                        rolling.last_rotation.isoformat() if rolling.last_rotation else None
                    ),
                }
            exported[key] = entry
        return exported

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_state(
        self, conversation_id: str, participant_id: str | None, config: StrategyConfig
    ) -> ContextState:
        state = ContextState(
            conversation_id=conversation_id,
            participant_id=participant_id,
            context_management=config,
            strategy=build_strategy(config, self._estimator, conversation_id),
        )
        self._states[state_key(conversation_id, participant_id)] = state
        return state

    def _switch_strategy(self, state: ContextState, config: StrategyConfig) -> None:
        """Swap the strategy and forget the window and marker it produced."""
        log_with_context(
            logger,
            logging.INFO,
            "Context strategy changed",
            conversation_id=state.conversation_id,
            participant_id=state.participant_id,
            strategy=config.strategy,
        )
        state.context_management = config
        state.strategy = build_strategy(config, self._estimator, state.conversation_id)
        state.last_window = None
        state.cache_marker = None
