"""Context window and cache-breakpoint planning.

This module provides:
- Token estimation for messages (length heuristic or tiktoken)
- Cache marker planning under provider placement rules
- Append and rolling (grace-period) context strategies
- Legacy message-count strategies
- Cache policies for first request, rotation and expiry
- A per-conversation context manager with cache statistics
"""

from window_planner.context.models import (
    AdaptiveContextConfig,
    AppendContextConfig,
    Attachment,
    CacheMarker,
    CacheStatistics,
    ContentBlock,
    ContextManagement,
    ContextWindow,
    Conversation,
    InferenceUsage,
    LegacyRollingContextConfig,
    Message,
    MessageBranch,
    Participant,
    RollingContextConfig,
    RollingState,
    StaticContextConfig,
    WindowMetadata,
    parse_context_management,
)

__all__ = [
    # Models
    "AdaptiveContextConfig",
    "AppendContextConfig",
    "Attachment",
    "CacheMarker",
    "CacheStatistics",
    "ContentBlock",
    "ContextManagement",
    "ContextWindow",
    "Conversation",
    "InferenceUsage",
    "LegacyRollingContextConfig",
    "Message",
    "MessageBranch",
    "Participant",
    "RollingContextConfig",
    "RollingState",
    "StaticContextConfig",
    "WindowMetadata",
    "parse_context_management",
]
