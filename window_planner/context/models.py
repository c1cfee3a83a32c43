"""Pydantic models for context window planning."""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# File extensions the provider accepts as images; anything else is text
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp"})


class Attachment(BaseModel):
    """A file attached to a message branch."""

    file_name: str = Field(..., description="Original file name")
    content: str = Field(default="", description="Text or base64 content")
    mime_type: str = Field(default="text/plain", description="Declared MIME type")
    size: int = Field(default=0, ge=0, description="Size in bytes")

    @property
    def extension(self) -> str:
        """Lower-cased extension without the dot ('' if none)."""
        if "." not in self.file_name:
            return ""
        return self.file_name.rsplit(".", 1)[-1].lower()

    @property
    def is_image(self) -> bool:
        """Whether the attachment is sent to the provider as an image."""
        return self.extension in IMAGE_EXTENSIONS


class ContentBlock(BaseModel):
    """A structured segment of a branch (text, reasoning, redacted reasoning)."""

    type: str = Field(..., description="text, thinking or redacted_thinking")
    text: str | None = Field(default=None)
    thinking: str | None = Field(default=None)
    signature: str | None = Field(default=None)


class MessageBranch(BaseModel):
    """One alternate version (edit or regeneration) of a message."""

    id: str = Field(..., description="Branch identifier")
    content: str = Field(default="", description="Branch text")
    role: Literal["user", "assistant", "system"] = Field(..., description="Author role")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    model: str | None = Field(default=None, description="Model that produced the branch")
    parent_branch_id: str | None = Field(default=None)
    content_blocks: list[ContentBlock] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)


class Message(BaseModel):
    """A conversation message with its branches and the active branch pointer."""

    id: str = Field(..., description="Message identifier")
    conversation_id: str = Field(default="", description="Owning conversation")
    branches: list[MessageBranch] = Field(default_factory=list)
    active_branch_id: str = Field(..., description="Branch that counts toward content")
    order: int = Field(default=0)

    @property
    def active_branch(self) -> MessageBranch | None:
        """The branch selected by active_branch_id, or None if unresolvable."""
        for branch in self.branches:
            if branch.id == self.active_branch_id:
                return branch
        return None

    @property
    def role(self) -> str | None:
        """Role of the active branch."""
        branch = self.active_branch
        return branch.role if branch else None

    @property
    def content(self) -> str:
        """Text of the active branch ('' if unresolvable)."""
        branch = self.active_branch
        return branch.content if branch else ""


class CacheMarker(BaseModel):
    """Boundary between the cacheable prefix and the fresh suffix."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., description="Message the boundary sits on")
    message_index: int = Field(..., ge=0, description="Index within the window messages")
    token_count: int = Field(..., ge=0, description="Cumulative tokens through the message")


class WindowMetadata(BaseModel):
    """Bookkeeping reported alongside each context window."""

    total_messages: int = Field(default=0, description="Messages in the full history")
    total_tokens: int = Field(default=0, description="Estimated tokens of kept messages")
    window_start: int = Field(default=0, description="History index of first kept message")
    window_end: int = Field(default=0, description="History index after last kept message")
    last_rotation: datetime | None = Field(default=None)
    dropped_messages: int = Field(default=0, description="Messages dropped by this call")
    in_grace_period: bool = Field(default=False)
    branch_reset: bool = Field(
        default=False, description="Planning state was reset by a branch edit"
    )
    cache_key: str | None = Field(default=None)


class ContextWindow(BaseModel):
    """The unit handed to the model provider client each turn."""

    messages: list[Message] = Field(default_factory=list)
    cacheable_prefix: list[Message] = Field(default_factory=list)
    active_window: list[Message] = Field(default_factory=list)
    cache_markers: list[CacheMarker] = Field(default_factory=list)
    metadata: WindowMetadata = Field(default_factory=WindowMetadata)

    @property
    def cache_marker(self) -> CacheMarker | None:
        """Single legacy marker (the last one) for callers that want one."""
        return self.cache_markers[-1] if self.cache_markers else None


class RollingState(BaseModel):
    """
    Per conversation/participant state of the rolling strategy.

    Immutable: every planning call returns a replacement state. Nothing here
    is persisted; a fresh RollingState is the correct state after a restart.
    """

    model_config = ConfigDict(frozen=True)

    in_grace_period: bool = False
    baseline_tokens: int = 0
    last_message_count: int = 0
    last_branch_signature: str = ""
    window_message_ids: frozenset[str] = Field(default_factory=frozenset)
    last_rotation: datetime | None = None


# ============================================================================
# Strategy configuration
# ============================================================================


class AppendContextConfig(BaseModel):
    """Unbounded growth; cache boundaries advance in discrete jumps."""

    strategy: Literal["append"] = "append"
    tokens_before_caching: int = Field(default=10_000, gt=0)


class RollingContextConfig(BaseModel):
    """Bounded window with a grace period above the soft budget."""

    strategy: Literal["rolling"] = "rolling"
    max_tokens: int = Field(..., gt=0, description="Soft budget and truncation floor")
    max_grace_tokens: int = Field(..., ge=0, description="Allowance above max_tokens")

    @property
    def max_total_tokens(self) -> int:
        """Hard ceiling that forces a rotation."""
        return self.max_tokens + self.max_grace_tokens


class LegacyRollingContextConfig(BaseModel):
    """Message-count window rotated in fixed intervals."""

    strategy: Literal["legacy_rolling"] = "legacy_rolling"
    max_messages: int = Field(default=100, gt=0)
    rotation_interval: int = Field(default=20, gt=0)
    cache_ratio: float = Field(default=0.8, ge=0, le=1)


class StaticContextConfig(BaseModel):
    """Fixed cached fraction of the most recent messages; never rotates."""

    strategy: Literal["static"] = "static"
    max_messages: int = Field(default=200, gt=0)
    always_cache_ratio: float = Field(default=0.9, ge=0, le=1)


class AdaptiveContextConfig(BaseModel):
    """Keeps important messages plus the most recent ones."""

    strategy: Literal["adaptive"] = "adaptive"
    max_messages: int = Field(default=100, gt=0)
    importance_threshold: float = Field(default=0.7, ge=0, le=1)


StrategyConfig = Union[
    AppendContextConfig,
    RollingContextConfig,
    LegacyRollingContextConfig,
    StaticContextConfig,
    AdaptiveContextConfig,
]

ContextManagement = Annotated[StrategyConfig, Field(discriminator="strategy")]

_context_management_adapter: TypeAdapter = TypeAdapter(ContextManagement)


STRATEGY_NAMES = ("append", "rolling", "legacy_rolling", "static", "adaptive")


def parse_context_management(data: dict | StrategyConfig) -> StrategyConfig:
    """Validate a raw strategy configuration.

    Raises:
        pydantic.ValidationError: unknown strategy or missing fields
    """
    if isinstance(data, BaseModel):
        return data
    return _context_management_adapter.validate_python(data)


# ============================================================================
# Conversation context and bookkeeping
# ============================================================================


class Conversation(BaseModel):
    """The slice of a conversation record the planner needs."""

    id: str = Field(..., description="Conversation identifier")
    model: str | None = Field(default=None, description="Provider model id")
    context_management: ContextManagement | None = Field(default=None)


class Participant(BaseModel):
    """A model participant in a multi-participant conversation."""

    id: str = Field(..., description="Participant identifier")
    conversation_id: str = Field(default="")
    name: str = Field(default="")
    context_management: ContextManagement | None = Field(
        default=None, description="Overrides the conversation setting"
    )


class InferenceUsage(BaseModel):
    """Cache usage reported by the provider after a request."""

    cache_hit: bool = False
    tokens_used: int = 0
    cached_tokens: int | None = None
    cache_read: int | None = None
    cache_created: int | None = None


class CacheStatistics(BaseModel):
    """Per conversation/participant cache counters."""

    cache_hits: int = 0
    cache_misses: int = 0
    cache_expired: int = 0
    total_tokens_saved: int = 0
    rotation_count: int = 0
