"""Token estimation for conversation messages.

The default estimator is a length heuristic (~4 characters per token).
A tiktoken-backed estimator can be selected through settings; both share
the same per-segment overheads so the planner and the strategies never
need to know which one is active.
"""

import math
from typing import Iterable, Protocol

import tiktoken

from window_planner.context.models import Message
from window_planner.core.config import get_settings

CHARS_PER_TOKEN = 4
THINKING_TAG_OVERHEAD = 10
REDACTED_THINKING_TOKENS = 15
IMAGE_ATTACHMENT_TOKENS = 1500


class TokenEstimator(Protocol):
    """Anything that can price a message in tokens."""

    def estimate(self, message: Message) -> int: ...

    def total_tokens(self, messages: Iterable[Message]) -> int: ...


class HeuristicTokenEstimator:
    """
    Estimates tokens as ceil(len / 4) over the active branch.

    Per active branch:
    - text content: ceil(len / 4)
    - each thinking block: ceil(len / 4) + 10 tag overhead
    - each redacted thinking block: flat 15
    - each image attachment (jpg/jpeg/png/webp): flat 1500
    - each other attachment: ceil(len(content) / 4)

    A message whose active branch cannot be resolved costs 0.
    """

    def count_text(self, text: str | None) -> int:
        """Estimate tokens for a bare string."""
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate(self, message: Message) -> int:
        """Estimate tokens for a single message."""
        branch = message.active_branch
        if branch is None:
            return 0

        tokens = self.count_text(branch.content)

        for block in branch.content_blocks:
            if block.type == "thinking":
                tokens += self.count_text(block.thinking) + THINKING_TAG_OVERHEAD
            elif block.type == "redacted_thinking":
                tokens += REDACTED_THINKING_TOKENS

        for attachment in branch.attachments:
            if attachment.is_image:
                tokens += IMAGE_ATTACHMENT_TOKENS
            else:
                tokens += self.count_text(attachment.content)

        return tokens

    def total_tokens(self, messages: Iterable[Message]) -> int:
        """Sum of per-message estimates."""
        return sum(self.estimate(message) for message in messages)


class TiktokenEstimator(HeuristicTokenEstimator):
    """Same accounting as the heuristic, with text priced by a real encoding."""

    def __init__(self, encoding: str = "cl100k_base"):
        # cl100k_base is the closest public encoding to Claude's tokenizer
        self._encoder = tiktoken.get_encoding(encoding)

    def count_text(self, text: str | None) -> int:
        if not text:
            return 0
        return len(self._encoder.encode(text, disallowed_special=()))


# Singleton instance for convenience
_estimator: TokenEstimator | None = None


def get_token_estimator() -> TokenEstimator:
    """Get or create the estimator selected by TOKEN_ESTIMATOR."""
    global _estimator
    if _estimator is None:
        settings = get_settings()
        if settings.TOKEN_ESTIMATOR == "tiktoken":
            _estimator = TiktokenEstimator(settings.TIKTOKEN_ENCODING)
        else:
            _estimator = HeuristicTokenEstimator()
    return _estimator


def reset_token_estimator() -> None:
    """Drop the cached estimator so the next call re-reads settings."""
    global _estimator
    _estimator = None
