"""Tests for the message-count based strategies."""

from tests.fixtures_messages import make_message, make_messages
from window_planner.context.legacy_strategies import (
    AdaptiveContextStrategy,
    LegacyRollingContextStrategy,
    StaticContextStrategy,
)
from window_planner.context.models import ContextWindow


class TestLegacyRolling:
    def test_under_limit_keeps_all_and_leaves_tail_uncached(self):
        messages = make_messages(50, 10)
        result = LegacyRollingContextStrategy().prepare_context(messages)
        assert result.messages == messages
        assert len(result.cacheable_prefix) == 40
        assert len(result.active_window) == 10
        assert result.metadata.dropped_messages == 0
        assert result.cache_markers == []

    def test_short_conversation_caches_nothing(self):
        result = LegacyRollingContextStrategy().prepare_context(make_messages(5, 10))
        assert result.cacheable_prefix == []
        assert len(result.active_window) == 5

    def test_rotates_in_intervals(self):
        messages = make_messages(120, 10)
        result = LegacyRollingContextStrategy().prepare_context(messages)

        # (120 - 80) // 20 = 2 rotations
        assert result.metadata.window_start == 40
        assert result.metadata.window_end == 120
        assert result.metadata.dropped_messages == 40
        assert result.messages[0].id == "m40"
        assert len(result.cacheable_prefix) == 60
        assert len(result.active_window) == 20
        assert result.metadata.last_rotation is not None

    def test_first_rotation(self):
        result = LegacyRollingContextStrategy().prepare_context(make_messages(101, 10))
        assert result.metadata.window_start == 20
        assert len(result.messages) == 81

    def test_should_rotate_on_full_active_window(self):
        strategy = LegacyRollingContextStrategy()
        assert strategy.should_rotate(ContextWindow(active_window=make_messages(20, 1))) is True
        assert strategy.should_rotate(ContextWindow(active_window=make_messages(19, 1))) is False

    def test_get_cache_breakpoint(self):
        strategy = LegacyRollingContextStrategy()
        assert strategy.get_cache_breakpoint(make_messages(5, 1)) == 0
        assert strategy.get_cache_breakpoint(make_messages(50, 1)) == 40
        assert strategy.get_cache_breakpoint(make_messages(200, 1)) == 80


class TestStatic:
    def test_caches_fixed_fraction(self):
        messages = make_messages(10, 10)
        result = StaticContextStrategy().prepare_context(messages)
        assert result.messages == messages
        assert len(result.cacheable_prefix) == 9
        assert len(result.active_window) == 1

    def test_keeps_most_recent_max_messages(self):
        result = StaticContextStrategy().prepare_context(make_messages(250, 1))
        assert len(result.messages) == 200
        assert result.messages[0].id == "m50"
        assert result.metadata.window_start == 50
        assert result.metadata.dropped_messages == 50

    def test_never_rotates(self):
        strategy = StaticContextStrategy()
        assert strategy.should_rotate(ContextWindow(active_window=make_messages(500, 1))) is False

    def test_empty(self):
        result = StaticContextStrategy().prepare_context([])
        assert result.messages == []


class TestAdaptive:
    def _history(self):
        messages = make_messages(40, 10)
        for message in messages:
            message.active_branch.role = "assistant"
        messages[2] = make_message("```python\nprint(1)\n```", "assistant", message_id="code")
        return messages

    def test_keeps_important_and_recent(self):
        result = AdaptiveContextStrategy().prepare_context(self._history())

        assert [m.id for m in result.messages] == ["code"] + [f"m{i}" for i in range(20, 40)]
        assert result.metadata.dropped_messages == 19
        assert [m.id for m in result.cacheable_prefix] == ["code"]

    def test_score_capped_at_one(self):
        message = make_message("```" + "x" * 600, "user")
        scored = AdaptiveContextStrategy().score_messages([make_message("a"), message])
        assert scored[1][1] == 1.0

    def test_get_cache_breakpoint_counts_important(self):
        assert AdaptiveContextStrategy().get_cache_breakpoint(self._history()) == 1

    def test_should_rotate_above_thirty_active(self):
        strategy = AdaptiveContextStrategy()
        assert strategy.should_rotate(ContextWindow(active_window=make_messages(31, 1))) is True
        assert strategy.should_rotate(ContextWindow(active_window=make_messages(30, 1))) is False
