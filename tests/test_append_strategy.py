"""Tests for the append context strategy."""

import logging
import random

from tests.fixtures_messages import make_message, make_messages, make_sized
from window_planner.context.models import AppendContextConfig, ContextWindow
from window_planner.context.strategies import AppendContextStrategy


def _strategy(tokens_before_caching=10_000):
    return AppendContextStrategy(AppendContextConfig(tokens_before_caching=tokens_before_caching))


def test_returns_all_messages():
    result = _strategy().prepare_context(make_messages(50, 100))
    assert len(result.messages) == 50
    assert result.metadata.total_messages == 50
    assert result.metadata.total_tokens == 5000
    assert result.metadata.window_start == 0
    assert result.metadata.window_end == 50


def test_includes_new_message():
    messages = make_messages(5, 10)
    new_msg = make_message("new message")
    result = _strategy().prepare_context(messages, new_msg)
    assert len(result.messages) == 6
    assert result.messages[5] is new_msg


def test_does_not_mutate_history():
    messages = make_messages(5, 10)
    _strategy().prepare_context(messages, make_message("new"))
    assert len(messages) == 5


def test_below_threshold_no_markers():
    result = _strategy().prepare_context(make_messages(5, 100))
    assert result.cache_markers == []
    assert result.cache_marker is None
    assert result.cacheable_prefix == []
    assert len(result.active_window) == 5


def test_default_threshold_is_10000():
    strategy = AppendContextStrategy()
    assert strategy.tokens_before_caching == 10_000
    assert strategy.prepare_context(make_messages(10, 500)).cache_marker is None


class TestDiscreteCacheWindow:
    """Markers target quarters of floor(total / threshold) * threshold."""

    def test_just_below_threshold(self):
        messages = make_messages(19, 500) + [make_sized(499, "assistant")]
        result = _strategy(10_000).prepare_context(messages)
        assert result.metadata.total_tokens == 9999
        assert result.cache_markers == []

    def test_just_above_threshold(self):
        messages = make_messages(20, 500) + [make_sized(1, "user")]
        result = _strategy(10_000).prepare_context(messages)

        assert result.metadata.total_tokens == 10_001
        # Targets 2500/5000/7500/10000; assistant hits move back to the user before
        assert [(m.message_index, m.token_count) for m in result.cache_markers] == [
            (4, 2500),
            (8, 4500),
            (14, 7500),
            (18, 9500),
        ]

    def test_breakpoints_stable_while_growing_within_a_step(self):
        strategy = _strategy(10_000)
        messages = make_messages(20, 500) + [make_sized(1, "user")]
        first = strategy.prepare_context(messages)

        messages = messages + [make_sized(3000, "assistant"), make_sized(2000, "user")]
        second = strategy.prepare_context(messages)

        assert second.metadata.total_tokens == 15_001
        assert second.cache_markers == first.cache_markers

    def test_breakpoints_advance_on_next_multiple(self):
        strategy = _strategy(10_000)
        messages = make_messages(40, 500) + [make_sized(1, "user")]
        result = strategy.prepare_context(messages)
        # current window 20000, step 5000
        assert result.cache_marker.token_count == 19_500


def test_markers_ordered_and_on_user_messages():
    result = _strategy(2000).prepare_context(make_messages(40, 500))
    markers = result.cache_markers
    assert 2 <= len(markers) <= 4
    for prev, cur in zip(markers, markers[1:]):
        assert cur.message_index > prev.message_index
        assert cur.token_count > prev.token_count
    for marker in markers:
        assert result.messages[marker.message_index].role == "user"
        assert marker.token_count >= 1024


def test_legacy_marker_is_last_marker():
    result = _strategy(2000).prepare_context(make_messages(40, 500))
    assert result.cache_marker == result.cache_markers[-1]


def test_split_at_legacy_marker():
    result = _strategy(2000).prepare_context(make_messages(40, 500))
    assert len(result.cacheable_prefix) + len(result.active_window) == len(result.messages)
    assert len(result.cacheable_prefix) == result.cache_marker.message_index + 1


def test_small_threshold_does_not_divide_to_zero():
    result = _strategy(1).prepare_context([make_message("abc")])
    assert result.cache_markers == []


def test_never_drops_messages():
    rng = random.Random(11)
    strategy = _strategy(3000)
    for _ in range(30):
        messages = [
            make_sized(rng.randint(0, 2000), rng.choice(["user", "assistant"]))
            for _ in range(rng.randint(0, 40))
        ]
        result = strategy.prepare_context(messages)
        assert len(result.messages) == len(messages)
        assert result.metadata.dropped_messages == 0


def test_should_rotate_always_false():
    strategy = _strategy()
    window = ContextWindow()
    window.metadata.total_tokens = 500_000
    assert strategy.should_rotate(window) is False


class TestGetCacheBreakpoint:
    def test_small_conversation(self):
        assert _strategy().get_cache_breakpoint(make_messages(3, 100)) == 0

    def test_leaves_last_thousand_tokens_uncached(self):
        messages = make_messages(20, 500)
        # 10000 - 1000 = 9000 tokens reached at index 17
        assert _strategy(5000).get_cache_breakpoint(messages) == 17

    def test_empty(self):
        assert _strategy().get_cache_breakpoint([]) == 0


def test_empty_history():
    result = _strategy().prepare_context([])
    assert result.messages == []
    assert result.cache_markers == []
    assert result.metadata.total_messages == 0


def test_planning_logged_with_fields(caplog):
    with caplog.at_level(logging.DEBUG, logger="window_planner.context.strategies"):
        _strategy(2000).prepare_context(make_messages(40, 500))

    record = next(r for r in caplog.records if r.getMessage() == "Append window planned")
    assert record.strategy == "append"
    assert record.extra_data == {"tokens": 20_000, "cached_span": 20_000, "markers": 4}
