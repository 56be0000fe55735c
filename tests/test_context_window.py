"""Tests for the window manager.

Test Coverage:
- Analysis: preserved/compressible split and the strategy ladder
- Importance scoring
- Sliding window truncation
- Priority retention: tail preservation and chronological order
- truncate_to_fit pass-through
"""

from __future__ import annotations

import pytest

from conftest import make_conversation, make_message

from keel.context.estimator import estimate_messages
from keel.context.messages import ContextStrategy, Role, WindowConfig
from keel.context.window import WindowManager, calculate_importance
from keel.core.exceptions import ConfigurationError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def manager(small_window) -> WindowManager:
    return WindowManager(small_window)


# =============================================================================
# Test: Analysis
# =============================================================================


class TestAnalyze:
    """Test conversation analysis."""

    def test_split_preserves_tail(self, manager):
        messages = make_conversation(10)
        analysis = manager.analyze(messages)
        assert analysis.preserved == messages[-4:]
        assert analysis.compressible == messages[:-4]
        assert analysis.message_count == 10

    def test_short_conversation_fully_preserved(self, manager):
        messages = make_conversation(3)
        analysis = manager.analyze(messages)
        assert analysis.preserved == messages
        assert analysis.compressible == []

    def test_empty_conversation(self, manager):
        analysis = manager.analyze([])
        assert analysis.total_tokens == 0
        assert analysis.recommended_strategy is ContextStrategy.SLIDING_WINDOW
        assert not analysis.needs_compression

    @pytest.mark.parametrize(
        "tokens, expected",
        [
            (1000, ContextStrategy.SLIDING_WINDOW),
            (2000, ContextStrategy.SLIDING_WINDOW),
            (2001, ContextStrategy.RETRIEVAL_AUGMENTED),
            (3599, ContextStrategy.RETRIEVAL_AUGMENTED),
            (3600, ContextStrategy.HYBRID),
        ],
    )
    def test_strategy_ladder(self, manager, tokens, expected):
        # One message with a fixed estimate lands exactly on ``tokens``
        messages = [make_message("x", token_estimate=tokens)]
        assert manager.analyze(messages).recommended_strategy is expected

    def test_retrieval_checked_before_summarization(self):
        manager = WindowManager(WindowConfig(
            max_tokens=10000,
            target_tokens=8000,
            preserve_messages=2,
            compression_threshold=3000,
            retrieval_threshold=3000,
        ))
        analysis = manager.analyze([make_message("x", token_estimate=3500)])
        assert analysis.needs_compression
        assert analysis.recommended_strategy is ContextStrategy.RETRIEVAL_AUGMENTED

    def test_flags(self, manager):
        analysis = manager.analyze([make_message("x", token_estimate=2600)])
        assert analysis.needs_compression
        assert analysis.needs_retrieval

    def test_update_config_validates(self, manager):
        with pytest.raises(ConfigurationError):
            manager.update_config(target_tokens=5000)
        assert manager.config.target_tokens == 3000


# =============================================================================
# Test: Importance
# =============================================================================


class TestImportance:
    """Test importance scoring."""

    def test_recency_increases_score(self):
        message = make_message("plain text")
        assert calculate_importance(message, 9, 10) > calculate_importance(message, 0, 10)

    def test_markers_add_weight(self):
        plain = make_message("plain text")
        flagged = make_message("critical error: the decision is important")
        assert calculate_importance(flagged, 0, 10) > calculate_importance(plain, 0, 10)

    def test_capped_at_one(self):
        message = make_message(
            "critical urgent error failed decision important remember @user",
            tools_used=("search",),
        )
        assert calculate_importance(message, 9, 10) <= 1.0

    def test_precomputed_importance_wins(self, manager):
        message = make_message("plain", importance=0.95)
        assert manager.calculate_importance(message, 0, 10) == 0.95

    def test_precomputed_zero_importance_wins(self, manager):
        message = make_message("plain", importance=0.0)
        assert calculate_importance(message, 9, 10) > 0.0
        assert manager.calculate_importance(message, 9, 10) == 0.0


# =============================================================================
# Test: Truncation
# =============================================================================


class TestSlidingWindow:
    """Test newest-first truncation."""

    def test_keeps_newest_that_fit(self, manager):
        messages = make_conversation(10, chars=400)  # 104 tokens each
        result = manager.sliding_window(messages, target_tokens=350)
        assert result.messages == messages[-3:]
        assert result.messages_dropped == 7
        assert result.token_count <= 350

    def test_stops_at_first_overflow(self, manager):
        messages = [
            make_message("a" * 400, minutes=0),
            make_message("b" * 4000, minutes=1),
            make_message("c" * 40, minutes=2),
        ]
        result = manager.sliding_window(messages, target_tokens=500)
        assert result.messages == messages[-1:]


class TestPriorityRetention:
    """Test importance-ranked truncation."""

    def test_tail_always_kept(self, manager):
        messages = make_conversation(12, chars=400)
        result = manager.priority_retention(messages, target_tokens=100)
        assert result.messages[-4:] == messages[-4:]
        assert result.messages == messages[-4:]

    def test_important_older_message_survives(self, manager):
        messages = make_conversation(12, chars=400)
        messages[1] = make_message("critical error " + "z" * 385, role=Role.ASSISTANT, minutes=1)
        result = manager.priority_retention(messages, target_tokens=104 * 5)
        assert messages[1] in result.messages
        assert len(result.messages) == 5

    def test_chronological_order(self, manager):
        messages = make_conversation(20, chars=400)
        messages[3] = make_message("important decision " + "q" * 381, minutes=3)
        result = manager.priority_retention(messages, target_tokens=104 * 9)
        timestamps = [m.timestamp for m in result.messages]
        assert timestamps == sorted(timestamps)

    def test_result_is_subset_of_input(self, manager):
        messages = make_conversation(20, chars=400)
        result = manager.priority_retention(messages, target_tokens=1000)
        assert all(m in messages for m in result.messages)
        assert result.token_count == estimate_messages(result.messages)


class TestTruncateToFit:
    """Test the truncate_to_fit entry point."""

    def test_within_target_returns_input(self, manager):
        messages = make_conversation(5)
        result = manager.truncate_to_fit(messages)
        assert result.messages == messages
        assert result.messages_dropped == 0

    def test_over_target_reduces(self, manager):
        messages = make_conversation(40, chars=400)
        result = manager.truncate_to_fit(messages)
        assert result.token_count <= manager.config.target_tokens
        assert result.messages[-4:] == messages[-4:]

    def test_sliding_mode(self, manager):
        messages = make_conversation(40, chars=400)
        result = manager.truncate_to_fit(messages, use_priority=False)
        assert result.messages == messages[-len(result.messages):]
