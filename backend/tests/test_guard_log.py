"""
Tests for the guard log.
"""
import pytest
from guard_log import GuardLog
from models import GuardResults, GuardVerdict


ALLOW = GuardVerdict(allowed=True, result_id="r-1")
BLOCK = GuardVerdict(allowed=False, action="Block", reasons=["Prompt attack"])
WARNED = GuardVerdict(allowed=True, warning="AI Guard validation failed - proceeding without validation")


class TestGuardLog:
    """Test guard log functionality."""

    def test_log_turn(self):
        """Test logging an allowed turn."""
        log = GuardLog(max_entries=10)

        entry_id = log.log_turn("openai", "gpt-4o", GuardResults(input_validation=ALLOW, output_validation=ALLOW))

        assert entry_id is not None
        assert len(log) == 1
        entry = log.get_entries()[0]
        assert entry['id'] == entry_id
        assert entry['provider'] == "openai"
        assert entry['input_action'] == "Allow"
        assert entry['output_action'] == "Allow"
        assert entry['blocked_stage'] is None

    def test_blocked_turn(self):
        """Test logging an input block."""
        log = GuardLog(max_entries=10)
        log.log_turn("ollama", "llama3", GuardResults(input_validation=BLOCK), blocked_stage="input")

        entry = log.get_entries()[0]
        assert entry['blocked_stage'] == "input"
        assert entry['reasons'] == ["Prompt attack"]
        assert entry['output_action'] is None

    def test_newest_first_and_capped(self):
        """Test eviction of the oldest entries."""
        log = GuardLog(max_entries=3)
        for i in range(5):
            log.log_turn("ollama", f"model-{i}", GuardResults(input_validation=ALLOW))

        assert len(log) == 3
        assert [e['model'] for e in log.get_entries()] == ["model-4", "model-3", "model-2"]

    def test_filter_and_paging(self):
        log = GuardLog(max_entries=10)
        log.log_turn("ollama", "a", GuardResults(input_validation=ALLOW))
        log.log_turn("ollama", "b", GuardResults(input_validation=BLOCK), blocked_stage="input")
        log.log_turn("ollama", "c", GuardResults(input_validation=ALLOW, output_validation=BLOCK), blocked_stage="output")

        assert [e['model'] for e in log.get_entries(blocked_only=True)] == ["c", "b"]
        assert [e['model'] for e in log.get_entries(limit=1, offset=1)] == ["b"]

    def test_statistics(self):
        """Test statistics calculation."""
        log = GuardLog(max_entries=10)
        log.log_turn("openai", "gpt-4o", GuardResults(input_validation=WARNED, output_validation=ALLOW))
        log.log_turn("openai", "gpt-4o", GuardResults(input_validation=BLOCK), blocked_stage="input")

        stats = log.get_statistics()

        assert stats['total_turns'] == 2
        assert stats['allowed'] == 1
        assert stats['blocked_input'] == 1
        assert stats['blocked_output'] == 0
        assert stats['warnings'] == 1
        assert stats['blocked_percentage'] == 50.0
        assert stats['retained_entries'] == 2

    def test_statistics_outlive_eviction(self):
        log = GuardLog(max_entries=1)
        log.log_turn("openai", "a", GuardResults(input_validation=ALLOW))
        log.log_turn("openai", "b", GuardResults(input_validation=ALLOW))

        stats = log.get_statistics()
        assert stats['total_turns'] == 2
        assert stats['retained_entries'] == 1

    def test_clear(self):
        log = GuardLog(max_entries=10)
        log.log_turn("openai", "a", GuardResults(input_validation=ALLOW))

        assert log.clear() == 1
        assert len(log) == 0
        assert log.get_statistics()['total_turns'] == 0
        assert log.get_statistics()['blocked_percentage'] == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
