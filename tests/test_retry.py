"""Tests for the retry policy and the batch state machine."""

import random

import pytest

from msgvault.models import BatchState
from msgvault.sync.retry import BackoffPolicy, BatchEvent, InvalidTransition, next_state


class TestNextState:
    """Test the per-batch retry state machine."""

    def test_send(self):
        """Sending moves a formed batch to pending_send."""
        assert next_state(BatchState.FORMED, BatchEvent.SEND) == BatchState.PENDING_SEND

    def test_ack(self):
        """An acknowledgment is terminal."""
        assert next_state(BatchState.PENDING_SEND, BatchEvent.ACK) == BatchState.ACKNOWLEDGED

    def test_rejected_is_terminal_without_retry(self):
        """Verify a rejection ends the batch without retrying."""
        state = next_state(BatchState.PENDING_SEND, BatchEvent.REJECTED)

        assert state == BatchState.REJECTED
        assert state.is_terminal

    def test_transient_error_retries_within_budget(self):
        """Verify transient errors retry while attempts remain."""
        state = next_state(BatchState.PENDING_SEND, BatchEvent.TRANSIENT_ERROR, 2, 5)

        assert state == BatchState.RETRYING
        assert next_state(state, BatchEvent.RETRY) == BatchState.PENDING_SEND

    def test_transient_error_fails_when_budget_spent(self):
        """Verify the batch fails once the attempt budget is spent."""
        state = next_state(BatchState.PENDING_SEND, BatchEvent.TRANSIENT_ERROR, 5, 5)

        assert state == BatchState.FAILED
        assert state.is_terminal

    @pytest.mark.parametrize(
        "state, event",
        [
            (BatchState.FORMED, BatchEvent.ACK),
            (BatchState.ACKNOWLEDGED, BatchEvent.SEND),
            (BatchState.REJECTED, BatchEvent.RETRY),
            (BatchState.FAILED, BatchEvent.RETRY),
            (BatchState.RETRYING, BatchEvent.ACK),
        ],
    )
    def test_invalid_transitions(self, state, event):
        """Events that make no sense for a state raise ValueError."""
        with pytest.raises(InvalidTransition):
            next_state(state, event)


class TestBackoffPolicy:
    """Test backoff delays and jitter."""

    def test_exponential_growth_without_jitter(self):
        """Verify delays double per attempt."""
        policy = BackoffPolicy(initial_delay=1.0, max_delay=60.0, jitter=False)

        delays = [policy.delay_for(attempt) for attempt in range(1, 6)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        """Delays never exceed max_delay."""
        policy = BackoffPolicy(initial_delay=1.0, max_delay=10.0, jitter=False)

        assert policy.delay_for(10) == 10.0

    def test_jitter_stays_within_a_quarter(self):
        """Verify jitter stays within 25% of the base delay."""
        policy = BackoffPolicy(initial_delay=4.0, max_delay=60.0)
        rng = random.Random(42)

        for _ in range(100):
            assert 3.0 <= policy.delay_for(1, rng) <= 5.0

    def test_jitter_is_reproducible_with_seeded_rng(self):
        """A seeded RNG gives the same delays."""
        policy = BackoffPolicy()

        assert policy.delay_for(3, random.Random(7)) == policy.delay_for(3, random.Random(7))

    def test_zero_delay_has_no_jitter(self):
        """A zero base delay stays zero with jitter on."""
        policy = BackoffPolicy(initial_delay=0.0, max_delay=0.0)

        assert policy.delay_for(3) == 0.0
