"""
Retry policy and batch state machine for transmission.

Both are pure: the transmitter feeds them events and attempt counts and
does the I/O itself, so retry behaviour is testable without a network.
"""

import random
from dataclasses import dataclass
from enum import Enum

from msgvault.models import BatchState


class BatchEvent(Enum):
    """Inputs to the batch state machine."""

    SEND = "send"
    ACK = "ack"
    TRANSIENT_ERROR = "transient_error"
    REJECTED = "rejected"
    RETRY = "retry"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of send attempts (including first try)
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay, in seconds
        multiplier: Growth factor per attempt
        jitter: Whether to add ±25% random variation
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Delay to wait after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-based)
            rng: Random source for jitter; module random when omitted

        Returns:
            Delay in seconds
        """
        exponent = max(attempt - 1, 0)
        delay = min(self.initial_delay * (self.multiplier ** exponent), self.max_delay)

        if self.jitter and delay > 0:
            roll = (rng or random).random()
            delay *= 0.75 + roll * 0.5  # Range: 0.75 to 1.25

        return delay


class InvalidTransition(ValueError):
    """An event that the current batch state does not accept."""


def next_state(
    state: BatchState,
    event: BatchEvent,
    attempts: int = 0,
    max_attempts: int = 1,
) -> BatchState:
    """
    Transition function of the per-batch state machine.

    formed -> pending_send -> {acknowledged | retrying -> pending_send |
    rejected | failed}

    Args:
        state: Current state
        event: What happened
        attempts: Send attempts made so far
        max_attempts: Attempt budget of the policy

    Returns:
        The next state

    Raises:
        InvalidTransition: the event is not valid in this state
    """
    if state == BatchState.FORMED and event == BatchEvent.SEND:
        return BatchState.PENDING_SEND

    if state == BatchState.PENDING_SEND:
        if event == BatchEvent.ACK:
            return BatchState.ACKNOWLEDGED
        if event == BatchEvent.REJECTED:
            return BatchState.REJECTED
        if event == BatchEvent.TRANSIENT_ERROR:
            if attempts >= max_attempts:
                return BatchState.FAILED
            return BatchState.RETRYING

    if state == BatchState.RETRYING and event == BatchEvent.RETRY:
        return BatchState.PENDING_SEND

    raise InvalidTransition(f"{event.value} is not valid in state {state.value}")
