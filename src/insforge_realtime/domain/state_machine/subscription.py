"""Channel subscription state machine.

States: IDLE -> SUBSCRIBING -> SUBSCRIBED -> UNSUBSCRIBED, plus CLOSED once
the owning connection is torn down. Allowed moves are listed in one table so
that every state change a channel makes can be checked against it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChannelState(Enum):
    """Subscription state of a channel."""

    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        """Check if the channel can no longer be used."""
        return self in (ChannelState.UNSUBSCRIBED, ChannelState.CLOSED)


class ChannelTrigger(Enum):
    """Events that move a channel between states."""

    SUBSCRIBE = "subscribe"
    ACK_OK = "ack_ok"
    ACK_REJECTED = "ack_rejected"
    SEND_FAILED = "send_failed"
    CONNECTION_LOST = "connection_lost"
    UNSUBSCRIBE = "unsubscribe"
    CLOSE = "close"


@dataclass
class TransitionResult:
    """Result of a state transition attempt.

    Attributes:
        success: Whether the transition was allowed
        from_state: The state before the attempt
        to_state: The state after the transition (None if refused)
        error: Reason the transition was refused
    """

    success: bool
    from_state: ChannelState
    to_state: ChannelState | None
    error: str | None = None


# Valid transitions: (current_state, trigger) -> next_state
_TRANSITIONS: dict[tuple[ChannelState, ChannelTrigger], ChannelState] = {
    # From IDLE
    (ChannelState.IDLE, ChannelTrigger.SUBSCRIBE): ChannelState.SUBSCRIBING,
    (ChannelState.IDLE, ChannelTrigger.UNSUBSCRIBE): ChannelState.UNSUBSCRIBED,
    (ChannelState.IDLE, ChannelTrigger.CLOSE): ChannelState.CLOSED,
    # From SUBSCRIBING
    (ChannelState.SUBSCRIBING, ChannelTrigger.ACK_OK): ChannelState.SUBSCRIBED,
    (ChannelState.SUBSCRIBING, ChannelTrigger.ACK_REJECTED): ChannelState.UNSUBSCRIBED,
    (ChannelState.SUBSCRIBING, ChannelTrigger.SEND_FAILED): ChannelState.IDLE,
    (ChannelState.SUBSCRIBING, ChannelTrigger.CONNECTION_LOST): ChannelState.SUBSCRIBING,
    (ChannelState.SUBSCRIBING, ChannelTrigger.UNSUBSCRIBE): ChannelState.UNSUBSCRIBED,
    (ChannelState.SUBSCRIBING, ChannelTrigger.CLOSE): ChannelState.CLOSED,
    # From SUBSCRIBED
    (ChannelState.SUBSCRIBED, ChannelTrigger.CONNECTION_LOST): ChannelState.SUBSCRIBING,
    (ChannelState.SUBSCRIBED, ChannelTrigger.UNSUBSCRIBE): ChannelState.UNSUBSCRIBED,
    (ChannelState.SUBSCRIBED, ChannelTrigger.CLOSE): ChannelState.CLOSED,
    # From UNSUBSCRIBED
    (ChannelState.UNSUBSCRIBED, ChannelTrigger.CLOSE): ChannelState.CLOSED,
}


def can_transition(state: ChannelState, trigger: ChannelTrigger) -> bool:
    """Check if a trigger is valid in the given state."""
    return (state, trigger) in _TRANSITIONS


def next_state(state: ChannelState, trigger: ChannelTrigger) -> TransitionResult:
    """Look up the state a trigger leads to.

    Args:
        state: Current state
        trigger: Trigger being applied

    Returns:
        TransitionResult describing the outcome
    """
    key = (state, trigger)
    if key not in _TRANSITIONS:
        return TransitionResult(
            success=False,
            from_state=state,
            to_state=None,
            error=f"Trigger {trigger.name} not valid in state {state.name}",
        )
    return TransitionResult(success=True, from_state=state, to_state=_TRANSITIONS[key])
