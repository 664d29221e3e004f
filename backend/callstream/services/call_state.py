from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union


class CallStatus(str, Enum):
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"
    MISSED = "missed"
    REJECTED = "rejected"
    VOICEMAIL = "voicemail"


TERMINAL_STATUSES: FrozenSet[CallStatus] = frozenset(
    {CallStatus.ENDED, CallStatus.MISSED, CallStatus.REJECTED, CallStatus.VOICEMAIL}
)

# Forward edges only; self-transitions are handled separately.
_TRANSITIONS: Dict[CallStatus, FrozenSet[CallStatus]] = {
    CallStatus.RINGING: frozenset(
        {CallStatus.ACTIVE, CallStatus.ENDED, CallStatus.MISSED, CallStatus.REJECTED, CallStatus.VOICEMAIL}
    ),
    CallStatus.ACTIVE: frozenset({CallStatus.ENDED, CallStatus.VOICEMAIL}),
    CallStatus.ENDED: frozenset(),
    CallStatus.MISSED: frozenset(),
    CallStatus.REJECTED: frozenset(),
    CallStatus.VOICEMAIL: frozenset(),
}

StatusLike = Union[CallStatus, str, None]


def parse_status(value: StatusLike) -> Optional[CallStatus]:
    if value is None:
        return None
    if isinstance(value, CallStatus):
        return value
    try:
        return CallStatus(str(value).strip().lower())
    except ValueError:
        return None


def is_valid_transition(current: StatusLike, next_status: StatusLike) -> bool:
    """
    Pure guard for call status changes.

    ``current=None`` means the call does not exist yet, so any known status may
    create it. Re-applying the current status is always allowed (duplicate
    delivery). Terminal statuses accept nothing else, and unknown statuses on
    either side are rejected.
    """
    target = parse_status(next_status)
    if target is None:
        return False
    if current is None:
        return True
    source = parse_status(current)
    if source is None:
        return False
    if source is target:
        return True
    return target in _TRANSITIONS[source]


def allowed_predecessors(next_status: StatusLike) -> FrozenSet[str]:
    """Stored status values from which ``next_status`` may be applied."""
    return frozenset(s.value for s in CallStatus if is_valid_transition(s, next_status))


def transition_error(current: StatusLike, next_status: StatusLike) -> str:
    return f"Invalid call status transition: {current} -> {next_status}"


def is_terminal(status: StatusLike) -> bool:
    return parse_status(status) in TERMINAL_STATUSES
