"""
Build state transition validation.

Build lifecycle: QUEUED → CRAWLING → OPTIMIZING → DEPLOYING → SUCCESS
Any non-terminal state can go to FAILED or CANCELLED.

INVARIANT: Terminal build states (SUCCESS, FAILED, CANCELLED) are immutable.
A queue retry, a late progress event or a resumed worker must never move a
terminal build back to an in-flight state.
"""

from datetime import datetime
from typing import FrozenSet, Optional, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import Build, BuildStatus


TERMINAL_BUILD_STATES: FrozenSet[BuildStatus] = frozenset({
    BuildStatus.SUCCESS,
    BuildStatus.FAILED,
    BuildStatus.CANCELLED,
})

ACTIVE_BUILD_STATES: FrozenSet[BuildStatus] = frozenset({
    BuildStatus.QUEUED,
    BuildStatus.CRAWLING,
    BuildStatus.OPTIMIZING,
    BuildStatus.DEPLOYING,
})

# Forward progress order of the in-flight states
_PROGRESS_ORDER = (
    BuildStatus.QUEUED,
    BuildStatus.CRAWLING,
    BuildStatus.OPTIMIZING,
    BuildStatus.DEPLOYING,
)


def is_build_terminal(status: BuildStatus) -> bool:
    return status in TERMINAL_BUILD_STATES


_BUILD_TRANSITIONS: Set[Tuple[BuildStatus, BuildStatus]] = {
    # Normal flow
    (BuildStatus.QUEUED, BuildStatus.CRAWLING),
    (BuildStatus.CRAWLING, BuildStatus.OPTIMIZING),
    (BuildStatus.OPTIMIZING, BuildStatus.DEPLOYING),
    (BuildStatus.DEPLOYING, BuildStatus.SUCCESS),
}

for _status in ACTIVE_BUILD_STATES:
    _BUILD_TRANSITIONS.add((_status, BuildStatus.FAILED))
    _BUILD_TRANSITIONS.add((_status, BuildStatus.CANCELLED))


def can_transition_build(from_status: BuildStatus, to_status: BuildStatus) -> bool:
    """
    Check if a build state transition is legal.

    Staying in the same non-terminal state is allowed (idempotent resume).
    """
    if is_build_terminal(from_status):
        return False
    if from_status == to_status:
        return True
    return (from_status, to_status) in _BUILD_TRANSITIONS


def validate_build_transition(from_status: BuildStatus, to_status: BuildStatus) -> None:
    """
    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition_build(from_status, to_status):
        raise InvalidStateTransitionError("build", from_status.value, to_status.value)


def transition_build(
    build: Build,
    to_status: BuildStatus,
    now: Optional[datetime] = None,
) -> Build:
    """
    Move a build to a new status, maintaining its timestamps.

    started_at is stamped the first time the build leaves QUEUED;
    completed_at the first time it reaches a terminal state.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    validate_build_transition(build.status, to_status)
    now = now or datetime.now()

    if build.started_at is None and to_status in _PROGRESS_ORDER[1:]:
        build.started_at = now
    if is_build_terminal(to_status) and build.completed_at is None:
        build.completed_at = now

    build.status = to_status
    return build


def advance_build(build: Build, to_status: BuildStatus, now: Optional[datetime] = None) -> bool:
    """
    Move a build forward to an in-flight status, stepping through any
    intermediate states. A build already at or past `to_status` is left alone.

    Returns:
        True if the status changed
    """
    if to_status not in _PROGRESS_ORDER:
        raise ValueError(f"advance_build only handles in-flight states, got {to_status.value}")
    if is_build_terminal(build.status):
        raise InvalidStateTransitionError("build", build.status.value, to_status.value)

    current = _PROGRESS_ORDER.index(build.status)
    target = _PROGRESS_ORDER.index(to_status)
    for status in _PROGRESS_ORDER[current + 1:target + 1]:
        transition_build(build, status, now)
    return target > current
