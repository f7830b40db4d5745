"""
The ride lifecycle graph.

The only place status edges are defined. HTTP views, websocket consumers
and the lifecycle service all go through `assert_transition`.
"""

from typing import Dict, FrozenSet

from common.choices import RideStatus
from .exceptions import InvalidTransitionError

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RideStatus.REQUESTED: frozenset({RideStatus.ACCEPTED, RideStatus.CANCELLED}),
    RideStatus.ACCEPTED: frozenset({RideStatus.ON_THE_WAY, RideStatus.IN_PROGRESS, RideStatus.CANCELLED}),
    RideStatus.ON_THE_WAY: frozenset({RideStatus.IN_PROGRESS}),
    RideStatus.IN_PROGRESS: frozenset({RideStatus.COMPLETED}),
    RideStatus.COMPLETED: frozenset(),
    RideStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current=str(current), attempted=str(target))


def sources_for(target: str) -> FrozenSet[str]:
    """States from which `target` can be reached in one step."""
    return frozenset(
        state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )
