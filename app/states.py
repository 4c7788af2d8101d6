"""Operational state of an assignment during its shift.

State changes never touch capacity or double-booking bookkeeping; they only
overwrite ``operational_state`` after checking the transition table.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, FrozenSet, Optional

from sqlalchemy.orm.exc import StaleDataError

from database import SessionLocal, ShiftAssignment, record_audit_log
from errors import AssignmentNotFound, ConcurrentModification, InvalidState, InvalidTransition
from policy import allow_reopen, build_default_policy, transition_mode

logger = logging.getLogger("shiftdesk.states")


class OperationalState(str, enum.Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    ASSIST = "ASSIST"
    BREAK = "BREAK"
    COMPLETED = "COMPLETED"

    @classmethod
    def parse(cls, value) -> "OperationalState":
        if isinstance(value, cls):
            return value
        label = str(value or "").strip().upper()
        try:
            return cls(label)
        except ValueError as exc:
            raise InvalidState(
                f"Unknown operational state {value!r}.",
                state=value,
                allowed=[state.value for state in cls],
            ) from exc


INITIAL_STATE = OperationalState.INACTIVE

TRANSITIONS: Dict[OperationalState, FrozenSet[OperationalState]] = {
    OperationalState.INACTIVE: frozenset({OperationalState.ACTIVE}),
    OperationalState.ACTIVE: frozenset(
        {OperationalState.BREAK, OperationalState.ASSIST, OperationalState.COMPLETED}
    ),
    OperationalState.ASSIST: frozenset({OperationalState.ACTIVE, OperationalState.COMPLETED}),
    OperationalState.BREAK: frozenset({OperationalState.ACTIVE, OperationalState.COMPLETED}),
    OperationalState.COMPLETED: frozenset(),
}

REOPEN_TRANSITIONS: Dict[OperationalState, FrozenSet[OperationalState]] = {
    OperationalState.COMPLETED: frozenset({OperationalState.INACTIVE}),
}


def allowed_transitions(state, policy: Optional[Dict] = None) -> FrozenSet[OperationalState]:
    current = OperationalState.parse(state)
    policy = policy if policy is not None else build_default_policy()
    if transition_mode(policy) == "permissive":
        return frozenset(OperationalState)
    allowed = set(TRANSITIONS[current])
    if allow_reopen(policy):
        allowed |= REOPEN_TRANSITIONS.get(current, frozenset())
    return frozenset(allowed)


def validate_transition(current, target, policy: Optional[Dict] = None) -> OperationalState:
    """Return the parsed target state or raise ``InvalidTransition``."""
    source = OperationalState.parse(current)
    destination = OperationalState.parse(target)
    allowed = allowed_transitions(source, policy)
    if destination not in allowed:
        raise InvalidTransition(
            f"Cannot move from {source.value} to {destination.value}.",
            from_state=source.value,
            to_state=destination.value,
            allowed=sorted(state.value for state in allowed),
        )
    return destination


class StateMachine:
    def __init__(self, session_factory: Callable = SessionLocal, *, policy: Optional[Dict] = None) -> None:
        self._session_factory = session_factory
        self.policy = policy if policy is not None else build_default_policy()

    def allowed_transitions(self, state) -> FrozenSet[OperationalState]:
        return allowed_transitions(state, self.policy)

    def transition(self, assignment_id: int, new_state, *, actor: str = "system") -> ShiftAssignment:
        target = OperationalState.parse(new_state)
        try:
            with self._session_factory() as session, session.begin():
                assignment = session.get(ShiftAssignment, assignment_id)
                if assignment is None:
                    raise AssignmentNotFound(f"Assignment {assignment_id} was not found.", assignment_id=assignment_id)
                previous = assignment.operational_state
                validate_transition(previous, target, self.policy)
                assignment.operational_state = target.value
                record_audit_log(
                    session,
                    user_id=actor,
                    action="ASSIGNMENT_STATE",
                    target_id=assignment_id,
                    payload={"from": previous, "to": target.value},
                )
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Assignment {assignment_id} changed while updating its state; retry.",
                assignment_id=assignment_id,
            ) from exc
        logger.info("Assignment %s %s -> %s", assignment_id, previous, target.value)
        return assignment
