from __future__ import annotations

from typing import Callable, Dict, Optional

from database import DirectorySessionLocal, PolicySessionLocal, SessionLocal
from directory import DirectoryStore
from locks import KeyedLocks
from planner import AssignmentPlanner
from policy import load_active_policy
from projector import WeeklyProjector
from states import StateMachine
from templates import TemplateRegistry


class SchedulingEngine:
    """Wires the registry, planner, state machine and projector over shared stores.

    The registry and planner share one lock registry so template edits and
    placements serialise on the same cell keys.
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        directory_session_factory: Callable = DirectorySessionLocal,
        policy_session_factory: Optional[Callable] = PolicySessionLocal,
        *,
        policy: Optional[Dict] = None,
    ) -> None:
        self._policy_session_factory = policy_session_factory
        self.directory = DirectoryStore(directory_session_factory)
        self.locks = KeyedLocks()
        self.templates = TemplateRegistry(session_factory, self.directory, locks=self.locks)
        self.planner = AssignmentPlanner(session_factory, self.directory, locks=self.locks)
        self.states = StateMachine(session_factory)
        self.projector = WeeklyProjector(session_factory, self.directory)
        self.apply_policy(policy if policy is not None else load_active_policy(policy_session_factory))

    def apply_policy(self, policy: Dict) -> None:
        self.policy = policy
        for component in (self.templates, self.planner, self.states, self.projector):
            component.policy = policy

    def reload_policy(self) -> Dict:
        self.apply_policy(load_active_policy(self._policy_session_factory))
        return self.policy
