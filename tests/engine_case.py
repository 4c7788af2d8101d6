from __future__ import annotations

import sys
import unittest
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, Branch, DirectoryBase, Employee, list_audit_log  # noqa: E402
from policy import _normalize_policy  # noqa: E402
from scheduling import SchedulingEngine  # noqa: E402


def memory_engine():
    # One shared connection so every session (and TestClient worker threads) sees the same database.
    return create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


class EngineTestCase(unittest.TestCase):
    """In-memory schedule and directory databases with one branch seeded."""

    policy_overrides: Dict[str, Any] = {}

    def setUp(self) -> None:
        self.schedule_engine = memory_engine()
        Base.metadata.create_all(self.schedule_engine)
        self.directory_engine = memory_engine()
        DirectoryBase.metadata.create_all(self.directory_engine)
        self.session_factory = sessionmaker(bind=self.schedule_engine, expire_on_commit=False, future=True)
        self.directory_session_factory = sessionmaker(bind=self.directory_engine, expire_on_commit=False, future=True)
        self.policy = _normalize_policy(self.policy_overrides)
        self.engine = SchedulingEngine(
            self.session_factory,
            self.directory_session_factory,
            None,
            policy=self.policy,
        )
        self.branch = self._add_branch("Central", company_id="acme")

    def tearDown(self) -> None:
        self.schedule_engine.dispose()
        self.directory_engine.dispose()

    def _add_branch(self, name: str, company_id: str = "acme") -> Branch:
        with self.directory_session_factory() as session:
            branch = Branch(name=name, company_id=company_id, active=True)
            session.add(branch)
            session.commit()
            session.refresh(branch)
            return branch

    def _add_employee(
        self,
        name: str,
        role: str = "Waiter",
        status: str = "active",
        branch_id: Optional[int] = None,
    ) -> Employee:
        with self.directory_session_factory() as session:
            employee = Employee(
                display_name=name,
                role=role,
                status=status,
                branch_id=branch_id if branch_id is not None else self.branch.id,
            )
            session.add(employee)
            session.commit()
            session.refresh(employee)
            return employee

    def _template(
        self,
        day: int = 1,
        start: str = "09:00",
        end: str = "13:00",
        max_staff: int = 1,
        role: str = "Waiter",
        name: Optional[str] = None,
        branch_id: Optional[int] = None,
    ):
        return self.engine.templates.create_template(
            branch_id if branch_id is not None else self.branch.id,
            name or f"{start}-{end}",
            day,
            start,
            end,
            role=role,
            max_staff=max_staff,
            actor="tests",
        )

    def _occupancy(self, template_id: int) -> int:
        return self.engine.planner.cell_occupancy(template_id)["occupancy"]

    def _audit_actions(self, target_id: Optional[int] = None, target_type: Optional[str] = None) -> List[str]:
        with self.session_factory() as session:
            return [log.action for log in list_audit_log(session, target_type=target_type, target_id=target_id)]

    def _audit_payloads(self, action: str, target_id: Optional[int] = None) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            return [
                log.payload_dict()
                for log in list_audit_log(session, target_id=target_id)
                if log.action == action
            ]
