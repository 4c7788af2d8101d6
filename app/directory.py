"""Read-only lookups against the branch/employee directory.

The directory is owned elsewhere; the scheduling engine only needs point
reads to validate placements and to label projections.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List

from sqlalchemy import select

from database import Branch, DirectorySessionLocal, Employee
from errors import BranchNotFound, EmployeeNotFound


class DirectoryStore:
    def __init__(self, session_factory: Callable = DirectorySessionLocal) -> None:
        self._session_factory = session_factory

    def get_employee(self, employee_id: int) -> Employee:
        with self._session_factory() as session:
            employee = session.get(Employee, employee_id)
        if employee is None:
            raise EmployeeNotFound(f"Employee {employee_id} was not found.", employee_id=employee_id)
        return employee

    def get_branch(self, branch_id: int) -> Branch:
        with self._session_factory() as session:
            branch = session.get(Branch, branch_id)
        if branch is None:
            raise BranchNotFound(f"Branch {branch_id} was not found.", branch_id=branch_id)
        return branch

    def employees_by_id(self, employee_ids: Iterable[int]) -> Dict[int, Employee]:
        ids = sorted({int(value) for value in employee_ids if value is not None})
        if not ids:
            return {}
        with self._session_factory() as session:
            rows = session.scalars(select(Employee).where(Employee.id.in_(ids)))
            return {employee.id: employee for employee in rows}

    def branch_ids_for_company(self, company_id: str) -> List[int]:
        with self._session_factory() as session:
            stmt = select(Branch.id).where(Branch.company_id == company_id).order_by(Branch.id.asc())
            return [row[0] for row in session.execute(stmt)]
