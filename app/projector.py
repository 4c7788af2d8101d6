"""Read-only weekly views over the assignment store.

Every query reads templates and assignments inside one transaction so a
projection reflects a single snapshot; employee names come from the
directory afterwards.
"""

from __future__ import annotations

import datetime
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from database import SessionLocal, ShiftAssignment, ShiftTemplate
from directory import DirectoryStore
from planner import assignment_to_dict
from policy import build_default_policy, scheduling_days
from roles import role_group
from slots import date_for_day, day_label, format_clock, format_week_label, normalize_week_start, resolve_week
from states import OperationalState

WeekOf = datetime.date | datetime.datetime | str


class WeeklyProjector:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        directory: Optional[DirectoryStore] = None,
        *,
        policy: Optional[Dict] = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory or DirectoryStore()
        self.policy = policy if policy is not None else build_default_policy()

    def project_week(self, branch_id: int, week_of: WeekOf) -> Dict[int, List[Dict[str, Any]]]:
        """Map each scheduling day (1 = Monday) to that day's assignments, in start order."""
        week_start = normalize_week_start(week_of)
        self._directory.get_branch(branch_id)
        assignments, templates = self._snapshot(ShiftAssignment.branch_id == branch_id)
        return self._group_by_day(week_start, assignments, templates)

    def week_summary(self, branch_id: int, week_of: WeekOf) -> Dict[str, Any]:
        week_start = normalize_week_start(week_of)
        self._directory.get_branch(branch_id)
        assignments, templates = self._snapshot(ShiftAssignment.branch_id == branch_id, include_branch_templates=branch_id)
        occupancy = Counter(assignment.template_id for assignment in assignments if assignment.template_id is not None)
        per_day = Counter(assignment.day_of_week for assignment in assignments)
        states = Counter(assignment.operational_state for assignment in assignments)
        cells = []
        for template in sorted(templates.values(), key=lambda t: (t.day_of_week, t.start_time, t.name, t.id)):
            if template.branch_id != branch_id:
                continue
            filled = occupancy.get(template.id, 0)
            cells.append(
                {
                    "template_id": template.id,
                    "name": template.name,
                    "day_of_week": template.day_of_week,
                    "start_time": format_clock(template.start_time),
                    "end_time": format_clock(template.end_time),
                    "role": template.role,
                    "role_group": role_group(template.role),
                    "occupancy": filled,
                    "max_staff": template.max_staff,
                    "available": max(0, template.max_staff - filled),
                    "is_active": template.is_active,
                }
            )
        return {
            "branch_id": branch_id,
            "week_start": week_start.isoformat(),
            "label": format_week_label(week_start),
            "days": [
                {
                    "day_of_week": day,
                    "label": day_label(day),
                    "date": date_for_day(week_start, day).isoformat(),
                    "count": per_day.get(day, 0),
                }
                for day in scheduling_days(self.policy)
            ],
            "cells": cells,
            "states": {state.value: states.get(state.value, 0) for state in OperationalState},
            "total_assignments": len(assignments),
        }

    def project_employee_week(
        self,
        employee_id: int,
        week: WeekOf | None = "current",
        *,
        today: Optional[datetime.date] = None,
    ) -> Dict[str, Any]:
        """One employee's week across every branch; ``week`` accepts current/next/previous or a date."""
        week_start = resolve_week(week, today=today)
        employee = self._directory.get_employee(employee_id)
        assignments, templates = self._snapshot(ShiftAssignment.employee_id == employee_id)
        return {
            "employee_id": employee.id,
            "employee_name": employee.display_name,
            "week_start": week_start.isoformat(),
            "label": format_week_label(week_start),
            "days": self._group_by_day(week_start, assignments, templates, names={employee.id: employee.display_name}),
        }

    def _snapshot(self, criterion, include_branch_templates: Optional[int] = None):
        stmt = (
            select(ShiftAssignment)
            .where(criterion)
            .order_by(
                ShiftAssignment.day_of_week.asc(),
                ShiftAssignment.start_time.asc(),
                ShiftAssignment.end_time.asc(),
                ShiftAssignment.created_at.asc(),
                ShiftAssignment.id.asc(),
            )
        )
        with self._session_factory() as session, session.begin():
            assignments = list(session.scalars(stmt))
            template_ids = {assignment.template_id for assignment in assignments if assignment.template_id is not None}
            template_stmt = select(ShiftTemplate)
            if include_branch_templates is not None:
                template_stmt = template_stmt.where(
                    (ShiftTemplate.branch_id == include_branch_templates) | ShiftTemplate.id.in_(sorted(template_ids))
                )
            else:
                template_stmt = template_stmt.where(ShiftTemplate.id.in_(sorted(template_ids)))
            templates = {template.id: template for template in session.scalars(template_stmt)}
        return assignments, templates

    def _group_by_day(
        self,
        week_start: datetime.date,
        assignments: List[ShiftAssignment],
        templates: Dict[int, ShiftTemplate],
        names: Optional[Dict[int, str]] = None,
    ) -> Dict[int, List[Dict[str, Any]]]:
        if names is None:
            employees = self._directory.employees_by_id(assignment.employee_id for assignment in assignments)
            names = {employee_id: employee.display_name for employee_id, employee in employees.items()}
        days: Dict[int, List[Dict[str, Any]]] = {day: [] for day in scheduling_days(self.policy)}
        for assignment in assignments:
            template = templates.get(assignment.template_id) if assignment.template_id is not None else None
            entry = assignment_to_dict(
                assignment,
                employee_name=names.get(assignment.employee_id),
                template_name=template.name if template else None,
            )
            entry["date"] = date_for_day(week_start, assignment.day_of_week).isoformat()
            days.setdefault(assignment.day_of_week, []).append(entry)
        return days
