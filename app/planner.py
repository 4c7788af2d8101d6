"""Conflict- and capacity-aware placement of employees into shift slots.

Template-bound and ad-hoc assignments share one double-booking check. A
placement holds the template cell key and the employee/day key while it
counts, scans and inserts inside a single transaction, so concurrent
placements cannot both pass the same check.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from database import SessionLocal, ShiftAssignment, ShiftTemplate, count_occupants, find_overlap, record_audit_log
from directory import DirectoryStore
from errors import (
    AdHocDisabled,
    AssignmentNotFound,
    CapacityExceeded,
    ConcurrentModification,
    DoubleBooked,
    EmployeeInactive,
    SchedulingError,
    TemplateInactive,
    TemplateNotFound,
)
from locks import KeyedLocks, employee_day_key, template_key
from policy import ad_hoc_enabled, build_default_policy, lock_timeout, scheduling_days
from roles import role_matches
from slots import ClockValue, format_clock, validate_day, validate_window
from states import INITIAL_STATE

logger = logging.getLogger("shiftdesk.planner")


def assignment_to_dict(
    assignment: ShiftAssignment,
    *,
    employee_name: Optional[str] = None,
    template_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "template_id": assignment.template_id,
        "template_name": template_name,
        "employee_id": assignment.employee_id,
        "employee_name": employee_name,
        "branch_id": assignment.branch_id,
        "day_of_week": assignment.day_of_week,
        "start_time": format_clock(assignment.start_time),
        "end_time": format_clock(assignment.end_time),
        "role": assignment.role,
        "notes": assignment.notes,
        "ad_hoc": bool(assignment.ad_hoc),
        "operational_state": assignment.operational_state,
        "created_at": assignment.created_at.isoformat() if assignment.created_at else None,
    }


class AssignmentPlanner:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        directory: Optional[DirectoryStore] = None,
        *,
        policy: Optional[Dict] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory or DirectoryStore()
        self.policy = policy if policy is not None else build_default_policy()
        self._locks = locks or KeyedLocks()

    # -- placement -------------------------------------------------------

    def place_assignment(
        self,
        template_id: int,
        employee_id: int,
        notes: Optional[str] = None,
        *,
        role: Optional[str] = None,
        actor: str = "system",
    ) -> ShiftAssignment:
        try:
            template = self._load_template(template_id)
            employee = self._active_employee(employee_id)
            if not role_matches(employee.role, template.role):
                logger.warning(
                    "Employee %s (%s) placed into template %s expecting role '%s'",
                    employee_id,
                    employee.role,
                    template_id,
                    template.role,
                )
            keys = (template_key(template_id), employee_day_key(employee_id, template.day_of_week))
            with self._locks.hold(*keys, timeout=lock_timeout(self.policy)):
                with self._session_factory() as session, session.begin():
                    template = session.get(ShiftTemplate, template_id)
                    if template is None:
                        raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
                    if not template.is_active:
                        raise TemplateInactive(f"Shift template {template_id} is disabled.", template_id=template_id)
                    occupancy = count_occupants(session, template.id)
                    if occupancy >= template.max_staff:
                        raise CapacityExceeded(
                            f"Template '{template.name}' is full ({occupancy}/{template.max_staff}).",
                            template_id=template.id,
                            occupancy=occupancy,
                            max_staff=template.max_staff,
                        )
                    self._ensure_free(session, employee_id, template.day_of_week, template.start_time, template.end_time)
                    assignment = ShiftAssignment(
                        template_id=template.id,
                        employee_id=employee_id,
                        branch_id=template.branch_id,
                        day_of_week=template.day_of_week,
                        start_time=template.start_time,
                        end_time=template.end_time,
                        role=(role or "").strip() or template.role,
                        notes=(notes or "").strip(),
                        operational_state=INITIAL_STATE.value,
                        created_by=actor or "system",
                    )
                    session.add(assignment)
                    session.flush()
                    record_audit_log(
                        session,
                        user_id=actor,
                        action="ASSIGNMENT_PLACE",
                        target_id=assignment.id,
                        payload={"template_id": template.id, "employee_id": employee_id, "occupancy": occupancy + 1},
                    )
        except SchedulingError as exc:
            logger.info("Placement of employee %s into template %s rejected: %s", employee_id, template_id, exc.kind)
            raise
        logger.info(
            "Placed employee %s into template %s as assignment %s (%d/%d)",
            employee_id,
            template_id,
            assignment.id,
            occupancy + 1,
            template.max_staff,
        )
        return assignment

    def place_ad_hoc_assignment(
        self,
        employee_id: int,
        branch_id: int,
        day_of_week: int,
        start_time: ClockValue,
        end_time: ClockValue,
        role: str = "",
        notes: Optional[str] = None,
        *,
        actor: str = "system",
    ) -> ShiftAssignment:
        """Place an employee into a standalone window with no capacity bound."""
        try:
            if not ad_hoc_enabled(self.policy):
                raise AdHocDisabled("Ad-hoc assignments are disabled by the active policy.")
            start, end = validate_window(start_time, end_time)
            day = validate_day(day_of_week, scheduling_days(self.policy))
            self._directory.get_branch(branch_id)
            employee = self._active_employee(employee_id)
            with self._locks.hold(employee_day_key(employee_id, day), timeout=lock_timeout(self.policy)):
                with self._session_factory() as session, session.begin():
                    self._ensure_free(session, employee_id, day, start, end)
                    assignment = ShiftAssignment(
                        template_id=None,
                        ad_hoc=True,
                        employee_id=employee_id,
                        branch_id=branch_id,
                        day_of_week=day,
                        start_time=start,
                        end_time=end,
                        role=(role or "").strip() or employee.role,
                        notes=(notes or "").strip(),
                        operational_state=INITIAL_STATE.value,
                        created_by=actor or "system",
                    )
                    session.add(assignment)
                    session.flush()
                    record_audit_log(
                        session,
                        user_id=actor,
                        action="ASSIGNMENT_PLACE_AD_HOC",
                        target_id=assignment.id,
                        payload={
                            "employee_id": employee_id,
                            "branch_id": branch_id,
                            "day_of_week": day,
                            "window": [format_clock(start), format_clock(end)],
                        },
                    )
        except SchedulingError as exc:
            logger.info("Ad-hoc placement of employee %s rejected: %s", employee_id, exc.kind)
            raise
        logger.info(
            "Placed employee %s ad-hoc on day %s %s-%s as assignment %s",
            employee_id,
            day,
            format_clock(start),
            format_clock(end),
            assignment.id,
        )
        return assignment

    def remove_assignment(self, assignment_id: int, *, actor: str = "system") -> None:
        try:
            with self._session_factory() as session, session.begin():
                assignment = session.get(ShiftAssignment, assignment_id)
                if assignment is None:
                    raise AssignmentNotFound(f"Assignment {assignment_id} was not found.", assignment_id=assignment_id)
                payload = {
                    "template_id": assignment.template_id,
                    "employee_id": assignment.employee_id,
                    "day_of_week": assignment.day_of_week,
                }
                session.delete(assignment)
                record_audit_log(
                    session, user_id=actor, action="ASSIGNMENT_REMOVE", target_id=assignment_id, payload=payload
                )
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Assignment {assignment_id} changed while removing it; retry.", assignment_id=assignment_id
            ) from exc
        logger.info("Removed assignment %s (template %s)", assignment_id, payload["template_id"])

    def update_assignment_notes(self, assignment_id: int, notes: Optional[str], *, actor: str = "system") -> ShiftAssignment:
        try:
            with self._session_factory() as session, session.begin():
                assignment = session.get(ShiftAssignment, assignment_id)
                if assignment is None:
                    raise AssignmentNotFound(f"Assignment {assignment_id} was not found.", assignment_id=assignment_id)
                assignment.notes = (notes or "").strip()
                record_audit_log(session, user_id=actor, action="ASSIGNMENT_NOTES", target_id=assignment_id)
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Assignment {assignment_id} changed while saving notes; retry.",
                assignment_id=assignment_id,
            ) from exc
        return assignment

    # -- queries ---------------------------------------------------------

    def get_assignment(self, assignment_id: int) -> ShiftAssignment:
        with self._session_factory() as session:
            assignment = session.get(ShiftAssignment, assignment_id)
        if assignment is None:
            raise AssignmentNotFound(f"Assignment {assignment_id} was not found.", assignment_id=assignment_id)
        return assignment

    def list_assignments(
        self,
        *,
        branch_id: Optional[int] = None,
        employee_id: Optional[int] = None,
        day_of_week: Optional[int] = None,
        template_id: Optional[int] = None,
    ) -> List[ShiftAssignment]:
        stmt = select(ShiftAssignment)
        if branch_id is not None:
            stmt = stmt.where(ShiftAssignment.branch_id == branch_id)
        if employee_id is not None:
            stmt = stmt.where(ShiftAssignment.employee_id == employee_id)
        if day_of_week is not None:
            stmt = stmt.where(ShiftAssignment.day_of_week == day_of_week)
        if template_id is not None:
            stmt = stmt.where(ShiftAssignment.template_id == template_id)
        stmt = stmt.order_by(
            ShiftAssignment.day_of_week.asc(),
            ShiftAssignment.start_time.asc(),
            ShiftAssignment.created_at.asc(),
            ShiftAssignment.id.asc(),
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def list_cell_occupants(self, template_id: int) -> List[ShiftAssignment]:
        """Occupants of one template cell, first placed first."""
        self._load_template(template_id, require_active=False)
        stmt = (
            select(ShiftAssignment)
            .where(ShiftAssignment.template_id == template_id)
            .order_by(ShiftAssignment.created_at.asc(), ShiftAssignment.id.asc())
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def cell_occupancy(self, template_id: int) -> Dict[str, int]:
        with self._session_factory() as session:
            template = session.get(ShiftTemplate, template_id)
            if template is None:
                raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
            occupancy = count_occupants(session, template_id)
        return {
            "template_id": template_id,
            "occupancy": occupancy,
            "max_staff": template.max_staff,
            "available": max(0, template.max_staff - occupancy),
        }

    # -- helpers ---------------------------------------------------------

    def _load_template(self, template_id: int, *, require_active: bool = True) -> ShiftTemplate:
        with self._session_factory() as session:
            template = session.get(ShiftTemplate, template_id)
        if template is None:
            raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
        if require_active and not template.is_active:
            raise TemplateInactive(f"Shift template {template_id} is disabled.", template_id=template_id)
        return template

    def _active_employee(self, employee_id: int):
        employee = self._directory.get_employee(employee_id)
        if not employee.active:
            raise EmployeeInactive(
                f"{employee.display_name} is not active and cannot be scheduled.",
                employee_id=employee_id,
                status=employee.status,
            )
        return employee

    def _ensure_free(
        self,
        session,
        employee_id: int,
        day_of_week: int,
        start_time: datetime.time,
        end_time: datetime.time,
    ) -> None:
        conflict = find_overlap(session, employee_id, day_of_week, start_time, end_time)
        if conflict is not None:
            raise DoubleBooked(
                f"Employee {employee_id} already works {format_clock(conflict.start_time)}-"
                f"{format_clock(conflict.end_time)} on day {day_of_week}.",
                employee_id=employee_id,
                day_of_week=day_of_week,
                conflicting_assignment_id=conflict.id,
                conflicting_window=[format_clock(conflict.start_time), format_clock(conflict.end_time)],
                requested_window=[format_clock(start_time), format_clock(end_time)],
            )
