from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from database import SessionLocal, ShiftAssignment, ShiftTemplate, count_occupants, find_overlap, record_audit_log
from directory import DirectoryStore
from errors import CapacityExceeded, ConcurrentModification, DoubleBooked, InvalidCapacity, TemplateInUse, TemplateNotFound
from locks import KeyedLocks, employee_day_key, template_key
from policy import build_default_policy, lock_timeout, scheduling_days
from slots import ClockValue, format_clock, parse_clock, validate_day, validate_window
from states import OperationalState

logger = logging.getLogger("shiftdesk.templates")


def _validate_capacity(max_staff: Any) -> int:
    if isinstance(max_staff, bool):
        raise InvalidCapacity("max_staff must be a positive integer.", max_staff=max_staff)
    try:
        value = int(max_staff)
    except (TypeError, ValueError) as exc:
        raise InvalidCapacity("max_staff must be a positive integer.", max_staff=max_staff) from exc
    if value != max_staff and not isinstance(max_staff, str):
        raise InvalidCapacity("max_staff must be a whole number.", max_staff=max_staff)
    if value < 1:
        raise InvalidCapacity(f"max_staff must be at least 1, got {value}.", max_staff=value)
    return value


def template_to_dict(template: ShiftTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "branch_id": template.branch_id,
        "name": template.name,
        "day_of_week": template.day_of_week,
        "start_time": format_clock(template.start_time),
        "end_time": format_clock(template.end_time),
        "role": template.role,
        "max_staff": template.max_staff,
        "is_active": template.is_active,
    }


class TemplateRegistry:
    """Catalog of recurring weekly slots per branch."""

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

    def create_template(
        self,
        branch_id: int,
        name: str,
        day_of_week: int,
        start_time: ClockValue,
        end_time: ClockValue,
        role: str = "",
        max_staff: int = 1,
        *,
        actor: str = "system",
    ) -> ShiftTemplate:
        start, end = validate_window(start_time, end_time)
        capacity = _validate_capacity(max_staff)
        day = validate_day(day_of_week, scheduling_days(self.policy))
        self._directory.get_branch(branch_id)
        label = (name or "").strip() or f"{format_clock(start)}-{format_clock(end)}"
        with self._session_factory() as session, session.begin():
            template = ShiftTemplate(
                branch_id=branch_id,
                name=label,
                day_of_week=day,
                start_time=start,
                end_time=end,
                role=(role or "").strip(),
                max_staff=capacity,
                is_active=True,
            )
            session.add(template)
            session.flush()
            record_audit_log(
                session,
                user_id=actor,
                action="TEMPLATE_CREATE",
                target_type="ShiftTemplate",
                target_id=template.id,
                payload=template_to_dict(template),
            )
        logger.info(
            "Created template %s '%s' branch=%s day=%s %s-%s max_staff=%s",
            template.id,
            template.name,
            branch_id,
            day,
            format_clock(start),
            format_clock(end),
            capacity,
        )
        return template

    def get_template(self, template_id: int) -> ShiftTemplate:
        with self._session_factory() as session:
            template = session.get(ShiftTemplate, template_id)
        if template is None:
            raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
        return template

    def list_templates(
        self,
        branch_id: Optional[int] = None,
        *,
        company_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[ShiftTemplate]:
        stmt = select(ShiftTemplate)
        if branch_id is not None:
            stmt = stmt.where(ShiftTemplate.branch_id == branch_id)
        if company_id:
            branch_ids = self._directory.branch_ids_for_company(company_id)
            if not branch_ids:
                return []
            stmt = stmt.where(ShiftTemplate.branch_id.in_(branch_ids))
        if not include_inactive:
            stmt = stmt.where(ShiftTemplate.is_active.is_(True))
        stmt = stmt.order_by(
            ShiftTemplate.day_of_week.asc(),
            ShiftTemplate.start_time.asc(),
            ShiftTemplate.name.asc(),
            ShiftTemplate.id.asc(),
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def update_template(
        self,
        template_id: int,
        *,
        name: Optional[str] = None,
        start_time: Optional[ClockValue] = None,
        end_time: Optional[ClockValue] = None,
        role: Optional[str] = None,
        max_staff: Optional[int] = None,
        is_active: Optional[bool] = None,
        actor: str = "system",
    ) -> ShiftTemplate:
        """Edit a template in place.

        A window change moves every bound assignment with it, so each occupant
        is re-checked for double-booking against the rest of their day.
        Every field, the active flag included, lands in one transaction or
        not at all.
        """
        current = self.get_template(template_id)
        new_start = parse_clock(start_time, field="start_time") if start_time is not None else current.start_time
        new_end = parse_clock(end_time, field="end_time") if end_time is not None else current.end_time
        new_start, new_end = validate_window(new_start, new_end)
        capacity = _validate_capacity(max_staff) if max_staff is not None else None
        window_changed = (new_start, new_end) != (current.start_time, current.end_time)

        keys = [template_key(template_id)]
        occupant_ids: set = set()
        if window_changed:
            with self._session_factory() as session:
                occupant_ids = {
                    row[0]
                    for row in session.execute(
                        select(ShiftAssignment.employee_id).where(ShiftAssignment.template_id == template_id)
                    )
                }
            keys.extend(employee_day_key(employee_id, current.day_of_week) for employee_id in occupant_ids)

        try:
            with self._locks.hold(*keys, timeout=lock_timeout(self.policy)):
                with self._session_factory() as session, session.begin():
                    template = session.get(ShiftTemplate, template_id)
                    if template is None:
                        raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
                    bound = list(
                        session.scalars(select(ShiftAssignment).where(ShiftAssignment.template_id == template_id))
                    )
                    if capacity is not None and capacity < len(bound):
                        raise CapacityExceeded(
                            f"Template {template_id} has {len(bound)} occupants; max_staff cannot drop to {capacity}.",
                            template_id=template_id,
                            occupancy=len(bound),
                            max_staff=capacity,
                        )
                    if window_changed:
                        if {assignment.employee_id for assignment in bound} - occupant_ids:
                            raise ConcurrentModification(
                                "Template occupants changed while editing; retry.",
                                template_id=template_id,
                            )
                        self._check_moved_window(session, template, bound, new_start, new_end)
                        for assignment in bound:
                            assignment.start_time = new_start
                            assignment.end_time = new_end
                        template.start_time = new_start
                        template.end_time = new_end
                    if name is not None and name.strip():
                        template.name = name.strip()
                    if role is not None:
                        template.role = role.strip()
                    if capacity is not None:
                        template.max_staff = capacity
                    if is_active is not None:
                        template.is_active = bool(is_active)
                    record_audit_log(
                        session,
                        user_id=actor,
                        action="TEMPLATE_EDIT",
                        target_type="ShiftTemplate",
                        target_id=template.id,
                        payload=template_to_dict(template),
                    )
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Assignments of template {template_id} changed while editing it; retry.",
                template_id=template_id,
            ) from exc
        logger.info("Updated template %s (window_changed=%s)", template_id, window_changed)
        return template

    def _check_moved_window(
        self,
        session,
        template: ShiftTemplate,
        bound: List[ShiftAssignment],
        new_start: datetime.time,
        new_end: datetime.time,
    ) -> None:
        for assignment in bound:
            other = find_overlap(
                session,
                assignment.employee_id,
                template.day_of_week,
                new_start,
                new_end,
                exclude_template_id=template.id,
            )
            if other is not None:
                raise DoubleBooked(
                    f"Moving template {template.id} to {format_clock(new_start)}-{format_clock(new_end)} "
                    f"would double-book employee {assignment.employee_id}.",
                    employee_id=assignment.employee_id,
                    day_of_week=template.day_of_week,
                    conflicting_assignment_id=other.id,
                    conflicting_window=[format_clock(other.start_time), format_clock(other.end_time)],
                )

    def set_template_active(self, template_id: int, active: bool, *, actor: str = "system") -> ShiftTemplate:
        with self._locks.hold(template_key(template_id), timeout=lock_timeout(self.policy)):
            with self._session_factory() as session, session.begin():
                template = session.get(ShiftTemplate, template_id)
                if template is None:
                    raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
                template.is_active = bool(active)
                record_audit_log(
                    session,
                    user_id=actor,
                    action="TEMPLATE_ENABLE" if active else "TEMPLATE_DISABLE",
                    target_type="ShiftTemplate",
                    target_id=template.id,
                )
        logger.info("Template %s is_active=%s", template_id, bool(active))
        return template

    def delete_template(self, template_id: int, *, actor: str = "system") -> None:
        """Delete a template once every occupant has completed.

        Completed assignments are kept for history with their template
        reference cleared.
        """
        try:
            with self._locks.hold(template_key(template_id), timeout=lock_timeout(self.policy)):
                with self._session_factory() as session, session.begin():
                    template = session.get(ShiftTemplate, template_id)
                    if template is None:
                        raise TemplateNotFound(f"Shift template {template_id} was not found.", template_id=template_id)
                    bound = list(
                        session.scalars(select(ShiftAssignment).where(ShiftAssignment.template_id == template_id))
                    )
                    blocking = [
                        assignment.id
                        for assignment in bound
                        if assignment.operational_state != OperationalState.COMPLETED.value
                    ]
                    if blocking:
                        raise TemplateInUse(
                            f"Template {template_id} still has {len(blocking)} assignment(s) that are not completed.",
                            template_id=template_id,
                            assignment_ids=blocking,
                        )
                    for assignment in bound:
                        assignment.template_id = None
                    session.flush()
                    session.delete(template)
                    record_audit_log(
                        session,
                        user_id=actor,
                        action="TEMPLATE_DELETE",
                        target_type="ShiftTemplate",
                        target_id=template_id,
                        payload={"orphaned_assignment_ids": [assignment.id for assignment in bound]},
                    )
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Assignments of template {template_id} changed while deleting it; retry.",
                template_id=template_id,
            ) from exc
        logger.info("Deleted template %s (%d completed assignment(s) kept)", template_id, len(bound))
