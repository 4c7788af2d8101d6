from __future__ import annotations

import datetime
import unittest

from engine_case import EngineTestCase

from errors import (
    AdHocDisabled,
    AssignmentNotFound,
    BranchNotFound,
    CapacityExceeded,
    DoubleBooked,
    EmployeeInactive,
    EmployeeNotFound,
    InvalidDay,
    InvalidRange,
    TemplateNotFound,
)
from states import OperationalState


class PlacementScenarioTests(EngineTestCase):
    def test_capacity_scenario(self) -> None:
        template = self._template(day=1, start="09:00", end="13:00", max_staff=2)
        x, y, z = (self._add_employee(name) for name in ("X", "Y", "Z"))

        self.engine.planner.place_assignment(template.id, x.id)
        self.assertEqual(self._occupancy(template.id), 1)
        self.engine.planner.place_assignment(template.id, y.id)
        self.assertEqual(self._occupancy(template.id), 2)
        with self.assertRaises(CapacityExceeded) as ctx:
            self.engine.planner.place_assignment(template.id, z.id)

        self.assertEqual(ctx.exception.details["occupancy"], 2)
        self.assertEqual(ctx.exception.details["max_staff"], 2)
        self.assertEqual(self._occupancy(template.id), 2)
        self.assertEqual(self.engine.planner.list_assignments(employee_id=z.id), [])

    def test_overlapping_window_is_double_booked(self) -> None:
        morning = self._template(day=2, start="09:00", end="13:00")
        afternoon = self._template(day=2, start="12:00", end="16:00")
        x = self._add_employee("X")
        first = self.engine.planner.place_assignment(morning.id, x.id)

        with self.assertRaises(DoubleBooked) as ctx:
            self.engine.planner.place_assignment(afternoon.id, x.id)

        self.assertEqual(ctx.exception.details["conflicting_assignment_id"], first.id)
        self.assertEqual(ctx.exception.details["conflicting_window"], ["09:00", "13:00"])
        self.assertEqual(self._occupancy(afternoon.id), 0)

    def test_touching_windows_do_not_overlap(self) -> None:
        morning = self._template(day=2, start="09:00", end="13:00")
        afternoon = self._template(day=2, start="13:00", end="17:00")
        x = self._add_employee("X")
        self.engine.planner.place_assignment(morning.id, x.id)
        placed = self.engine.planner.place_assignment(afternoon.id, x.id)
        self.assertEqual(placed.start_time, datetime.time(13, 0))

    def test_same_window_on_another_day_is_free(self) -> None:
        monday = self._template(day=1)
        tuesday = self._template(day=2)
        x = self._add_employee("X")
        self.engine.planner.place_assignment(monday.id, x.id)
        self.engine.planner.place_assignment(tuesday.id, x.id)
        self.assertEqual(len(self.engine.planner.list_assignments(employee_id=x.id)), 2)

    def test_double_booking_spans_branches(self) -> None:
        harbour = self._add_branch("Harbour")
        here = self._template(day=3, start="08:00", end="12:00")
        there = self._template(day=3, start="11:00", end="15:00", branch_id=harbour.id)
        x = self._add_employee("X")
        self.engine.planner.place_assignment(here.id, x.id)
        with self.assertRaises(DoubleBooked):
            self.engine.planner.place_assignment(there.id, x.id)

    def test_same_employee_twice_in_one_cell(self) -> None:
        template = self._template(max_staff=3)
        x = self._add_employee("X")
        self.engine.planner.place_assignment(template.id, x.id)
        with self.assertRaises(DoubleBooked):
            self.engine.planner.place_assignment(template.id, x.id)


class PlacementTests(EngineTestCase):
    def test_new_assignment_copies_template(self) -> None:
        template = self._template(day=4, start="10:00", end="14:00", role="Chef - Line")
        employee = self._add_employee("Cook", role="Chef")
        assignment = self.engine.planner.place_assignment(template.id, employee.id, "  covers lunch ", actor="mgr")

        self.assertEqual(assignment.template_id, template.id)
        self.assertEqual(assignment.branch_id, self.branch.id)
        self.assertEqual(assignment.day_of_week, 4)
        self.assertEqual(assignment.start_time, datetime.time(10, 0))
        self.assertEqual(assignment.end_time, datetime.time(14, 0))
        self.assertEqual(assignment.role, "Chef - Line")
        self.assertEqual(assignment.notes, "covers lunch")
        self.assertEqual(assignment.operational_state, OperationalState.INACTIVE.value)
        self.assertEqual(assignment.created_by, "mgr")
        self.assertFalse(assignment.ad_hoc)
        self.assertEqual(self._audit_actions(assignment.id, "ShiftAssignment"), ["ASSIGNMENT_PLACE"])

    def test_audit_payloads_record_occupancy_and_removal(self) -> None:
        template = self._template(day=3, max_staff=2)
        first = self.engine.planner.place_assignment(template.id, self._add_employee("Ana").id)
        second_employee = self._add_employee("Ben")
        second = self.engine.planner.place_assignment(template.id, second_employee.id)

        self.assertEqual(
            self._audit_payloads("ASSIGNMENT_PLACE", second.id),
            [{"template_id": template.id, "employee_id": second_employee.id, "occupancy": 2}],
        )
        self.assertEqual(self._audit_payloads("ASSIGNMENT_PLACE", first.id)[0]["occupancy"], 1)

        self.engine.states.transition(second.id, "ACTIVE")
        self.assertEqual(self._audit_payloads("ASSIGNMENT_STATE", second.id), [{"from": "INACTIVE", "to": "ACTIVE"}])

        self.engine.planner.remove_assignment(second.id, actor="mgr")
        self.assertEqual(
            self._audit_payloads("ASSIGNMENT_REMOVE", second.id),
            [{"template_id": template.id, "employee_id": second_employee.id, "day_of_week": 3}],
        )

    def test_role_override(self) -> None:
        template = self._template(role="Waiter")
        employee = self._add_employee("Lead", role="Shift Lead")
        assignment = self.engine.planner.place_assignment(template.id, employee.id, role="Shift Lead")
        self.assertEqual(assignment.role, "Shift Lead")

    def test_role_mismatch_is_advisory(self) -> None:
        template = self._template(role="Bartender")
        employee = self._add_employee("Dana", role="Dishwasher")
        with self.assertLogs("shiftdesk.planner", level="WARNING") as logs:
            assignment = self.engine.planner.place_assignment(template.id, employee.id)
        self.assertIsNotNone(assignment.id)
        self.assertTrue(any("expecting role 'Bartender'" in line for line in logs.output))

    def test_missing_template_and_employee(self) -> None:
        employee = self._add_employee("X")
        template = self._template()
        with self.assertRaises(TemplateNotFound):
            self.engine.planner.place_assignment(999, employee.id)
        with self.assertRaises(EmployeeNotFound):
            self.engine.planner.place_assignment(template.id, 999)

    def test_inactive_employee_rejected(self) -> None:
        template = self._template()
        employee = self._add_employee("Gone", status="inactive")
        with self.assertRaises(EmployeeInactive) as ctx:
            self.engine.planner.place_assignment(template.id, employee.id)
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(self._occupancy(template.id), 0)

    def test_occupants_listed_first_placed_first(self) -> None:
        template = self._template(max_staff=3)
        names = ["Cy", "Ana", "Bo"]
        for name in names:
            self.engine.planner.place_assignment(template.id, self._add_employee(name).id)
        occupants = self.engine.planner.list_cell_occupants(template.id)
        employees = self.engine.directory.employees_by_id(a.employee_id for a in occupants)
        self.assertEqual([employees[a.employee_id].display_name for a in occupants], names)
        self.assertEqual(
            self.engine.planner.cell_occupancy(template.id),
            {"template_id": template.id, "occupancy": 3, "max_staff": 3, "available": 0},
        )

    def test_completed_assignments_still_occupy_the_cell(self) -> None:
        template = self._template(max_staff=1)
        first = self.engine.planner.place_assignment(template.id, self._add_employee("A").id)
        self.engine.states.transition(first.id, "ACTIVE")
        self.engine.states.transition(first.id, "COMPLETED")
        with self.assertRaises(CapacityExceeded):
            self.engine.planner.place_assignment(template.id, self._add_employee("B").id)


class RemovalTests(EngineTestCase):
    def test_place_then_remove_round_trip(self) -> None:
        template = self._template(max_staff=1)
        other = self._template(start="10:00", end="12:00", max_staff=1)
        x = self._add_employee("X")
        before = self._occupancy(template.id)

        assignment = self.engine.planner.place_assignment(template.id, x.id)
        self.engine.planner.remove_assignment(assignment.id, actor="tests")

        self.assertEqual(self._occupancy(template.id), before)
        self.engine.planner.place_assignment(other.id, x.id)
        with self.assertRaises(AssignmentNotFound):
            self.engine.planner.get_assignment(assignment.id)

    def test_removing_missing_assignment_changes_nothing(self) -> None:
        template = self._template(max_staff=2)
        self.engine.planner.place_assignment(template.id, self._add_employee("X").id)
        audit_before = self._audit_actions()

        with self.assertRaises(AssignmentNotFound):
            self.engine.planner.remove_assignment(12345)

        self.assertEqual(self._occupancy(template.id), 1)
        self.assertEqual(self._audit_actions(), audit_before)

    def test_update_notes(self) -> None:
        template = self._template()
        assignment = self.engine.planner.place_assignment(template.id, self._add_employee("X").id)
        updated = self.engine.planner.update_assignment_notes(assignment.id, " late start ")
        self.assertEqual(updated.notes, "late start")
        self.assertEqual(self.engine.planner.get_assignment(assignment.id).notes, "late start")
        with self.assertRaises(AssignmentNotFound):
            self.engine.planner.update_assignment_notes(999, "x")


class AdHocTests(EngineTestCase):
    def test_ad_hoc_assignment_has_no_template(self) -> None:
        employee = self._add_employee("X", role="Cashier")
        assignment = self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 3, "07:00", "11:00")
        self.assertIsNone(assignment.template_id)
        self.assertTrue(assignment.ad_hoc)
        self.assertEqual(assignment.role, "Cashier")
        self.assertEqual(assignment.operational_state, "INACTIVE")

    def test_ad_hoc_shares_double_booking_check(self) -> None:
        template = self._template(day=3, start="09:00", end="13:00")
        employee = self._add_employee("X")
        self.engine.planner.place_assignment(template.id, employee.id)
        with self.assertRaises(DoubleBooked):
            self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 3, "12:30", "15:00")
        self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 3, "13:00", "15:00")

        other = self._template(day=3, start="14:00", end="18:00")
        with self.assertRaises(DoubleBooked):
            self.engine.planner.place_assignment(other.id, employee.id)

    def test_ad_hoc_validation(self) -> None:
        employee = self._add_employee("X")
        inactive = self._add_employee("Y", status="inactive")
        with self.assertRaises(InvalidRange):
            self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 1, "15:00", "09:00")
        with self.assertRaises(InvalidDay):
            self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 7, "09:00", "12:00")
        with self.assertRaises(BranchNotFound):
            self.engine.planner.place_ad_hoc_assignment(employee.id, 404, 1, "09:00", "12:00")
        with self.assertRaises(EmployeeNotFound):
            self.engine.planner.place_ad_hoc_assignment(404, self.branch.id, 1, "09:00", "12:00")
        with self.assertRaises(EmployeeInactive):
            self.engine.planner.place_ad_hoc_assignment(inactive.id, self.branch.id, 1, "09:00", "12:00")
        self.assertEqual(self.engine.planner.list_assignments(), [])


class AdHocDisabledTests(EngineTestCase):
    policy_overrides = {"ad_hoc": {"enabled": False}}

    def test_policy_can_disable_ad_hoc_placements(self) -> None:
        employee = self._add_employee("X")
        with self.assertRaises(AdHocDisabled):
            self.engine.planner.place_ad_hoc_assignment(employee.id, self.branch.id, 1, "09:00", "12:00")


class ListingTests(EngineTestCase):
    def test_list_assignments_filters_and_orders(self) -> None:
        late = self._template(day=1, start="14:00", end="18:00", max_staff=2)
        early = self._template(day=1, start="08:00", end="12:00", max_staff=2)
        tuesday = self._template(day=2, start="08:00", end="12:00", max_staff=2)
        ana, ben = self._add_employee("Ana"), self._add_employee("Ben")
        a1 = self.engine.planner.place_assignment(late.id, ana.id)
        a2 = self.engine.planner.place_assignment(early.id, ben.id)
        a3 = self.engine.planner.place_assignment(tuesday.id, ana.id)

        self.assertEqual([a.id for a in self.engine.planner.list_assignments()], [a2.id, a1.id, a3.id])
        self.assertEqual([a.id for a in self.engine.planner.list_assignments(employee_id=ana.id)], [a1.id, a3.id])
        self.assertEqual([a.id for a in self.engine.planner.list_assignments(day_of_week=2)], [a3.id])
        self.assertEqual([a.id for a in self.engine.planner.list_assignments(template_id=early.id)], [a2.id])
        self.assertEqual(len(self.engine.planner.list_assignments(branch_id=self.branch.id)), 3)


if __name__ == "__main__":
    unittest.main()
