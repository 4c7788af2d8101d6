from __future__ import annotations

import unittest

from engine_case import EngineTestCase

from errors import AssignmentNotFound, InvalidState, InvalidTransition
from policy import _normalize_policy
from states import OperationalState, allowed_transitions, validate_transition


class TransitionTableTests(unittest.TestCase):
    def test_guarded_graph(self) -> None:
        policy = _normalize_policy({})
        expected = {
            "INACTIVE": {"ACTIVE"},
            "ACTIVE": {"BREAK", "ASSIST", "COMPLETED"},
            "ASSIST": {"ACTIVE", "COMPLETED"},
            "BREAK": {"ACTIVE", "COMPLETED"},
            "COMPLETED": set(),
        }
        for state, targets in expected.items():
            with self.subTest(state=state):
                self.assertEqual({s.value for s in allowed_transitions(state, policy)}, targets)

    def test_guarded_graph_rejects_self_loops(self) -> None:
        for state in OperationalState:
            with self.subTest(state=state):
                with self.assertRaises(InvalidTransition):
                    validate_transition(state, state, _normalize_policy({}))

    def test_reopen_switch(self) -> None:
        policy = _normalize_policy({"transitions": {"allow_reopen": True}})
        self.assertEqual(allowed_transitions("COMPLETED", policy), frozenset({OperationalState.INACTIVE}))
        self.assertNotIn(OperationalState.INACTIVE, allowed_transitions("ACTIVE", policy))

    def test_permissive_mode_allows_everything(self) -> None:
        policy = _normalize_policy({"transitions": {"mode": "permissive"}})
        for state in OperationalState:
            self.assertEqual(allowed_transitions(state, policy), frozenset(OperationalState))

    def test_parse_is_case_insensitive_and_strict(self) -> None:
        self.assertIs(OperationalState.parse(" break "), OperationalState.BREAK)
        with self.assertRaises(InvalidState):
            OperationalState.parse("LUNCH")
        with self.assertRaises(InvalidState):
            OperationalState.parse(None)


class StateMachineTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        template = self._template()
        self.assignment = self.engine.planner.place_assignment(template.id, self._add_employee("X").id)

    def test_shift_lifecycle(self) -> None:
        self.engine.states.transition(self.assignment.id, "ACTIVE")
        final = self.engine.states.transition(self.assignment.id, "COMPLETED", actor="lead")
        self.assertEqual(final.operational_state, "COMPLETED")

        with self.assertRaises(InvalidTransition) as ctx:
            self.engine.states.transition(self.assignment.id, "ACTIVE")
        self.assertEqual(ctx.exception.details["from_state"], "COMPLETED")
        self.assertEqual(ctx.exception.details["allowed"], [])
        self.assertEqual(self.engine.planner.get_assignment(self.assignment.id).operational_state, "COMPLETED")

    def test_break_and_assist_return_to_active(self) -> None:
        for state in ("ACTIVE", "BREAK", "ACTIVE", "ASSIST", "ACTIVE"):
            self.engine.states.transition(self.assignment.id, state)
        self.assertEqual(self.engine.planner.get_assignment(self.assignment.id).operational_state, "ACTIVE")

    def test_repeating_a_target_is_rejected(self) -> None:
        self.engine.states.transition(self.assignment.id, "ACTIVE")
        with self.assertRaises(InvalidTransition):
            self.engine.states.transition(self.assignment.id, "ACTIVE")

    def test_skipping_active_is_rejected(self) -> None:
        with self.assertRaises(InvalidTransition):
            self.engine.states.transition(self.assignment.id, "COMPLETED")
        self.assertEqual(self.engine.planner.get_assignment(self.assignment.id).operational_state, "INACTIVE")

    def test_transitions_are_audited_and_versioned(self) -> None:
        version = self.assignment.version_id
        updated = self.engine.states.transition(self.assignment.id, "ACTIVE")
        self.assertEqual(updated.version_id, version + 1)
        self.assertEqual(
            self._audit_actions(self.assignment.id, "ShiftAssignment"),
            ["ASSIGNMENT_PLACE", "ASSIGNMENT_STATE"],
        )

    def test_state_changes_leave_capacity_alone(self) -> None:
        template_id = self.assignment.template_id
        before = self._occupancy(template_id)
        self.engine.states.transition(self.assignment.id, "ACTIVE")
        self.engine.states.transition(self.assignment.id, "BREAK")
        self.assertEqual(self._occupancy(template_id), before)

    def test_missing_assignment_and_unknown_state(self) -> None:
        with self.assertRaises(AssignmentNotFound):
            self.engine.states.transition(999, "ACTIVE")
        with self.assertRaises(InvalidState):
            self.engine.states.transition(self.assignment.id, "ON_LEAVE")


class PermissiveStateMachineTests(EngineTestCase):
    policy_overrides = {"transitions": {"mode": "permissive"}}

    def test_same_target_twice_is_idempotent(self) -> None:
        template = self._template()
        assignment = self.engine.planner.place_assignment(template.id, self._add_employee("X").id)
        self.engine.states.transition(assignment.id, "COMPLETED")
        again = self.engine.states.transition(assignment.id, "COMPLETED")
        self.assertEqual(again.operational_state, "COMPLETED")
        reopened = self.engine.states.transition(assignment.id, "ACTIVE")
        self.assertEqual(reopened.operational_state, "ACTIVE")


class ReopenStateMachineTests(EngineTestCase):
    policy_overrides = {"transitions": {"allow_reopen": True}}

    def test_completed_can_be_reopened(self) -> None:
        template = self._template()
        assignment = self.engine.planner.place_assignment(template.id, self._add_employee("X").id)
        for state in ("ACTIVE", "COMPLETED", "INACTIVE"):
            self.engine.states.transition(assignment.id, state)
        self.assertEqual(self.engine.planner.get_assignment(assignment.id).operational_state, "INACTIVE")
        self.assertEqual(
            self.engine.states.allowed_transitions("COMPLETED"),
            frozenset({OperationalState.INACTIVE}),
        )


if __name__ == "__main__":
    unittest.main()
