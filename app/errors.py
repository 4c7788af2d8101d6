"""Error kinds raised by the scheduling engine.

Every failure is local and synchronous. Only ``ConcurrentModification`` is
marked retryable; everything else is a business rule or input problem the
caller must fix.
"""

from __future__ import annotations

from typing import Any, Dict


class SchedulingError(Exception):
    kind = "SchedulingError"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "details": dict(self.details),
            "retryable": self.retryable,
        }


class InvalidRange(SchedulingError):
    kind = "InvalidRange"


class InvalidCapacity(SchedulingError):
    kind = "InvalidCapacity"


class InvalidDay(SchedulingError):
    kind = "InvalidDay"


class InvalidState(SchedulingError):
    kind = "InvalidState"


class NotFoundError(SchedulingError):
    status_code = 404


class TemplateNotFound(NotFoundError):
    kind = "TemplateNotFound"


class EmployeeNotFound(NotFoundError):
    kind = "EmployeeNotFound"


class BranchNotFound(NotFoundError):
    kind = "BranchNotFound"


class AssignmentNotFound(NotFoundError):
    kind = "AssignmentNotFound"


class EmployeeInactive(SchedulingError):
    kind = "EmployeeInactive"
    status_code = 422


class TemplateInactive(SchedulingError):
    kind = "TemplateInactive"
    status_code = 422


class AdHocDisabled(SchedulingError):
    kind = "AdHocDisabled"
    status_code = 422


class CapacityExceeded(SchedulingError):
    kind = "CapacityExceeded"
    status_code = 409


class DoubleBooked(SchedulingError):
    kind = "DoubleBooked"
    status_code = 409


class InvalidTransition(SchedulingError):
    kind = "InvalidTransition"
    status_code = 409


class TemplateInUse(SchedulingError):
    kind = "TemplateInUse"
    status_code = 409


class ConcurrentModification(SchedulingError):
    kind = "ConcurrentModification"
    status_code = 409
    retryable = True
