"""Typed errors returned by the timecard engine.

Guards return these instead of raising them; the mutation entrypoint raises
one only to abort the enclosing transaction and hands it back to the caller
as part of a MutationResult.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for every engine failure."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidTransition(EngineError):
    """Action is not legal in the record's current phase or status."""

    code = "INVALID_TRANSITION"

    def __init__(self, action: str, current: str, reason: Optional[str] = None):
        self.action = action
        self.current = current
        msg = f"Cannot {action} while timecard is '{current}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MissingBreakUnresolved(EngineError):
    """Submission blocked until a break is added or affirmed as not taken."""

    code = "MISSING_BREAK_UNRESOLVED"

    def __init__(self, shift_hours: float, threshold_hours: float):
        self.shift_hours = shift_hours
        self.threshold_hours = threshold_hours
        super().__init__(
            f"Shift of {shift_hours:.2f} hours exceeds {threshold_hours:g} hours "
            "without a break. Add the break or confirm that none was taken."
        )


class ConcurrentModification(EngineError):
    """The record changed underneath the caller; retry with fresh state."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, record_id, expected_version=None, actual_version=None):
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Timecard {record_id} was modified by another request"
        if expected_version is not None and actual_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)


class PermissionDenied(EngineError):
    """Actor lacks the capability the action requires."""

    code = "PERMISSION_DENIED"


class AuditPersistenceFailure(EngineError):
    """Writing the audit trail failed; the whole mutation was rolled back."""

    code = "AUDIT_PERSISTENCE_FAILURE"

    def __init__(self, record_id, original_error: Optional[BaseException] = None):
        self.record_id = record_id
        self.original_error = original_error
        super().__init__(f"Failed to record audit trail for timecard {record_id}")


class ValidationError(EngineError):
    """Malformed input, e.g. out-of-order timestamps."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "errors": self.errors}


class RecordNotFound(EngineError):
    code = "TIMECARD_NOT_FOUND"

    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__(f"Timecard with ID {record_id} not found")
