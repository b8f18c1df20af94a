from __future__ import annotations

from typing import Dict, Type


class CarpoolError(Exception):
    """Base class for caller-visible carpool errors."""

    code = "carpool_error"

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code, "message": str(self)}


class InvalidWeekStartError(CarpoolError):
    """Raised when a week start date is missing, malformed, or not a Monday."""

    code = "invalid_week_start"


class UnknownGroupError(CarpoolError):
    """Raised when a group id is empty or the group has no families."""

    code = "unknown_group"


class UnknownWeekError(CarpoolError):
    """Raised when a stored week is required but no schedule was ever saved for it."""

    code = "unknown_week"


class InvalidPreferenceError(CarpoolError):
    """Raised when a preference batch is malformed (wrong family, date outside the week, repeated date)."""

    code = "invalid_preference"


class PreferenceLimitExceeded(CarpoolError):
    """Raised when a batch holds more entries at one preference level than the weekly limit allows."""

    code = "limit_exceeded"

    def __init__(self, level: str, count: int, maximum: int) -> None:
        self.level = level
        self.count = count
        self.maximum = maximum
        super().__init__(f"{count} '{level}' entries submitted; at most {maximum} allowed per week.")

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload.update({"level": self.level, "count": self.count, "max": self.maximum})
        return payload


class DuplicateSubmissionError(CarpoolError):
    """Raised when a family submits a second batch for a week and the policy rejects resubmission."""

    code = "duplicate_submission"


class SubmissionDeadlinePassed(CarpoolError):
    """Raised when preferences arrive after the configured weekly deadline."""

    code = "deadline_passed"


# Mapping of custom exceptions to HTTP status codes
ERROR_STATUS: Dict[Type[CarpoolError], int] = {
    InvalidWeekStartError: 400,
    UnknownGroupError: 404,
    UnknownWeekError: 404,
    InvalidPreferenceError: 400,
    PreferenceLimitExceeded: 422,
    DuplicateSubmissionError: 409,
    SubmissionDeadlinePassed: 422,
}


def status_for(exc: CarpoolError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 400
