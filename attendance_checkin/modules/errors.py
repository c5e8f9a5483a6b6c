"""
Check-in error taxonomy shared by the protocol modules.

Every rejection the protocol can produce is a member of ``Rejection``.
Registry operations raise ``CheckInError``; the coordinator and the HTTP
layer turn it into result objects and JSON bodies.
"""

from enum import Enum
from typing import Optional


class Rejection(str, Enum):
    """Reasons a token, check-in or session operation is refused."""

    MALFORMED = 'MALFORMED'
    WRONG_PURPOSE = 'WRONG_PURPOSE'
    INVALID_TIMESTAMP = 'INVALID_TIMESTAMP'
    EXPIRED = 'EXPIRED'
    SESSION_CLOSED = 'SESSION_CLOSED'
    NO_ACTIVE_SESSION = 'NO_ACTIVE_SESSION'
    NOT_ENROLLED = 'NOT_ENROLLED'
    ALREADY_MARKED = 'ALREADY_MARKED'
    ALREADY_ACTIVE = 'ALREADY_ACTIVE'
    SESSION_NOT_FOUND = 'SESSION_NOT_FOUND'
    UNAUTHORIZED = 'UNAUTHORIZED'
    INVALID_STATUS = 'INVALID_STATUS'
    RECORD_NOT_FOUND = 'RECORD_NOT_FOUND'


# User-facing messages. MALFORMED never names the failing check.
REJECTION_MESSAGES = {
    Rejection.MALFORMED: 'Invalid QR code',
    Rejection.WRONG_PURPOSE: 'QR code is not an attendance code',
    Rejection.INVALID_TIMESTAMP: 'QR code timestamp is invalid',
    Rejection.EXPIRED: 'QR code has expired, ask the student to refresh it',
    Rejection.SESSION_CLOSED: 'Attendance session is closed',
    Rejection.NO_ACTIVE_SESSION: 'No active attendance session',
    Rejection.NOT_ENROLLED: 'Student is not enrolled in this class',
    Rejection.ALREADY_MARKED: 'Student already checked in for this session',
    Rejection.ALREADY_ACTIVE: 'An active session already exists for this class',
    Rejection.SESSION_NOT_FOUND: 'Attendance session not found',
    Rejection.UNAUTHORIZED: 'Authorization failed',
    Rejection.INVALID_STATUS: 'Invalid attendance status',
    Rejection.RECORD_NOT_FOUND: 'No attendance record for this student in the session',
}

# Rejections callers render as information rather than as an error banner
INFORMATIONAL = frozenset({Rejection.ALREADY_MARKED})


def describe(reason: Rejection) -> str:
    return REJECTION_MESSAGES.get(reason, 'Request rejected')


class CheckInError(Exception):
    """Raised by registry operations; carries a ``Rejection`` reason."""

    def __init__(self, reason: Rejection, message: Optional[str] = None):
        self.reason = reason
        self.message = message or describe(reason)
        super().__init__(f"{reason.value}: {self.message}")

    @property
    def informational(self) -> bool:
        return self.reason in INFORMATIONAL

    def to_dict(self) -> dict:
        return {
            'success': False,
            'error': self.message,
            'error_type': self.reason.value,
        }
