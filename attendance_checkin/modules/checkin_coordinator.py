"""
Check-In Coordinator Module - QR Check-In Attendance Protocol

This module handles a single scan from the lecturer's device end to end: it
resolves the session, validates the envelope, confirms enrollment and marks
the student at most once. Every outcome comes back as a ``CheckInResult``
carrying the session's live counts, so the scanner can update its progress
display without another request.

Features:
- Session resolution by id or by class
- Envelope validation with rejection reasons passed through unchanged
- Roster membership check
- At-most-once marking with informational duplicate results
- Caller-supplied status (present, late or excused)
- Change notification after every successful check-in
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from attendance_checkin.modules.errors import CheckInError, Rejection, INFORMATIONAL, describe
from attendance_checkin.modules.notification_system import EVENT_CHECKED_IN, StatsNotifier
from attendance_checkin.modules.session_registry import (
    SCAN_STATUSES,
    AttendanceRecord,
    AttendanceStatus,
    SessionRegistry,
    SessionState,
    SessionStats,
    parse_status,
)
from attendance_checkin.modules.token_validator import TokenValidator, ValidIdentity


@dataclass(frozen=True)
class CheckInResult:
    """Outcome of one scan."""
    accepted: bool
    session_id: Optional[int] = None
    reason: Optional[Rejection] = None
    message: str = ''
    stats: Optional[SessionStats] = None
    record: Optional[AttendanceRecord] = None
    identity: Optional[ValidIdentity] = None

    @property
    def informational(self) -> bool:
        return self.reason in INFORMATIONAL

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'accepted': self.accepted,
            'message': self.message,
            'stats': self.stats.to_dict() if self.stats else None,
        }
        if self.reason is not None:
            result['reason'] = self.reason.value
            result['informational'] = self.informational
        if self.session_id is not None:
            result['sessionId'] = self.session_id
        if self.identity is not None:
            result['student'] = {
                'id': self.identity.subject_id,
                'name': self.identity.display_name,
                'email': self.identity.email,
            }
        if self.record is not None:
            result['record'] = self.record.to_dict()
        return result


class CheckInCoordinator:
    """
    Orchestrates validator and registry for each scan.
    """

    def __init__(self, validator: TokenValidator, registry: SessionRegistry,
                 notifier: Optional[StatsNotifier] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.validator = validator
        self.registry = registry
        self.notifier = notifier
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.logger = logging.getLogger(__name__)

    def check_in(self, envelope: Any, session_id: int,
                 requested_status: Any = AttendanceStatus.PRESENT,
                 marked_by: Optional[str] = None,
                 now_ms: Optional[int] = None) -> CheckInResult:
        """
        Process a scanned envelope for a session.

        Args:
            envelope (str): Scanned envelope text
            session_id (int): Session the scan belongs to
            requested_status: present, late or excused, chosen by the scanner
            marked_by (str): Who performed the scan
            now_ms (int): Scan time in epoch milliseconds; the clock when omitted

        Returns:
            CheckInResult: Acceptance or the rejection reason, with live stats
        """
        try:
            status = parse_status(requested_status, SCAN_STATUSES)
        except CheckInError as e:
            return self._rejected(session_id, e.reason, e.message)

        session = self.registry.find(session_id)
        if session is None:
            return self._rejected(None, Rejection.NO_ACTIVE_SESSION)
        if session.state in (SessionState.ENDED, SessionState.CLEARED):
            return self._rejected(session_id, Rejection.SESSION_CLOSED)
        if session.state != SessionState.ACTIVE:
            return self._rejected(session_id, Rejection.NO_ACTIVE_SESSION)

        now = self.clock() if now_ms is None else now_ms
        validation = self.validator.validate(envelope, now_ms=now)
        if not validation.valid:
            self.logger.warning(f"Scan rejected for session {session_id}: {validation.rejection.value}")
            return self._rejected(session_id, validation.rejection)

        identity = validation.identity
        if not self.registry.is_enrolled(session_id, identity.subject_id):
            self.logger.warning(f"Student {identity.subject_id} is not enrolled in session {session_id}")
            return self._rejected(session_id, Rejection.NOT_ENROLLED, identity=identity)

        try:
            record = self.registry.try_mark(
                session_id, identity.subject_id, status,
                marked_by=marked_by,
                notes=f"QR code scanned at {time.strftime('%H:%M:%S', time.localtime(now / 1000))}",
                now_ms=now,
            )
        except CheckInError as e:
            if e.reason in INFORMATIONAL:
                self.logger.info(f"Student {identity.subject_id} already checked in for session {session_id}")
            else:
                self.logger.warning(f"Check-in for student {identity.subject_id} rejected: {e.reason.value}")
            return self._rejected(session_id, e.reason, identity=identity)

        stats = self.registry.stats(session_id)
        if self.notifier is not None:
            self.notifier.publish(
                EVENT_CHECKED_IN, session_id, session.class_id, stats,
                subject_id=record.subject_id, status=status.value, name=identity.display_name,
            )

        return CheckInResult(
            accepted=True,
            session_id=session_id,
            message=f"Attendance marked as {status.value.upper()} for {identity.display_name or identity.subject_id}",
            stats=stats,
            record=record,
            identity=identity,
        )

    def check_in_for_class(self, envelope: Any, class_id: str,
                           requested_status: Any = AttendanceStatus.PRESENT,
                           marked_by: Optional[str] = None,
                           now_ms: Optional[int] = None) -> CheckInResult:
        """Check in against the active session of ``class_id``."""
        session = self.registry.get_active(class_id)
        if session is None:
            return self._rejected(None, Rejection.NO_ACTIVE_SESSION)
        return self.check_in(envelope, session.session_id, requested_status, marked_by, now_ms)

    def _rejected(self, session_id: Optional[int], reason: Rejection,
                  message: Optional[str] = None,
                  identity: Optional[ValidIdentity] = None) -> CheckInResult:
        stats = None
        if session_id is not None:
            try:
                stats = self.registry.stats(session_id)
            except CheckInError:
                session_id = None
        return CheckInResult(
            accepted=False,
            session_id=session_id,
            reason=reason,
            message=message or describe(reason),
            stats=stats,
            identity=identity,
        )
